import json
import math
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

ADDRESS_FIELDS = ("line1", "city", "state", "postal_code", "country", "phone")
ADDRESS_FIELD_ALIASES = {
    "line1": ("line1", "line_1", "address_line_1", "addressLine1", "street"),
    "city": ("city", "town"),
    "state": ("state", "region", "province"),
    "postal_code": ("postal_code", "postalCode", "postcode", "zip", "zip_code"),
    "country": ("country", "country_code", "countryCode"),
    "phone": ("phone", "phone_number", "phoneNumber"),
}
DEFAULT_COUNTRY = "IN"


def utcnow() -> datetime:
    # Naive UTC, the form pymongo hands back by default.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def is_valid_email(value: Optional[str]) -> bool:
    normalized = normalize_email(value)
    return bool(normalized and email_regex.match(normalized))


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_int(value, default=None):
    if isinstance(value, bool):
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(numeric) or numeric != int(numeric):
        return default
    return int(numeric)


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value or "").strip())
    except (InvalidId, TypeError):
        return None


def isoformat(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def parse_json_list(value) -> List:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [item for item in value]
    if isinstance(value, (bytes, bytearray)):
        try:
            value = value.decode("utf-8")
        except UnicodeDecodeError:
            value = ""
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return []
        try:
            parsed = json.loads(candidate)
            if isinstance(parsed, list):
                return parsed
        except (json.JSONDecodeError, ValueError):
            pass
        if "," in candidate:
            return [
                item.strip()
                for item in candidate.split(",")
                if item and item.strip()
            ]
        return [candidate]
    return []


def normalize_string_list(value) -> List[str]:
    normalized: List[str] = []
    for item in parse_json_list(value):
        text = str(item if item is not None else "").strip()
        if text and text not in normalized:
            normalized.append(text)
    return normalized


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    normalized = {field: "" for field in ADDRESS_FIELDS}
    normalized["country"] = DEFAULT_COUNTRY
    if not isinstance(payload, dict):
        return normalized

    for field in ADDRESS_FIELDS:
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            if alias in payload and payload.get(alias) is not None:
                trimmed = str(payload.get(alias)).strip()
                if trimmed:
                    normalized[field] = trimmed
                break
    return normalized
