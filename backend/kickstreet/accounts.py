"""
Accounts: registration, OTP verification, login, password reset, profile,
and the role policy that gates protected routes.
"""
from datetime import datetime
from typing import Dict, Iterable, Optional, Tuple

import bcrypt
from flask import current_app
from pymongo.errors import DuplicateKeyError

from . import emails
from .errors import (
    AlreadyVerified,
    Conflict,
    Forbidden,
    InvalidCredentials,
    InvalidOrExpiredCode,
    NotFound,
    NotVerified,
    Unauthorized,
    UpstreamFailure,
    ValidationError,
)
from .otp import generate_otp_code, is_well_formed, otp_expiry, otp_is_valid
from .utils import (
    isoformat,
    is_valid_email,
    normalize_address_payload,
    normalize_email,
    utcnow,
)

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

# First matching prefix wins.
ROUTE_RULES = (
    ("/api/admin", ROLE_ADMIN),
    ("/api/orders/me", ROLE_USER),
    ("/api/auth/profile", ROLE_USER),
    ("/api/auth/check-role", ROLE_USER),
    ("/admin", ROLE_ADMIN),
    ("/orders", ROLE_USER),
    ("/checkout", ROLE_USER),
    ("/success", ROLE_USER),
)


def hash_password(password: str, rounds: int) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))


def check_password(password: str, password_hash) -> bool:
    if not password_hash:
        return False
    if isinstance(password_hash, str):
        password_hash = password_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), bytes(password_hash))
    except ValueError:
        return False


def required_role_for(path: str) -> Optional[str]:
    for prefix, role in ROUTE_RULES:
        if path == prefix or path.startswith(prefix + "/"):
            return role
    return None


def authorize(role: Optional[str], required_role: Optional[str]) -> None:
    if required_role is None:
        return
    if role not in ROLES:
        raise Unauthorized()
    if required_role == ROLE_ADMIN and role != ROLE_ADMIN:
        raise Forbidden("Access denied. Admins only.")


def is_route_allowed(role: Optional[str], path: str) -> bool:
    try:
        authorize(role, required_role_for(path))
    except (Unauthorized, Forbidden):
        return False
    return True


def assign_role(email: str, admin_emails: Iterable[str]) -> str:
    return ROLE_ADMIN if email in set(admin_emails) else ROLE_USER


def session_claims(user_document) -> Dict[str, str]:
    return {
        "role": user_document.get("role") or ROLE_USER,
        "phone": user_document.get("phone") or "",
        "email": user_document.get("email") or "",
    }


def serialize_user_profile(user_document) -> Dict[str, object]:
    if not user_document:
        return {}

    return {
        "id": str(user_document.get("_id")),
        "name": user_document.get("name", "") or "",
        "email": user_document.get("email", "") or "",
        "phone": user_document.get("phone", "") or "",
        "role": user_document.get("role") or ROLE_USER,
        "is_verified": bool(user_document.get("is_verified")),
        "shipping_address": normalize_address_payload(
            user_document.get("shipping_address")
        ),
        "created_at": isoformat(user_document.get("created_at")),
    }


def register_user(db, payload: Dict, *, rounds: int, admin_emails=()) -> Tuple[Dict, datetime]:
    name = str(payload.get("name") or "").strip()
    email = normalize_email(payload.get("email"))
    phone = str(payload.get("phone") or "").strip()
    password = str(payload.get("password") or "")

    if not name or not email or not phone or not password:
        raise ValidationError("Name, email, phone, and password are required.")
    if not is_valid_email(email):
        raise ValidationError("Please provide a valid email address.")

    existing = db.users.find_one({"$or": [{"email": email}, {"phone": phone}]})
    if existing:
        field = "Email" if existing.get("email") == email else "Phone"
        raise Conflict(f"{field} already registered. Try logging in.")

    now = utcnow()
    otp = generate_otp_code()
    expires_at = otp_expiry(now)
    password_hash = hash_password(password, rounds)

    # The account only exists once the code has actually been delivered.
    sent, error_details = emails.send_verification_email(email, otp)
    if not sent:
        current_app.logger.error(
            "OTP dispatch failed for %s: %s", email, error_details or "unknown error"
        )
        raise UpstreamFailure("Failed to send OTP. Please check your email address.")

    user_document = {
        "name": name,
        "email": email,
        "phone": phone,
        "password": password_hash,
        "role": assign_role(email, admin_emails),
        "is_verified": False,
        "otp": otp,
        "otp_expires": expires_at,
        "shipping_address": normalize_address_payload(payload.get("shipping_address")),
        "created_at": now,
        "updated_at": now,
    }
    try:
        insert_result = db.users.insert_one(user_document)
    except DuplicateKeyError:
        raise Conflict("Email or phone already registered. Try logging in.")

    user_document["_id"] = insert_result.inserted_id
    return user_document, expires_at


def resend_verification_code(db, email: str) -> datetime:
    email = normalize_email(email)
    user = db.users.find_one({"email": email})
    if not user:
        raise NotFound("User not found. Please register again.")
    if user.get("is_verified"):
        raise AlreadyVerified()

    otp = generate_otp_code()
    expires_at = otp_expiry()
    sent, error_details = emails.send_verification_email(email, otp)
    if not sent:
        current_app.logger.error(
            "OTP dispatch failed for %s: %s", email, error_details or "unknown error"
        )
        raise UpstreamFailure("We could not send the verification email. Please try again.")

    db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"otp": otp, "otp_expires": expires_at, "updated_at": utcnow()}},
    )
    return expires_at


def verify_account(db, email: str, otp: str, now: Optional[datetime] = None) -> Dict:
    email = normalize_email(email)
    otp = str(otp or "").strip()
    if not email or not otp:
        raise ValidationError("Email and OTP are required.")
    if not is_well_formed(otp):
        raise ValidationError("The verification code must be 6 digits.")

    user = db.users.find_one({"email": email})
    if not user:
        raise NotFound("User not found. Please register again.")
    if user.get("is_verified"):
        raise AlreadyVerified()

    now = now or utcnow()
    # On failure the stored code stays so the user can retry inside the window.
    if not otp_is_valid(user.get("otp"), user.get("otp_expires"), otp, now):
        raise InvalidOrExpiredCode("Invalid or expired code. Double check your inbox.")

    db.users.update_one(
        {"_id": user["_id"]},
        {
            "$set": {"is_verified": True, "verified_at": now, "updated_at": now},
            "$unset": {"otp": "", "otp_expires": ""},
        },
    )
    return db.users.find_one({"_id": user["_id"]})


def authenticate(db, email: str, password: str) -> Dict:
    email = normalize_email(email)
    password = str(password or "")
    if not email or not password:
        raise ValidationError("Email and password are required.")

    user = db.users.find_one({"email": email})
    if not user or not check_password(password, user.get("password")):
        raise InvalidCredentials()
    if not user.get("is_verified"):
        raise NotVerified(requires_verification=True)

    db.users.update_one({"_id": user["_id"]}, {"$set": {"last_login_at": utcnow()}})
    return user


def request_password_reset(db, email: str) -> None:
    email = normalize_email(email)
    if not is_valid_email(email):
        return

    user = db.users.find_one({"email": email})
    if not user or not user.get("is_verified"):
        current_app.logger.info("Password reset requested for unknown or unverified account")
        return

    otp = generate_otp_code()
    db.users.update_one(
        {"_id": user["_id"]},
        {"$set": {"otp": otp, "otp_expires": otp_expiry(), "updated_at": utcnow()}},
    )
    sent, error_details = emails.send_password_reset_email(email, otp)
    if not sent:
        current_app.logger.error(
            "Password reset email delivery failed for %s: %s",
            email,
            error_details or "Unknown delivery error",
        )


def reset_password(
    db,
    email: str,
    otp: str,
    new_password: str,
    *,
    rounds: int,
    now: Optional[datetime] = None,
) -> None:
    email = normalize_email(email)
    otp = str(otp or "").strip()
    new_password = str(new_password or "")
    if not email or not otp or not new_password.strip():
        raise ValidationError("Email, reset code, and new password are required.")

    user = db.users.find_one({"email": email})
    if not user or not user.get("is_verified"):
        raise InvalidOrExpiredCode()

    now = now or utcnow()
    if not otp_is_valid(user.get("otp"), user.get("otp_expires"), otp, now):
        raise InvalidOrExpiredCode()

    db.users.update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password": hash_password(new_password, rounds), "updated_at": now},
            "$unset": {"otp": "", "otp_expires": ""},
        },
    )


def update_profile(db, user_document, payload: Dict) -> Dict:
    update_fields: Dict[str, object] = {}

    name = str(payload.get("name") or "").strip()
    if name:
        update_fields["name"] = name

    phone = str(payload.get("phone") or "").strip()
    if phone and phone != user_document.get("phone"):
        clash = db.users.find_one({"phone": phone, "_id": {"$ne": user_document["_id"]}})
        if clash:
            raise Conflict("Phone number already in use.")
        update_fields["phone"] = phone

    address_payload = payload.get("shipping_address") or payload.get("shippingAddress")
    if isinstance(address_payload, dict):
        update_fields["shipping_address"] = normalize_address_payload(address_payload)

    if update_fields:
        update_fields["updated_at"] = utcnow()
        try:
            db.users.update_one({"_id": user_document["_id"]}, {"$set": update_fields})
        except DuplicateKeyError:
            raise Conflict("Phone number already in use.")

    return db.users.find_one({"_id": user_document["_id"]})
