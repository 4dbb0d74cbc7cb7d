from typing import Dict

from pymongo.errors import DuplicateKeyError

from .errors import Conflict, ValidationError
from .utils import is_valid_email, normalize_email, utcnow

ALREADY_SUBSCRIBED = "You're already on the list!"


def subscribe(db, email) -> Dict:
    email = normalize_email(email)
    if not email:
        raise ValidationError("Email is required")
    if not is_valid_email(email):
        raise ValidationError("Please provide a valid email address.")

    if db.newsletter.find_one({"email": email}):
        raise Conflict(ALREADY_SUBSCRIBED)

    now = utcnow()
    subscriber = {"email": email, "is_active": True, "created_at": now, "updated_at": now}
    try:
        result = db.newsletter.insert_one(subscriber)
    except DuplicateKeyError:
        raise Conflict(ALREADY_SUBSCRIBED)
    subscriber["_id"] = result.inserted_id
    return subscriber
