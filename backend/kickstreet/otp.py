"""One-time codes for account verification and password reset."""
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional

from .utils import utcnow

OTP_LENGTH = 6
OTP_TTL_MINUTES = 5


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    upper_bound = 10**length
    return f"{secrets.randbelow(upper_bound):0{length}d}"


def otp_expiry(issued_at: Optional[datetime] = None) -> datetime:
    return (issued_at or utcnow()) + timedelta(minutes=OTP_TTL_MINUTES)


def is_well_formed(code: str) -> bool:
    return code.isascii() and code.isdigit() and len(code) == OTP_LENGTH


def otp_is_valid(
    stored_code: Optional[str],
    expires_at: Optional[datetime],
    submitted_code: str,
    now: Optional[datetime] = None,
) -> bool:
    """True iff the submitted code equals the stored one and ``now`` is before expiry."""
    if not stored_code or not isinstance(expires_at, datetime):
        return False
    if not hmac.compare_digest(
        str(stored_code).encode("utf-8"), str(submitted_code or "").encode("utf-8")
    ):
        return False
    return (now or utcnow()) < expires_at
