import time
import re
import math
from datetime import datetime, timezone
import hashlib
import hmac
from typing import Any, Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_iso(value: datetime | float | None) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def hmac_sha512_hex(secret: str, raw: bytes) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha512).hexdigest()


def signature_matches(secret: str, raw: bytes, header: Optional[str]) -> bool:
    if not secret or not header:
        return False
    return ct_equal(hmac_sha512_hex(secret, raw), header.strip().lower())


def merge_json(a: Any, b: Any) -> dict:
    left = a if isinstance(a, dict) else {}
    right = b if isinstance(b, dict) else {}
    return {**left, **right}


def to_lowest(amount: float) -> int:
    # half-up: 0.125 -> 13 where round() would give 12
    return int(math.floor(float(amount) * 100 + 0.5))
