import time
import re
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def is_valid_phone(phone: Optional[str]) -> bool:
    if not phone:
        return False
    phone = phone.strip()
    if re.match(r"^\+?[\d\s\-()]+$", phone) is None:
        return False
    # 8 digits local (CR), up to 15 with country code (E.164)
    digits = sum(c.isdigit() for c in phone)
    return 8 <= digits <= 15


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_order_number(ts: float) -> str:
    # display label only; age is always computed from created_at
    return f"ORD-{int(ts * 1000)}"


def new_confirmation_token() -> str:
    return secrets.token_urlsafe(32)
