import hmac
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def now_ts() -> float:
    return time.time()


def to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return _EMAIL_RE.match(email.strip()) is not None


def normalize_owner(owner: str) -> str:
    """Buyers are identified by their lower-cased email address."""
    return owner.strip().lower()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def new_order_id() -> str:
    return uuid.uuid4().hex


def format_minor(amount: int) -> str:
    # 1999 -> "19.99"
    return f"{amount // 100}.{amount % 100:02d}"


def clamp_limit(limit: int, hi: int = 500) -> int:
    return max(1, min(int(limit), hi))
