import time
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Optional


TX_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def parse_iso(value: str | None) -> Optional[float]:
    if not value:
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def new_id() -> str:
    return secrets.token_hex(16)


def access_code() -> str:
    return "AC" + secrets.token_hex(8).upper()


def is_positive_int(v: Any) -> bool:
    # bool is an int subclass; JSON true must not pass as 1
    return isinstance(v, int) and not isinstance(v, bool) and v > 0


def is_non_negative_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool) and v >= 0


def is_eth_address(v: Any) -> bool:
    return isinstance(v, str) and ADDRESS_RE.match(v) is not None


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()
