import time
from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_stamp() -> str:
    """Compact UTC timestamp usable in file and directory names."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def monotonic_ms() -> int:
    return int(time.monotonic() * 1000)
