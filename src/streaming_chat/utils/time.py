import time
from datetime import datetime


def get_current_timestamp() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


def monotonic_seconds() -> float:
    return time.monotonic()


def today_label() -> str:
    return datetime.now().strftime("%Y-%m-%d")
