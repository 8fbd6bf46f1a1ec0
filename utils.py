import datetime as dt
import math
import time
import uuid
from typing import Any, Dict, Optional, Tuple


def now_iso() -> str:
    """UTC timestamp in the millisecond ISO form browsers emit (``...000Z``)."""
    now = dt.datetime.now(dt.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def uid(prefix: str = "id") -> str:
    """Short unique id with a readable prefix."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}_{int(time.time() * 1000):x}"


def clamp_text(value: Any, max_len: int = 1000) -> str:
    """Trim and cut untrusted text. Anything that is not a string reads as empty."""
    if not isinstance(value, str):
        return ""
    out = value.strip()
    return out[:max_len] if len(out) > max_len else out


def clamp_str(value: Any, max_len: int = 2000) -> str:
    """Cut stored text without trimming it."""
    if not isinstance(value, str) or not value:
        return ""
    return value[:max_len] if len(value) > max_len else value


def to_number(value: Any) -> Optional[float]:
    """Finite number from an int/float/numeric string, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        n = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            n = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(n):
        return None
    return n


def to_int(value: Any, fallback: int) -> int:
    """Round half up like the browser client does; non-numeric gives ``fallback``."""
    n = to_number(value)
    if n is None:
        return fallback
    return int(math.floor(n + 0.5))


def clamp_int(value: Any, lo: int, hi: int, fallback: int) -> int:
    return max(lo, min(hi, to_int(value, fallback)))


def chapter_sort_key(chapter: Any) -> Tuple[float, str]:
    """Numbered chapters first (ascending), then by creation time."""
    number = getattr(chapter, "number", None)
    return (number if number is not None else 10 ** 9, getattr(chapter, "created_at", "") or "")


def build_openai_headers(bearer: str) -> Dict[str, str]:
    """HTTP headers for OpenAI API."""
    return {
        "Authorization": f"Bearer {bearer}",
        "Content-Type": "application/json",
    }


def chapter_label(chapter: Any) -> str:
    number = getattr(chapter, "number", None)
    head = f"Chapter {number}" if number is not None else "Chapter"
    title = (getattr(chapter, "title", None) or "").strip()
    return f"{head}: {title}" if title else head
