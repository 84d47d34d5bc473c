import os
import re
import time
from datetime import datetime, timezone


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


def safe_slug(value: str | None, fallback: str) -> str:
    slug = re.sub(r"[^a-z0-9]", "_", value or "", flags=re.IGNORECASE).lower()
    return slug or fallback


def saved_filename(user_name: str | None, contest: str | None, original: str, timestamp_ms: int) -> str:
    """Unique storage name: <user>_<contest>_<epoch ms>_<original name>."""
    base = os.path.basename(original.replace("\\", "/"))
    base = re.sub(r"\s+", "_", base)
    base = re.sub(r"[^\w.\-]", "_", base) or "upload"
    return f"{safe_slug(user_name, 'user')}_{safe_slug(contest, 'contest')}_{timestamp_ms}_{base}"
