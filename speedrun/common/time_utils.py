from __future__ import annotations

from datetime import datetime


def timestamp_slug(dt: datetime) -> str:
    # Same shape as `date +%Y%m%d_%H%M%S`, sortable and filename-safe.
    return dt.strftime("%Y%m%d_%H%M%S")


def format_duration(seconds: float) -> str:
    seconds = max(0.0, seconds)
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    return f"{minutes}m{secs:02d}s"
