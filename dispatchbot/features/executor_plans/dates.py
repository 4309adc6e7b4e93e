"""Parsing of moderator-entered plan start dates."""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

# Tried in order after ISO-8601
LOCAL_FORMATS = (
    "%d.%m.%Y, %H:%M:%S",
    "%d.%m.%Y, %H:%M",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
)


def parse_start_date(value: Optional[str], tz_name: str) -> Optional[datetime]:
    """Parse ``value`` into an aware datetime.

    Values carrying an explicit offset keep it; everything else is read as
    wall-clock time in ``tz_name``. Bare 10/13 digit numbers are unix
    seconds/milliseconds. Returns None when nothing matches.
    """
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None

    if trimmed.isdigit():
        if len(trimmed) == 10:
            return datetime.fromtimestamp(int(trimmed), tz=timezone.utc)
        if len(trimmed) == 13:
            return datetime.fromtimestamp(int(trimmed) / 1000, tz=timezone.utc)
        return None

    zone = ZoneInfo(tz_name)

    iso = trimmed[:-1] + "+00:00" if trimmed[-1] in "Zz" else trimmed
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is not None:
            return parsed
        return parsed.replace(tzinfo=zone)

    # %d/%m accept single digits, so "1.2.2024 9:05" matches as well
    for fmt in LOCAL_FORMATS:
        try:
            return datetime.strptime(trimmed, fmt).replace(tzinfo=zone)
        except ValueError:
            continue

    return None
