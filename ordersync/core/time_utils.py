from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse the timestamp shapes the API sends into an aware UTC datetime.

    Accepts datetime objects, ISO strings (with or without a trailing ``Z``)
    and the ``Y-m-d H:i:s`` form used in status history entries. Naive values
    are assumed to be UTC. Unparseable input returns None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            raw = str(value).strip()
            if raw.endswith('Z'):
                raw = raw[:-1] + '+00:00'
            dt = datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            return None
    if getattr(dt, 'tzinfo', None) is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def minutes_since(value, now: Optional[datetime] = None) -> Optional[float]:
    dt = parse_timestamp(value)
    if dt is None:
        return None
    now = now or utcnow()
    return (now - dt).total_seconds() / 60.0
