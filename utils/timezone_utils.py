"""
Timezone Consistency Utilities
Every stored timestamp is a UTC ISO-8601 string. Gateway values arrive in
several shapes (ISO with or without offset, naive SQL-style strings, epoch
seconds or milliseconds); these helpers normalize them.
"""

import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, Union

logger = logging.getLogger(__name__)

TimeValue = Union[datetime, str, float, int, None]

# Naive values carry no zone; callers pass the sender's UTC offset (default UTC)
_NAIVE_FORMATS = (
    '%Y-%m-%d %H:%M:%S',
    '%Y-%m-%d %H:%M:%S.%f',
    '%Y-%m-%d %H:%M',
    '%d/%m/%Y %H:%M:%S',
)

# Anything above this is an epoch in milliseconds (year ~5138 in seconds)
_MILLISECOND_THRESHOLD = 1e11


class TimezoneManager:
    """Converts gateway and storage time values to aware UTC datetimes"""

    def __init__(self):
        self.utc = timezone.utc

    def now(self) -> datetime:
        return datetime.now(self.utc)

    def parse(self, value: TimeValue, naive_offset_hours: float = 0) -> Optional[datetime]:
        """
        Aware UTC datetime for `value`, or None when it cannot be read

        Naive datetimes and naive strings are taken to be `naive_offset_hours`
        ahead of UTC (7 for Atlantic, which reports WIB wall-clock time).
        """
        if value is None or value == '':
            return None
        if isinstance(value, bool):
            return None
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone(timedelta(hours=naive_offset_hours)))
            return value.astimezone(self.utc)
        if isinstance(value, (int, float)):
            seconds = value / 1000 if value > _MILLISECOND_THRESHOLD else value
            try:
                return datetime.fromtimestamp(seconds, self.utc)
            except (OverflowError, OSError, ValueError):
                return None
        if isinstance(value, str):
            return self._parse_text(value.strip(), naive_offset_hours)
        return None

    def _parse_text(self, text: str, naive_offset_hours: float) -> Optional[datetime]:
        if text.isdigit():
            return self.parse(int(text))
        try:
            return self.parse(datetime.fromisoformat(text.replace('Z', '+00:00')), naive_offset_hours)
        except ValueError:
            pass
        for fmt in _NAIVE_FORMATS:
            try:
                return self.parse(datetime.strptime(text, fmt), naive_offset_hours)
            except ValueError:
                continue
        logger.warning(f"⚠️ Unreadable timestamp: {text!r}")
        return None

    def to_utc(self, value: TimeValue) -> datetime:
        """Like parse(), but a missing or unreadable value means now"""
        return self.parse(value) or self.now()

    def format_utc(self, dt: Optional[datetime] = None) -> str:
        return self.to_utc(dt).isoformat()

    def add_minutes(self, dt: datetime, minutes: Union[int, float]) -> datetime:
        return self.to_utc(dt) + timedelta(minutes=minutes)

    def is_past(self, deadline: TimeValue) -> bool:
        """True once `deadline` has passed; a missing or unreadable deadline never does"""
        parsed = self.parse(deadline)
        return parsed is not None and parsed <= self.now()


_timezone_manager: Optional[TimezoneManager] = None


def get_timezone_manager() -> TimezoneManager:
    """Get global timezone manager instance"""
    global _timezone_manager
    if _timezone_manager is None:
        _timezone_manager = TimezoneManager()
    return _timezone_manager


def utc_now() -> datetime:
    return get_timezone_manager().now()


def normalize_timestamp(value: TimeValue, naive_offset_hours: float = 0) -> Optional[str]:
    """Gateway time value as a stored ISO string, None if absent or unreadable"""
    parsed = get_timezone_manager().parse(value, naive_offset_hours)
    return parsed.isoformat() if parsed else None


def utc_after_minutes(minutes: Union[int, float]) -> str:
    """ISO timestamp `minutes` from now, used for payment deadlines"""
    manager = get_timezone_manager()
    return manager.format_utc(manager.add_minutes(manager.now(), minutes))


def is_past(deadline: TimeValue) -> bool:
    return get_timezone_manager().is_past(deadline)


def get_utc_for_db() -> str:
    """Get UTC timestamp string for storage"""
    return utc_now().isoformat()
