# skyfriction/core/timezones.py
# -----------------------------------------------------------------------------
# Civil date/time in a named IANA zone  ⇄  UTC instant.
#
# The orchestrator and the engine service never consult the process TZ or
# platform calendar APIs; they receive a TimezoneConverter and go through it.
# -----------------------------------------------------------------------------
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

__all__ = ["TimezoneConverter", "UnknownTimezoneError", "DEFAULT_TZ", "LOCAL_NOON"]

DEFAULT_TZ = "UTC"
LOCAL_NOON = time(12, 0)


class UnknownTimezoneError(ValueError):
    pass


@lru_cache(maxsize=512)
def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise UnknownTimezoneError(f"timezone must be an IANA zone like 'Asia/Kolkata', got {name!r}") from e


class TimezoneConverter:
    """
    Pinned conversion contract:
      • to_utc(civil date, civil time, zone) -> aware UTC datetime
        (ambiguous/non-existent wall times resolve with fold=0)
      • local_date(UTC instant, zone) -> civil date in that zone
    """

    def zone(self, tz_name: Optional[str]) -> ZoneInfo:
        return _zone((tz_name or DEFAULT_TZ).strip() or DEFAULT_TZ)

    def to_utc(self, d: date, t: time, tz_name: Optional[str]) -> datetime:
        local = datetime.combine(d, t).replace(tzinfo=self.zone(tz_name))
        return local.astimezone(timezone.utc)

    def local_date(self, instant_utc: datetime, tz_name: Optional[str]) -> date:
        if instant_utc.tzinfo is None:
            raise ValueError("instant_utc must be timezone-aware")
        return instant_utc.astimezone(self.zone(tz_name)).date()

    def day_bounds_utc(self, d: date, tz_name: Optional[str]) -> Tuple[datetime, datetime]:
        """[start, end) of the civil day `d` in zone, as UTC instants."""
        start = self.to_utc(d, time(0, 0), tz_name)
        end = self.to_utc(d + timedelta(days=1), time(0, 0), tz_name)
        return start, end
