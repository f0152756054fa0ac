"""
Timezone-aware date bucketing.

Maps timestamps to report dates in a configured timezone, honouring a daily
cutoff hour: a local time before the cutoff belongs to the previous day.
Named timeframes (today, yesterday, this week, this month) are expressed in
the same report dates, so they move with the cutoff too.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ccost.core.errors import ConfigError


class Timeframe(Enum):
    """Report periods relative to the current report date."""
    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "this-week"    # Monday through today
    THIS_MONTH = "this-month"  # First of the month through today


@dataclass(frozen=True)
class DateBucketer:
    """Assigns report dates to timestamps."""
    timezone_name: str = "UTC"
    daily_cutoff_hour: int = 0
    tz: tzinfo = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        """Validate cutoff hour and resolve the timezone."""
        if isinstance(self.daily_cutoff_hour, bool) or not isinstance(self.daily_cutoff_hour, int):
            raise ConfigError("daily_cutoff_hour must be an integer")
        if not 0 <= self.daily_cutoff_hour <= 23:
            raise ConfigError(f"daily_cutoff_hour must be 0-23, got: {self.daily_cutoff_hour}")
        object.__setattr__(self, "tz", resolve_timezone(self.timezone_name))

    def bucket_date(self, timestamp: datetime) -> date:
        """Return the report date a timestamp belongs to."""
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        local = timestamp.astimezone(self.tz)
        if local.hour < self.daily_cutoff_hour:
            return local.date() - timedelta(days=1)
        return local.date()

    def day_start(self, day: date) -> datetime:
        """Return the UTC instant at which a report date begins."""
        local = datetime.combine(day, time(hour=self.daily_cutoff_hour), tzinfo=self.tz)
        return local.astimezone(timezone.utc)

    def today(self, now: Optional[datetime] = None) -> date:
        """Report date of ``now`` (the current time when omitted)."""
        return self.bucket_date(now or datetime.now(timezone.utc))

    def timeframe_dates(self, timeframe: Timeframe, now: Optional[datetime] = None) -> Tuple[date, date]:
        """Inclusive (first, last) report dates of a timeframe."""
        today = self.today(now)
        if timeframe is Timeframe.TODAY:
            return today, today
        if timeframe is Timeframe.YESTERDAY:
            yesterday = today - timedelta(days=1)
            return yesterday, yesterday
        if timeframe is Timeframe.THIS_WEEK:
            return today - timedelta(days=today.weekday()), today
        return today.replace(day=1), today

    def timeframe_range(self, timeframe: Timeframe, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        """Half-open UTC interval [start, end) covered by a timeframe."""
        first, last = self.timeframe_dates(timeframe, now)
        return self.day_start(first), self.day_start(last + timedelta(days=1))

    def today_start(self, now: Optional[datetime] = None) -> datetime:
        return self.timeframe_range(Timeframe.TODAY, now)[0]

    def yesterday_start(self, now: Optional[datetime] = None) -> datetime:
        return self.timeframe_range(Timeframe.YESTERDAY, now)[0]

    def this_week_start(self, now: Optional[datetime] = None) -> datetime:
        return self.timeframe_range(Timeframe.THIS_WEEK, now)[0]

    def this_month_start(self, now: Optional[datetime] = None) -> datetime:
        return self.timeframe_range(Timeframe.THIS_MONTH, now)[0]


def resolve_timezone(name: str) -> tzinfo:
    """Resolve an IANA timezone name.

    Raises:
        ConfigError: If the name is unknown
    """
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("timezone must be a non-empty string")
    if name.strip().upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigError(f"Invalid timezone '{name}': {e}") from e
