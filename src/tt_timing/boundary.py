"""Calendar buckets (day, week, month) in one fixed UTC offset.

Every "today", "this week", streak deadline and reset scope is computed
through a single DayBoundary so that all components agree on where
midnight falls. Weeks start on Monday.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from tt_timing.models import Frequency, to_utc

JST_OFFSET = timedelta(hours=9)


class DayBoundary:
    """Maps instants to local calendar buckets in a fixed offset timezone."""

    def __init__(self, utc_offset: timedelta = JST_OFFSET) -> None:
        self._tz = timezone(utc_offset)

    @classmethod
    def from_minutes(cls, offset_minutes: int) -> DayBoundary:
        return cls(timedelta(minutes=offset_minutes))

    @property
    def tz(self) -> timezone:
        return self._tz

    def local(self, instant: datetime) -> datetime:
        return to_utc(instant).astimezone(self._tz)

    # ---- Keys ----

    def day_key(self, instant: datetime) -> str:
        return self.local(instant).strftime("%Y-%m-%d")

    def week_key(self, instant: datetime) -> str:
        year, week, _ = self.local(instant).isocalendar()
        return f"{year}-W{week:02d}"

    def month_key(self, instant: datetime) -> str:
        return self.local(instant).strftime("%Y-%m")

    def bucket_key(self, instant: datetime, frequency: Frequency) -> str:
        if frequency is Frequency.WEEKLY:
            return self.week_key(instant)
        if frequency is Frequency.MONTHLY:
            return self.month_key(instant)
        return self.day_key(instant)

    def is_same_day(self, a: datetime, b: datetime) -> bool:
        return self.day_key(a) == self.day_key(b)

    def is_same_week(self, a: datetime, b: datetime) -> bool:
        return self.week_key(a) == self.week_key(b)

    def is_same_month(self, a: datetime, b: datetime) -> bool:
        return self.month_key(a) == self.month_key(b)

    # ---- Ordinals and ranges ----

    def bucket_index(self, instant: datetime, frequency: Frequency) -> int:
        """Ordinal of the bucket containing `instant`.

        Adjacent buckets differ by exactly one, which lets streaks be
        counted with integer arithmetic instead of date math.
        """
        local_date = self.local(instant).date()
        if frequency is Frequency.WEEKLY:
            # date.min (0001-01-01, ordinal 1) is a Monday
            return (local_date.toordinal() - 1) // 7
        if frequency is Frequency.MONTHLY:
            return local_date.year * 12 + local_date.month - 1
        return local_date.toordinal()

    def bucket_start(self, instant: datetime, frequency: Frequency) -> datetime:
        local = self.local(instant).replace(hour=0, minute=0, second=0, microsecond=0)
        if frequency is Frequency.WEEKLY:
            local -= timedelta(days=local.weekday())
        elif frequency is Frequency.MONTHLY:
            local = local.replace(day=1)
        return local.astimezone(timezone.utc)

    def bucket_end(self, instant: datetime, frequency: Frequency) -> datetime:
        """Exclusive end of the bucket containing `instant`."""
        start = self.bucket_start(instant, frequency).astimezone(self._tz)
        if frequency is Frequency.WEEKLY:
            end = start + timedelta(days=7)
        elif frequency is Frequency.MONTHLY:
            if start.month == 12:
                end = start.replace(year=start.year + 1, month=1)
            else:
                end = start.replace(month=start.month + 1)
        else:
            end = start + timedelta(days=1)
        return end.astimezone(timezone.utc)

    def day_range(self, instant: datetime) -> tuple[datetime, datetime]:
        """UTC start (inclusive) and end (exclusive) of the local day."""
        return (
            self.bucket_start(instant, Frequency.DAILY),
            self.bucket_end(instant, Frequency.DAILY),
        )
