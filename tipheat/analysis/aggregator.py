"""Calendar windows and time-bucket aggregation of resolved tips."""
import calendar
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

import structlog

from tipheat.cancellation import CancelToken, check
from tipheat.models import TimeBucket, TipEvent, validate_period

logger = structlog.get_logger()

SLOT_MINUTES = 15


class TimeBucketAggregator:
    """Buckets tips into 15-minute slots for "day" and calendar days otherwise."""

    def __init__(self, config: dict):
        aggregation = config.get("aggregation", {})
        self.tz = ZoneInfo(aggregation.get("timezone", "UTC"))

    def _now(self, now: Optional[datetime]) -> datetime:
        if now is None:
            return datetime.now(self.tz)
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def window(self, period: str, now: Optional[datetime] = None) -> Optional[tuple[date, int]]:
        """(first calendar day, number of days) of the period, None for "all"."""
        validate_period(period)
        today = self._now(now).date()
        if period == "day":
            return today, 1
        if period == "week":
            # weeks start on Sunday
            start = today - timedelta(days=(today.weekday() + 1) % 7)
            return start, 7
        if period == "month":
            return today.replace(day=1), calendar.monthrange(today.year, today.month)[1]
        return None

    def window_start(self, period: str, now: Optional[datetime] = None) -> Optional[int]:
        """Unix seconds at local midnight of the window's first day."""
        window = self.window(period, now)
        if window is None:
            return None
        start = datetime.combine(window[0], datetime.min.time(), tzinfo=self.tz)
        return int(start.timestamp())

    def filter_period(
        self, events: Iterable[TipEvent], period: str, now: Optional[datetime] = None
    ) -> list[TipEvent]:
        """Events that happened inside the current calendar window of `period`."""
        start = self.window_start(period, now)
        if start is None:
            return list(events)
        return [e for e in events if e.is_resolved and e.timestamp >= start]

    def bucket_key(self, timestamp: int, period: str) -> str:
        moment = datetime.fromtimestamp(timestamp, tz=self.tz)
        if period == "day":
            minute = moment.minute // SLOT_MINUTES * SLOT_MINUTES
            return f"{moment.hour:02d}:{minute:02d}"
        return moment.date().isoformat()

    def bucket_keys(self, period: str, now: Optional[datetime] = None) -> list[str]:
        """Full contiguous key sequence of the period's window."""
        if period == "day":
            return [
                f"{hour:02d}:{minute:02d}"
                for hour in range(24)
                for minute in range(0, 60, SLOT_MINUTES)
            ]
        window = self.window(period, now)
        if window is None:
            return []
        start, days = window
        return [(start + timedelta(days=i)).isoformat() for i in range(days)]

    def aggregate(
        self,
        events: Iterable[TipEvent],
        period: str,
        fill_empty: bool,
        now: Optional[datetime] = None,
        cancel: Optional[CancelToken] = None,
    ) -> list[TimeBucket]:
        """Sum amounts per bucket, ascending by key. Tips before the window are ignored."""
        validate_period(period)
        check(cancel)

        start = self.window_start(period, now)
        sums: dict[str, int] = defaultdict(int)
        for event in events:
            if not event.is_resolved:
                continue
            if start is not None and event.timestamp < start:
                continue
            sums[self.bucket_key(event.timestamp, period)] += event.amount

        if not fill_empty or period == "all":
            return [TimeBucket(key=k, amount_sum=sums[k]) for k in sorted(sums)]

        keys = self.bucket_keys(period, now)
        dropped = set(sums) - set(keys)
        if dropped:
            logger.debug("buckets_outside_window", period=period, keys=sorted(dropped))
        return [TimeBucket(key=k, amount_sum=sums.get(k, 0)) for k in keys]
