"""Request parameters accepted by the read models."""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from shared.domain.records import parse_timestamp
from lab_audit.domain.model import PRIORITIES

RANGE_PRESETS = ("today", "last7d", "last30d")


@dataclass(frozen=True)
class TimeRange:
    """Inclusive time window. Callers guarantee start <= end."""
    start: datetime
    end: datetime

    def contains(self, value: Optional[datetime]) -> bool:
        if value is None:
            return False
        return self.start <= value <= self.end

    def previous(self) -> "TimeRange":
        """Window of the same length ending just before this one starts."""
        length = self.end - self.start
        end = self.start - timedelta(microseconds=1)
        return TimeRange(start=end - length, end=end)

    @classmethod
    def normalized(cls, start, end) -> "TimeRange":
        """Parse both bounds and swap them when given in reverse order."""
        start, end = parse_timestamp(start), parse_timestamp(end)
        if start is None or end is None:
            raise ValueError("time range bounds must be ISO-8601 timestamps")
        if start > end:
            start, end = end, start
        return cls(start=start, end=end)

    @classmethod
    def preset(cls, name: str, now: Optional[datetime] = None) -> "TimeRange":
        """today / last7d / last30d, ending at the end of the current UTC day."""
        if name not in RANGE_PRESETS:
            raise ValueError(f"unknown range preset {name!r}")
        now = parse_timestamp(now) or datetime.now(timezone.utc)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = midnight + timedelta(days=1) - timedelta(microseconds=1)
        if name == "today":
            return cls(start=midnight, end=end)
        days = 7 if name == "last7d" else 30
        return cls(start=midnight - timedelta(days=days), end=end)


@dataclass
class AnalyticsFilters:
    exam_type_code: Optional[str] = None
    priority: Optional[str] = None      # routine | urgent | stat; "all" means no filter

    def __post_init__(self):
        self.exam_type_code = (self.exam_type_code or "").strip() or None
        if self.priority not in PRIORITIES:
            self.priority = None


@dataclass
class IncidentFeedFilters:
    time_range: TimeRange
    incident_type: Optional[str] = None     # exam_rejected | specimen_rejected | incidence_created
    exam_type_id: Optional[str] = None
    technician_id: Optional[str] = None
    search: Optional[str] = None

    def __post_init__(self):
        if self.incident_type == "all":
            self.incident_type = None


@dataclass
class FeedPagination:
    limit: Optional[int] = None
    cursor: Optional[str] = None
