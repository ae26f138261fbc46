# src/tourcompass/models.py
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class Status(str, Enum):
    AVAILABLE = "available"
    SOLDOUT = "soldout"
    NOT_OPERATING = "notoperating"
    PARTIALLY_SOLDOUT = "partiallysoldout"


# manual sell-out decisions that survive a full regeneration
MANUAL_STATUSES = (Status.SOLDOUT, Status.PARTIALLY_SOLDOUT)


class Season(str, Enum):
    HIGH = "high"
    NORMAL = "normal"


class Trigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


@dataclass
class DayRecord:
    """One calendar date of one tour."""
    date: date
    status: Status = Status.NOT_OPERATING
    booked_participants: int = 0
    season: Season = Season.NORMAL
    time_slots: Optional[Any] = None    # opaque, never generated here

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "date": self.date.isoformat(),
            "status": self.status.value,
            "bookedParticipants": self.booked_participants,
            "season": self.season.value,
        }
        if self.time_slots is not None:
            out["timeSlots"] = self.time_slots
        return out


@dataclass
class ClosedPeriod:
    """Recurring month-day span (no year) in which the tour does not run."""
    start_month: int
    start_day: int
    end_month: int
    end_day: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "startMonth": self.start_month,
            "startDay": self.start_day,
            "endMonth": self.end_month,
            "endDay": self.end_day,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class SeasonWindow:
    """High-season month-day span, may wrap year-end."""
    from_month: int
    from_day: int
    to_month: int
    to_day: int


@dataclass
class TourConfig:
    """The fields of a tour the engine reads; everything else stays with the caller."""
    id: str
    tour_code: Optional[str] = None     # business id, e.g. OM001
    title: str = ""
    url_name: str = ""
    run_days: List[str] = field(default_factory=list)
    high_season_ref: Optional[str] = None
    cancellation_policy_ref: Optional[str] = None
    closed_periods: List[ClosedPeriod] = field(default_factory=list)
    publish_status: str = "PUBLISHED"

    @property
    def display_name(self) -> str:
        return self.title or self.url_name or self.id


@dataclass
class AvailabilityRecord:
    tour_ref: str                       # db id of the owning tour
    availability_id: str = ""
    tour_code: Optional[str] = None
    notes: str = ""
    closed_periods: List[ClosedPeriod] = field(default_factory=list)
    days: List[DayRecord] = field(default_factory=list)
    id: Optional[int] = field(default=None)   # db primary key, set on insert


@dataclass
class SeasonPolicy:
    """Season windows after normalization, plus the policy's display name."""
    windows: List[SeasonWindow] = field(default_factory=list)
    policy_name: Optional[str] = None


@dataclass
class RunContext:
    """Explicit per-call state: the JST date the operation runs for and what triggered it."""
    today: date
    trigger: Trigger = Trigger.MANUAL


@dataclass
class TourOutcome:
    status: str                         # SUCCESS | FAILED
    tour_id: str
    tour_name: str = ""
    operation: str = ""
    message: str = ""
    dates_count: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "SUCCESS"


@dataclass
class BatchOutcome:
    success: bool
    message: str = ""
    tours_processed: int = 0
    tours_updated: int = 0
    tours_failed: int = 0
    successful_tours: List[str] = field(default_factory=list)
    failed_tours: List[Dict[str, str]] = field(default_factory=list)   # {"tour_id", "message"}
    errors: List[str] = field(default_factory=list)
    execution_time: float = 0.0
    dry_run: bool = False


@dataclass
class LogEntry:
    """One SystemState audit entry."""
    state_type: str
    execution_status: str = ""
    operation_type: str = ""
    processing_start: Optional[datetime] = None
    processing_end: Optional[datetime] = None
    log_data: str = ""
    error_details: str = ""
    affected_tour_count: int = 0
    affected_tour_names: List[str] = field(default_factory=list)
    notes: str = ""
    state_id: Optional[str] = None
    id: Optional[int] = field(default=None)
