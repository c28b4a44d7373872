"""Derived views rebuilt per request. Never persisted."""
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.domain.records import isoformat


def to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


class ReadModel:
    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


# ---------- Timelines ----------

@dataclass
class TimelineEvent(ReadModel):
    id: str
    action: str
    label: str
    category: str
    subject_type: Optional[str]
    subject_id: Optional[str]
    timestamp: datetime
    actor_id: Optional[str]
    metadata: Optional[Dict[str, Any]]


@dataclass
class TimelineDurations(ReadModel):
    pre_analytical_minutes: Optional[int] = None
    analytical_minutes: Optional[int] = None
    post_analytical_minutes: Optional[int] = None
    total_lifecycle_minutes: Optional[int] = None


@dataclass
class SpecimenTimeline(ReadModel):
    specimen_id: str
    barcode: Optional[str]
    specimen_status: Optional[str]
    exam_id: Optional[str]
    exam_type_id: Optional[str]
    exam_type_code: Optional[str]
    exam_type_name: Optional[str]
    events: List[TimelineEvent]
    durations: TimelineDurations
    incidence_count: int
    rejection_count: int


@dataclass
class PatientRef(ReadModel):
    id: Optional[str]
    full_name: str


@dataclass
class TimelineSummary(ReadModel):
    total_events: int
    total_specimens: int
    specimens_with_incidence: int
    specimens_with_rejection: int
    first_event_at: Optional[datetime]
    last_event_at: Optional[datetime]


@dataclass
class WorkOrderTimeline(ReadModel):
    work_order_id: str
    accession_number: Optional[str]
    requested_at: Optional[datetime]
    priority: Optional[str]
    referring_doctor: Optional[str]
    patient: PatientRef
    order_events: List[TimelineEvent]
    specimen_timelines: List[SpecimenTimeline]
    summary: TimelineSummary


@dataclass
class AuditSearchResult(ReadModel):
    work_order_id: str
    matched_by: str     # work_order_id | barcode | accession | patient


@dataclass
class RecentAuditActivity(ReadModel):
    work_order_id: str
    accession_number: Optional[str]
    patient_name: str
    last_event_at: datetime
    event_count: int


# ---------- Analytics ----------

@dataclass
class Trend(ReadModel):
    direction: str      # up | down | flat
    percentage: float
    previous_value: Optional[float] = None


@dataclass
class KPISummary(ReadModel):
    orders_processed: int = 0
    exams_completed: int = 0
    average_tat_minutes: int = 0
    rejection_rate: float = 0.0
    incidences_count: int = 0
    pending_backlog: int = 0
    trends: Optional[Dict[str, Trend]] = None


@dataclass
class ThroughputPoint(ReadModel):
    date: str
    approved: int
    rejected: int
    total: int


@dataclass
class ExamMixEntry(ReadModel):
    exam_type_id: str
    exam_type_code: str
    exam_type_name: str
    count: int
    percentage: float


@dataclass
class TATBucket(ReadModel):
    label: str
    min_minutes: int
    max_minutes: Optional[int]
    routine: int = 0
    urgent: int = 0
    stat: int = 0
    total: int = 0


@dataclass
class TechnicianWorkload(ReadModel):
    technician_id: str
    technician_name: str
    exam_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    average_tat_minutes: Optional[int] = None


@dataclass
class RejectionAnalysisEntry(ReadModel):
    exam_type_id: str
    exam_type_code: str
    exam_type_name: str
    total_rejections: int
    by_reason: Dict[str, int]


@dataclass
class DoctorVolumeEntry(ReadModel):
    referring_doctor: str
    work_order_count: int
    percentage: float


@dataclass
class PeakHourCell(ReadModel):
    day_of_week: int    # 0 = Monday
    hour_of_day: int
    count: int


@dataclass
class AnalyticsDashboard(ReadModel):
    kpis: KPISummary
    throughput: List[ThroughputPoint]
    exam_mix: List[ExamMixEntry]


@dataclass
class AnalyticsDetailedCharts(ReadModel):
    tat_distribution: List[TATBucket]
    technician_workload: List[TechnicianWorkload]
    rejection_analysis: List[RejectionAnalysisEntry]
    doctor_volume: List[DoctorVolumeEntry]
    peak_hours: List[PeakHourCell]


# ---------- Incidents ----------

@dataclass
class IncidentFeedItem(ReadModel):
    id: str
    event_id: str
    work_order_id: str
    specimen_id: Optional[str]
    exam_id: Optional[str]
    accession_number: Optional[str]
    patient_name: str
    exam_type_id: Optional[str]
    exam_type_name: Optional[str]
    specimen_barcode: Optional[str]
    incident_type: str      # exam_rejected | specimen_rejected | incidence_created
    severity: str           # high | medium
    title: str
    description: Optional[str]
    reason: Optional[str]
    status: str             # open | resolved
    timestamp: datetime
    actor_id: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IncidentFeedPage(ReadModel):
    items: List[IncidentFeedItem]
    next_cursor: Optional[str]


@dataclass
class IncidentSummaryCards(ReadModel):
    active_incidences: int = 0
    rejected_exams: int = 0
    rejected_specimens: int = 0
    critical_results: int = 0


@dataclass
class ReasonCount(ReadModel):
    reason: str
    count: int


@dataclass
class TechnicianRejections(ReadModel):
    technician_id: str
    technician_name: str
    count: int


@dataclass
class ExamTypeRejections(ReadModel):
    exam_type_id: str
    exam_type_code: str
    exam_type_name: str
    count: int


@dataclass
class DailyCount(ReadModel):
    date: str
    count: int


@dataclass
class IncidentPatterns(ReadModel):
    reason_distribution: List[ReasonCount]
    rejection_by_technician: List[TechnicianRejections]
    rejection_by_exam_type: List[ExamTypeRejections]
    incidence_trend: List[DailyCount]
