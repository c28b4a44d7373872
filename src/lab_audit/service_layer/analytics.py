"""
Operational analytics over terminal exams.

Every query takes an inclusive time range and optional dimensional filters
(exam type code, priority). All of them start from the same filtered scope,
so an exam type or priority filter means the same thing on every chart:

- terminal exams = approved/rejected exams validated inside the range whose
  work order and exam type pass the filters;
- in-range work orders = the work orders of those exams;
- requested work orders = orders requested inside the range passing the
  filters (doctor volume only).

An AnalyticsAggregator belongs to a single request. Base data and scopes are
memoised on it, so a dashboard asking for several charts loads the snapshots
once; a new request must build a new aggregator.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from shared.domain.records import minutes_between, round_half_up
from shared.service_layer.memo import RequestMemo
from lab_audit.adapters.repository import Between
from lab_audit.domain import model
from lab_audit.domain.model import AuditAction
from lab_audit.domain.queries import AnalyticsFilters, TimeRange
from lab_audit.domain.read_models import (
    AnalyticsDashboard,
    AnalyticsDetailedCharts,
    DoctorVolumeEntry,
    ExamMixEntry,
    KPISummary,
    PeakHourCell,
    RejectionAnalysisEntry,
    TATBucket,
    TechnicianWorkload,
    ThroughputPoint,
    Trend,
)
from lab_audit.service_layer.link_resolver import EntityLinkResolver
from lab_audit.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

# (label, min, max); bounds inclusive, max None is open-ended.
TAT_BUCKETS = (
    ("0-30min", 0, 30),
    ("31-60min", 31, 60),
    ("61-120min", 61, 120),
    ("121-240min", 121, 240),
    (">240min", 241, None),
)

UNASSIGNED_TECHNICIAN = "unassigned"
NO_REASON = "no reason given"
NO_DOCTOR = "unspecified"
UNKNOWN_EXAM_TYPE_CODE = "N/A"
UNKNOWN_EXAM_TYPE_NAME = "Exam"

KPI_FIELDS = (
    "orders_processed",
    "exams_completed",
    "average_tat_minutes",
    "rejection_rate",
    "incidences_count",
    "pending_backlog",
)

ANALYTICS_EVENT_ACTIONS = (
    AuditAction.INCIDENCE_CREATED,
    AuditAction.EXAM_REJECTED,
    AuditAction.SPECIMEN_REJECTED,
)


@dataclass
class AnalyticsBase:
    """Snapshots and events one time range needs, indexed for lookups."""
    terminal_exams: List[model.Exam] = field(default_factory=list)
    requested_work_orders: List[model.WorkOrder] = field(default_factory=list)
    work_orders: Dict[str, model.WorkOrder] = field(default_factory=dict)
    specimens: Dict[str, model.Specimen] = field(default_factory=dict)
    exam_types: Dict[str, model.ExamType] = field(default_factory=dict)
    events: List[model.AuditEvent] = field(default_factory=list)
    specimens_by_work_order: Dict[str, List[model.Specimen]] = field(default_factory=dict)
    exam_by_specimen: Dict[str, model.Exam] = field(default_factory=dict)


@dataclass
class FilteredScope:
    work_order_ids: Set[str]
    exams: List[model.Exam]
    requested_work_order_ids: List[str]
    exam_type_ids_allowed: Optional[Set[str]]
    priority: Optional[str]

    def allows_exam_type(self, exam_type_id: Optional[str]) -> bool:
        return self.exam_type_ids_allowed is None or exam_type_id in self.exam_type_ids_allowed

    def allows_work_order(self, work_order: Optional[model.WorkOrder]) -> bool:
        if self.priority is None:
            return True
        return work_order is not None and work_order.priority == self.priority


def turnaround_minutes(exam: model.Exam) -> Optional[int]:
    return minutes_between(exam.turnaround_start, exam.validated_at)


def tat_bucket_index(minutes: int) -> Optional[int]:
    for index, (_, low, high) in enumerate(TAT_BUCKETS):
        if minutes >= low and (high is None or minutes <= high):
            return index
    return None


def compute_trend(current: float, previous: float) -> Trend:
    """Direction and percentage change of a KPI against the previous period."""
    if previous == 0:
        if current > 0:
            return Trend(direction="up", percentage=100.0, previous_value=previous)
        return Trend(direction="flat", percentage=0.0, previous_value=previous)
    if current == previous:
        return Trend(direction="flat", percentage=0.0, previous_value=previous)
    percentage = round(abs(current - previous) / previous * 100, 1)
    direction = "up" if current > previous else "down"
    return Trend(direction=direction, percentage=percentage, previous_value=previous)


def _share(count: int, total: int) -> float:
    return count / total if total > 0 else 0.0


class AnalyticsAggregator:
    def __init__(self, uow: AbstractUnitOfWork, memo: Optional[RequestMemo] = None):
        self.uow = uow
        self.memo = memo if memo is not None else RequestMemo()
        self.resolver = EntityLinkResolver(uow)

    # ---------- base data ----------

    def _base(self, time_range: TimeRange) -> AnalyticsBase:
        return self.memo.call(self._load_base, time_range)

    def _load_base(self, time_range: TimeRange) -> AnalyticsBase:
        uow = self.uow
        window = Between(time_range.start, time_range.end)
        base = AnalyticsBase()

        base.terminal_exams = sorted(
            (
                exam
                for exam in uow.exams.list(
                    status=sorted(model.TERMINAL_EXAM_STATUSES), validated_at=window
                )
                if time_range.contains(exam.validated_at)
            ),
            key=lambda e: e.id,
        )
        base.requested_work_orders = sorted(
            uow.work_orders.list(requested_at=window), key=lambda wo: wo.id
        )

        exam_specimens = uow.specimens.get_many(e.specimen_id for e in base.terminal_exams)
        work_order_ids = {s.work_order_id for s in exam_specimens.values() if s.work_order_id}
        work_order_ids.update(wo.id for wo in base.requested_work_orders)
        base.work_orders = uow.work_orders.get_many(work_order_ids)

        order_specimens = uow.specimens.list(work_order_id=sorted(base.work_orders)) if base.work_orders else []
        base.specimens = dict(exam_specimens)
        base.specimens.update((s.id, s) for s in order_specimens)
        for specimen in sorted(base.specimens.values(), key=lambda s: s.id):
            if specimen.work_order_id:
                base.specimens_by_work_order.setdefault(specimen.work_order_id, []).append(specimen)

        order_exams = uow.exams.list(specimen_id=sorted(base.specimens)) if base.specimens else []
        for exam in sorted(list(order_exams) + base.terminal_exams, key=lambda e: e.id):
            base.exam_by_specimen.setdefault(exam.specimen_id, exam)

        base.exam_types = {t.id: t for t in uow.exam_types.list()}
        base.events = [
            event
            for event in uow.events.iter_time_range(
                time_range.start, time_range.end, actions=ANALYTICS_EVENT_ACTIONS
            )
            if time_range.contains(event.timestamp)
        ]

        self.resolver.remember("work_orders", base.work_orders.values())
        self.resolver.remember("specimens", base.specimens.values())
        self.resolver.remember("exams", order_exams)
        self.resolver.remember("exams", base.terminal_exams)
        self.resolver.remember("exam_types", base.exam_types.values())
        self.resolver.prefetch(base.events)

        logger.info(
            f"Loaded analytics base for {time_range.start.isoformat()}..{time_range.end.isoformat()}: "
            f"{len(base.terminal_exams)} terminal exams, {len(base.requested_work_orders)} requested orders, "
            f"{len(base.events)} events"
        )
        return base

    def _scope(self, time_range: TimeRange, filters: Optional[AnalyticsFilters]) -> FilteredScope:
        return self.memo.call(self._apply_filters, time_range, filters or AnalyticsFilters())

    def _apply_filters(self, time_range: TimeRange, filters: AnalyticsFilters) -> FilteredScope:
        base = self._base(time_range)
        allowed = None
        if filters.exam_type_code:
            code = filters.exam_type_code.lower()
            allowed = {t.id for t in base.exam_types.values() if (t.code or "").lower() == code}

        scope = FilteredScope(
            work_order_ids=set(),
            exams=[],
            requested_work_order_ids=[],
            exam_type_ids_allowed=allowed,
            priority=filters.priority,
        )
        for exam in base.terminal_exams:
            specimen = base.specimens.get(exam.specimen_id)
            work_order_id = specimen.work_order_id if specimen else None
            if not work_order_id:
                continue
            if not scope.allows_work_order(base.work_orders.get(work_order_id)):
                continue
            if not scope.allows_exam_type(exam.exam_type_id):
                continue
            scope.work_order_ids.add(work_order_id)
            scope.exams.append(exam)

        for work_order in base.requested_work_orders:
            if not time_range.contains(work_order.requested_at):
                continue
            if not scope.allows_work_order(work_order):
                continue
            if allowed is not None and not self._orders_allowed_exam_type(base, work_order.id, allowed):
                continue
            scope.requested_work_order_ids.append(work_order.id)
        return scope

    @staticmethod
    def _orders_allowed_exam_type(base: AnalyticsBase, work_order_id: str, allowed: Set[str]) -> bool:
        for specimen in base.specimens_by_work_order.get(work_order_id, []):
            exam = base.exam_by_specimen.get(specimen.id)
            exam_type_id = exam.exam_type_id if exam else specimen.exam_type_id
            if exam_type_id in allowed:
                return True
        return False

    def _exam_type_labels(self, base: AnalyticsBase, exam_type_id: str):
        exam_type = base.exam_types.get(exam_type_id)
        code = exam_type.code if exam_type and exam_type.code else UNKNOWN_EXAM_TYPE_CODE
        name = exam_type.name if exam_type and exam_type.name else UNKNOWN_EXAM_TYPE_NAME
        return code, name

    # ---------- queries ----------

    def kpi_summary(
        self,
        time_range: TimeRange,
        filters: Optional[AnalyticsFilters] = None,
        with_trends: bool = False,
    ) -> KPISummary:
        summary = self._kpis(time_range, filters)
        if with_trends:
            previous = self._kpis(time_range.previous(), filters)
            summary.trends = {
                name: compute_trend(getattr(summary, name), getattr(previous, name))
                for name in KPI_FIELDS
            }
        return summary

    def _kpis(self, time_range: TimeRange, filters: Optional[AnalyticsFilters]) -> KPISummary:
        base = self._base(time_range)
        scope = self._scope(time_range, filters)

        approved = rejected = 0
        tat_total = tat_count = 0
        for exam in scope.exams:
            if exam.status == "approved":
                approved += 1
                tat = turnaround_minutes(exam)
                if tat is not None:
                    tat_total += tat
                    tat_count += 1
            elif exam.status == "rejected":
                rejected += 1

        incidences = 0
        for event in base.events:
            if event.action != AuditAction.INCIDENCE_CREATED:
                continue
            if self.resolver.resolve(event).work_order_id in scope.work_order_ids:
                incidences += 1

        backlog = 0
        for work_order_id in scope.work_order_ids:
            for specimen in base.specimens_by_work_order.get(work_order_id, []):
                exam = base.exam_by_specimen.get(specimen.id)
                if exam is not None and not exam.is_terminal:
                    backlog += 1

        return KPISummary(
            orders_processed=len(scope.work_order_ids),
            exams_completed=len(scope.exams),
            average_tat_minutes=round_half_up(tat_total / tat_count) if tat_count else 0,
            rejection_rate=_share(rejected, approved + rejected),
            incidences_count=incidences,
            pending_backlog=backlog,
        )

    def throughput_series(self, time_range, filters=None) -> List[ThroughputPoint]:
        scope = self._scope(time_range, filters)
        by_date = defaultdict(lambda: {"approved": 0, "rejected": 0})
        for exam in scope.exams:
            counts = by_date[exam.validated_at.date().isoformat()]
            if exam.status in counts:
                counts[exam.status] += 1
        return [
            ThroughputPoint(
                date=day,
                approved=counts["approved"],
                rejected=counts["rejected"],
                total=counts["approved"] + counts["rejected"],
            )
            for day, counts in sorted(by_date.items())
        ]

    def exam_mix(self, time_range, filters=None) -> List[ExamMixEntry]:
        base = self._base(time_range)
        scope = self._scope(time_range, filters)
        counts = defaultdict(int)
        for exam in scope.exams:
            counts[exam.exam_type_id] += 1
        total = sum(counts.values())

        entries = []
        for exam_type_id, count in counts.items():
            code, name = self._exam_type_labels(base, exam_type_id)
            entries.append(
                ExamMixEntry(
                    exam_type_id=exam_type_id,
                    exam_type_code=code,
                    exam_type_name=name,
                    count=count,
                    percentage=_share(count, total),
                )
            )
        entries.sort(key=lambda e: (-e.count, e.exam_type_id or ""))
        return entries

    def tat_distribution(self, time_range, filters=None) -> List[TATBucket]:
        base = self._base(time_range)
        scope = self._scope(time_range, filters)
        buckets = [TATBucket(label=label, min_minutes=low, max_minutes=high) for label, low, high in TAT_BUCKETS]

        for exam in scope.exams:
            tat = turnaround_minutes(exam)
            if tat is None:
                continue
            index = tat_bucket_index(tat)
            if index is None:
                continue
            specimen = base.specimens.get(exam.specimen_id)
            work_order = base.work_orders.get(specimen.work_order_id) if specimen else None
            priority = work_order.priority if work_order and work_order.priority in model.PRIORITIES else "routine"
            bucket = buckets[index]
            bucket.total += 1
            setattr(bucket, priority, getattr(bucket, priority) + 1)
        return buckets

    def technician_workload(self, time_range, filters=None) -> List[TechnicianWorkload]:
        scope = self._scope(time_range, filters)
        by_technician = {}  # type: Dict[str, TechnicianWorkload]
        tat_sums = defaultdict(lambda: [0, 0])

        for exam in scope.exams:
            technician_id = (exam.performed_by or "").strip() or UNASSIGNED_TECHNICIAN
            entry = by_technician.setdefault(
                technician_id,
                TechnicianWorkload(technician_id=technician_id, technician_name=technician_id),
            )
            entry.exam_count += 1
            if exam.status == "approved":
                entry.approved_count += 1
            elif exam.status == "rejected":
                entry.rejected_count += 1
            tat = turnaround_minutes(exam)
            if tat is not None:
                tat_sums[technician_id][0] += tat
                tat_sums[technician_id][1] += 1

        for technician_id, entry in by_technician.items():
            total, count = tat_sums[technician_id]
            entry.average_tat_minutes = round_half_up(total / count) if count else None
        return sorted(by_technician.values(), key=lambda e: (-e.exam_count, e.technician_id))

    def rejection_analysis(self, time_range, filters=None) -> List[RejectionAnalysisEntry]:
        base = self._base(time_range)
        scope = self._scope(time_range, filters)
        totals = defaultdict(int)
        reasons = defaultdict(lambda: defaultdict(int))

        for event in base.events:
            if event.action not in model.REJECTION_ACTIONS:
                continue
            links = self.resolver.resolve(event)
            if not links.exam_type_id:
                logger.debug(f"Rejection event {event.id} has no resolvable exam type")
                continue
            if not scope.allows_exam_type(links.exam_type_id):
                continue
            if not scope.allows_work_order(links.work_order):
                continue
            reason = (event.metadata.reason if event.metadata else None) or NO_REASON
            totals[links.exam_type_id] += 1
            reasons[links.exam_type_id][reason] += 1

        entries = []
        for exam_type_id, total in totals.items():
            code, name = self._exam_type_labels(base, exam_type_id)
            by_reason = sorted(reasons[exam_type_id].items(), key=lambda item: (-item[1], item[0]))
            entries.append(
                RejectionAnalysisEntry(
                    exam_type_id=exam_type_id,
                    exam_type_code=code,
                    exam_type_name=name,
                    total_rejections=total,
                    by_reason=dict(by_reason),
                )
            )
        entries.sort(key=lambda e: (-e.total_rejections, e.exam_type_id))
        return entries

    def doctor_volume(self, time_range, filters=None) -> List[DoctorVolumeEntry]:
        base = self._base(time_range)
        scope = self._scope(time_range, filters)
        counts = defaultdict(int)
        for work_order_id in scope.requested_work_order_ids:
            work_order = base.work_orders.get(work_order_id)
            if work_order is None:
                continue
            counts[(work_order.referring_doctor or "").strip() or NO_DOCTOR] += 1
        total = sum(counts.values())
        entries = [
            DoctorVolumeEntry(referring_doctor=doctor, work_order_count=count, percentage=_share(count, total))
            for doctor, count in counts.items()
        ]
        entries.sort(key=lambda e: (-e.work_order_count, e.referring_doctor))
        return entries

    def peak_hours(self, time_range, filters=None) -> List[PeakHourCell]:
        scope = self._scope(time_range, filters)
        counts = defaultdict(int)
        for exam in scope.exams:
            counts[(exam.validated_at.weekday(), exam.validated_at.hour)] += 1
        return [
            PeakHourCell(day_of_week=day, hour_of_day=hour, count=count)
            for (day, hour), count in sorted(counts.items())
        ]

    # ---------- bundles ----------

    def dashboard(self, time_range, filters=None) -> AnalyticsDashboard:
        return AnalyticsDashboard(
            kpis=self.kpi_summary(time_range, filters, with_trends=True),
            throughput=self.throughput_series(time_range, filters),
            exam_mix=self.exam_mix(time_range, filters),
        )

    def detailed_charts(self, time_range, filters=None) -> AnalyticsDetailedCharts:
        return AnalyticsDetailedCharts(
            tat_distribution=self.tat_distribution(time_range, filters),
            technician_workload=self.technician_workload(time_range, filters),
            rejection_analysis=self.rejection_analysis(time_range, filters),
            doctor_volume=self.doctor_volume(time_range, filters),
            peak_hours=self.peak_hours(time_range, filters),
        )
