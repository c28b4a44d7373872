"""
Snapshot entities and audit events of the laboratory workflow.

Work orders, specimens, exams, exam types and patients are current-state
snapshots owned by the write path; this service only reads them. Audit events
are immutable, append-only records of every state change.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from shared.domain.records import parse_record, parse_timestamp
from lab_audit.domain.clinical import FieldSchema
from lab_audit.domain.metadata import EventMetadata


class AuditAction(str, Enum):
    # Order lifecycle
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_UPDATED = "ORDER_UPDATED"
    # Specimen lifecycle
    SPECIMENS_GENERATED = "SPECIMENS_GENERATED"
    LABEL_PRINTED = "LABEL_PRINTED"
    LABEL_REPRINTED = "LABEL_REPRINTED"
    ORDER_READY_FOR_LAB = "ORDER_READY_FOR_LAB"
    SPECIMEN_SCANNED = "SPECIMEN_SCANNED"
    SPECIMEN_RECEIVED = "SPECIMEN_RECEIVED"
    SPECIMEN_IN_PROGRESS = "SPECIMEN_IN_PROGRESS"
    SPECIMEN_COMPLETED = "SPECIMEN_COMPLETED"
    SPECIMEN_REJECTED = "SPECIMEN_REJECTED"
    # Exam lifecycle
    EXAM_STARTED = "EXAM_STARTED"
    EXAM_RESULTS_SAVED = "EXAM_RESULTS_SAVED"
    EXAM_SENT_TO_VALIDATION = "EXAM_SENT_TO_VALIDATION"
    # Validation
    EXAM_APPROVED = "EXAM_APPROVED"
    EXAM_REJECTED = "EXAM_REJECTED"
    INCIDENCE_CREATED = "INCIDENCE_CREATED"


class SubjectType(str, Enum):
    WORK_ORDER = "WorkOrder"
    SPECIMEN = "Specimen"
    EXAM = "Exam"


class ActionCategory(str, Enum):
    CREATION = "creation"
    PROCESSING = "processing"
    VALIDATION = "validation"
    REJECTION = "rejection"
    INCIDENCE = "incidence"
    INFO = "info"


ACTION_LABELS = {
    AuditAction.ORDER_CREATED: ("Order created", ActionCategory.CREATION),
    AuditAction.ORDER_UPDATED: ("Order updated", ActionCategory.INFO),
    AuditAction.SPECIMENS_GENERATED: ("Specimens generated", ActionCategory.CREATION),
    AuditAction.LABEL_PRINTED: ("Label printed", ActionCategory.CREATION),
    AuditAction.LABEL_REPRINTED: ("Label reprinted", ActionCategory.INFO),
    AuditAction.ORDER_READY_FOR_LAB: ("Order ready for lab", ActionCategory.CREATION),
    AuditAction.SPECIMEN_SCANNED: ("Specimen scanned", ActionCategory.PROCESSING),
    AuditAction.SPECIMEN_RECEIVED: ("Specimen received", ActionCategory.PROCESSING),
    AuditAction.SPECIMEN_IN_PROGRESS: ("Specimen in progress", ActionCategory.PROCESSING),
    AuditAction.SPECIMEN_COMPLETED: ("Specimen completed", ActionCategory.PROCESSING),
    AuditAction.SPECIMEN_REJECTED: ("Specimen rejected", ActionCategory.REJECTION),
    AuditAction.EXAM_STARTED: ("Exam started", ActionCategory.PROCESSING),
    AuditAction.EXAM_RESULTS_SAVED: ("Results saved", ActionCategory.PROCESSING),
    AuditAction.EXAM_SENT_TO_VALIDATION: ("Sent to validation", ActionCategory.VALIDATION),
    AuditAction.EXAM_APPROVED: ("Exam approved", ActionCategory.VALIDATION),
    AuditAction.EXAM_REJECTED: ("Exam rejected", ActionCategory.REJECTION),
    AuditAction.INCIDENCE_CREATED: ("Incidence created", ActionCategory.INCIDENCE),
}

# Older writers used "Sample" for specimens.
SUBJECT_ALIASES = {"Sample": SubjectType.SPECIMEN.value}

PRIORITIES = ("routine", "urgent", "stat")
TERMINAL_EXAM_STATUSES = frozenset({"approved", "rejected"})
INCIDENT_ACTIONS = frozenset(
    a.value for a in (AuditAction.EXAM_REJECTED, AuditAction.SPECIMEN_REJECTED, AuditAction.INCIDENCE_CREATED)
)
REJECTION_ACTIONS = frozenset(a.value for a in (AuditAction.EXAM_REJECTED, AuditAction.SPECIMEN_REJECTED))
VALIDATION_OUTCOME_ACTIONS = frozenset(a.value for a in (AuditAction.EXAM_APPROVED, AuditAction.EXAM_REJECTED))


def action_label(action: str):
    """Display label and category for an action; unknown actions are humanised."""
    try:
        return ACTION_LABELS[AuditAction(action)]
    except ValueError:
        return (action or "unknown").replace("_", " ").lower(), ActionCategory.INFO


def normalize_subject(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    return SUBJECT_ALIASES.get(value, value)


@dataclass
class Patient:
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Unknown"


@dataclass
class WorkOrder:
    id: str
    patient_id: Optional[str] = None
    accession_number: Optional[str] = None
    priority: Optional[str] = None            # routine | urgent | stat
    requested_at: Optional[datetime] = None
    referring_doctor: Optional[str] = None
    status: Optional[str] = None

    def __post_init__(self):
        self.requested_at = parse_timestamp(self.requested_at)
        if self.priority not in PRIORITIES:
            self.priority = None


@dataclass
class ExamType:
    id: str
    code: Optional[str] = None
    name: Optional[str] = None
    field_schema: Optional[FieldSchema] = None

    def __post_init__(self):
        self.field_schema = FieldSchema.parse(self.field_schema)


@dataclass
class Specimen:
    id: str
    work_order_id: Optional[str] = None
    exam_type_id: Optional[str] = None
    barcode: Optional[str] = None
    status: Optional[str] = None
    collected_at: Optional[datetime] = None
    received_at: Optional[datetime] = None

    def __post_init__(self):
        self.collected_at = parse_timestamp(self.collected_at)
        self.received_at = parse_timestamp(self.received_at)


@dataclass
class Exam:
    id: str
    specimen_id: Optional[str] = None
    exam_type_id: Optional[str] = None
    status: Optional[str] = None
    results: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    resulted_at: Optional[datetime] = None
    performed_by: Optional[str] = None
    validated_by: Optional[str] = None
    validated_at: Optional[datetime] = None

    def __post_init__(self):
        self.results = parse_record(self.results)
        self.started_at = parse_timestamp(self.started_at)
        self.resulted_at = parse_timestamp(self.resulted_at)
        self.validated_at = parse_timestamp(self.validated_at)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXAM_STATUSES

    @property
    def turnaround_start(self) -> Optional[datetime]:
        return self.started_at or self.resulted_at


@dataclass
class AuditEvent:
    id: str
    action: str
    subject_type: Optional[str]
    subject_id: Optional[str]
    timestamp: Optional[datetime]
    actor_id: Optional[str] = None
    metadata: Optional[EventMetadata] = None

    def __post_init__(self):
        self.timestamp = parse_timestamp(self.timestamp)
        self.metadata = EventMetadata.parse(self.metadata)
        self.subject_type = normalize_subject(self.subject_type)

    @property
    def sort_key(self):
        """Total order: timestamp ascending, id as tie-break."""
        return self.timestamp, self.id
