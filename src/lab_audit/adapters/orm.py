import logging
from datetime import timezone
from sqlalchemy import (
    Table,
    Column,
    String,
    Text,
    DateTime,
    Index,
)
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import registry

from shared.domain.records import dump_record, parse_record, parse_timestamp
from lab_audit.domain import model
from lab_audit.domain.clinical import FieldSchema
from lab_audit.domain.metadata import EventMetadata

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """DateTime that always loads as an aware UTC value (SQLite drops offsets)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return parse_timestamp(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class JSONRecord(TypeDecorator):
    """Key/value payload stored as text; loads as dict or None, never raises."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if isinstance(value, str):
            return value
        return dump_record(parse_record(value))

    def process_result_value(self, value, dialect):
        return parse_record(value)


class MetadataRecord(JSONRecord):
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if isinstance(value, EventMetadata):
            return dump_record(value.to_dict())
        return super().process_bind_param(value, dialect)

    def process_result_value(self, value, dialect):
        return EventMetadata.parse(value)


class FieldSchemaType(TypeDecorator):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if isinstance(value, str) or value is None:
            return value
        schema = FieldSchema.parse(value)
        return dump_record(schema.to_dict()) if schema else None

    def process_result_value(self, value, dialect):
        return FieldSchema.parse(value)


# SQLAlchemy 2.0 pattern: use registry
mapper_registry = registry()
metadata = mapper_registry.metadata

patients = Table(
    "patients",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
)

work_orders = Table(
    "work_orders",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("patient_id", String(255), index=True),
    Column("accession_number", String(255), index=True),
    Column("priority", String(16)),
    Column("requested_at", UTCDateTime, index=True),
    Column("referring_doctor", String(255)),
    Column("status", String(32)),
)

exam_types = Table(
    "exam_types",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("code", String(64), index=True),
    Column("name", String(255)),
    Column("field_schema", FieldSchemaType),
)

specimens = Table(
    "specimens",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("work_order_id", String(255), index=True),
    Column("exam_type_id", String(255)),
    Column("barcode", String(255), index=True),
    Column("status", String(32)),
    Column("collected_at", UTCDateTime),
    Column("received_at", UTCDateTime),
)

exams = Table(
    "exams",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("specimen_id", String(255), index=True),
    Column("exam_type_id", String(255)),
    Column("status", String(32)),
    Column("results", JSONRecord),
    Column("started_at", UTCDateTime),
    Column("resulted_at", UTCDateTime),
    Column("performed_by", String(255)),
    Column("validated_by", String(255)),
    Column("validated_at", UTCDateTime, index=True),
)

# Append-only; rows are never updated or deleted.
audit_events = Table(
    "audit_events",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("action", String(64), nullable=False),
    Column("subject_type", String(32)),
    Column("subject_id", String(255)),
    Column("actor_id", String(255)),
    Column("timestamp", UTCDateTime, nullable=False),
    Column("metadata", MetadataRecord),
    Index("ix_audit_events_subject", "subject_type", "subject_id"),
    Index("ix_audit_events_timestamp", "timestamp"),
)


def start_mappers():
    logger.info("Starting mappers")
    mapper_registry.map_imperatively(model.Patient, patients)
    mapper_registry.map_imperatively(model.WorkOrder, work_orders)
    mapper_registry.map_imperatively(model.ExamType, exam_types)
    mapper_registry.map_imperatively(model.Specimen, specimens)
    mapper_registry.map_imperatively(model.Exam, exams)
    mapper_registry.map_imperatively(
        model.AuditEvent,
        audit_events,
        properties={"metadata": audit_events.c["metadata"]},
    )
