"""Exceptions raised by the lab audit read models."""


class LabAuditError(Exception):
    """Base class for errors surfaced to callers of the read models."""


class InvalidCursor(LabAuditError):
    """Pagination cursor could not be decoded."""


class WorkOrderNotFound(LabAuditError):
    """Requested work order does not exist in the snapshot store."""
