"""Typed access to the open key/value bag attached to audit events."""
from typing import Any, Dict, Mapping, Optional

from shared.domain.records import parse_record


class EventMetadata:
    """Read-only view over event metadata with named accessors.

    Writers have used both camelCase and snake_case keys, and older events
    refer to specimens as "samples"; the accessors accept every spelling.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values = dict(values or {})

    @classmethod
    def parse(cls, raw: Any) -> Optional["EventMetadata"]:
        if isinstance(raw, EventMetadata):
            return raw
        record = parse_record(raw)
        if record is None:
            return None
        return cls(record)

    def _first_string(self, *keys: str) -> Optional[str]:
        # First key holding a string wins, even if it is blank.
        for key in keys:
            value = self._values.get(key)
            if isinstance(value, str):
                return value.strip() or None
        return None

    @property
    def reason(self) -> Optional[str]:
        return self._first_string("reason", "motivo", "type")

    @property
    def description(self) -> Optional[str]:
        return self._first_string("description", "details")

    @property
    def specimen_id(self) -> Optional[str]:
        return self._first_string("specimenId", "specimen_id", "sampleId", "sample_id")

    @property
    def exam_id(self) -> Optional[str]:
        return self._first_string("examId", "exam_id")

    @property
    def work_order_id(self) -> Optional[str]:
        return self._first_string("workOrderId", "work_order_id")

    @property
    def exam_type_id(self) -> Optional[str]:
        return self._first_string("examTypeId", "exam_type_id")

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def __eq__(self, other):
        if not isinstance(other, EventMetadata):
            return NotImplemented
        return self._values == other._values

    def __repr__(self):
        return f"EventMetadata({self._values!r})"
