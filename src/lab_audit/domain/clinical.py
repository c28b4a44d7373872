"""
Clinical flags derived from exam results.

Reference ranges are authored by hand in the exam type field schema
("12.0 – 17.5", "70-110"), so they are parsed leniently: anything that does
not look like "<number> <dash> <number>" is ignored rather than treated as a
violation. The evaluator is pure and knows nothing about exam status.
"""
import json
import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from shared.domain.text import fold

logger = logging.getLogger(__name__)

FIELD_TYPES = ("string", "numeric", "enum")

REFERENCE_RANGE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(?:-|–)\s*(\d+(?:\.\d+)?)")
LEADING_NUMBER_PATTERN = re.compile(r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?")

CRITICAL_MARKERS = ("critical", "critico")
CRITICAL_VALUES = ("high", "low")
ATTENTION_MARKERS = ("attention", "atencion")


class ClinicalFlag(Enum):
    NORMAL = "normal"
    ATTENTION = "attention"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ReferenceRange:
    min: float
    max: float

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


@dataclass(frozen=True)
class FieldDef:
    key: str
    label: str
    type: str                                 # numeric | enum | string
    unit: Optional[str] = None
    reference_range: Optional[str] = None     # free text, e.g. "12.0 – 17.5"
    options: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class Section:
    id: str
    label: str
    fields: Tuple[FieldDef, ...] = ()


@dataclass(frozen=True)
class FieldSchema:
    sections: Tuple[Section, ...] = ()

    def fields(self):
        for section in self.sections:
            yield from section.fields

    @classmethod
    def parse(cls, raw: Any) -> Optional["FieldSchema"]:
        """Build a schema from stored text or structure.

        Malformed sections and fields are dropped; a schema without a single
        valid section is None.
        """
        if isinstance(raw, FieldSchema):
            return raw
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring unparsable field schema")
                return None
        if not isinstance(raw, Mapping) or not isinstance(raw.get("sections"), list):
            return None

        sections = []
        for section in raw["sections"]:
            if not isinstance(section, Mapping):
                continue
            if not isinstance(section.get("id"), str) or not isinstance(section.get("label"), str):
                continue
            if not isinstance(section.get("fields"), list):
                continue
            sections.append(
                Section(
                    id=section["id"],
                    label=section["label"],
                    fields=tuple(_parse_field(f) for f in section["fields"] if _is_field(f)),
                )
            )
        if not sections:
            return None
        return cls(sections=tuple(sections))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sections": [
                {
                    "id": section.id,
                    "label": section.label,
                    "fields": [_field_to_dict(f) for f in section.fields],
                }
                for section in self.sections
            ]
        }


def _is_field(raw: Any) -> bool:
    return (
        isinstance(raw, Mapping)
        and isinstance(raw.get("key"), str)
        and isinstance(raw.get("label"), str)
        and raw.get("type") in FIELD_TYPES
    )


def _parse_field(raw: Mapping) -> FieldDef:
    reference_range = raw.get("referenceRange", raw.get("reference_range"))
    options = raw.get("options")
    return FieldDef(
        key=raw["key"],
        label=raw["label"],
        type=raw["type"],
        unit=str(raw["unit"]) if raw.get("unit") is not None else None,
        reference_range=str(reference_range) if reference_range is not None else None,
        options=tuple(str(o) for o in options) if isinstance(options, list) else None,
    )


def _field_to_dict(field: FieldDef) -> Dict[str, Any]:
    data = {"key": field.key, "label": field.label, "type": field.type}
    if field.unit is not None:
        data["unit"] = field.unit
    if field.reference_range is not None:
        data["referenceRange"] = field.reference_range
    if field.options is not None:
        data["options"] = list(field.options)
    return data


def parse_reference_range(text: Optional[str]) -> Optional[ReferenceRange]:
    """Parse "<min> - <max>" (hyphen or en dash); None when unusable."""
    if not text or not isinstance(text, str):
        return None
    match = REFERENCE_RANGE_PATTERN.search(text)
    if not match:
        return None
    low, high = float(match.group(1)), float(match.group(2))
    if low > high:
        return None
    return ReferenceRange(min=low, max=high)


def to_number(value: Any) -> Optional[float]:
    """Numeric reading of a result value, None when there is none."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = LEADING_NUMBER_PATTERN.match(value.strip())
        if not match:
            return None
        number = float(match.group(0))
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def find_range_violations(
    results: Optional[Mapping[str, Any]],
    schema: Optional[FieldSchema],
) -> List[str]:
    """Keys of numeric fields whose value lies strictly outside the declared range."""
    if not results or schema is None:
        return []
    violations = []
    for field in schema.fields():
        if field.type != "numeric" or not field.reference_range:
            continue
        reference_range = parse_reference_range(field.reference_range)
        if reference_range is None:
            continue
        value = to_number(results.get(field.key))
        if value is None:
            continue
        if not reference_range.contains(value):
            violations.append(field.key)
    return violations


def has_range_violation(results, schema) -> bool:
    return bool(find_range_violations(results, schema))


def derive_clinical_flag(
    results: Optional[Mapping[str, Any]],
    schema: Optional[FieldSchema],
) -> ClinicalFlag:
    """Classify a result set as normal, attention or critical.

    Literal markers in string values take precedence: any critical marker makes
    the whole result critical. Attention markers, non-"normal" values in
    "*flag*" fields and reference range violations all yield attention.
    """
    if not results:
        return ClinicalFlag.NORMAL

    attention = False
    for key, raw_value in results.items():
        if not isinstance(raw_value, str):
            continue
        value = fold(raw_value.strip())
        if not value:
            continue
        if any(marker in value for marker in CRITICAL_MARKERS) or value in CRITICAL_VALUES:
            return ClinicalFlag.CRITICAL
        if any(marker in value for marker in ATTENTION_MARKERS):
            attention = True
        elif "flag" in fold(str(key)) and value != "normal":
            attention = True

    if attention or has_range_violation(results, schema):
        return ClinicalFlag.ATTENTION
    return ClinicalFlag.NORMAL
