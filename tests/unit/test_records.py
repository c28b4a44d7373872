"""Unit tests for payload normalisation, event metadata and the request memo"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from shared.domain.records import isoformat, minutes_between, parse_record, parse_timestamp, round_half_up
from shared.domain.text import collation_key, fold
from shared.service_layer.memo import RequestMemo, memo_key
from lab_audit.domain.metadata import EventMetadata

T0 = datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("raw, expected", [
    ('{"reason": "hemolysed"}', {"reason": "hemolysed"}),
    (b'{"a": 1}', {"a": 1}),
    ({"a": 1}, {"a": 1}),
    (None, None),
    ("", None),
    ("{not json", None),
    ("[1, 2]", None),
    (42, None),
])
def test_parse_record(raw, expected):
    assert parse_record(raw) == expected


def test_parse_timestamp_variants():
    assert parse_timestamp("2024-01-15T08:00:00Z") == T0
    assert parse_timestamp("2024-01-15T09:00:00+01:00") == T0
    assert parse_timestamp(datetime(2024, 1, 15, 8, 0)) == T0
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None


def test_isoformat_uses_z_suffix():
    assert isoformat(T0) == "2024-01-15T08:00:00Z"


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(2.49) == 2


def test_minutes_between():
    assert minutes_between(T0, T0 + timedelta(minutes=30)) == 30
    assert minutes_between(T0, T0 + timedelta(seconds=90)) == 2
    assert minutes_between(T0 + timedelta(minutes=1), T0) is None
    assert minutes_between(None, T0) is None


def test_fold_and_collation():
    assert fold("Atención CRÍTICO") == "atencion critico"
    assert sorted(["b", "Á", "a"], key=collation_key) == ["a", "Á", "b"]


def test_metadata_reason_fallbacks():
    assert EventMetadata({"reason": "hemolysed", "motivo": "x"}).reason == "hemolysed"
    assert EventMetadata({"motivo": "coagulada"}).reason == "coagulada"
    assert EventMetadata({"type": "insufficient"}).reason == "insufficient"
    assert EventMetadata({"reason": "  ", "motivo": "ignored"}).reason is None
    assert EventMetadata({"reason": 3, "motivo": "coagulada"}).reason == "coagulada"
    assert EventMetadata({}).reason is None


def test_metadata_linkage_accepts_legacy_keys():
    metadata = EventMetadata({"sampleId": "S1", "exam_id": "E1", "workOrderId": "W1", "details": "d"})
    assert (metadata.specimen_id, metadata.exam_id, metadata.work_order_id) == ("S1", "E1", "W1")
    assert metadata.description == "d"


def test_malformed_metadata_is_absent():
    assert EventMetadata.parse("{oops") is None
    assert EventMetadata.parse('{"reason": "x"}') == EventMetadata({"reason": "x"})


@dataclass(frozen=True)
class Window:
    start: datetime
    end: datetime


def test_memo_calls_once_per_argument_set():
    memo = RequestMemo()
    calls = []

    def load(window, kind=None):
        calls.append((window, kind))
        return len(calls)

    window = Window(T0, T0 + timedelta(days=1))
    assert memo.call(load, window, kind="a") == 1
    assert memo.call(load, Window(T0, T0 + timedelta(days=1)), kind="a") == 1
    assert memo.call(load, window, kind="b") == 2
    assert memo.hits == 1
    assert len(memo) == 2


def test_memo_is_not_shared_between_instances():
    calls = []

    def load():
        calls.append(1)

    RequestMemo().call(load)
    RequestMemo().call(load)
    assert len(calls) == 2


def test_memo_key_rejects_unserialisable_arguments():
    with pytest.raises(TypeError):
        memo_key("f", (object(),), {})
