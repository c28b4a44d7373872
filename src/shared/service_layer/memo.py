"""Request-scoped memoisation.

A RequestMemo lives exactly as long as the request that created it. Entity
snapshots may change between requests, so a memo must never be stored on a
module or shared between calls.
"""
import dataclasses
import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    raise TypeError(f"Cannot build memo key from {type(value).__name__}")


def memo_key(name: str, args: Tuple, kwargs: Dict[str, Any]) -> str:
    return json.dumps([name, list(args), kwargs], default=_encode, sort_keys=True)


class RequestMemo:
    """Caches results of pure functions keyed by their serialised arguments."""

    def __init__(self):
        self._results = {}  # type: Dict[str, Any]
        self.hits = 0

    def call(self, fn: Callable, *args, **kwargs):
        key = memo_key(getattr(fn, "__qualname__", repr(fn)), args, kwargs)
        if key in self._results:
            self.hits += 1
            logger.debug(f"memo hit for {key[:120]}")
            return self._results[key]
        result = fn(*args, **kwargs)
        self._results[key] = result
        return result

    def __len__(self):
        return len(self._results)
