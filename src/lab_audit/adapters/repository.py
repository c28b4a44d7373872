"""
Read access to entity snapshots and the audit event log.

Snapshot repositories answer get-by-id, batched get and attribute-filtered
list queries. The event log answers list-by-subject and paginated
list-by-time-range queries. Neither promises any ordering; the read models
sort for themselves.
"""
import abc
import logging
from collections import namedtuple
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Type

from sqlalchemy import select

from shared.domain.records import EPOCH_MIN
from lab_audit.domain import model

logger = logging.getLogger(__name__)

# Inclusive range criterion for list(); plain lists/sets mean "one of".
Between = namedtuple("Between", "start end")

FAR_FUTURE = datetime(9999, 12, 31, tzinfo=timezone.utc)


class AbstractRepository(abc.ABC):
    def add(self, entity) -> str:
        self._add(entity)
        return entity.id

    def get(self, entity_id):
        if not entity_id:
            return None
        return self._get(entity_id)

    def get_many(self, entity_ids: Iterable[str]) -> Dict[str, object]:
        wanted = {entity_id for entity_id in entity_ids if entity_id}
        if not wanted:
            return {}
        return {entity.id: entity for entity in self._get_many(wanted)}

    def list(self, **criteria) -> List:
        """Entities whose attributes match every criterion.

        A scalar matches by equality, a list/set/tuple by membership and a
        Between by inclusive range. None values never match a criterion.
        """
        return self._list(criteria)

    @abc.abstractmethod
    def _add(self, entity):
        raise NotImplementedError

    @abc.abstractmethod
    def _get(self, entity_id):
        raise NotImplementedError

    @abc.abstractmethod
    def _get_many(self, entity_ids) -> List:
        raise NotImplementedError

    @abc.abstractmethod
    def _list(self, criteria) -> List:
        raise NotImplementedError


class SqlAlchemyRepository(AbstractRepository):
    def __init__(self, session, entity_class: Type):
        super().__init__()
        self.session = session
        self.entity_class = entity_class

    def _add(self, entity):
        self.session.add(entity)

    def _get(self, entity_id):
        return self.session.get(self.entity_class, entity_id)

    def _get_many(self, entity_ids):
        column = getattr(self.entity_class, "id")
        return list(self.session.scalars(select(self.entity_class).where(column.in_(entity_ids))))

    def _list(self, criteria):
        statement = select(self.entity_class)
        for name, expected in criteria.items():
            column = getattr(self.entity_class, name)
            if isinstance(expected, Between):
                statement = statement.where(column.between(expected.start, expected.end))
            elif isinstance(expected, (list, set, frozenset, tuple)):
                statement = statement.where(column.in_(list(expected)))
            else:
                statement = statement.where(column == expected)
        return list(self.session.scalars(statement))


@dataclass
class EventPage:
    events: List[model.AuditEvent]
    next_token: Optional[str] = None


def _subject_types(subject_type: str) -> List[str]:
    canonical = model.normalize_subject(subject_type)
    aliases = [alias for alias, target in model.SUBJECT_ALIASES.items() if target == canonical]
    return [canonical] + aliases


class AbstractEventLog(abc.ABC):
    def list_by_subject(self, subject_type: str, subject_id: str) -> List[model.AuditEvent]:
        if not subject_id:
            return []
        return self._list_by_subject(_subject_types(subject_type), subject_id)

    def list_by_time_range(
        self,
        start: datetime,
        end: datetime,
        actions: Optional[Iterable[str]] = None,
        next_token: Optional[str] = None,
    ) -> EventPage:
        action_values = sorted({str(getattr(a, "value", a)) for a in actions}) if actions else None
        return self._list_by_time_range(start, end, action_values, next_token)

    def iter_time_range(self, start, end, actions=None) -> Iterator[model.AuditEvent]:
        """Every event in [start, end], following continuation tokens."""
        next_token = None
        while True:
            page = self.list_by_time_range(start, end, actions=actions, next_token=next_token)
            yield from page.events
            if not page.next_token:
                return
            next_token = page.next_token

    def iter_all(self, actions=None) -> Iterator[model.AuditEvent]:
        return self.iter_time_range(EPOCH_MIN, FAR_FUTURE, actions=actions)

    @abc.abstractmethod
    def _list_by_subject(self, subject_types: List[str], subject_id: str) -> List[model.AuditEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_by_time_range(self, start, end, actions, next_token) -> EventPage:
        raise NotImplementedError


class SqlAlchemyEventLog(AbstractEventLog):
    def __init__(self, session, page_size: int = 500):
        super().__init__()
        self.session = session
        self.page_size = page_size

    def _list_by_subject(self, subject_types, subject_id):
        statement = select(model.AuditEvent).where(
            model.AuditEvent.subject_type.in_(subject_types),
            model.AuditEvent.subject_id == subject_id,
        )
        return list(self.session.scalars(statement))

    def _list_by_time_range(self, start, end, actions, next_token):
        offset = int(next_token) if next_token else 0
        statement = (
            select(model.AuditEvent)
            .where(model.AuditEvent.timestamp.between(start, end))
            .order_by(model.AuditEvent.timestamp, model.AuditEvent.id)
            .offset(offset)
            .limit(self.page_size + 1)
        )
        if actions:
            statement = statement.where(model.AuditEvent.action.in_(actions))
        rows = list(self.session.scalars(statement))
        has_more = len(rows) > self.page_size
        events = rows[: self.page_size]
        logger.debug(f"Event log page at offset {offset}: {len(events)} events")
        return EventPage(
            events=events,
            next_token=str(offset + self.page_size) if has_more else None,
        )
