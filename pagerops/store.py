from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Literal, Optional, Set, Tuple, Type

from pydantic import BaseModel

from pagerops.aggregation import AggregationEngine
from pagerops.entities import Alert, EntityKind, Incident, Note, Service, Template, User
from pagerops.errors import NotFoundError

logger = logging.getLogger("pagerops.store")

Origin = Literal["remote", "local"]


class FieldPolicy(str, Enum):
    REMOTE = "remote"  # remote wins on every merge
    LOCAL = "local"  # only the local-mutation path may set it
    MERGE = "merge"  # append-union of remote and local values
    DERIVED = "derived"  # recomputed elsewhere, never merged


MODELS: Dict[str, Type[BaseModel]] = {
    "service": Service,
    "incident": Incident,
    "alert": Alert,
    "user": User,
    "template": Template,
}

# Fields not listed default to REMOTE.
OWNERSHIP: Dict[str, Dict[str, FieldPolicy]] = {
    "service": {
        "active": FieldPolicy.LOCAL,
        "incident_count": FieldPolicy.DERIVED,
    },
    "incident": {
        "pinned": FieldPolicy.LOCAL,
        "notes": FieldPolicy.MERGE,
    },
    "alert": {},
    "user": {},
    "template": {
        "title": FieldPolicy.LOCAL,
        "body_text": FieldPolicy.LOCAL,
    },
}

AGGREGATED_KINDS = frozenset({"service", "incident"})

# Fields whose remote value only moves forward. A remote value at or past a
# pending one ends the override.
PROGRESSIONS: Dict[str, Dict[str, Tuple[Any, ...]]] = {
    "incident": {"status": ("triggered", "acknowledged", "resolved")},
}


def field_policy(kind: str, name: str) -> FieldPolicy:
    return OWNERSHIP[kind].get(name, FieldPolicy.REMOTE)


def settles_pending(kind: str, name: str, remote: Any, pending: Any) -> bool:
    order = PROGRESSIONS.get(kind, {}).get(name)
    if order is None or remote not in order or pending not in order:
        return remote == pending
    return order.index(remote) >= order.index(pending)


def merge_notes(existing: List[Note], incoming: List[Note]) -> List[Note]:
    merged = list(incoming)
    merged.extend(n for n in existing if n not in incoming)
    return sorted(merged, key=lambda n: n.timestamp)


def merge_record(
    kind: str,
    existing: BaseModel,
    incoming: BaseModel,
    origin: Origin,
    pending: Optional[Dict[str, Any]] = None,
) -> Tuple[BaseModel, Set[str]]:
    """Merge ``incoming`` over ``existing`` according to the ownership table.

    Only fields explicitly present on ``incoming`` are considered. For remote
    merges, local-owned fields are skipped and a field with a pending local
    override keeps its local value until the remote reports that value, or for
    a progressing field such as incident status, any later one.
    Returns the merged record and the pending fields the remote confirmed.
    """

    pending = pending or {}
    updates: Dict[str, Any] = {}
    confirmed: Set[str] = set()

    for name in incoming.model_fields_set:
        if name == "id":
            continue
        policy = field_policy(kind, name)
        if policy is FieldPolicy.DERIVED:
            continue
        if origin == "remote" and policy is FieldPolicy.LOCAL:
            continue

        value = getattr(incoming, name)
        if policy is FieldPolicy.MERGE:
            value = merge_notes(getattr(existing, name), value)

        if origin == "remote" and name in pending:
            if not settles_pending(kind, name, value, pending[name]):
                continue
            confirmed.add(name)

        updates[name] = value

    return existing.model_copy(update=updates), confirmed


def _record_key(record: BaseModel) -> Any:
    return getattr(record, "id")


def _without_derived(kind: str, record: BaseModel) -> BaseModel:
    fields = type(record).model_fields
    defaults = {
        name: fields[name].get_default(call_default_factory=True)
        for name, policy in OWNERSHIP[kind].items()
        if policy is FieldPolicy.DERIVED
    }
    return record.model_copy(update=defaults, deep=True)


class EntityStore:
    """In-memory tables for every cached entity.

    All writes and the aggregation recompute happen under one re-entrant lock.
    Writes made inside ``batch()`` are committed together and fire a single
    recompute when the outermost batch exits.
    """

    def __init__(self, aggregation: Optional[AggregationEngine] = None) -> None:
        self.aggregation = aggregation or AggregationEngine()
        self._lock = threading.RLock()
        self._tables: Dict[str, Dict[Any, BaseModel]] = {kind: {} for kind in MODELS}
        # (kind, id) -> field -> (pending value, value before the override)
        self._pending: Dict[Tuple[str, Any], Dict[str, Tuple[Any, Any]]] = {}
        self._depth = 0
        self._dirty: Set[str] = set()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    # ----------------------------
    # Transactions
    # ----------------------------

    @contextmanager
    def batch(self) -> Iterator["EntityStore"]:
        """Group writes into one commit.

        The outermost batch fires a single recompute on normal exit. If its
        body raises, every table is restored to the state it had on entry
        and nothing is recomputed.
        """

        with self._lock:
            outermost = self._depth == 0
            checkpoint = self._checkpoint() if outermost else None
            self._depth += 1
            completed = False
            try:
                yield self
                completed = True
            finally:
                self._depth -= 1
                if outermost:
                    if completed:
                        if self._dirty:
                            kinds, self._dirty = self._dirty, set()
                            self._commit(kinds)
                    else:
                        self._restore(checkpoint)

    def _checkpoint(self):
        # records are replaced on write, never mutated, so shallow copies suffice
        tables = {kind: dict(table) for kind, table in self._tables.items()}
        pending = {key: dict(entry) for key, entry in self._pending.items()}
        return tables, pending

    def _restore(self, checkpoint) -> None:
        if self._dirty:
            logger.warning("store batch failed; rolled back writes to %s", sorted(self._dirty))
        self._tables, self._pending = checkpoint
        self._dirty = set()

    def _commit(self, kinds: Set[str]) -> None:
        if not kinds & AGGREGATED_KINDS:
            return
        self.aggregation.recompute(
            self._sorted_services(), self._open_incidents(), self._resolved_incidents()
        )

    # ----------------------------
    # Reads
    # ----------------------------

    def get(self, kind: EntityKind, entity_id: Any) -> Optional[BaseModel]:
        with self._lock:
            record = self._tables[kind].get(entity_id)
            return record.model_copy(deep=True) if record is not None else None

    def require(self, kind: EntityKind, entity_id: Any) -> BaseModel:
        record = self.get(kind, entity_id)
        if record is None:
            raise NotFoundError(kind, str(entity_id))
        return record

    def records(self, kind: EntityKind) -> List[BaseModel]:
        with self._lock:
            if kind == "service":
                return self._sorted_services()
            if kind == "template":
                rows = sorted(self._tables[kind].values(), key=lambda t: t.title.lower())
            elif kind == "incident":
                rows = self._sort_incidents(self._tables[kind].values())
            else:
                rows = list(self._tables[kind].values())
            return [r.model_copy(deep=True) for r in rows]

    def list_open(self) -> List[Incident]:
        with self._lock:
            return self._open_incidents()

    def list_resolved(self) -> List[Incident]:
        with self._lock:
            return self._resolved_incidents()

    def ids(self, kind: EntityKind) -> Set[Any]:
        with self._lock:
            return set(self._tables[kind])

    def pending_fields(self, kind: EntityKind, entity_id: Any) -> Dict[str, Any]:
        with self._lock:
            entry = self._pending.get((kind, entity_id), {})
            return {name: value for name, (value, _) in entry.items()}

    @staticmethod
    def _sort_incidents(rows) -> List[Incident]:
        # pinned first, then newest first
        ordered = sorted(rows, key=lambda i: i.created_at, reverse=True)
        return sorted(ordered, key=lambda i: not i.pinned)

    def _sorted_services(self) -> List[Service]:
        rows = sorted(self._tables["service"].values(), key=lambda s: s.name.lower())
        return [r.model_copy(deep=True) for r in rows]

    def _open_incidents(self) -> List[Incident]:
        rows = [i for i in self._tables["incident"].values() if i.is_open]
        return [r.model_copy(deep=True) for r in self._sort_incidents(rows)]

    def _resolved_incidents(self) -> List[Incident]:
        rows = [i for i in self._tables["incident"].values() if not i.is_open]
        return [r.model_copy(deep=True) for r in self._sort_incidents(rows)]

    # ----------------------------
    # Writes
    # ----------------------------

    def upsert(self, kind: EntityKind, record: BaseModel | Dict[str, Any], origin: Origin = "remote") -> bool:
        """Insert or merge ``record``; returns True when the table changed."""

        model = MODELS[kind]
        if not isinstance(record, model):
            record = model.model_validate(record)

        with self.batch():
            table = self._tables[kind]
            key = _record_key(record)
            existing = table.get(key)
            if existing is None:
                table[key] = _without_derived(kind, record)
                self._dirty.add(kind)
                return True

            entry = self._pending.get((kind, key), {})
            pending = {name: value for name, (value, _) in entry.items()}
            merged, confirmed = merge_record(kind, existing, record, origin, pending)
            for name in confirmed:
                logger.debug("remote confirmed pending %s.%s on %s", kind, name, key)
                entry.pop(name, None)
            if entry == {} and (kind, key) in self._pending:
                del self._pending[(kind, key)]

            if merged.model_dump() == existing.model_dump():
                return False
            table[key] = merged
            self._dirty.add(kind)
            return True

    def update_local(self, kind: EntityKind, entity_id: Any, **fields: Any) -> BaseModel:
        """Local-mutation path: may set any field, including local-owned ones."""

        model = MODELS[kind]
        for name in fields:
            if name not in model.model_fields or name == "id":
                raise ValueError(f"unknown {kind} field: {name}")
            if field_policy(kind, name) is FieldPolicy.DERIVED:
                raise ValueError(f"{kind}.{name} is derived and cannot be set")

        with self.batch():
            existing = self._tables[kind].get(entity_id)
            if existing is None:
                raise NotFoundError(kind, str(entity_id))
            updated = model.model_validate({**existing.model_dump(), **fields})
            if updated.model_dump() != existing.model_dump():
                self._tables[kind][entity_id] = updated
                self._dirty.add(kind)
            return updated.model_copy(deep=True)

    def set_pending(self, kind: EntityKind, entity_id: Any, **fields: Any) -> BaseModel:
        """Apply an optimistic local change that reconciliation must not undo.

        The override stays until a remote merge settles it (see
        ``merge_record``), or until ``revert_pending``/``clear_pending`` is called.
        """

        with self.batch():
            existing = self.require(kind, entity_id)
            updated = self.update_local(kind, entity_id, **fields)
            entry = self._pending.setdefault((kind, entity_id), {})
            for name in fields:
                previous = entry[name][1] if name in entry else getattr(existing, name)
                entry[name] = (getattr(updated, name), previous)
            return updated

    def revert_pending(self, kind: EntityKind, entity_id: Any) -> None:
        with self.batch():
            entry = self._pending.pop((kind, entity_id), None)
            if not entry or entity_id not in self._tables[kind]:
                return
            self.update_local(kind, entity_id, **{name: prev for name, (_, prev) in entry.items()})

    def clear_pending(self, kind: EntityKind, entity_id: Any) -> None:
        with self._lock:
            self._pending.pop((kind, entity_id), None)

    def delete(self, kind: EntityKind, entity_id: Any) -> BaseModel:
        with self.batch():
            record = self._tables[kind].pop(entity_id, None)
            if record is None:
                raise NotFoundError(kind, str(entity_id))
            self._pending.pop((kind, entity_id), None)
            self._dirty.add(kind)
            return record

    def prune_resolved(self, before: datetime) -> List[str]:
        """Drop resolved incidents last updated before ``before``, with their alerts."""

        with self.batch():
            table = self._tables["incident"]
            stale = [
                inc.id
                for inc in table.values()
                if not inc.is_open and (inc.updated_at or inc.created_at) < before
            ]
            for incident_id in stale:
                del table[incident_id]
                self._pending.pop(("incident", incident_id), None)
            alerts = self._tables["alert"]
            for alert_id in [a.id for a in alerts.values() if a.incident_id in stale]:
                del alerts[alert_id]
            if stale:
                self._dirty.add("incident")
                logger.info("pruned %s resolved incidents", len(stale))
            return stale
