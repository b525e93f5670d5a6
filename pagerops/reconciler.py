from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from pagerops.entities import Alert, Incident, Service, User
from pagerops.store import EntityStore
from pagerops.timestamps import utcnow

logger = logging.getLogger("pagerops.reconciler")


class IncidentFilter(BaseModel):
    service_ids: Optional[List[str]] = None
    user_ids: Optional[List[str]] = None


class RemoteBatch(BaseModel):
    """Everything fetched from the provider in one polling cycle."""

    services: List[Service] = Field(default_factory=list)
    open_incidents: List[Incident] = Field(default_factory=list)
    resolved_incidents: List[Incident] = Field(default_factory=list)
    alerts: List[Alert] = Field(default_factory=list)
    users: List[User] = Field(default_factory=list)
    # True only when the provider guarantees the open listing is exhaustive
    complete: bool = False
    # Service ids the open listing covered; None means every service
    scope_service_ids: Optional[List[str]] = None
    fetched_at: datetime = Field(default_factory=utcnow)


class ReconcileResult(BaseModel):
    changed: Dict[str, Set[str]] = Field(default_factory=dict)
    new_triggered: List[str] = Field(default_factory=list)
    implicitly_resolved: List[str] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any(self.changed.values())

    def mark(self, kind: str, entity_id: str) -> None:
        self.changed.setdefault(kind, set()).add(entity_id)


class Reconciler:
    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def apply(self, batch: RemoteBatch) -> ReconcileResult:
        """Merge ``batch`` into the store as one transaction.

        Incidents are only ever inserted or updated here. A known open
        incident missing from the listing is marked resolved only when the
        batch is complete and the incident's service was in scope.
        """

        result = ReconcileResult()
        with self.store.batch():
            for service in batch.services:
                if self.store.upsert("service", service, origin="remote"):
                    result.mark("service", service.id)

            services = self.store.records("service")
            names = {s.id: s.name for s in services}
            ids = {s.name: s.id for s in services}

            seen: Set[str] = set()
            for incident in [*batch.open_incidents, *batch.resolved_incidents]:
                incident = _link_service(incident, names, ids)
                seen.add(incident.id)
                before = self.store.get("incident", incident.id)
                if not self.store.upsert("incident", incident, origin="remote"):
                    continue
                result.mark("incident", incident.id)
                after = self.store.get("incident", incident.id)
                if after.status == "triggered" and (before is None or before.status != "triggered"):
                    result.new_triggered.append(incident.id)

            if batch.complete:
                self._resolve_missing(batch, seen, result)

            for alert in batch.alerts:
                if self.store.upsert("alert", alert, origin="remote"):
                    result.mark("alert", alert.id)

            for user in batch.users:
                if self.store.upsert("user", user, origin="remote"):
                    result.mark("user", user.id)

        if result.has_changes:
            logger.debug(
                "reconciled batch: %s",
                {kind: len(changed) for kind, changed in result.changed.items()},
            )
        return result

    def _resolve_missing(self, batch: RemoteBatch, seen: Set[str], result: ReconcileResult) -> None:
        scope = set(batch.scope_service_ids) if batch.scope_service_ids is not None else None
        for incident in self.store.list_open():
            if incident.id in seen:
                continue
            if scope is not None and incident.service_id not in scope:
                continue
            update = Incident.model_construct(
                _fields_set={"status", "updated_at"},
                **{**dict(incident), "status": "resolved", "updated_at": batch.fetched_at},
            )
            if self.store.upsert("incident", update, origin="remote"):
                result.mark("incident", incident.id)
                result.implicitly_resolved.append(incident.id)
                logger.info("incident %s missing from complete listing, marked resolved", incident.id)


def _link_service(incident: Incident, names: Dict[str, str], ids: Dict[str, str]) -> Incident:
    # keep the service name and id of an incident consistent with the service table
    updates = {}
    if incident.service_id and not incident.service and incident.service_id in names:
        updates["service"] = names[incident.service_id]
    if incident.service and not incident.service_id and incident.service in ids:
        updates["service_id"] = ids[incident.service]
    return incident.model_copy(update=updates) if updates else incident
