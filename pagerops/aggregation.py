from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pagerops.entities import Incident, Service, StatusCounts

logger = logging.getLogger("pagerops.aggregation")


class AggregateSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_counts: StatusCounts = Field(default_factory=StatusCounts)
    # service id -> open incidents counted for that service
    incident_counts: Dict[str, int] = Field(default_factory=dict)
    version: int = 0


Subscriber = Callable[[AggregateSnapshot], None]


def active_service_names(services: Iterable[Service]) -> set[str]:
    return {s.name for s in services if s.active}


def compute_status_counts(
    services: Iterable[Service],
    open_incidents: Iterable[Incident],
    resolved_incidents: Iterable[Incident],
) -> StatusCounts:
    active = active_service_names(services)
    by_status = Counter(i.status for i in open_incidents if i.service in active)
    resolved = sum(1 for i in resolved_incidents if i.service in active)
    return StatusCounts(
        triggered=by_status["triggered"],
        acknowledged=by_status["acknowledged"],
        resolved=resolved,
    )


def compute_incident_counts(services: Iterable[Service], open_incidents: Iterable[Incident]) -> Dict[str, int]:
    per_name = Counter(i.service for i in open_incidents)
    return {s.id: per_name.get(s.name, 0) for s in services}


class AggregationEngine:
    """Holds the latest aggregate snapshot and pushes each new one to subscribers.

    ``recompute`` is called by the entity store once per committed batch while
    the store lock is held, so subscribers always see a fully applied batch.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._latest = AggregateSnapshot()

    @property
    def latest(self) -> AggregateSnapshot:
        return self._latest

    def subscribe(self, callback: Subscriber, *, replay: bool = True) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)
        if replay:
            self._deliver(callback, self._latest)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def recompute(
        self,
        services: List[Service],
        open_incidents: List[Incident],
        resolved_incidents: List[Incident],
    ) -> AggregateSnapshot:
        snapshot = AggregateSnapshot(
            status_counts=compute_status_counts(services, open_incidents, resolved_incidents),
            incident_counts=compute_incident_counts(services, open_incidents),
            version=self._latest.version + 1,
        )
        self._latest = snapshot
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            self._deliver(callback, snapshot)
        return snapshot

    @staticmethod
    def _deliver(callback: Subscriber, snapshot: AggregateSnapshot) -> None:
        try:
            callback(snapshot)
        except Exception:
            logger.exception("aggregate subscriber %r failed", callback)


def apply_incident_counts(services: List[Service], snapshot: Optional[AggregateSnapshot]) -> List[Service]:
    if snapshot is None:
        return services
    return [
        s.model_copy(update={"incident_count": snapshot.incident_counts.get(s.id, 0)})
        for s in services
    ]
