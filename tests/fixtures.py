"""Factories and fakes shared by the test modules."""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from pagerops.entities import Alert, DraftNote, Incident, Service, User
from pagerops.reconciler import IncidentFilter, RemoteBatch

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def make_service(service_id: str = "PSVC1", name: str = "API", **kwargs) -> Service:
    return Service(id=service_id, name=name, **kwargs)


def make_incident(
    incident_id: str,
    status: str = "triggered",
    service: str = "API",
    service_id: str = "PSVC1",
    **kwargs,
) -> Incident:
    kwargs.setdefault("title", f"Incident {incident_id}")
    kwargs.setdefault("created_at", NOW)
    return Incident(id=incident_id, status=status, service=service, service_id=service_id, **kwargs)


def make_batch(**kwargs) -> RemoteBatch:
    kwargs.setdefault("fetched_at", NOW)
    return RemoteBatch(**kwargs)


class MemoryDraftRepository:
    def __init__(self, drafts: Optional[List[DraftNote]] = None) -> None:
        self.rows: Dict[str, DraftNote] = {d.incident_id: d for d in drafts or []}
        self.saves: List[DraftNote] = []
        self.deletes: List[str] = []
        self.fail_saves = False

    def load_all(self) -> List[DraftNote]:
        return list(self.rows.values())

    def save(self, draft: DraftNote) -> None:
        if self.fail_saves:
            raise OSError("disk full")
        self.saves.append(draft)
        self.rows[draft.incident_id] = draft

    def delete(self, incident_id: str) -> None:
        self.deletes.append(incident_id)
        self.rows.pop(incident_id, None)


class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""

    def __init__(self, interval, function, args=None, kwargs=None) -> None:
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function(*self.args, **self.kwargs)


class TimerFactory:
    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def __call__(self, interval, function, args=None, kwargs=None) -> FakeTimer:
        timer = FakeTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    def live(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """In-memory incident provider recording every call."""

    def __init__(
        self,
        services: Optional[List[Service]] = None,
        open_incidents: Optional[List[Incident]] = None,
        resolved_incidents: Optional[List[Incident]] = None,
        users: Optional[List[User]] = None,
    ) -> None:
        self.services = services or []
        self.open_incidents = open_incidents or []
        self.resolved_incidents = resolved_incidents or []
        self.users = users or []
        self.user = User(id="PUSER1", email="oncall@example.com", name="On Call")
        self.complete = False
        self.fail_with: Optional[Exception] = None
        self.action_error: Optional[Exception] = None
        self.calls: List[str] = []
        self.notes: List[tuple] = []
        self.filters: List[IncidentFilter] = []
        self.alerts: Dict[str, List[Alert]] = {}
        self.merges: List[tuple] = []
        # runs while a note is being posted, before it lands
        self.on_add_note: Optional[Callable[[str, str], None]] = None

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_with is not None:
            raise self.fail_with

    def list_services(self) -> List[Service]:
        self._call("list_services")
        return list(self.services)

    def list_open_incidents(self, incident_filter: IncidentFilter) -> List[Incident]:
        self._call("list_open_incidents")
        return list(self.open_incidents)

    def list_resolved_incidents(self, since, incident_filter: IncidentFilter) -> List[Incident]:
        self._call("list_resolved_incidents")
        return list(self.resolved_incidents)

    def list_users(self) -> List[User]:
        self._call("list_users")
        return list(self.users)

    def current_user(self) -> User:
        return self.user

    def fetch_batch(self, incident_filter: IncidentFilter, since, include_users: bool = False) -> RemoteBatch:
        self._call("fetch_batch")
        self.filters.append(incident_filter)
        scope = incident_filter.service_ids
        return RemoteBatch(
            services=list(self.services),
            open_incidents=[i for i in self.open_incidents if scope is None or i.service_id in scope],
            resolved_incidents=list(self.resolved_incidents),
            users=list(self.users) if include_users else [],
            complete=self.complete,
            scope_service_ids=scope,
        )

    def _action(self, name: str) -> None:
        self.calls.append(name)
        if self.action_error is not None:
            raise self.action_error

    def acknowledge(self, incident_id: str) -> None:
        self._action(f"acknowledge:{incident_id}")

    def resolve(self, incident_id: str) -> None:
        self._action(f"resolve:{incident_id}")

    def add_note(self, incident_id: str, text: str) -> None:
        self._action(f"add_note:{incident_id}")
        if self.on_add_note is not None:
            self.on_add_note(incident_id, text)
        self.notes.append((incident_id, text))

    def escalate(self, incident_id: str, level: int = 1) -> None:
        self._action(f"escalate:{incident_id}:{level}")

    def snooze(self, incident_id: str, seconds: int) -> Incident:
        self._action(f"snooze:{incident_id}:{seconds}")
        known = {i.id: i for i in self.open_incidents}
        return known[incident_id].model_copy(update={"status": "acknowledged"})

    def merge(self, target_id: str, source_ids: List[str]) -> None:
        self._action(f"merge:{target_id}")
        self.merges.append((target_id, list(source_ids)))

    def list_incident_alerts(self, incident_id: str) -> List[Alert]:
        self._call(f"list_incident_alerts:{incident_id}")
        return list(self.alerts.get(incident_id, []))
