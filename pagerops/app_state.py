from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, List, Literal, Optional, Set

from pagerops.aggregation import AggregateSnapshot, apply_incident_counts
from pagerops.config import RESOLVED_LOOKBACK_HOURS, RESOLVED_RETENTION_HOURS
from pagerops.drafts import DraftManager, format_draft
from pagerops.entities import Alert, DraftNote, Incident, Note, Service, Settings, StatusCounts, Template, User
from pagerops.errors import AuthError, NoDraftError
from pagerops.notifications import AlertNotifier
from pagerops.pagerduty import IncidentProvider, PagerDutyClient
from pagerops.persistence import (
    DraftRepository,
    IncidentRepository,
    ServicePreferenceRepository,
    SettingsRepository,
    TemplateRepository,
)
from pagerops.reconciler import IncidentFilter, ReconcileResult, Reconciler, RemoteBatch
from pagerops.scheduler import RefreshScheduler, SyncStatus
from pagerops.settings import SettingsManager
from pagerops.store import EntityStore
from pagerops.timestamps import utcnow

logger = logging.getLogger("pagerops.app")

ActiveTab = Literal["open", "resolved"]
FILTER_TYPES = ("", "triggered", "acknowledged", "high", "low", "pinned", "mine")


class AppState:
    """Everything the presentation layer reads and every command it issues."""

    def __init__(
        self,
        *,
        settings: SettingsManager,
        drafts_repository: DraftRepository,
        templates: TemplateRepository,
        service_preferences: ServicePreferenceRepository,
        incident_cache: Optional[IncidentRepository] = None,
        store: Optional[EntityStore] = None,
        provider_factory: Callable[[str], IncidentProvider] = PagerDutyClient,
        notifier: Optional[AlertNotifier] = None,
        scheduler_factory: Callable[..., RefreshScheduler] = RefreshScheduler,
    ) -> None:
        self.store = store or EntityStore()
        self.settings = settings
        self.drafts = DraftManager(drafts_repository, self.store)
        self.templates = templates
        self.service_preferences = service_preferences
        self.incident_cache = incident_cache
        self.provider_factory = provider_factory
        self.provider: Optional[IncidentProvider] = None
        self.notifier = notifier or AlertNotifier(settings.get)
        self.reconciler = Reconciler(self.store)
        self.scheduler = scheduler_factory(
            self._fetch_batch, self.reconciler, settings.get, on_result=self._on_refresh
        )

        self.selected_incident_id: Optional[str] = None
        self.search_query = ""
        self.active_tab: ActiveTab = "open"
        self.filter_type = ""
        self._users_synced = False

        settings.subscribe(self._on_settings_changed)

    @classmethod
    def from_engine(cls, engine, **kwargs) -> "AppState":
        return cls(
            settings=SettingsManager(SettingsRepository(engine)),
            drafts_repository=DraftRepository(engine),
            templates=TemplateRepository(engine),
            service_preferences=ServicePreferenceRepository(engine),
            incident_cache=IncidentRepository(engine),
            **kwargs,
        )

    # ----------------------------
    # Lifecycle
    # ----------------------------

    def startup(self, *, start_polling: bool = True) -> None:
        self.settings.load()
        self.drafts.load()
        with self.store.batch():
            for service in self.service_preferences.load_all():
                self.store.upsert("service", service, origin="local")
            for template in self.templates.list_all():
                self.store.upsert("template", template, origin="local")
            if self.incident_cache is not None:
                for incident in self.incident_cache.load_all():
                    self.store.upsert("incident", incident, origin="local")
        self.connect()
        if start_polling:
            self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.drafts.close()

    def connect(self) -> bool:
        api_key = self.settings.get().api_key
        self.provider = None
        self._users_synced = False
        if not api_key:
            logger.info("no API key configured; waiting for setup")
            return False
        try:
            self.provider = self.provider_factory(api_key)
        except AuthError as e:
            logger.error("cannot create incident provider: %s", e)
            return False
        return True

    def _require_provider(self) -> IncidentProvider:
        if self.provider is None:
            raise AuthError("no API key configured")
        return self.provider

    # ----------------------------
    # Refresh path
    # ----------------------------

    def _fetch_batch(self) -> RemoteBatch:
        provider = self._require_provider()
        settings = self.settings.get()

        services = self.store.records("service")
        active = [s.id for s in services if s.active]
        if services and not active:
            # every known service is switched off: only keep the service list fresh
            return RemoteBatch(services=provider.list_services())

        user_ids = [provider.current_user().id] if settings.assigned_only else None
        incident_filter = IncidentFilter(service_ids=active or None, user_ids=user_ids)
        since = utcnow() - timedelta(hours=RESOLVED_LOOKBACK_HOURS)
        batch = provider.fetch_batch(incident_filter, since, include_users=not self._users_synced)
        if batch.users:
            self._users_synced = True
        return batch

    def _on_refresh(self, result: ReconcileResult) -> None:
        for service_id in result.changed.get("service", ()):
            service = self.store.get("service", service_id)
            if service is not None:
                self.service_preferences.save(service)
        self._cache_incidents(result.changed.get("incident", ()))
        if self.incident_cache is not None:
            self.incident_cache.clean_old(utcnow() - timedelta(hours=RESOLVED_RETENTION_HOURS))
        if not result.new_triggered:
            return
        incidents = [self.store.get("incident", i) for i in result.new_triggered]
        self.notifier.notify([i for i in incidents if i is not None])

    def _cache_incidents(self, incident_ids) -> None:
        if self.incident_cache is None or not incident_ids:
            return
        incidents = [self.store.get("incident", i) for i in incident_ids]
        self.incident_cache.save_many(i for i in incidents if i is not None)

    def _on_settings_changed(self, settings: Settings, changed: Set[str]) -> None:
        if "api_key" in changed:
            self.connect()
            self.scheduler.resume()

    def refresh_now(self) -> SyncStatus:
        return self.scheduler.refresh_now()

    def sync_status(self) -> SyncStatus:
        return self.scheduler.status()

    # ----------------------------
    # Views
    # ----------------------------

    def services(self) -> List[Service]:
        return apply_incident_counts(self.store.records("service"), self.store.aggregation.latest)

    def incidents(self) -> List[Incident]:
        return self.store.list_open()

    def resolved_incidents(self) -> List[Incident]:
        return self.store.list_resolved()

    def status_counts(self) -> StatusCounts:
        return self.store.aggregation.latest.status_counts

    def subscribe(self, callback: Callable[[AggregateSnapshot], None]) -> Callable[[], None]:
        return self.store.aggregation.subscribe(callback)

    def users(self) -> List[User]:
        return self.store.records("user")

    def settings_view(self) -> Settings:
        return self.settings.get().masked()

    def selected_incident(self) -> Optional[Incident]:
        if self.selected_incident_id is None:
            return None
        return self.store.get("incident", self.selected_incident_id)

    def visible_incidents(self) -> List[Incident]:
        """Incidents of the active tab after the search query and filter."""

        rows = self.incidents() if self.active_tab == "open" else self.resolved_incidents()
        query = self.search_query.strip().lower()
        if query:
            rows = [
                i for i in rows
                if query in i.title.lower() or query in i.service.lower() or query in i.id.lower()
            ]
        return [i for i in rows if self._matches_filter(i)]

    def _matches_filter(self, incident: Incident) -> bool:
        f = self.filter_type
        if not f:
            return True
        if f in ("triggered", "acknowledged"):
            return incident.status == f
        if f in ("high", "low"):
            return incident.urgency == f
        if f == "pinned":
            return incident.pinned
        if f == "mine":
            provider = self.provider
            if provider is None:
                return False
            return provider.current_user().id in incident.assigned_user_ids
        return True

    # ----------------------------
    # Commands
    # ----------------------------

    def select_incident(self, incident_id: Optional[str]) -> Optional[Incident]:
        if incident_id is None:
            self.selected_incident_id = None
            return None
        incident = self.store.require("incident", incident_id)
        self.selected_incident_id = incident_id
        return incident

    def set_search_query(self, query: str) -> None:
        self.search_query = query

    def set_filter(self, filter_type: str) -> None:
        if filter_type not in FILTER_TYPES:
            raise ValueError(f"unknown filter: {filter_type}")
        self.filter_type = filter_type

    def set_active_tab(self, tab: str) -> None:
        if tab not in ("open", "resolved"):
            raise ValueError(f"unknown tab: {tab}")
        self.active_tab = tab  # type: ignore[assignment]

    def update_settings(self, **changes) -> Settings:
        return self.settings.update(**changes).masked()

    def toggle_service(self, service_id: str, active: bool) -> Service:
        service = self.store.update_local("service", service_id, active=active)
        self.service_preferences.save(service)
        return service

    def delete_service(self, service_id: str) -> Service:
        """Forget a service and its saved preference.

        The next poll brings it back as active if PagerDuty still lists it.
        """

        service = self.store.delete("service", service_id)
        self.service_preferences.delete(service_id)
        logger.info("deleted service %s", service_id)
        return service

    def pin_incident(self, incident_id: str, pinned: bool) -> Incident:
        incident = self.store.update_local("incident", incident_id, pinned=pinned)
        self._cache_incidents([incident_id])
        return incident

    def acknowledge(self, incident_id: str) -> Incident:
        return self._change_status(incident_id, "acknowledged")

    def resolve(self, incident_id: str) -> Incident:
        return self._change_status(incident_id, "resolved")

    def _change_status(self, incident_id: str, status: str) -> Incident:
        provider = self._require_provider()
        incident = self.store.set_pending("incident", incident_id, status=status)
        try:
            if status == "acknowledged":
                provider.acknowledge(incident_id)
            else:
                provider.resolve(incident_id)
        except Exception:
            self.store.revert_pending("incident", incident_id)
            raise
        self._cache_incidents([incident_id])
        return incident

    def escalate(self, incident_id: str, level: int = 1) -> Incident:
        provider = self._require_provider()
        incident = self.store.require("incident", incident_id)
        provider.escalate(incident_id, level)
        logger.info("escalated incident %s to level %s", incident_id, level)
        return incident

    def snooze(self, incident_id: str, minutes: int) -> Incident:
        if minutes < 1:
            raise ValueError("snooze needs at least one minute")
        provider = self._require_provider()
        self.store.require("incident", incident_id)
        remote = provider.snooze(incident_id, minutes * 60)
        listing = "open_incidents" if remote.is_open else "resolved_incidents"
        self.reconciler.apply(RemoteBatch(**{listing: [remote]}))
        self._cache_incidents([incident_id])
        return self.store.require("incident", incident_id)

    def merge_incidents(self, target_id: str, source_ids: List[str]) -> Incident:
        """Merge ``source_ids`` into ``target_id``.

        PagerDuty resolves the merged sources, so they show as resolved
        right away and revert if the call fails.
        """

        sources = list(dict.fromkeys(source_ids))
        if not sources:
            raise ValueError("nothing to merge")
        if target_id in sources:
            raise ValueError("an incident cannot be merged into itself")
        provider = self._require_provider()
        target = self.store.require("incident", target_id)
        with self.store.batch():
            for source_id in sources:
                self.store.set_pending("incident", source_id, status="resolved")
        try:
            provider.merge(target_id, sources)
        except Exception:
            with self.store.batch():
                for source_id in sources:
                    self.store.revert_pending("incident", source_id)
            raise
        self._cache_incidents(sources)
        return target

    def incident_alerts(self, incident_id: str) -> List[Alert]:
        """Fetch the alerts of an incident and return them oldest first."""

        provider = self._require_provider()
        self.store.require("incident", incident_id)
        self.reconciler.apply(RemoteBatch(alerts=provider.list_incident_alerts(incident_id)))
        alerts = [a for a in self.store.records("alert") if a.incident_id == incident_id]
        return sorted(alerts, key=lambda a: (a.created_at is None, a.created_at or utcnow()))

    # drafts

    def get_draft(self, incident_id: str) -> Optional[DraftNote]:
        return self.drafts.get_draft(incident_id)

    def set_draft(self, incident_id: str, **fields: str) -> DraftNote:
        return self.drafts.set_draft(incident_id, **fields)

    def discard_draft(self, incident_id: str) -> bool:
        return self.drafts.discard_draft(incident_id)

    def commit_draft(self, incident_id: str) -> Note:
        """Post the draft to the provider, then keep it as a local note.

        The draft survives when the provider call fails. The cached note
        carries exactly the text that was posted, even if the draft is
        edited while the call is in flight.
        """

        draft = self.drafts.get_draft(incident_id)
        if draft is None or draft.is_empty():
            logger.warning("commit requested for incident %s without a draft", incident_id)
            raise NoDraftError(incident_id)
        author = None
        if self.provider is not None:
            self.provider.add_note(incident_id, format_draft(draft))
            author = self.provider.current_user().name
        note = self.drafts.commit_draft(incident_id, author=author, posted=draft)
        self._cache_incidents([incident_id])
        return note

    # templates

    def list_templates(self) -> List[Template]:
        return self.store.records("template")

    def save_template(self, title: str, body_text: str, template_id: Optional[int] = None) -> Template:
        saved = self.templates.save(Template(id=template_id, title=title, body_text=body_text))
        self.store.upsert("template", saved, origin="local")
        return saved

    def delete_template(self, template_id: int) -> None:
        self.templates.delete(template_id)
        self.store.delete("template", template_id)

    def apply_template(self, incident_id: str, template_id: int) -> DraftNote:
        template = self.store.require("template", template_id)
        return self.drafts.set_draft(incident_id, note_text=template.body_text)
