from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

import requests

from pagerops.config import PAGERDUTY_BASE_URL, PAGERDUTY_PAGE_LIMIT, PAGERDUTY_TIMEOUT
from pagerops.entities import Alert, Incident, Service, User
from pagerops.errors import (
    AuthError,
    PartialFetchError,
    RateLimitError,
    RemoteError,
    TransientNetworkError,
)
from pagerops.reconciler import IncidentFilter, RemoteBatch
from pagerops.timestamps import format_timestamp, utcnow

logger = logging.getLogger("pagerops.pagerduty")

MAX_PAGES = 10


class IncidentProvider(Protocol):
    def list_services(self) -> List[Service]: ...

    def list_open_incidents(self, incident_filter: IncidentFilter) -> List[Incident]: ...

    def list_resolved_incidents(self, since: datetime, incident_filter: IncidentFilter) -> List[Incident]: ...

    def list_users(self) -> List[User]: ...

    def current_user(self) -> User: ...

    def acknowledge(self, incident_id: str) -> None: ...

    def resolve(self, incident_id: str) -> None: ...

    def add_note(self, incident_id: str, text: str) -> None: ...

    def escalate(self, incident_id: str, level: int = 1) -> None: ...

    def snooze(self, incident_id: str, seconds: int) -> Incident: ...

    def merge(self, target_id: str, source_ids: List[str]) -> None: ...

    def list_incident_alerts(self, incident_id: str) -> List[Alert]: ...

    def fetch_batch(self, incident_filter: IncidentFilter, since: datetime, include_users: bool = False) -> RemoteBatch: ...


def convert_service(data: Dict[str, Any]) -> Service:
    return Service(id=data["id"], name=data.get("name") or data.get("summary") or data["id"])


def convert_incident(data: Dict[str, Any]) -> Incident:
    service = data.get("service") or {}
    alert_counts = data.get("alert_counts") or {}
    assignments = data.get("assignments") or []
    # The incident listing carries no escalation timing, so escalates_in is left
    # out of the record and a merge never overwrites a known value.
    return Incident(
        id=data["id"],
        title=data.get("title") or data.get("summary") or "",
        service=service.get("summary", ""),
        service_id=service.get("id", ""),
        status=data["status"],
        urgency=data.get("urgency", "high"),
        created_at=data["created_at"],
        updated_at=data.get("last_status_change_at") or data.get("updated_at"),
        alert_count=int(alert_counts.get("all", 0)),
        description=data.get("description"),
        incident_number=data.get("incident_number"),
        assigned_user_ids=[a["assignee"]["id"] for a in assignments if a.get("assignee")],
        html_url=data.get("html_url"),
    )


def convert_user(data: Dict[str, Any]) -> User:
    return User(id=data["id"], email=data.get("email", ""), name=data.get("name", ""))


def convert_alert(data: Dict[str, Any], incident_id: str) -> Alert:
    incident = data.get("incident") or {}
    return Alert(
        id=data["id"],
        incident_id=incident.get("id") or incident_id,
        summary=data.get("summary", ""),
        status=data.get("status", "triggered"),
        created_at=data.get("created_at"),
        details=data.get("body"),
    )


class PagerDutyClient:
    """Thin PagerDuty REST v2 client that maps failures onto pagerops errors."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = PAGERDUTY_BASE_URL,
        timeout: float = PAGERDUTY_TIMEOUT,
        page_limit: int = PAGERDUTY_PAGE_LIMIT,
    ) -> None:
        if not api_key:
            raise AuthError("API key is required")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_limit = page_limit
        self._user: Optional[User] = None

    # ----------------------------
    # HTTP plumbing
    # ----------------------------

    def _headers(self, from_email: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Token token={self.api_key}",
            "Accept": "application/vnd.pagerduty+json;version=2",
            "Content-Type": "application/json",
        }
        if from_email:
            headers["From"] = from_email
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        from_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(
                method,
                url,
                headers=self._headers(from_email),
                params=params,
                json=payload,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransientNetworkError(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransientNetworkError(f"{method} {path} failed: {type(e).__name__}") from e

        if resp.status_code in (401, 403):
            raise AuthError(f"{method} {path} rejected the api key ({resp.status_code})")
        if resp.status_code == 429:
            raise RateLimitError(f"{method} {path} was rate limited", retry_after=_retry_after(resp))
        if resp.status_code >= 500:
            raise TransientNetworkError(f"{method} {path} returned {resp.status_code}")
        if resp.status_code >= 400:
            raise RemoteError(f"{method} {path} returned {resp.status_code}: {resp.text[:200]}")
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    def _paginate(self, path: str, key: str, params: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], bool]:
        """Collect every page; the flag is True when MAX_PAGES cut the listing short."""

        items: List[Dict[str, Any]] = []
        offset = 0
        for _ in range(MAX_PAGES):
            data = self._request("GET", path, params={**params, "limit": self.page_limit, "offset": offset})
            items.extend(data.get(key, []))
            if not data.get("more"):
                return items, False
            offset += self.page_limit
        logger.warning("%s listing truncated after %s pages", path, MAX_PAGES)
        return items, True

    # ----------------------------
    # Reads
    # ----------------------------

    def list_services(self) -> List[Service]:
        rows, _ = self._paginate("/services", "services", {})
        return [convert_service(r) for r in rows]

    def _list_incidents(
        self, statuses: List[str], incident_filter: IncidentFilter, since: Optional[datetime] = None
    ) -> Tuple[List[Incident], bool]:
        params: Dict[str, Any] = {
            "statuses[]": statuses,
            "sort_by": "created_at:desc",
            "time_zone": "UTC",
        }
        if incident_filter.service_ids:
            params["service_ids[]"] = incident_filter.service_ids
        if incident_filter.user_ids:
            params["user_ids[]"] = incident_filter.user_ids
        if since is not None:
            params["since"] = format_timestamp(since)
            params["until"] = format_timestamp(utcnow())
        rows, truncated = self._paginate("/incidents", "incidents", params)
        return [convert_incident(r) for r in rows], truncated

    def list_open_incidents(self, incident_filter: IncidentFilter) -> List[Incident]:
        incidents, _ = self._list_incidents(["triggered", "acknowledged"], incident_filter)
        return incidents

    def list_resolved_incidents(self, since: datetime, incident_filter: IncidentFilter) -> List[Incident]:
        incidents, _ = self._list_incidents(["resolved"], incident_filter, since=since)
        return incidents

    def list_incident_alerts(self, incident_id: str) -> List[Alert]:
        rows, _ = self._paginate(f"/incidents/{incident_id}/alerts", "alerts", {})
        return [convert_alert(r, incident_id) for r in rows]

    def list_users(self) -> List[User]:
        rows, _ = self._paginate("/users", "users", {})
        return [convert_user(r) for r in rows]

    def current_user(self) -> User:
        if self._user is None:
            data = self._request("GET", "/users/me")
            self._user = convert_user(data["user"])
        return self._user

    def fetch_batch(self, incident_filter: IncidentFilter, since: datetime, include_users: bool = False) -> RemoteBatch:
        """Run one polling cycle's listings.

        Services and open incidents are required; if either fails the error
        propagates. Failures of the resolved or user listings produce a
        ``PartialFetchError`` carrying whatever did arrive.
        """

        services = self.list_services()
        open_incidents, truncated = self._list_incidents(["triggered", "acknowledged"], incident_filter)

        errors: List[RemoteError] = []
        resolved: List[Incident] = []
        users: List[User] = []
        try:
            resolved = self.list_resolved_incidents(since, incident_filter)
        except TransientNetworkError as e:
            errors.append(e)
        if include_users:
            try:
                users = self.list_users()
            except TransientNetworkError as e:
                errors.append(e)

        batch = RemoteBatch(
            services=services,
            open_incidents=open_incidents,
            resolved_incidents=resolved,
            users=users,
            # an assignee filter hides other people's incidents, so absence proves nothing
            complete=not truncated and not incident_filter.user_ids and not errors,
            scope_service_ids=incident_filter.service_ids,
        )
        if errors:
            raise PartialFetchError(batch, errors)
        return batch

    # ----------------------------
    # Writes
    # ----------------------------

    def _manage(self, incident_id: str, **changes: Any) -> None:
        payload = {"incidents": [{"id": incident_id, "type": "incident_reference", **changes}]}
        self._request("PUT", "/incidents", payload=payload, from_email=self.current_user().email)

    def acknowledge(self, incident_id: str) -> None:
        self._manage(incident_id, status="acknowledged")

    def resolve(self, incident_id: str) -> None:
        self._manage(incident_id, status="resolved")

    def add_note(self, incident_id: str, text: str) -> None:
        self._request(
            "POST",
            f"/incidents/{incident_id}/notes",
            payload={"note": {"content": text}},
            from_email=self.current_user().email,
        )

    def escalate(self, incident_id: str, level: int = 1) -> None:
        if level < 1:
            raise ValueError("escalation level starts at 1")
        self._manage(incident_id, escalation_level=level)

    def snooze(self, incident_id: str, seconds: int) -> Incident:
        """Snooze an acknowledged incident; returns the incident as PagerDuty reports it."""

        data = self._request(
            "POST",
            f"/incidents/{incident_id}/snooze",
            payload={"duration": int(seconds)},
            from_email=self.current_user().email,
        )
        return convert_incident(data["incident"])

    def merge(self, target_id: str, source_ids: List[str]) -> None:
        sources = [{"id": i, "type": "incident_reference"} for i in source_ids]
        self._request(
            "PUT",
            f"/incidents/{target_id}/merge",
            payload={"source_incidents": sources},
            from_email=self.current_user().email,
        )


def _retry_after(resp: requests.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    try:
        return float(value) if value else None
    except ValueError:
        return None
