from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from pagerops.reconciler import RemoteBatch


class PagerOpsError(Exception):
    """Base class for every error raised by pagerops."""


class NotFoundError(PagerOpsError):
    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class NoDraftError(PagerOpsError):
    def __init__(self, incident_id: str) -> None:
        super().__init__(f"no draft for incident {incident_id}")
        self.incident_id = incident_id


class RemoteError(PagerOpsError):
    """Failure talking to the incident provider."""


class TransientNetworkError(RemoteError):
    pass


class RateLimitError(TransientNetworkError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class AuthError(RemoteError):
    pass


class PartialFetchError(RemoteError):
    """Some listings of a polling cycle failed; ``batch`` holds what arrived."""

    def __init__(self, batch: "RemoteBatch", errors: List[RemoteError]) -> None:
        reasons = "; ".join(str(e) for e in errors)
        super().__init__(f"partial fetch: {reasons}")
        self.batch = batch
        self.errors = errors
