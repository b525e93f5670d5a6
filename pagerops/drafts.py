from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol

from pagerops.config import DRAFT_DEBOUNCE_SECONDS
from pagerops.entities import DRAFT_FIELDS, DraftNote, Note
from pagerops.errors import NoDraftError, NotFoundError
from pagerops.store import EntityStore
from pagerops.timestamps import utcnow

logger = logging.getLogger("pagerops.drafts")

SECTION_TITLES = {
    "why_triggered": "Why triggered",
    "impact": "Impact",
    "actions": "Actions",
    "links": "Links",
}


class DraftRepository(Protocol):
    def load_all(self) -> List[DraftNote]: ...

    def save(self, draft: DraftNote) -> None: ...

    def delete(self, incident_id: str) -> None: ...


def format_draft(draft: DraftNote) -> str:
    parts: List[str] = []
    if draft.note_text.strip():
        parts.append(draft.note_text.strip())
    for field, title in SECTION_TITLES.items():
        value = getattr(draft, field).strip()
        if value:
            parts.append(f"{title}:\n{value}")
    return "\n\n".join(parts)


class DraftManager:
    """Owns the one-draft-per-incident working notes.

    Edits are visible in memory immediately; the durable copy is written by a
    per-incident timer once edits have been quiet for ``debounce`` seconds.
    """

    def __init__(
        self,
        repository: DraftRepository,
        store: Optional[EntityStore] = None,
        *,
        debounce: float = DRAFT_DEBOUNCE_SECONDS,
        author: str = "pagerops",
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.repository = repository
        self.store = store
        self.debounce = debounce
        self.author = author
        self._timer_factory = timer_factory
        self._drafts: Dict[str, DraftNote] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._generations: Dict[str, int] = {}
        self._lock = threading.RLock()

    def load(self) -> int:
        drafts = self.repository.load_all()
        with self._lock:
            for draft in drafts:
                self._drafts[draft.incident_id] = draft
        logger.info("loaded %s drafts", len(drafts))
        return len(drafts)

    def get_draft(self, incident_id: str) -> Optional[DraftNote]:
        with self._lock:
            draft = self._drafts.get(incident_id)
            return draft.model_copy() if draft is not None else None

    def list_drafts(self) -> List[DraftNote]:
        with self._lock:
            return [d.model_copy() for d in self._drafts.values()]

    def set_draft(self, incident_id: str, **fields: str) -> DraftNote:
        unknown = set(fields) - set(DRAFT_FIELDS)
        if unknown:
            raise ValueError(f"unknown draft fields: {sorted(unknown)}")

        with self._lock:
            current = self._drafts.get(incident_id) or DraftNote(incident_id=incident_id)
            draft = current.model_copy(update={**fields, "last_updated": utcnow()})
            self._drafts[incident_id] = draft
            self._schedule_persist(incident_id)
            return draft.model_copy()

    def discard_draft(self, incident_id: str) -> bool:
        with self._lock:
            self._cancel_timer(incident_id)
            existed = self._drafts.pop(incident_id, None) is not None
            self.repository.delete(incident_id)
        return existed

    def commit_draft(
        self,
        incident_id: str,
        author: Optional[str] = None,
        *,
        posted: Optional[DraftNote] = None,
    ) -> Note:
        """Turn the draft into an immutable note on the incident and clear it.

        ``posted`` is the draft whose text already went to the provider. The
        note is built from it, and a draft edited since then is kept.
        """

        with self._lock:
            current = self._drafts.get(incident_id)
            source = posted if posted is not None else current
            if source is None or source.is_empty():
                logger.warning("commit requested for incident %s without a draft", incident_id)
                raise NoDraftError(incident_id)

            note = Note(author=author or self.author, content=format_draft(source), timestamp=utcnow())
            if self.store is not None:
                self._append_note(incident_id, note)

            if current is not None and current != source:
                logger.info("draft for incident %s changed while its note was posted; keeping it", incident_id)
                return note
            self._cancel_timer(incident_id)
            self._drafts.pop(incident_id, None)
            self.repository.delete(incident_id)
        return note

    def _append_note(self, incident_id: str, note: Note) -> None:
        with self.store.batch():
            try:
                incident = self.store.require("incident", incident_id)
            except NotFoundError:
                logger.warning("committing draft for unknown incident %s; note not cached", incident_id)
                return
            self.store.update_local("incident", incident_id, notes=[*incident.notes, note])

    # ----------------------------
    # Debounced persistence
    # ----------------------------

    @property
    def pending_writes(self) -> List[str]:
        with self._lock:
            return sorted(self._timers)

    def flush(self) -> None:
        with self._lock:
            for incident_id in list(self._timers):
                self._cancel_timer(incident_id)
                self._persist(incident_id)

    def close(self) -> None:
        self.flush()

    def _schedule_persist(self, incident_id: str) -> None:
        self._cancel_timer(incident_id)
        generation = self._generations.get(incident_id, 0) + 1
        self._generations[incident_id] = generation
        timer = self._timer_factory(self.debounce, self._persist, args=(incident_id, generation))
        timer.daemon = True
        self._timers[incident_id] = timer
        timer.start()

    def _cancel_timer(self, incident_id: str) -> None:
        timer = self._timers.pop(incident_id, None)
        if timer is not None:
            timer.cancel()

    def _persist(self, incident_id: str, generation: Optional[int] = None) -> None:
        with self._lock:
            # a timer that was superseded by a later edit lost its slot
            if generation is not None and self._generations.get(incident_id) != generation:
                return
            self._timers.pop(incident_id, None)
            draft = self._drafts.get(incident_id)
            if draft is None:
                return
            try:
                self.repository.save(draft)
            except Exception:
                logger.exception("failed to persist draft for incident %s", incident_id)
