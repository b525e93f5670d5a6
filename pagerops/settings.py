from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Set

from pagerops.entities import Settings, is_masked
from pagerops.persistence import SettingsRepository

logger = logging.getLogger("pagerops.settings")

SettingsListener = Callable[[Settings, Set[str]], None]


class SettingsManager:
    """Process-wide settings: loaded once, persisted on every change."""

    def __init__(self, repository: SettingsRepository) -> None:
        self.repository = repository
        self._settings = Settings()
        self._listeners: List[SettingsListener] = []
        self._lock = threading.Lock()

    def load(self) -> Settings:
        try:
            loaded = self.repository.load()
        except ValueError:
            logger.exception("stored settings are invalid; using defaults")
            loaded = Settings()
        with self._lock:
            self._settings = loaded
        return loaded

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def update(self, **changes: Any) -> Settings:
        unknown = set(changes) - set(Settings.model_fields)
        if unknown:
            raise ValueError(f"unknown settings: {sorted(unknown)}")
        # a masked or blank key coming back from the UI means "keep the stored one"
        api_key = changes.get("api_key")
        if api_key is not None and (not api_key or is_masked(api_key)):
            changes.pop("api_key")

        with self._lock:
            old = self._settings
            new = Settings.model_validate({**old.model_dump(), **changes})
            changed = {name for name in Settings.model_fields if getattr(old, name) != getattr(new, name)}
            if not changed:
                return new
            self._settings = new

        self.repository.save(new)
        logger.info("settings updated: %s", sorted(changed - {"api_key"}) or "api_key")
        for listener in list(self._listeners):
            try:
                listener(new, changed)
            except Exception:
                logger.exception("settings listener %r failed", listener)
        return new
