from __future__ import annotations

import logging
import webbrowser
from pathlib import Path
from typing import Callable, Iterable, Optional

from pagerops.entities import Incident, Settings

logger = logging.getLogger("pagerops.notifications")

SOUND_EXTENSIONS = (".mp3", ".wav")


def find_sound_file(folder: str) -> Optional[Path]:
    """First .mp3/.wav file in ``folder`` by name, or None."""

    if not folder:
        return None
    path = Path(folder)
    if not path.is_dir():
        return None
    for candidate in sorted(path.iterdir()):
        if candidate.is_file() and candidate.suffix.lower() in SOUND_EXTENSIONS:
            return candidate
    return None


class AlertNotifier:
    """Reacts to newly triggered incidents.

    Playback and desktop popups are delegated to the callables passed in;
    without them only the log line and the browser redirect happen.
    """

    def __init__(
        self,
        settings: Callable[[], Settings],
        *,
        play_sound: Optional[Callable[[Path], None]] = None,
        notify_desktop: Optional[Callable[[Incident], None]] = None,
        open_url: Callable[[str], object] = webbrowser.open,
    ) -> None:
        self._settings = settings
        self.play_sound = play_sound
        self.notify_desktop = notify_desktop
        self.open_url = open_url

    def notify(self, incidents: Iterable[Incident]) -> None:
        triggered = [i for i in incidents if i.status == "triggered"]
        if not triggered:
            return
        settings = self._settings()

        for incident in triggered:
            logger.info("new triggered incident %s on %s: %s", incident.id, incident.service, incident.title)
            if settings.desktop_notifications and self.notify_desktop is not None:
                self.notify_desktop(incident)
            if settings.redirect_enabled and incident.html_url:
                self.open_url(incident.html_url)

        if settings.sound_enabled and self.play_sound is not None:
            sound = find_sound_file(settings.sound_path)
            if sound is not None:
                self.play_sound(sound)
