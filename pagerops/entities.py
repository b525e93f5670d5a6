from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pagerops.timestamps import parse_timestamp, utcnow

IncidentStatus = Literal["triggered", "acknowledged", "resolved"]
Urgency = Literal["high", "low"]
Theme = Literal["dark", "light"]
EntityKind = Literal["service", "incident", "alert", "user", "template"]

OPEN_STATUSES: Tuple[str, ...] = ("triggered", "acknowledged")

_WORD_RE = re.compile(r"[A-Za-z0-9]+")


def abbreviate(name: str, limit: int = 3) -> str:
    words = _WORD_RE.findall(name)
    if not words:
        return ""
    if len(words) == 1:
        return words[0][:limit].upper()
    return "".join(w[0] for w in words[:limit]).upper()


class Note(BaseModel):
    model_config = ConfigDict(frozen=True)

    author: str
    content: str
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, v):
        return parse_timestamp(v)


class Service(BaseModel):
    id: str
    name: str
    abbreviation: str = ""
    active: bool = True
    # Filled from the aggregate snapshot; never authoritative
    incident_count: int = 0

    @model_validator(mode="after")
    def _default_abbreviation(self) -> "Service":
        if not self.abbreviation:
            self.abbreviation = abbreviate(self.name)
        return self


class Incident(BaseModel):
    id: str
    title: str
    service: str = ""
    service_id: str = ""
    status: IncidentStatus
    urgency: Urgency = "high"
    created_at: datetime
    updated_at: Optional[datetime] = None
    alert_count: int = 0
    escalates_in: Optional[int] = None  # seconds until next escalation
    description: Optional[str] = None
    notes: List[Note] = Field(default_factory=list)
    pinned: bool = False
    incident_number: Optional[int] = None
    assigned_user_ids: List[str] = Field(default_factory=list)
    html_url: Optional[str] = None

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, v):
        return parse_timestamp(v)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


class Alert(BaseModel):
    """One alert grouped under an incident, as the provider reports it."""

    id: str
    incident_id: str
    summary: str = ""
    status: str = "triggered"
    created_at: Optional[datetime] = None
    details: Optional[Dict[str, Any]] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, v):
        return parse_timestamp(v)


class User(BaseModel):
    id: str
    email: str
    name: str


class Template(BaseModel):
    id: Optional[int] = None
    title: str
    body_text: str


DRAFT_FIELDS: Tuple[str, ...] = ("note_text", "why_triggered", "impact", "actions", "links")


class DraftNote(BaseModel):
    incident_id: str
    note_text: str = ""
    why_triggered: str = ""
    impact: str = ""
    actions: str = ""
    links: str = ""
    last_updated: datetime = Field(default_factory=utcnow)

    @field_validator("last_updated", mode="before")
    @classmethod
    def _parse_last_updated(cls, v):
        return parse_timestamp(v)

    def is_empty(self) -> bool:
        return not any(getattr(self, f).strip() for f in DRAFT_FIELDS)


class StatusCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    triggered: int = 0
    acknowledged: int = 0
    resolved: int = 0


class Settings(BaseModel):
    refresh_interval: float = Field(3.0, ge=1.0, description="Seconds between polls")
    sound_enabled: bool = True
    desktop_notifications: bool = True
    theme: Theme = "dark"
    compact_view: bool = False
    api_key: str = ""
    assigned_only: bool = False
    redirect_enabled: bool = False
    sound_path: str = ""

    def masked(self) -> "Settings":
        return self.model_copy(update={"api_key": mask_api_key(self.api_key)})


MASK_PREFIX = "****"


def mask_api_key(api_key: str) -> str:
    if not api_key:
        return ""
    return MASK_PREFIX + api_key[-4:]


def is_masked(api_key: str) -> bool:
    return api_key.startswith(MASK_PREFIX)
