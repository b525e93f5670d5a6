from __future__ import annotations

from typing import Optional

from sqlmodel import SQLModel, Field as SQLField


class SettingRow(SQLModel, table=True):
    __tablename__ = "settings"

    key: str = SQLField(primary_key=True)
    value: str


class ServicePreferenceRow(SQLModel, table=True):
    __tablename__ = "services"

    id: str = SQLField(primary_key=True)
    name: str
    enabled: bool = True


class DraftNoteRow(SQLModel, table=True):
    __tablename__ = "draft_notes"

    incident_id: str = SQLField(primary_key=True, index=True)
    note_text: str = ""
    why_triggered: str = ""
    impact: str = ""
    actions: str = ""
    links: str = ""
    last_updated: str  # ISO-8601, see pagerops.timestamps


class TemplateRow(SQLModel, table=True):
    __tablename__ = "templates"

    id: Optional[int] = SQLField(default=None, primary_key=True)
    title: str = SQLField(index=True)
    body_text: str


class IncidentRow(SQLModel, table=True):
    """Last known state of an incident, so the dashboard has data before the first poll."""

    __tablename__ = "incidents"

    id: str = SQLField(primary_key=True)
    title: str
    service: str = ""
    service_id: str = SQLField(default="", index=True)
    status: str = SQLField(index=True)
    urgency: str = "high"
    created_at: str  # ISO-8601, see pagerops.timestamps
    updated_at: Optional[str] = None
    alert_count: int = 0
    escalates_in: Optional[int] = None
    description: Optional[str] = None
    pinned: bool = False
    incident_number: Optional[int] = None
    html_url: Optional[str] = None
    notes: str = "[]"  # JSON list of notes
    assigned_user_ids: str = "[]"  # JSON list of user ids
