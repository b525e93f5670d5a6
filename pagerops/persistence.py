from __future__ import annotations

import base64
import binascii
import json
import logging
from datetime import datetime
from typing import Dict, Iterable, List

from sqlmodel import Session, select

from pagerops.entities import DRAFT_FIELDS, DraftNote, Incident, Service, Settings, Template
from pagerops.errors import NotFoundError
from pagerops.models import DraftNoteRow, IncidentRow, ServicePreferenceRow, SettingRow, TemplateRow
from pagerops.timestamps import format_timestamp, parse_timestamp

logger = logging.getLogger("pagerops.persistence")

ENCODED_PREFIX = "enc:"


def encode_secret(value: str) -> str:
    if not value:
        return ""
    return ENCODED_PREFIX + base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_secret(value: str) -> str:
    # values written before encoding was introduced are returned as-is
    if not value.startswith(ENCODED_PREFIX):
        return value
    try:
        return base64.b64decode(value[len(ENCODED_PREFIX):]).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ValueError("stored api key is corrupt") from e


def _to_setting_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class SettingsRepository:
    """Key/value settings rows; ``api_key`` is stored encoded."""

    def __init__(self, engine) -> None:
        self.engine = engine

    def load(self) -> Settings:
        with Session(self.engine) as session:
            rows = session.exec(select(SettingRow)).all()
        raw: Dict[str, str] = {row.key: row.value for row in rows if row.key in Settings.model_fields}
        if "api_key" in raw:
            raw["api_key"] = decode_secret(raw["api_key"])
        # pydantic coerces "true"/"false" and numeric strings
        return Settings.model_validate(raw)

    def save(self, settings: Settings) -> None:
        values = settings.model_dump()
        values["api_key"] = encode_secret(settings.api_key)
        with Session(self.engine) as session:
            for key, value in values.items():
                session.merge(SettingRow(key=key, value=_to_setting_value(value)))
            session.commit()


class DraftRepository:
    def __init__(self, engine) -> None:
        self.engine = engine

    def load_all(self) -> List[DraftNote]:
        with Session(self.engine) as session:
            rows = session.exec(select(DraftNoteRow)).all()
            return [DraftNote.model_validate(row.model_dump()) for row in rows]

    def save(self, draft: DraftNote) -> None:
        row = DraftNoteRow(
            incident_id=draft.incident_id,
            last_updated=format_timestamp(draft.last_updated),
            **{field: getattr(draft, field) for field in DRAFT_FIELDS},
        )
        with Session(self.engine) as session:
            session.merge(row)
            session.commit()

    def delete(self, incident_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(DraftNoteRow, incident_id)
            if row is not None:
                session.delete(row)
                session.commit()


class TemplateRepository:
    def __init__(self, engine) -> None:
        self.engine = engine

    def list_all(self) -> List[Template]:
        with Session(self.engine) as session:
            rows = session.exec(select(TemplateRow).order_by(TemplateRow.title)).all()
            return [Template.model_validate(row.model_dump()) for row in rows]

    def save(self, template: Template) -> Template:
        with Session(self.engine) as session:
            if template.id is None:
                row = TemplateRow(title=template.title, body_text=template.body_text)
                session.add(row)
            else:
                row = session.get(TemplateRow, template.id)
                if row is None:
                    raise NotFoundError("template", str(template.id))
                row.title = template.title
                row.body_text = template.body_text
                session.add(row)
            session.commit()
            session.refresh(row)
            return Template.model_validate(row.model_dump())

    def delete(self, template_id: int) -> None:
        with Session(self.engine) as session:
            row = session.get(TemplateRow, template_id)
            if row is None:
                raise NotFoundError("template", str(template_id))
            session.delete(row)
            session.commit()


class ServicePreferenceRepository:
    """Remembers known services and which ones the user switched off, across restarts."""

    def __init__(self, engine) -> None:
        self.engine = engine

    def load_all(self) -> List[Service]:
        with Session(self.engine) as session:
            rows = session.exec(select(ServicePreferenceRow)).all()
            return [Service(id=row.id, name=row.name, active=row.enabled) for row in rows]

    def save(self, service: Service) -> None:
        with Session(self.engine) as session:
            session.merge(ServicePreferenceRow(id=service.id, name=service.name, enabled=service.active))
            session.commit()

    def delete(self, service_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(ServicePreferenceRow, service_id)
            if row is not None:
                session.delete(row)
                session.commit()


def _incident_row(incident: Incident) -> IncidentRow:
    data = incident.model_dump(mode="json", exclude={"notes", "assigned_user_ids"})
    data["created_at"] = format_timestamp(incident.created_at)
    data["updated_at"] = format_timestamp(incident.updated_at)
    return IncidentRow(
        **data,
        notes=json.dumps([note.model_dump(mode="json") for note in incident.notes]),
        assigned_user_ids=json.dumps(incident.assigned_user_ids),
    )


def _incident_from_row(row: IncidentRow) -> Incident:
    data = row.model_dump()
    data["notes"] = json.loads(row.notes or "[]")
    data["assigned_user_ids"] = json.loads(row.assigned_user_ids or "[]")
    return Incident.model_validate(data)


class IncidentRepository:
    """Write-through copy of the incident cache."""

    def __init__(self, engine) -> None:
        self.engine = engine

    def load_all(self) -> List[Incident]:
        with Session(self.engine) as session:
            rows = session.exec(select(IncidentRow)).all()
        incidents = []
        for row in rows:
            try:
                incidents.append(_incident_from_row(row))
            except ValueError:
                logger.warning("skipping unreadable cached incident %s", row.id)
        return incidents

    def save(self, incident: Incident) -> None:
        self.save_many([incident])

    def save_many(self, incidents: Iterable[Incident]) -> None:
        with Session(self.engine) as session:
            for incident in incidents:
                session.merge(_incident_row(incident))
            session.commit()

    def delete(self, incident_id: str) -> None:
        with Session(self.engine) as session:
            row = session.get(IncidentRow, incident_id)
            if row is not None:
                session.delete(row)
                session.commit()

    def clean_old(self, before: datetime) -> int:
        """Delete resolved incidents last updated before ``before``."""

        with Session(self.engine) as session:
            rows = session.exec(select(IncidentRow).where(IncidentRow.status == "resolved")).all()
            stale = [r for r in rows if parse_timestamp(r.updated_at or r.created_at) < before]
            for row in stale:
                session.delete(row)
            session.commit()
        if stale:
            logger.info("removed %s old resolved incidents from the cache", len(stale))
        return len(stale)
