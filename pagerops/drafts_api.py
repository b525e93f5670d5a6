from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from pagerops.app_state import AppState
from pagerops.deps import get_state
from pagerops.entities import DraftNote, Note, Template

router = APIRouter(tags=["drafts"])


class DraftUpdate(BaseModel):
    note_text: Optional[str] = None
    why_triggered: Optional[str] = None
    impact: Optional[str] = None
    actions: Optional[str] = None
    links: Optional[str] = None


class TemplateRequest(BaseModel):
    title: str
    body_text: str


class DiscardResponse(BaseModel):
    ok: bool
    existed: bool


@router.get("/incidents/{incident_id}/draft", response_model=Optional[DraftNote])
def get_draft(incident_id: str, state: AppState = Depends(get_state)) -> Optional[DraftNote]:
    return state.get_draft(incident_id)


@router.patch("/incidents/{incident_id}/draft", response_model=DraftNote)
def update_draft(incident_id: str, update: DraftUpdate, state: AppState = Depends(get_state)) -> DraftNote:
    return state.set_draft(incident_id, **update.model_dump(exclude_none=True))


@router.delete("/incidents/{incident_id}/draft", response_model=DiscardResponse)
def discard_draft(incident_id: str, state: AppState = Depends(get_state)) -> DiscardResponse:
    return DiscardResponse(ok=True, existed=state.discard_draft(incident_id))


@router.post("/incidents/{incident_id}/draft/commit", response_model=Note)
def commit_draft(incident_id: str, state: AppState = Depends(get_state)) -> Note:
    return state.commit_draft(incident_id)


@router.post("/incidents/{incident_id}/draft/template/{template_id}", response_model=DraftNote)
def apply_template(incident_id: str, template_id: int, state: AppState = Depends(get_state)) -> DraftNote:
    return state.apply_template(incident_id, template_id)


@router.get("/templates", response_model=List[Template])
def list_templates(state: AppState = Depends(get_state)) -> List[Template]:
    return state.list_templates()


@router.post("/templates", response_model=Template)
def create_template(body: TemplateRequest, state: AppState = Depends(get_state)) -> Template:
    return state.save_template(body.title, body.body_text)


@router.put("/templates/{template_id}", response_model=Template)
def update_template(template_id: int, body: TemplateRequest, state: AppState = Depends(get_state)) -> Template:
    return state.save_template(body.title, body.body_text, template_id=template_id)


@router.delete("/templates/{template_id}")
def delete_template(template_id: int, state: AppState = Depends(get_state)) -> dict:
    state.delete_template(template_id)
    return {"ok": True}
