from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from pagerops.app_state import AppState
from pagerops.deps import get_state
from pagerops.entities import Alert, Incident

router = APIRouter(prefix="/incidents", tags=["incidents"])


class PinRequest(BaseModel):
    pinned: bool


class EscalateRequest(BaseModel):
    escalation_level: int = Field(1, ge=1)


class SnoozeRequest(BaseModel):
    minutes: int = Field(ge=1)


class MergeRequest(BaseModel):
    source_ids: List[str] = Field(min_length=1)


class ViewRequest(BaseModel):
    search_query: Optional[str] = None
    filter_type: Optional[str] = None
    active_tab: Optional[str] = None


@router.get("", response_model=List[Incident])
def list_open(state: AppState = Depends(get_state)) -> List[Incident]:
    return state.incidents()


@router.get("/resolved", response_model=List[Incident])
def list_resolved(state: AppState = Depends(get_state)) -> List[Incident]:
    return state.resolved_incidents()


@router.get("/visible", response_model=List[Incident])
def list_visible(state: AppState = Depends(get_state)) -> List[Incident]:
    return state.visible_incidents()


@router.post("/view", response_model=List[Incident])
def set_view(view: ViewRequest, state: AppState = Depends(get_state)) -> List[Incident]:
    if view.search_query is not None:
        state.set_search_query(view.search_query)
    if view.filter_type is not None:
        state.set_filter(view.filter_type)
    if view.active_tab is not None:
        state.set_active_tab(view.active_tab)
    return state.visible_incidents()


@router.get("/selected", response_model=Optional[Incident])
def get_selected(state: AppState = Depends(get_state)) -> Optional[Incident]:
    return state.selected_incident()


@router.post("/{incident_id}/select", response_model=Incident)
def select(incident_id: str, state: AppState = Depends(get_state)) -> Incident:
    return state.select_incident(incident_id)


@router.get("/{incident_id}", response_model=Incident)
def get_incident(incident_id: str, state: AppState = Depends(get_state)) -> Incident:
    return state.store.require("incident", incident_id)


@router.post("/{incident_id}/pin", response_model=Incident)
def pin(incident_id: str, body: PinRequest, state: AppState = Depends(get_state)) -> Incident:
    return state.pin_incident(incident_id, body.pinned)


@router.post("/{incident_id}/acknowledge", response_model=Incident)
def acknowledge(incident_id: str, state: AppState = Depends(get_state)) -> Incident:
    return state.acknowledge(incident_id)


@router.post("/{incident_id}/resolve", response_model=Incident)
def resolve(incident_id: str, state: AppState = Depends(get_state)) -> Incident:
    return state.resolve(incident_id)


@router.post("/{incident_id}/escalate", response_model=Incident)
def escalate(incident_id: str, body: EscalateRequest, state: AppState = Depends(get_state)) -> Incident:
    return state.escalate(incident_id, body.escalation_level)


@router.post("/{incident_id}/snooze", response_model=Incident)
def snooze(incident_id: str, body: SnoozeRequest, state: AppState = Depends(get_state)) -> Incident:
    return state.snooze(incident_id, body.minutes)


@router.post("/{incident_id}/merge", response_model=Incident)
def merge(incident_id: str, body: MergeRequest, state: AppState = Depends(get_state)) -> Incident:
    return state.merge_incidents(incident_id, body.source_ids)


@router.get("/{incident_id}/alerts", response_model=List[Alert])
def list_alerts(incident_id: str, state: AppState = Depends(get_state)) -> List[Alert]:
    return state.incident_alerts(incident_id)
