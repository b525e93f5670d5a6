from __future__ import annotations

from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from pagerops.aggregation import AggregateSnapshot
from pagerops.app_state import AppState
from pagerops.config import configure_logging
from pagerops.db import init_db, make_engine
from pagerops.deps import get_state
from pagerops.drafts_api import router as drafts_router
from pagerops.entities import Service, Settings, StatusCounts, Theme, User
from pagerops.errors import AuthError, NoDraftError, NotFoundError, PagerOpsError, TransientNetworkError
from pagerops.incident_api import router as incident_router
from pagerops.scheduler import SyncStatus

# ----------------------------
# Request/Response Models
# ----------------------------


class SettingsUpdate(BaseModel):
    refresh_interval: Optional[float] = None
    sound_enabled: Optional[bool] = None
    desktop_notifications: Optional[bool] = None
    theme: Optional[Theme] = None
    compact_view: Optional[bool] = None
    api_key: Optional[str] = None
    assigned_only: Optional[bool] = None
    redirect_enabled: Optional[bool] = None
    sound_path: Optional[str] = None


class ToggleServiceRequest(BaseModel):
    active: bool


class DashboardResponse(BaseModel):
    status_counts: StatusCounts
    services: List[Service]
    sync: SyncStatus


# ----------------------------
# App
# ----------------------------

ERROR_STATUS = (
    (NotFoundError, 404),
    (NoDraftError, 409),
    (AuthError, 401),
    (TransientNetworkError, 503),
)


def create_app(state: Optional[AppState] = None, *, start_polling: bool = True) -> FastAPI:
    app = FastAPI(
        title="PagerOps",
        version="0.1.0",
        description="Local incident cache kept in sync with PagerDuty.",
    )
    engine = None
    if state is None:
        engine = make_engine()
        state = AppState.from_engine(engine)
    app.state.pagerops = state

    app.include_router(incident_router)
    app.include_router(drafts_router)

    @app.on_event("startup")
    def on_startup() -> None:
        configure_logging()
        if engine is not None:
            init_db(engine)
        state.startup(start_polling=start_polling)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        state.shutdown()

    @app.exception_handler(PagerOpsError)
    async def pagerops_error(request: Request, exc: PagerOpsError) -> JSONResponse:
        status = 502
        for error_type, code in ERROR_STATUS:
            if isinstance(exc, error_type):
                status = code
                break
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    # ----------------------------
    # Endpoints
    # ----------------------------

    @app.get("/dashboard", response_model=DashboardResponse)
    def dashboard(state: AppState = Depends(get_state)) -> DashboardResponse:
        return DashboardResponse(
            status_counts=state.status_counts(),
            services=state.services(),
            sync=state.sync_status(),
        )

    @app.get("/status-counts", response_model=AggregateSnapshot)
    def status_counts(state: AppState = Depends(get_state)) -> AggregateSnapshot:
        return state.store.aggregation.latest

    @app.get("/services", response_model=List[Service])
    def list_services(state: AppState = Depends(get_state)) -> List[Service]:
        return state.services()

    @app.post("/services/{service_id}/active", response_model=Service)
    def toggle_service(
        service_id: str, body: ToggleServiceRequest, state: AppState = Depends(get_state)
    ) -> Service:
        return state.toggle_service(service_id, body.active)

    @app.delete("/services/{service_id}", response_model=Service)
    def delete_service(service_id: str, state: AppState = Depends(get_state)) -> Service:
        return state.delete_service(service_id)

    @app.get("/users", response_model=List[User])
    def list_users(state: AppState = Depends(get_state)) -> List[User]:
        return state.users()

    @app.get("/settings", response_model=Settings)
    def get_settings(state: AppState = Depends(get_state)) -> Settings:
        return state.settings_view()

    @app.put("/settings", response_model=Settings)
    def update_settings(update: SettingsUpdate, state: AppState = Depends(get_state)) -> Settings:
        return state.update_settings(**update.model_dump(exclude_none=True))

    @app.get("/sync", response_model=SyncStatus)
    def sync_status(state: AppState = Depends(get_state)) -> SyncStatus:
        return state.sync_status()

    @app.post("/sync/refresh", response_model=SyncStatus)
    def refresh_now(state: AppState = Depends(get_state)) -> SyncStatus:
        return state.refresh_now()

    return app


app = create_app()
