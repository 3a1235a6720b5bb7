from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, List, Optional

import requests
from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import models
from .auth import AuthService, bearer_token, current_user, get_auth
from .config import Settings, settings
from .database import build_session_factory, engine as default_engine, get_db
from .errors import AuthError, DailyGrindError
from .middleware import RequestLogMiddleware
from .records import UserRecord
from .repository import SqlRepository
from .schemas import (
    ActivityGroupResponse,
    DayOverviewResponse,
    DayTotalResponse,
    ExportRequest,
    ExportResponse,
    InternalActivityRequest,
    InternalActivityTimerRequest,
    LoginRequest,
    OutboxEntryResponse,
    OutboxFlushResponse,
    OutboxResponse,
    ProjectBreakdownResponse,
    ProjectCreateRequest,
    ProjectResponse,
    ProjectUpdateRequest,
    RegisterRequest,
    SidebarResponse,
    TaskSuggestionsResponse,
    TimeEntryCreateRequest,
    TimeEntryCreateResponse,
    TimeEntryResponse,
    TimeEntryUpdateRequest,
    TimerStartRequest,
    TimerStatusResponse,
    TimerStopResponse,
    TokenResponse,
    UserResponse,
    WeeklyReportResponse,
    WeekOverviewResponse,
)
from . import services
from .state import AppState, Workspace
from .storage import LocalStore
from .summarizer import SummarizerClient
from .timer import Running, Scheduler, ThreadingScheduler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_app_state(request: Request) -> AppState:
    return request.app.state.app_state


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_summarizer(request: Request) -> SummarizerClient:
    return request.app.state.summarizer


def get_workspace(
    user: UserRecord = Depends(current_user),
    app_state: AppState = Depends(get_app_state),
) -> Workspace:
    return app_state.workspace(user.id)


def _project(record) -> ProjectResponse:
    return ProjectResponse.model_validate(record)


def _entry(record) -> TimeEntryResponse:
    return TimeEntryResponse.model_validate(record)


def _timer_status(workspace: Workspace) -> TimerStatusResponse:
    state = workspace.timer.state
    if not isinstance(state, Running):
        return TimerStatusResponse(status="idle")
    return TimerStatusResponse(
        status="running",
        project_id=state.project_id,
        description=state.description,
        start_time=state.start_time,
        elapsed_seconds=workspace.timer.elapsed(),
    )


# ---------------------------------------------------------------------------
# Health & auth
# ---------------------------------------------------------------------------
@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/auth/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, auth: AuthService = Depends(get_auth)) -> UserResponse:
    user = auth.register(payload.email, payload.password)
    return UserResponse.model_validate(user)


@router.post("/auth/login", response_model=TokenResponse)
def login(payload: LoginRequest, auth: AuthService = Depends(get_auth)) -> TokenResponse:
    user, token = auth.sign_in(payload.email, payload.password)
    return TokenResponse(token=token, user=UserResponse.model_validate(user))


@router.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(token: str = Depends(bearer_token), auth: AuthService = Depends(get_auth)) -> Response:
    if auth.sign_out(token) is None:
        raise AuthError("Not authenticated")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/auth/me", response_model=UserResponse)
def me(user: UserRecord = Depends(current_user)) -> UserResponse:
    return UserResponse.model_validate(user)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------
@router.get("/projects", response_model=List[ProjectResponse])
def list_projects(
    include_bucket: bool = False,
    workspace: Workspace = Depends(get_workspace),
) -> List[ProjectResponse]:
    return [_project(project) for project in services.list_projects(workspace, include_bucket=include_bucket)]


@router.post("/projects", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
def create_project(payload: ProjectCreateRequest, workspace: Workspace = Depends(get_workspace)) -> ProjectResponse:
    return _project(services.create_project(workspace, payload))


@router.get("/projects/{project_id}", response_model=ProjectResponse)
def get_project(project_id: str, workspace: Workspace = Depends(get_workspace)) -> ProjectResponse:
    return _project(workspace.require_project(project_id))


@router.patch("/projects/{project_id}", response_model=ProjectResponse)
def update_project(
    project_id: str,
    payload: ProjectUpdateRequest,
    workspace: Workspace = Depends(get_workspace),
) -> ProjectResponse:
    return _project(services.update_project(workspace, project_id, payload))


@router.delete("/projects/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(project_id: str, workspace: Workspace = Depends(get_workspace)) -> Response:
    services.delete_project(workspace, project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/projects/{project_id}/entries", response_model=List[TimeEntryResponse])
def project_entries(project_id: str, workspace: Workspace = Depends(get_workspace)) -> List[TimeEntryResponse]:
    return [_entry(entry) for entry in services.list_entries(workspace, project_id=project_id)]


@router.post("/projects/{project_id}/suggestions", response_model=TaskSuggestionsResponse)
def project_suggestions(
    project_id: str,
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
    summarizer: SummarizerClient = Depends(get_summarizer),
) -> TaskSuggestionsResponse:
    suggestions = services.suggest_tasks(workspace, summarizer, project_id, app_state.tz)
    return TaskSuggestionsResponse(**suggestions.model_dump())


# ---------------------------------------------------------------------------
# Time entries
# ---------------------------------------------------------------------------
@router.get("/entries", response_model=List[TimeEntryResponse])
def list_entries(
    day: Optional[dt.date] = None,
    project_id: Optional[str] = None,
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> List[TimeEntryResponse]:
    entries = services.list_entries(workspace, project_id=project_id, day=day, tz=app_state.tz)
    return [_entry(entry) for entry in entries]


@router.post("/entries", response_model=TimeEntryCreateResponse, status_code=status.HTTP_201_CREATED)
def create_entry(
    payload: TimeEntryCreateRequest,
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> TimeEntryCreateResponse:
    entry, warning = services.create_time_entry(
        workspace,
        payload,
        now=app_state.now(),
        tz=app_state.tz,
        limit_hours=app_state.settings.daily_limit_hours,
    )
    return TimeEntryCreateResponse(entry=_entry(entry), warning=warning)


@router.patch("/entries/{entry_id}", response_model=TimeEntryResponse)
def update_entry(
    entry_id: str,
    payload: TimeEntryUpdateRequest,
    workspace: Workspace = Depends(get_workspace),
) -> TimeEntryResponse:
    return _entry(services.update_time_entry(workspace, entry_id, payload))


@router.delete("/entries/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_entry(entry_id: str, workspace: Workspace = Depends(get_workspace)) -> Response:
    services.delete_time_entry(workspace, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Internal activities
# ---------------------------------------------------------------------------
@router.post("/activities", response_model=TimeEntryCreateResponse, status_code=status.HTTP_201_CREATED)
def log_activity(
    payload: InternalActivityRequest,
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> TimeEntryCreateResponse:
    entry, warning = services.log_internal_activity(
        workspace,
        app_state.settings,
        payload,
        now=app_state.now(),
        tz=app_state.tz,
    )
    return TimeEntryCreateResponse(entry=_entry(entry), warning=warning)


@router.post("/activities/timer", response_model=TimerStatusResponse, status_code=status.HTTP_201_CREATED)
def start_activity_timer(
    payload: InternalActivityTimerRequest,
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> TimerStatusResponse:
    services.start_internal_activity_timer(workspace, app_state.settings, payload)
    return _timer_status(workspace)


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------
@router.get("/timer", response_model=TimerStatusResponse)
def timer_status(workspace: Workspace = Depends(get_workspace)) -> TimerStatusResponse:
    return _timer_status(workspace)


@router.post("/timer/start", response_model=TimerStatusResponse, status_code=status.HTTP_201_CREATED)
def timer_start(payload: TimerStartRequest, workspace: Workspace = Depends(get_workspace)) -> TimerStatusResponse:
    services.start_timer(workspace, payload.project_id, payload.description)
    return _timer_status(workspace)


@router.post("/timer/stop", response_model=TimerStopResponse)
def timer_stop(
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> TimerStopResponse:
    result, warning = services.stop_timer(
        workspace,
        now=app_state.now(),
        tz=app_state.tz,
        limit_hours=app_state.settings.daily_limit_hours,
    )
    if result is None:
        return TimerStopResponse(timer=_timer_status(workspace))
    return TimerStopResponse(
        entry_id=result.entry.id if result.entry else None,
        delivered=result.delivered,
        pending=result.pending,
        error=result.error,
        warning=warning,
        timer=_timer_status(workspace),
    )


@router.get("/outbox", response_model=OutboxResponse)
def outbox(workspace: Workspace = Depends(get_workspace)) -> OutboxResponse:
    pending = [
        OutboxEntryResponse(
            id=draft.id,
            project_id=draft.project_id,
            description=draft.description,
            start_time=draft.start_time,
            end_time=draft.end_time,
        )
        for draft in workspace.outbox.pending()
    ]
    return OutboxResponse(pending=pending)


@router.post("/outbox/flush", response_model=OutboxFlushResponse)
def outbox_flush(workspace: Workspace = Depends(get_workspace)) -> OutboxFlushResponse:
    result = workspace.flush_outbox()
    return OutboxFlushResponse(
        delivered=result.delivered,
        dropped=result.dropped,
        remaining=result.remaining,
        error=result.error,
    )


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------
@router.get("/views/sidebar", response_model=SidebarResponse)
def sidebar(
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> SidebarResponse:
    groups = services.sidebar_groups(workspace, app_state.now(), app_state.tz)
    return SidebarResponse(
        groups=[
            ActivityGroupResponse(
                label=group.label,
                day=group.day,
                total_ms=group.total_ms,
                projects=[_project(project) for project in group.projects],
            )
            for group in groups
        ]
    )


@router.get("/views/day/{day}", response_model=DayOverviewResponse)
def day_view(
    day: dt.date,
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> DayOverviewResponse:
    overview = services.day_view(workspace, day, app_state.tz)
    return DayOverviewResponse(
        day=overview.day,
        total_ms=overview.total_ms,
        entries=[_entry(entry) for entry in overview.entries],
        breakdown=[ProjectBreakdownResponse.model_validate(row) for row in overview.breakdown],
    )


@router.get("/views/week", response_model=WeekOverviewResponse)
def week_view(
    start: Optional[dt.date] = None,
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> WeekOverviewResponse:
    first, totals = services.week_view(workspace, start, app_state.now(), app_state.tz)
    return WeekOverviewResponse(start=first, days=[DayTotalResponse.model_validate(row) for row in totals])


# ---------------------------------------------------------------------------
# Reports & exports
# ---------------------------------------------------------------------------
@router.post("/reports/weekly", response_model=WeeklyReportResponse)
def weekly_report(
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
    summarizer: SummarizerClient = Depends(get_summarizer),
) -> WeeklyReportResponse:
    report = services.weekly_report(workspace, summarizer, app_state.now(), app_state.tz)
    return WeeklyReportResponse(**report.model_dump())


@router.post("/exports", response_model=ExportResponse, status_code=status.HTTP_201_CREATED)
def create_export(
    payload: ExportRequest,
    db: Session = Depends(get_db),
    workspace: Workspace = Depends(get_workspace),
    app_state: AppState = Depends(get_app_state),
) -> ExportResponse:
    export = services.export_entries(
        db,
        workspace,
        Path(app_state.settings.export_dir),
        payload.format,
        payload.start_date,
        payload.end_date,
        app_state.tz,
    )
    return ExportResponse.model_validate(export)


@router.get("/exports", response_model=List[ExportResponse])
def list_exports(
    db: Session = Depends(get_db),
    user: UserRecord = Depends(current_user),
) -> List[ExportResponse]:
    return [ExportResponse.model_validate(export) for export in services.list_exports(db, user.id)]


@router.get("/exports/{export_id}")
def download_export(
    export_id: int,
    db: Session = Depends(get_db),
    user: UserRecord = Depends(current_user),
) -> FileResponse:
    export = services.get_export(db, user.id, export_id)
    path = Path(export.path)
    return FileResponse(path, filename=path.name)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
async def _handle_domain_error(request: Request, exc: DailyGrindError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


def create_app(
    app_settings: Optional[Settings] = None,
    db_engine: Optional[Engine] = None,
    scheduler: Optional[Scheduler] = None,
    clock: Optional[Callable[[], dt.datetime]] = None,
    summarizer_session: Optional[requests.Session] = None,
) -> FastAPI:
    app_settings = app_settings or settings
    app_settings.ensure_directories()
    logging.basicConfig(level=app_settings.log_level, format=LOG_FORMAT)

    db_engine = db_engine or default_engine
    models.Base.metadata.create_all(bind=db_engine)
    session_factory = build_session_factory(db_engine)

    repository = SqlRepository(session_factory)
    app_state = AppState(
        repository,
        LocalStore(app_settings.state_dir),
        app_settings,
        scheduler=scheduler if scheduler is not None else ThreadingScheduler(),
        clock=clock,
    )
    auth = AuthService(
        session_factory,
        token_ttl_hours=app_settings.token_ttl_hours,
        token_secret=app_settings.token_secret,
        allow_registration=app_settings.allow_registration,
    )
    summarizer = SummarizerClient(
        app_settings.summarizer_url,
        api_key=app_settings.summarizer_api_key,
        timeout=app_settings.summarizer_timeout,
        session=summarizer_session,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        stop_listening = auth.on_auth_changed(app_state.handle_auth_change)
        logger.info("%s started with %s", app_settings.app_name, db_engine.url)
        try:
            yield
        finally:
            stop_listening()
            app_state.close()

    app = FastAPI(title=app_settings.app_name, lifespan=lifespan)
    app.state.settings = app_settings
    app.state.session_factory = session_factory
    app.state.repository = repository
    app.state.app_state = app_state
    app.state.auth = auth
    app.state.summarizer = summarizer
    app.add_middleware(RequestLogMiddleware)
    app.add_exception_handler(DailyGrindError, _handle_domain_error)
    app.include_router(router)
    return app


app = create_app()
