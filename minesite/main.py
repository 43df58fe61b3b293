from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from . import auth
from .actions import ActionResult, AppSettings, SiteService, build_orchestrator
from .errors import ActionError, SiteNotFoundError
from .models import (
    ActionResponse,
    CreateSiteRequest,
    DelayedSiteRequest,
    RefreshRequest,
    SafetyPointRequest,
    SiteListResponse,
    SiteSummary,
)
from .notifications import NotificationScheduler
from .store import JsonSiteStore
from .ticks import TickLoop
from .world import MemoryWorld

LOG = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = AppSettings.from_env()
    if not settings.api_token:
        raise RuntimeError("MINESITE_API_TOKEN must be configured")

    world = getattr(app.state, "world", None) or MemoryWorld()
    store = JsonSiteStore(settings.config_path)
    scheduler = NotificationScheduler(workers=settings.scheduler_workers)
    orchestrator = build_orchestrator(settings, store, world, scheduler)
    ticks = TickLoop(orchestrator.tick, interval_ms=settings.tick_interval_ms)

    app.state.settings = settings
    app.state.world = world
    app.state.scheduler = scheduler
    app.state.orchestrator = orchestrator
    app.state.service = SiteService(store, orchestrator)
    app.state.ticks = ticks

    scheduler.start()
    try:
        orchestrator.load()
        ticks.start()
        yield
    finally:
        ticks.stop()
        scheduler.stop()


app = FastAPI(title="MineSite", lifespan=lifespan)


def get_service(request: Request) -> SiteService:
    return request.app.state.service


def require_api_token(request: Request) -> None:
    auth.require_api_token(request)


def respond(result: ActionResult) -> ActionResponse:
    if not result.ok:
        code = status.HTTP_404_NOT_FOUND if result.not_found else status.HTTP_400_BAD_REQUEST
        raise HTTPException(status_code=code, detail=result.message)
    return ActionResponse(status="success", message=result.message)


@app.exception_handler(ActionError)
async def action_error_handler(_: Request, exc: ActionError) -> JSONResponse:
    code = status.HTTP_404_NOT_FOUND if isinstance(exc, SiteNotFoundError) else status.HTTP_400_BAD_REQUEST
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/sites", response_model=SiteListResponse)
def api_sites(
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    result = service.list_sites()
    return SiteListResponse(sites=[SiteSummary(**site) for site in result.data])


@app.get("/api/sites/{name}")
def api_site(
    name: str,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    result = service.site_status(name)
    respond(result)
    return result.data


@app.post("/api/sites", response_model=ActionResponse, status_code=status.HTTP_201_CREATED)
def api_site_create(
    payload: CreateSiteRequest,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.create(payload))


@app.delete("/api/sites/{name}", response_model=ActionResponse)
def api_site_delete(
    name: str,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.delete(name))


@app.post("/api/sites/{name}/enable", response_model=ActionResponse)
def api_site_enable(
    name: str,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.enable(name))


@app.post("/api/sites/{name}/disable", response_model=ActionResponse)
def api_site_disable(
    name: str,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.disable(name))


@app.post("/api/sites/{name}/refresh", response_model=ActionResponse)
def api_site_refresh(
    name: str,
    payload: RefreshRequest = RefreshRequest(),
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.force_refresh(name, ignore_timetable=payload.ignore_timetable))


@app.post("/api/sites/{name}/safety-point", response_model=ActionResponse)
def api_site_safety_point(
    name: str,
    payload: SafetyPointRequest,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.set_safety_point(name, payload.position))


@app.post("/api/reload", response_model=ActionResponse)
def api_reload(
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.reload())


@app.post("/api/open", response_model=ActionResponse)
def api_open(
    payload: DelayedSiteRequest,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.schedule_open_or_close(payload.name, True, payload.delay))


@app.post("/api/close", response_model=ActionResponse)
def api_close(
    payload: DelayedSiteRequest,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.schedule_open_or_close(payload.name, False, payload.delay))


@app.post("/api/refresh", response_model=ActionResponse)
def api_refresh(
    payload: DelayedSiteRequest,
    _: None = Depends(require_api_token),
    service: SiteService = Depends(get_service),
):
    return respond(service.schedule_refresh(payload.name, payload.delay))


def main() -> None:
    settings = AppSettings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    host = os.getenv("MINESITE_HOST", "127.0.0.1")
    port = int(os.getenv("MINESITE_PORT", "8080"))
    LOG.info("Starting MineSite config=%s host=%s port=%d", settings.config_path, host, port)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
