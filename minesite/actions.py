from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Callable, Optional, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from . import timetable
from .blocks import BlockRegistry, WeightedRandomPicker
from .errors import ActionError, ConfigError, SiteNotFoundError
from .models import CreateSiteRequest, MineEntry, SiteConfig, TimeTableEntry
from .mutation import DEFAULT_BLOCKS_PER_TICK
from .notifications import NotificationScheduler
from .orchestrator import RefreshOrchestrator
from .store import JsonSiteStore, utcnow
from .world import WorldAccessor, parse_block_pos

LOG = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class AppSettings:
    config_path: Path
    api_token: str
    timezone: Optional[str]
    blocks_per_tick: int
    tick_interval_ms: int
    scheduler_workers: int
    log_level: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        try:
            blocks_per_tick = int(os.environ.get("MINESITE_BLOCKS_PER_TICK", str(DEFAULT_BLOCKS_PER_TICK)))
            tick_interval_ms = int(os.environ.get("MINESITE_TICK_INTERVAL_MS", "50"))
            scheduler_workers = int(os.environ.get("MINESITE_SCHEDULER_WORKERS", "4"))
        except ValueError as exc:
            raise ConfigError(f"Invalid numeric setting: {exc}") from exc
        return cls(
            config_path=Path(os.environ.get("MINESITE_CONFIG_PATH", "./config/minesite.json")).resolve(),
            api_token=os.environ.get("MINESITE_API_TOKEN", ""),
            timezone=os.environ.get("MINESITE_TIMEZONE") or None,
            blocks_per_tick=max(1, blocks_per_tick),
            tick_interval_ms=max(1, tick_interval_ms),
            scheduler_workers=max(1, scheduler_workers),
            log_level=os.environ.get("MINESITE_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def tz(self) -> Optional[tzinfo]:
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ConfigError(f"Unknown timezone {self.timezone!r}") from exc


@dataclass
class ActionResult:
    ok: bool
    message: str
    not_found: bool = False
    data: Optional[object] = field(default=None, repr=False)

    @classmethod
    def failed(cls, exc: ActionError) -> "ActionResult":
        return cls(ok=False, message=str(exc), not_found=isinstance(exc, SiteNotFoundError))


def new_site(request: CreateSiteRequest) -> SiteConfig:
    """Record for a freshly created site: inactive, open all week, filled with stone."""
    now = utcnow()
    return SiteConfig(
        name=request.name,
        creator=request.creator,
        description="New mine site",
        world=request.world,
        pos1=request.pos1,
        pos2=request.pos2,
        safety_point=None,
        status="inactive",
        broadcast_interval=300,
        refresh_interval=60,
        time_table=[TimeTableEntry(weekday=day) for day in range(7)],
        mines=[MineEntry(block="minecraft:stone", weight=1)],
        create_time=now,
        last_update_time=now,
        last_refresh_time=None,
    )


class SiteService:
    """Entry point for every command that changes or inspects mine sites."""

    def __init__(self, store: JsonSiteStore, orchestrator: RefreshOrchestrator) -> None:
        self.store = store
        self.orchestrator = orchestrator

    def _attempt(self, fn: Callable[[], T], success: Callable[[T], str]) -> ActionResult:
        try:
            value = fn()
        except ActionError as exc:
            LOG.warning("Site action failed: %s", exc)
            return ActionResult.failed(exc)
        return ActionResult(ok=True, message=success(value), data=value)

    def _require(self, name: str) -> SiteConfig:
        site = self.store.get(name)
        if site is None:
            raise SiteNotFoundError(name)
        return site

    def _update(self, name: str, **changes: object) -> SiteConfig:
        site = self._require(name)
        updated = site.model_copy(update={**changes, "last_update_time": utcnow()})
        self.store.save(updated)
        self.orchestrator.reload()
        return updated

    def list_sites(self) -> ActionResult:
        sites = self.orchestrator.snapshot()
        return ActionResult(ok=True, message=f"{len(sites)} mine sites", data=sites)

    def site_status(self, name: str) -> ActionResult:
        def status() -> dict[str, object]:
            site = self.orchestrator.site(name)
            if site is None:
                raise SiteNotFoundError(name)
            now = self.orchestrator.now()
            state = self.orchestrator.state_of(name)
            return {
                "site": site.to_record(),
                "state": state.value if state else None,
                "open_now": site.active and timetable.is_open_now(site, now),
                "full_day_close": timetable.is_full_day_close(site, now),
                "seconds_until_transition": timetable.seconds_until_next_transition(site, now),
                "pending_blocks": self.orchestrator.mutations.remaining(name),
            }

        return self._attempt(status, lambda _: f"Mine site '{name}'")

    def create(self, request: CreateSiteRequest) -> ActionResult:
        def create() -> SiteConfig:
            site = new_site(request)
            self.store.add(site)
            self.orchestrator.reload()
            return site

        return self._attempt(create, lambda site: f"Mine site '{site.name}' created")

    def enable(self, name: str) -> ActionResult:
        result = self._attempt(
            lambda: self._update(name, status="active"), lambda _: f"Mine site '{name}' enabled"
        )
        if not result.ok:
            return result
        try:
            self.orchestrator.force_refresh(name, ignore_timetable=False)
        except ActionError as exc:
            result.message = f"{result.message}; first refresh deferred: {exc}"
        return result

    def disable(self, name: str) -> ActionResult:
        return self._attempt(
            lambda: self._update(name, status="inactive"), lambda _: f"Mine site '{name}' disabled"
        )

    def delete(self, name: str) -> ActionResult:
        def delete() -> None:
            if not self.store.delete(name):
                raise SiteNotFoundError(name)
            self.orchestrator.reload()

        return self._attempt(delete, lambda _: f"Mine site '{name}' deleted")

    def set_safety_point(self, name: str, position: str) -> ActionResult:
        def update() -> SiteConfig:
            pos = parse_block_pos(position)
            return self._update(name, safety_point=str(pos))

        return self._attempt(update, lambda site: f"Safety point of '{name}' set to {site.safety_point}")

    def force_refresh(self, name: str, ignore_timetable: bool = True) -> ActionResult:
        return self._attempt(
            lambda: self.orchestrator.force_refresh(name, ignore_timetable),
            lambda _: f"Refresh of mine site '{name}' started",
        )

    def reload(self) -> ActionResult:
        return self._attempt(self.orchestrator.reload, lambda count: f"Reloaded {count} mine sites")

    def schedule_open_or_close(self, name: str, open_site: bool, delay_seconds: int) -> ActionResult:
        verb = "open" if open_site else "close"
        return self._attempt(
            lambda: self.orchestrator.schedule_open_or_close(name, open_site, delay_seconds),
            lambda _: f"Mine site '{name}' will {verb} in {delay_seconds}s",
        )

    def schedule_refresh(self, name: str, delay_seconds: int) -> ActionResult:
        return self._attempt(
            lambda: self.orchestrator.schedule_refresh(name, delay_seconds, ignore_timetable=False),
            lambda _: f"Mine site '{name}' will refresh in {delay_seconds}s",
        )


def build_orchestrator(
    settings: AppSettings,
    store: JsonSiteStore,
    world: WorldAccessor,
    scheduler: NotificationScheduler,
    registry: Optional[BlockRegistry] = None,
    picker: Optional[WeightedRandomPicker] = None,
) -> RefreshOrchestrator:
    return RefreshOrchestrator(
        store,
        world,
        scheduler,
        registry=registry,
        picker=picker,
        tz=settings.tz,
        blocks_per_tick=settings.blocks_per_tick,
    )
