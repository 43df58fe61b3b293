from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Callable, Optional

from . import timetable
from .blocks import EMPTY_BLOCK_STATE, BlockRegistry, WeightedRandomPicker, weighted_entries
from .cache import ReloadCoordinator, SiteCache, SiteStore
from .errors import ActionError, InvalidPositionError, SiteNotFoundError
from .models import SiteConfig
from .mutation import DEFAULT_BLOCKS_PER_TICK, BlockMutationQueue, CompletionReport, JobKind, ns_to_ms
from .notifications import NotificationScheduler, TaskCallable
from .store import utcnow
from .world import BlockPos, RegionBounds, WorldAccessor

LOG = logging.getLogger(__name__)

COUNTDOWN_SECONDS = 10
URGENT_SECONDS = 3
NOTICE_LEAD = timedelta(minutes=5)
MIN_RECHECK_SECONDS = 1


class SiteState(str, Enum):
    CLOSED_WAITING = "closed_waiting"
    OPEN_IDLE = "open_idle"
    COUNTDOWN = "countdown"
    EVACUATING = "evacuating"
    MUTATING = "mutating"


@dataclass(frozen=True)
class Evacuation:
    bounds: RegionBounds
    safety: Optional[BlockPos]
    dimension: str
    kind: JobKind


class RefreshOrchestrator:
    def __init__(
        self,
        store: SiteStore,
        world: WorldAccessor,
        scheduler: NotificationScheduler,
        *,
        mutations: Optional[BlockMutationQueue] = None,
        registry: Optional[BlockRegistry] = None,
        picker: Optional[WeightedRandomPicker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
        blocks_per_tick: int = DEFAULT_BLOCKS_PER_TICK,
    ) -> None:
        self._store = store
        self._world = world
        self._scheduler = scheduler
        self._mutations = mutations or BlockMutationQueue()
        self._registry = registry or BlockRegistry()
        self._picker = picker or WeightedRandomPicker()
        self._tz = tz
        self._clock = clock or (lambda: datetime.now(tz=self._tz).astimezone(self._tz))
        self._blocks_per_tick = max(1, blocks_per_tick)
        self._cache = SiteCache()
        self._reloader = ReloadCoordinator(self._cache, store, scheduler, self._mutations)
        self._states: dict[str, SiteState] = {}
        self._cleared: set[str] = set()
        self._evacuations: dict[str, Evacuation] = {}

    def load(self) -> int:
        return self.reload()

    def reload(self) -> int:
        return self._reloader.reload(after_swap=self._evaluate_all)

    def _evaluate_all(self) -> None:
        self._states.clear()
        self._cleared.clear()
        self._evacuations.clear()
        for name in self._cache.names():
            try:
                self.evaluate(name)
            except Exception:  # noqa: BLE001
                LOG.exception("Failed to schedule mine site %s", name)

    @property
    def mutations(self) -> BlockMutationQueue:
        return self._mutations

    def now(self) -> datetime:
        return self._clock()

    def state_of(self, name: str) -> Optional[SiteState]:
        with self._cache.lock:
            return self._states.get(name)

    def is_cleared(self, name: str) -> bool:
        with self._cache.lock:
            return name in self._cleared

    def site(self, name: str) -> Optional[SiteConfig]:
        return self._cache.get(name)

    def snapshot(self) -> list[dict[str, object]]:
        now = self.now()
        with self._cache.lock:
            configs = list(self._cache.configs.values())
            states = dict(self._states)
        return [
            {
                "name": config.name,
                "status": config.status,
                "creator": config.creator,
                "world": config.world,
                "state": states[config.name].value if config.name in states else None,
                "open_now": config.active and timetable.is_open_now(config, now),
                "pending_blocks": self._mutations.remaining(config.name),
            }
            for config in configs
        ]

    def evaluate(self, name: str) -> None:
        with self._cache.lock:
            site = self._cache.get(name)
            if site is None:
                LOG.warning("Cannot schedule unknown mine site %s", name)
                return
            now = self.now()

            if not site.active:
                LOG.info("Mine site %s is inactive, no refresh scheduled", name)
                self._set_state(name, SiteState.CLOSED_WAITING)
                self._cancel_cycle(name)
                self._ensure_cleared(site)
                return

            if not timetable.is_open_now(site, now):
                self._enter_closed(site, now)
                return

            self._cleared.discard(name)
            if self._states.get(name) not in (SiteState.COUNTDOWN, SiteState.EVACUATING, SiteState.MUTATING):
                self._set_state(name, SiteState.OPEN_IDLE)
            window = timetable.current_or_next_open_window(site, now)
            if window is not None:
                self._schedule_notices(name, None, window[1], now)

            if site.refresh_interval <= 0:
                self.begin_scheduled_refresh(name)
                return
            next_refresh = now + timedelta(seconds=site.refresh_interval)
            self._scheduler.schedule(f"refresh:{name}", next_refresh, self._guarded(self.begin_scheduled_refresh, name))
            LOG.info("Next refresh of mine site %s at %s", name, next_refresh.isoformat(timespec="seconds"))

    def _enter_closed(self, site: SiteConfig, now: datetime) -> None:
        name = site.name
        wait = timetable.seconds_until_next_transition(site, now)
        LOG.info("Mine site %s is outside its opening hours, re-checking in %s", name, timetable.format_duration(wait))
        self._set_state(name, SiteState.CLOSED_WAITING)
        self._cancel_cycle(name)
        self._ensure_cleared(site)
        window = timetable.current_or_next_open_window(site, now)
        if window is not None:
            self._schedule_notices(name, window[0], window[1], now)
        self._scheduler.schedule_in(
            f"recheck:{name}", max(MIN_RECHECK_SECONDS, wait), self._guarded(self.evaluate, name)
        )

    def _schedule_notices(
        self, name: str, open_at: Optional[datetime], close_at: Optional[datetime], now: datetime
    ) -> None:
        if open_at is not None and open_at - NOTICE_LEAD > now:
            self._scheduler.schedule(
                f"open_notify_{name}", open_at - NOTICE_LEAD, self._guarded(self._announce_edge, name, True)
            )
        if close_at is not None and close_at - NOTICE_LEAD > now:
            self._scheduler.schedule(
                f"close_notify_{name}", close_at - NOTICE_LEAD, self._guarded(self._announce_edge, name, False)
            )

    def _announce_edge(self, name: str, opening: bool) -> None:
        if opening:
            self._world.broadcast(f"§aMine site {name} opens in 5 minutes!")
        else:
            self._world.broadcast(f"§cMine site {name} closes in 5 minutes!")

    def begin_scheduled_refresh(self, name: str) -> None:
        with self._cache.lock:
            site = self._cache.get(name)
            if site is None:
                return
            if not site.active:
                self.evaluate(name)
                return
            now = self.now()
            if timetable.is_full_day_close(site, now) or not timetable.is_open_now(site, now):
                self._enter_closed(site, now)
                return
            self._start_countdown(name, ignore_timetable=False)

    def force_refresh(self, name: str, ignore_timetable: bool = False) -> None:
        with self._cache.lock:
            site = self._cache.get(name)
            if site is None:
                raise SiteNotFoundError(name)
            if not site.active:
                raise ActionError(f"Mine site '{name}' is not active")
            if not ignore_timetable:
                now = self.now()
                if timetable.is_full_day_close(site, now):
                    raise ActionError(f"Mine site '{name}' is closed all day today")
                if not timetable.is_open_now(site, now):
                    raise ActionError(f"Mine site '{name}' is outside its opening hours")
            self._start_countdown(name, ignore_timetable)

    def _start_countdown(self, name: str, ignore_timetable: bool) -> None:
        self._set_state(name, SiteState.COUNTDOWN)
        # Re-armed by the completion of this cycle.
        self._scheduler.cancel(f"refresh:{name}")
        self._world.broadcast(
            f"§6Mine site {name} refreshes in {COUNTDOWN_SECONDS} seconds! "
            "Players inside will be moved to the safety point"
        )
        self._scheduler.schedule_in(
            f"countdown:{name}",
            1,
            self._guarded(self._countdown_step, name, COUNTDOWN_SECONDS - 1, ignore_timetable),
        )

    def _countdown_step(self, name: str, remaining: int, ignore_timetable: bool) -> None:
        if remaining > 0:
            color = "§c" if remaining <= URGENT_SECONDS else "§6"
            self._world.broadcast(f"{color}Mine site {name} refresh countdown: {remaining} seconds!")
            if remaining <= URGENT_SECONDS:
                self._world.broadcast("§cPlayers inside the mine site are about to be teleported!")
            self._scheduler.schedule_in(
                f"countdown:{name}",
                1,
                self._guarded(self._countdown_step, name, remaining - 1, ignore_timetable),
            )
            return
        self._world.broadcast(f"§aMine site {name} is refreshing...")
        self._scheduler.schedule_in(f"prepare:{name}", 0, self._prepare_task(name, JobKind.REFRESH, ignore_timetable))

    def _ensure_cleared(self, site: SiteConfig) -> None:
        if site.name in self._cleared:
            return
        self._cleared.add(site.name)
        LOG.info("Clearing region of mine site %s", site.name)
        self._scheduler.schedule_in(f"prepare:{site.name}", 0, self._prepare_task(site.name, JobKind.CLEAR, True))

    def _prepare_task(self, name: str, kind: JobKind, ignore_timetable: bool) -> TaskCallable:
        epoch = self._cache.epoch
        return lambda: self._prepare(name, kind, ignore_timetable, epoch)

    def _prepare(self, name: str, kind: JobKind, ignore_timetable: bool, epoch: int) -> None:
        started = time.perf_counter_ns()
        with self._cache.lock:
            if epoch != self._cache.epoch:
                return
            site = self._cache.get(name)
            if site is None:
                return
            dimension = self._cache.dimensions.get(name, site.world)
            if kind is JobKind.REFRESH:
                if not site.active:
                    LOG.info("Mine site %s is inactive, skipping refresh", name)
                    self.evaluate(name)
                    return
                now = self.now()
                open_now = not timetable.is_full_day_close(site, now) and timetable.is_open_now(site, now)
                if not open_now and not ignore_timetable:
                    self._enter_closed(site, now)
                    return
                # A forced fill of a closed site keeps its cleared mark.
                if open_now:
                    self._cleared.discard(name)

        # Region enumeration and the per-cell draws stay outside the lock.
        bounds = RegionBounds.from_corners(site.corner1, site.corner2)
        try:
            safety = site.safety_pos()
        except InvalidPositionError as exc:
            LOG.error("Mine site %s has an invalid safety point: %s", name, exc)
            safety = None
        if kind is JobKind.REFRESH:
            choices = weighted_entries(site.mines, self._registry)
            cells = [(pos, self._picker.pick(choices)) for pos in bounds.positions()]
        else:
            cells = [(pos, EMPTY_BLOCK_STATE) for pos in bounds.positions()]
        prepare_ns = time.perf_counter_ns() - started

        with self._cache.lock:
            if epoch != self._cache.epoch:
                LOG.info("Dropped prepared %s of mine site %s, config was reloaded", kind.value, name)
                return
            self._mutations.install(name, dimension, cells, kind=kind, prepare_ns=prepare_ns)
            self._evacuations[name] = Evacuation(bounds=bounds, safety=safety, dimension=dimension, kind=kind)
            if kind is JobKind.REFRESH:
                self._set_state(name, SiteState.EVACUATING)
        LOG.info(
            "[PERF] Prepared %s for site '%s': %d blocks, prepare took %.3f ms",
            kind.value,
            name,
            len(cells),
            ns_to_ms(prepare_ns),
        )

    def tick(self) -> int:
        """Drain one budget of block writes for every site with pending work."""
        applied = 0
        with self._cache.lock:
            for name in self._mutations.sites():
                try:
                    applied += self._tick_site(name)
                except Exception:  # noqa: BLE001
                    LOG.exception("Tick failed for mine site %s", name)
        return applied

    def _tick_site(self, name: str) -> int:
        evacuation = self._evacuations.pop(name, None)
        if evacuation is not None:
            if evacuation.kind is JobKind.REFRESH and self._states.get(name) is SiteState.EVACUATING:
                self._set_state(name, SiteState.MUTATING)
            self._evacuate(name, evacuation)
        applied = self._mutations.drain(name, self._world, self._blocks_per_tick)
        report = self._mutations.take_completion(name)
        if report is not None:
            self._on_complete(report)
        return applied

    def _evacuate(self, name: str, evacuation: Evacuation) -> int:
        safety = evacuation.safety
        if safety is None:
            LOG.warning("Mine site %s has no safety point, players were not moved", name)
            return 0
        moved = 0
        for player in self._world.players_in(evacuation.dimension):
            if player.dimension != evacuation.dimension:
                continue
            if not evacuation.bounds.contains(player.block_position()):
                continue
            self._world.teleport(
                player,
                safety.x + 0.5,
                safety.y,
                safety.z + 0.5,
                evacuation.dimension,
                player.yaw,
                player.pitch,
            )
            self._world.tell(player, f"§eMine site {name} is being reset, you were moved to the safety point")
            moved += 1
        if moved:
            LOG.info("Moved %d players from mine site %s to its safety point", moved, name)
        return moved

    def _on_complete(self, report: CompletionReport) -> None:
        name = report.site
        self._world.broadcast(f"§aMine site {name} {report.kind.value} complete!")
        for line in report.log_lines():
            LOG.info(line)
        LOG.info("Completed %s of mine site: %s", report.kind.value, name)
        if report.kind is JobKind.CLEAR:
            return
        self._set_state(name, SiteState.OPEN_IDLE)
        epoch = self._cache.epoch
        self._scheduler.schedule_in(f"completed:{name}", 0, lambda: self._after_refresh(name, epoch))

    def _after_refresh(self, name: str, epoch: int) -> None:
        with self._cache.lock:
            if epoch != self._cache.epoch or self._cache.get(name) is None:
                return
        try:
            updated = self._store.update(name, last_refresh_time=utcnow())
        except ActionError as exc:
            LOG.error("Failed to record refresh time of mine site %s: %s", name, exc)
            updated = None
        with self._cache.lock:
            if epoch != self._cache.epoch:
                return
            if updated is not None:
                self._cache.put(updated)
            self.evaluate(name)

    def schedule_open_or_close(self, name: str, open_site: bool, delay_seconds: int) -> None:
        with self._cache.lock:
            if self._cache.get(name) is None:
                raise SiteNotFoundError(name)
            epoch = self._cache.epoch
            self._scheduler.schedule_in(
                f"toggle:{name}", max(0, delay_seconds), lambda: self._apply_status(name, open_site, epoch)
            )
        LOG.info("Mine site %s will %s in %ds", name, "open" if open_site else "close", delay_seconds)

    def _apply_status(self, name: str, open_site: bool, epoch: int) -> None:
        with self._cache.lock:
            if epoch != self._cache.epoch or self._cache.get(name) is None:
                return
        updated = self._store.update(
            name, status="active" if open_site else "inactive", last_update_time=utcnow()
        )
        if updated is None:
            LOG.warning("Mine site %s disappeared before its status change", name)
            return
        with self._cache.lock:
            if epoch != self._cache.epoch:
                return
            self._cache.put(updated)
            self._cleared.discard(name)
            self._scheduler.cancel(f"refresh:{name}")
            self.evaluate(name)
            if self._states.get(name) is SiteState.OPEN_IDLE:
                self._start_countdown(name, ignore_timetable=False)

    def schedule_refresh(self, name: str, delay_seconds: int, ignore_timetable: bool = False) -> None:
        with self._cache.lock:
            if self._cache.get(name) is None:
                raise SiteNotFoundError(name)
            self._scheduler.schedule_in(
                f"refresh:{name}",
                max(0, delay_seconds),
                self._guarded(self._delayed_refresh, name, ignore_timetable),
            )
        LOG.info("Mine site %s will refresh in %ds", name, delay_seconds)

    def _delayed_refresh(self, name: str, ignore_timetable: bool) -> None:
        if not ignore_timetable:
            # Stands in for the periodic refresh, closed sites go back to their re-check.
            self.begin_scheduled_refresh(name)
            return
        try:
            self.force_refresh(name, ignore_timetable=True)
        except ActionError as exc:
            LOG.info("Delayed refresh of mine site %s skipped: %s", name, exc)

    def _guarded(self, action: Callable[..., None], *args: object) -> TaskCallable:
        epoch = self._cache.epoch

        def run() -> None:
            with self._cache.lock:
                if epoch != self._cache.epoch:
                    return
                action(*args)

        return run

    def _cancel_cycle(self, name: str) -> None:
        self._scheduler.cancel(f"refresh:{name}")
        self._scheduler.cancel(f"countdown:{name}")

    def _set_state(self, name: str, state: SiteState) -> None:
        previous = self._states.get(name)
        self._states[name] = state
        if previous is not state:
            LOG.debug("Mine site %s: %s -> %s", name, previous.value if previous else None, state.value)
