from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from .world import BlockPos, WorldAccessor

LOG = logging.getLogger(__name__)

DEFAULT_BLOCKS_PER_TICK = 100

MutationEntry = tuple[BlockPos, str]


class JobKind(str, Enum):
    REFRESH = "refresh"
    CLEAR = "clear"


def ns_to_ms(nanos: int) -> float:
    return nanos / 1_000_000.0


def blocks_per_second(blocks: int, nanos: int) -> float:
    if nanos <= 0:
        return float(blocks)
    return blocks / (nanos / 1_000_000_000.0)


@dataclass
class RefreshMetrics:
    start_ns: int
    prepare_ns: int
    total_blocks: int
    blocks_processed: int = 0
    ticks_taken: int = 0


@dataclass
class RefreshJob:
    site: str
    dimension: str
    kind: JobKind
    entries: deque[MutationEntry] = field(repr=False)
    metrics: RefreshMetrics


@dataclass(frozen=True)
class CompletionReport:
    site: str
    kind: JobKind
    total_blocks: int
    blocks_processed: int
    ticks_taken: int
    total_ms: float
    active_ms: float
    prepare_ms: float
    avg_blocks_per_tick: float
    blocks_per_second: float
    efficiency: float

    @classmethod
    def from_metrics(cls, job: RefreshJob, now_ns: int) -> "CompletionReport":
        metrics = job.metrics
        active_ns = max(0, now_ns - metrics.start_ns)
        total_ns = active_ns + metrics.prepare_ns
        return cls(
            site=job.site,
            kind=job.kind,
            total_blocks=metrics.total_blocks,
            blocks_processed=metrics.blocks_processed,
            ticks_taken=metrics.ticks_taken,
            total_ms=ns_to_ms(total_ns),
            active_ms=ns_to_ms(active_ns),
            prepare_ms=ns_to_ms(metrics.prepare_ns),
            avg_blocks_per_tick=metrics.total_blocks / metrics.ticks_taken if metrics.ticks_taken else 0.0,
            blocks_per_second=blocks_per_second(metrics.total_blocks, active_ns),
            efficiency=(active_ns / total_ns * 100.0) if total_ns else 100.0,
        )

    def log_lines(self) -> list[str]:
        return [
            f"[PERF] {self.kind.value.capitalize()} completed for site '{self.site}'",
            f"[PERF]   Total blocks: {self.total_blocks} (applied: {self.blocks_processed})",
            f"[PERF]   Total time: {self.total_ms:.3f} ms (active: {self.active_ms:.3f} ms)",
            f"[PERF]   Prepare time: {self.prepare_ms:.3f} ms",
            f"[PERF]   Ticks taken: {self.ticks_taken}",
            f"[PERF]   Average blocks/tick: {self.avg_blocks_per_tick:.1f}",
            f"[PERF]   Average blocks/second: {self.blocks_per_second:.1f}",
            f"[PERF]   Efficiency: {self.efficiency:.2f}%",
        ]


class BlockMutationQueue:
    """Per-site FIFO of block writes drained by the host tick.

    Installing a job for a site replaces whatever job was there. Positions in
    unloaded chunks are dropped, not retried.
    """

    def __init__(self, clock_ns=time.perf_counter_ns) -> None:
        self._clock_ns = clock_ns
        self._jobs: dict[str, RefreshJob] = {}
        self._lock = threading.Lock()

    def install(
        self,
        site: str,
        dimension: str,
        entries: Iterable[MutationEntry],
        *,
        kind: JobKind = JobKind.REFRESH,
        prepare_ns: int = 0,
    ) -> RefreshJob:
        queued = deque(entries)
        job = RefreshJob(
            site=site,
            dimension=dimension,
            kind=kind,
            entries=queued,
            metrics=RefreshMetrics(start_ns=self._clock_ns(), prepare_ns=prepare_ns, total_blocks=len(queued)),
        )
        with self._lock:
            replaced = self._jobs.get(site)
            self._jobs[site] = job
        if replaced is not None and replaced.entries:
            LOG.info(
                "Replaced in-flight %s job for site %s (%d blocks abandoned)",
                replaced.kind.value,
                site,
                len(replaced.entries),
            )
        return job

    def drain(self, site: str, world: WorldAccessor, budget: int = DEFAULT_BLOCKS_PER_TICK) -> int:
        with self._lock:
            job = self._jobs.get(site)
            if job is None:
                return 0
            batch = [job.entries.popleft() for _ in range(min(budget, len(job.entries)))]

        tick_start = self._clock_ns()
        applied = 0
        for pos, state in batch:
            if world.is_loaded(pos, job.dimension):
                world.set_block(pos, job.dimension, state)
                applied += 1
        elapsed = self._clock_ns() - tick_start

        with self._lock:
            job.metrics.blocks_processed += applied
            job.metrics.ticks_taken += 1
        LOG.debug(
            "[PERF] Site '%s' processed %d blocks in %.3f ms (%.1f blocks/s)",
            site,
            applied,
            ns_to_ms(elapsed),
            blocks_per_second(applied, elapsed),
        )
        return applied

    def remaining(self, site: str) -> int:
        with self._lock:
            job = self._jobs.get(site)
            return len(job.entries) if job else 0

    def has_job(self, site: str) -> bool:
        with self._lock:
            return site in self._jobs

    def job_kind(self, site: str) -> Optional[JobKind]:
        with self._lock:
            job = self._jobs.get(site)
            return job.kind if job else None

    def sites(self) -> list[str]:
        with self._lock:
            return list(self._jobs)

    def is_complete(self, site: str) -> bool:
        with self._lock:
            job = self._jobs.get(site)
            return job is None or not job.entries

    def take_completion(self, site: str) -> Optional[CompletionReport]:
        with self._lock:
            job = self._jobs.get(site)
            if job is None or job.entries:
                return None
            del self._jobs[site]
        return CompletionReport.from_metrics(job, self._clock_ns())

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()
