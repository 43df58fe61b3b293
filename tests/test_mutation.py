from __future__ import annotations

import itertools
import math

from minesite.mutation import BlockMutationQueue, JobKind
from minesite.world import BlockPos, MemoryWorld

OVERWORLD = "minecraft:overworld"


def cells(count: int, state: str = "minecraft:stone") -> list[tuple[BlockPos, str]]:
    return [(BlockPos(index, 60, 0), state) for index in range(count)]


def fake_clock():
    counter = itertools.count(step=1_000_000)
    return lambda: next(counter)


def test_drain_respects_budget_and_completes_once():
    queue = BlockMutationQueue(clock_ns=fake_clock())
    world = MemoryWorld()
    queue.install("mine1", OVERWORLD, cells(250))

    removed = []
    completions = []
    for _ in range(math.ceil(250 / 100)):
        before = queue.remaining("mine1")
        queue.drain("mine1", world, 100)
        removed.append(before - queue.remaining("mine1"))
        report = queue.take_completion("mine1")
        if report is not None:
            completions.append(report)

    assert removed == [100, 100, 50]
    assert len(completions) == 1
    assert queue.take_completion("mine1") is None
    assert not queue.has_job("mine1")

    report = completions[0]
    assert report.total_blocks == 250
    assert report.blocks_processed == 250
    assert report.ticks_taken == 3
    assert report.kind is JobKind.REFRESH


def test_unloaded_positions_are_dropped():
    queue = BlockMutationQueue(clock_ns=fake_clock())
    world = MemoryWorld(unloaded_chunks={(OVERWORLD, 1, 0)})
    entries = [(BlockPos(0, 60, 0), "minecraft:stone"), (BlockPos(20, 60, 0), "minecraft:stone")]
    queue.install("mine1", OVERWORLD, entries)

    applied = queue.drain("mine1", world, 100)
    report = queue.take_completion("mine1")

    assert applied == 1
    assert world.block_at(BlockPos(0, 60, 0)) == "minecraft:stone"
    assert world.block_at(BlockPos(20, 60, 0)) == "minecraft:air"
    assert report.total_blocks == 2
    assert report.blocks_processed == 1


def test_install_replaces_in_flight_job():
    queue = BlockMutationQueue(clock_ns=fake_clock())
    world = MemoryWorld()
    queue.install("mine1", OVERWORLD, cells(300, "minecraft:stone"))
    queue.drain("mine1", world, 100)

    queue.install("mine1", OVERWORLD, cells(5, "minecraft:air"), kind=JobKind.CLEAR)

    assert queue.remaining("mine1") == 5
    assert queue.job_kind("mine1") is JobKind.CLEAR
    queue.drain("mine1", world, 100)
    report = queue.take_completion("mine1")
    assert report.kind is JobKind.CLEAR
    assert report.total_blocks == 5


def test_drain_without_job_is_noop():
    queue = BlockMutationQueue()

    assert queue.drain("missing", MemoryWorld(), 100) == 0
    assert queue.is_complete("missing")


def test_empty_job_completes_on_first_drain():
    queue = BlockMutationQueue(clock_ns=fake_clock())
    queue.install("mine1", OVERWORLD, [])

    assert queue.drain("mine1", MemoryWorld(), 100) == 0
    report = queue.take_completion("mine1")
    assert report is not None
    assert report.total_blocks == 0
    assert report.avg_blocks_per_tick == 0.0


def test_report_log_lines_include_perf_figures():
    queue = BlockMutationQueue(clock_ns=fake_clock())
    queue.install("mine1", OVERWORLD, cells(10), prepare_ns=2_000_000)
    queue.drain("mine1", MemoryWorld(), 100)

    lines = queue.take_completion("mine1").log_lines()

    assert lines[0] == "[PERF] Refresh completed for site 'mine1'"
    assert any("Prepare time: 2.000 ms" in line for line in lines)
    assert all(line.startswith("[PERF]") for line in lines)


def test_clear_drops_every_job():
    queue = BlockMutationQueue()
    queue.install("a", OVERWORLD, cells(3))
    queue.install("b", OVERWORLD, cells(3))

    queue.clear()

    assert queue.sites() == []
