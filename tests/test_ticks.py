from __future__ import annotations

import threading

from minesite.ticks import TickLoop


def test_tick_loop_calls_tick_repeatedly():
    seen = threading.Event()
    calls = []

    def tick() -> int:
        calls.append(1)
        if len(calls) >= 3:
            seen.set()
        return 0

    loop = TickLoop(tick, interval_ms=5)
    loop.start()
    try:
        assert seen.wait(2)
    finally:
        loop.stop()
    assert loop.ticks >= 3


def test_run_once_survives_failing_tick():
    def tick() -> int:
        raise RuntimeError("boom")

    loop = TickLoop(tick)

    assert loop.run_once() == 0
    assert loop.ticks == 1


def test_stop_without_start_is_noop():
    TickLoop(lambda: 0).stop()
