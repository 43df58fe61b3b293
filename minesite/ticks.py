from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

LOG = logging.getLogger(__name__)

TickCallable = Callable[[], int]


class TickLoop:
    """Fixed-rate driver standing in for the host server tick.

    Each iteration calls ``tick`` once; the callable is the only code path that
    writes to the world, so there is exactly one writer thread.
    """

    def __init__(self, tick: TickCallable, interval_ms: int = 50) -> None:
        self._tick = tick
        self._interval = max(1, interval_ms) / 1000.0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="minesite-tick", daemon=True)
        self._thread.start()
        LOG.info("Tick loop started at %.0f ms per tick", self._interval * 1000)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=5)
        self._thread = None

    def run_once(self) -> int:
        try:
            return self._tick()
        except Exception:  # noqa: BLE001
            LOG.exception("Tick failed")
            return 0
        finally:
            self.ticks += 1

    def _loop(self) -> None:
        next_at = time.monotonic()
        while not self._stop.is_set():
            self.run_once()
            next_at += self._interval
            delay = next_at - time.monotonic()
            if delay < 0:
                # Fell behind: skip missed ticks instead of bursting.
                next_at = time.monotonic()
                delay = 0
            self._stop.wait(delay)
