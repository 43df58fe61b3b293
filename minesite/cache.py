from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, Protocol

from .models import SiteConfig
from .mutation import BlockMutationQueue
from .notifications import NotificationScheduler

LOG = logging.getLogger(__name__)


class SiteStore(Protocol):
    def get_all(self) -> list[SiteConfig]: ...

    def get(self, name: str) -> Optional[SiteConfig]: ...

    def save(self, config: SiteConfig) -> None: ...

    def update(self, name: str, **changes: object) -> Optional[SiteConfig]: ...

    def force_reload(self) -> None: ...


class SiteCache:
    """Read-optimised copy of the site configs shared by the tick loop and tasks.

    ``lock`` guards every field. ``epoch`` moves forward on each reload so work
    prepared against an older copy can tell it is stale.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.configs: dict[str, SiteConfig] = {}
        self.dimensions: dict[str, str] = {}
        self.epoch = 0

    def get(self, name: str) -> Optional[SiteConfig]:
        with self.lock:
            return self.configs.get(name)

    def names(self) -> list[str]:
        with self.lock:
            return list(self.configs)

    def put(self, config: SiteConfig) -> None:
        with self.lock:
            self.configs[config.name] = config
            self.dimensions[config.name] = config.world

    def swap(self, configs: list[SiteConfig]) -> None:
        with self.lock:
            self.configs = {config.name: config for config in configs}
            self.dimensions = {config.name: config.world for config in configs}
            self.epoch += 1


class ReloadCoordinator:
    def __init__(
        self,
        cache: SiteCache,
        store: SiteStore,
        scheduler: NotificationScheduler,
        mutations: BlockMutationQueue,
    ) -> None:
        self._cache = cache
        self._store = store
        self._scheduler = scheduler
        self._mutations = mutations

    def reload(self, after_swap: Optional[Callable[[], None]] = None) -> int:
        """Re-read the store and replace every per-site cache in one critical section.

        The store is read before anything is touched, so a broken file leaves the
        running state as it was. Pending scheduler tasks are dropped inside the
        same section, which means nothing computed against the old configs can
        fire once this returns. Returns the number of sites loaded.
        """
        self._store.force_reload()
        configs = self._store.get_all()
        with self._cache.lock:
            self._mutations.clear()
            self._scheduler.reset()
            self._cache.swap(configs)
            for config in configs:
                LOG.info("Loaded site config: %s", config.name)
            if after_swap is not None:
                after_swap()
        LOG.info("Site config reload complete, %d sites loaded", len(configs))
        return len(configs)
