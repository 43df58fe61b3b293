from __future__ import annotations

import logging
import random
import re
from typing import Iterable, Optional, Sequence

from .models import MineEntry

LOG = logging.getLogger(__name__)

DEFAULT_BLOCK_STATE = "minecraft:stone"
EMPTY_BLOCK_STATE = "minecraft:air"
RESOURCE_LOCATION_RE = re.compile(r"^[a-z0-9_.-]+:[a-z0-9_./-]+$")

WeightedState = tuple[str, int]


class BlockRegistry:
    """Resolves configured block ids to block states.

    Without a ``known`` set every well-formed resource location resolves; a host
    that knows its registry passes the valid ids so typos fall back to the
    default state instead of reaching the world.
    """

    def __init__(self, known: Optional[Iterable[str]] = None) -> None:
        self._known = frozenset(known) if known is not None else None

    def resolve(self, block_id: Optional[str]) -> Optional[str]:
        if not block_id:
            return None
        value = block_id.strip().lower()
        if ":" not in value:
            value = f"minecraft:{value}"
        if not RESOURCE_LOCATION_RE.match(value):
            return None
        if self._known is not None and value not in self._known:
            return None
        return value


def weighted_entries(mines: Sequence[MineEntry], registry: BlockRegistry) -> list[WeightedState]:
    entries: list[WeightedState] = []
    for mine in mines:
        state = registry.resolve(mine.block)
        if state is None:
            LOG.warning("Unknown block %r in mine list, skipping", mine.block)
            continue
        if mine.weight <= 0:
            continue
        entries.append((state, mine.weight))
    if not entries:
        entries.append((DEFAULT_BLOCK_STATE, 1))
    return entries


class WeightedRandomPicker:
    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def pick(self, entries: Sequence[WeightedState]) -> str:
        valid = [(state, weight) for state, weight in entries if weight > 0]
        if not valid:
            return DEFAULT_BLOCK_STATE
        total = sum(weight for _, weight in valid)
        draw = self._rng.randrange(total)
        current = 0
        for state, weight in valid:
            current += weight
            if draw < current:
                return state
        return valid[0][0]
