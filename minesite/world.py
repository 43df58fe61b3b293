from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Iterator, Protocol

from .errors import InvalidPositionError

OVERWORLD = "minecraft:overworld"


@dataclass(frozen=True)
class BlockPos:
    x: int
    y: int
    z: int

    def __str__(self) -> str:
        return format_block_pos(self)


def parse_block_pos(raw: str) -> BlockPos:
    parts = [part.strip() for part in (raw or "").split(",")]
    if len(parts) != 3:
        raise InvalidPositionError(f"Invalid position {raw!r}: expected 'x,y,z'")
    try:
        x, y, z = (int(part) for part in parts)
    except ValueError as exc:
        raise InvalidPositionError(f"Invalid position {raw!r}: coordinates must be integers") from exc
    return BlockPos(x, y, z)


def format_block_pos(pos: BlockPos) -> str:
    return f"{pos.x},{pos.y},{pos.z}"


@dataclass(frozen=True)
class RegionBounds:
    min_x: int
    min_y: int
    min_z: int
    max_x: int
    max_y: int
    max_z: int

    @classmethod
    def from_corners(cls, a: BlockPos, b: BlockPos) -> "RegionBounds":
        return cls(
            min_x=min(a.x, b.x),
            min_y=min(a.y, b.y),
            min_z=min(a.z, b.z),
            max_x=max(a.x, b.x),
            max_y=max(a.y, b.y),
            max_z=max(a.z, b.z),
        )

    @property
    def dimensions(self) -> tuple[int, int, int]:
        return (
            self.max_x - self.min_x + 1,
            self.max_y - self.min_y + 1,
            self.max_z - self.min_z + 1,
        )

    @property
    def volume(self) -> int:
        width, height, depth = self.dimensions
        return width * height * depth

    def contains(self, pos: BlockPos) -> bool:
        return (
            self.min_x <= pos.x <= self.max_x
            and self.min_y <= pos.y <= self.max_y
            and self.min_z <= pos.z <= self.max_z
        )

    def positions(self) -> Iterator[BlockPos]:
        for x in range(self.min_x, self.max_x + 1):
            for y in range(self.min_y, self.max_y + 1):
                for z in range(self.min_z, self.max_z + 1):
                    yield BlockPos(x, y, z)


@dataclass
class Player:
    name: str
    dimension: str
    x: float
    y: float
    z: float
    yaw: float = 0.0
    pitch: float = 0.0

    def block_position(self) -> BlockPos:
        # Same flooring the game applies to entity coordinates.
        return BlockPos(int(self.x // 1), int(self.y // 1), int(self.z // 1))


class WorldAccessor(Protocol):
    def is_loaded(self, pos: BlockPos, dimension: str) -> bool: ...

    def set_block(self, pos: BlockPos, dimension: str, state: str) -> None: ...

    def players_in(self, dimension: str) -> list[Player]: ...

    def teleport(
        self, player: Player, x: float, y: float, z: float, dimension: str, yaw: float, pitch: float
    ) -> None: ...

    def broadcast(self, message: str) -> None: ...

    def tell(self, player: Player, message: str) -> None: ...


@dataclass
class MemoryWorld:
    """In-memory world used by the standalone host and the tests.

    Blocks default to air; chunks are loaded unless listed in ``unloaded_chunks``
    as ``(dimension, chunk_x, chunk_z)``.
    """

    blocks: dict[tuple[str, BlockPos], str] = field(default_factory=dict)
    players: list[Player] = field(default_factory=list)
    unloaded_chunks: set[tuple[str, int, int]] = field(default_factory=set)
    messages: list[str] = field(default_factory=list)
    private_messages: list[tuple[str, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def is_loaded(self, pos: BlockPos, dimension: str) -> bool:
        return (dimension, pos.x >> 4, pos.z >> 4) not in self.unloaded_chunks

    def set_block(self, pos: BlockPos, dimension: str, state: str) -> None:
        with self._lock:
            self.blocks[(dimension, pos)] = state

    def block_at(self, pos: BlockPos, dimension: str = OVERWORLD) -> str:
        with self._lock:
            return self.blocks.get((dimension, pos), "minecraft:air")

    def players_in(self, dimension: str) -> list[Player]:
        with self._lock:
            return [player for player in self.players if player.dimension == dimension]

    def teleport(
        self, player: Player, x: float, y: float, z: float, dimension: str, yaw: float, pitch: float
    ) -> None:
        with self._lock:
            player.x, player.y, player.z = x, y, z
            player.dimension = dimension
            player.yaw, player.pitch = yaw, pitch

    def broadcast(self, message: str) -> None:
        with self._lock:
            self.messages.append(message)

    def tell(self, player: Player, message: str) -> None:
        with self._lock:
            self.private_messages.append((player.name, message))
