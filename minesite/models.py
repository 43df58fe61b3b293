from __future__ import annotations

from datetime import datetime, time
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .errors import InvalidPositionError
from .world import BlockPos, parse_block_pos

_SITE_NAME_ALLOWED = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-")

SiteStatus = Literal["active", "inactive"]


def _normalize_position(value: str) -> str:
    try:
        return str(parse_block_pos(value))
    except InvalidPositionError as exc:
        raise ValueError(str(exc)) from exc


def parse_clock(value: str) -> time:
    try:
        return time.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid time of day {value!r}: expected HH:MM") from exc


class TimeTableEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    weekday: int = Field(ge=0, le=6)
    start_time: str = Field(default="00:00", alias="startTime")
    end_time: str = Field(default="23:59", alias="endTime")
    full_day_close: bool = Field(default=False, alias="fullDayClose")

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_clock(cls, value: str) -> str:
        parse_clock(value)
        return value.strip()

    @property
    def start(self) -> time:
        return parse_clock(self.start_time)

    @property
    def end(self) -> time:
        return parse_clock(self.end_time)

    @property
    def wraps_midnight(self) -> bool:
        return self.end < self.start


class MineEntry(BaseModel):
    block: str = Field(min_length=1)
    weight: int = Field(gt=0)


class SiteConfig(BaseModel):
    """One persisted mine site record.

    Field aliases are the persisted camelCase keys, so ``model_dump(by_alias=True,
    mode="json")`` reproduces the stored shape. Unknown keys are kept.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(min_length=1)
    creator: str = ""
    description: str = ""
    world: str = "minecraft:overworld"
    pos1: str
    pos2: str
    safety_point: Optional[str] = Field(default=None, alias="safetyPoint")
    status: SiteStatus = "inactive"
    broadcast_interval: int = Field(default=300, alias="broadcastInterval")
    refresh_interval: int = Field(default=60, alias="refreshInterval")
    time_table: list[TimeTableEntry] = Field(default_factory=list, alias="timeTable")
    mines: list[MineEntry] = Field(default_factory=list)
    create_time: Optional[datetime] = Field(default=None, alias="createTime")
    last_update_time: Optional[datetime] = Field(default=None, alias="lastUpdateTime")
    last_refresh_time: Optional[datetime] = Field(default=None, alias="lastRefreshTime")

    @field_validator("pos1", "pos2")
    @classmethod
    def validate_corner(cls, value: str) -> str:
        return _normalize_position(value)

    @field_validator("safety_point", mode="before")
    @classmethod
    def empty_safety_point(cls, value: object) -> object:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value

    @field_validator("broadcast_interval", "refresh_interval", mode="before")
    @classmethod
    def tolerate_numeric_strings(cls, value: object) -> object:
        # Older files store the intervals as strings.
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError as exc:
                raise ValueError(f"Invalid interval {value!r}: expected whole seconds") from exc
        return value

    @field_serializer("safety_point")
    def serialize_safety_point(self, value: Optional[str]) -> str:
        return value or ""

    @property
    def active(self) -> bool:
        return self.status == "active"

    @property
    def corner1(self) -> BlockPos:
        return parse_block_pos(self.pos1)

    @property
    def corner2(self) -> BlockPos:
        return parse_block_pos(self.pos2)

    def safety_pos(self) -> Optional[BlockPos]:
        if not self.safety_point:
            return None
        return parse_block_pos(self.safety_point)

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class CreateSiteRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=64)
    creator: str = Field(default="system", max_length=64)
    world: str = "minecraft:overworld"
    pos1: str
    pos2: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if any(ch not in _SITE_NAME_ALLOWED for ch in value):
            raise ValueError("Site names must contain only letters, digits, dashes, or underscores")
        return value

    @field_validator("pos1", "pos2")
    @classmethod
    def validate_corner(cls, value: str) -> str:
        return _normalize_position(value)


class SafetyPointRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    position: str


class RefreshRequest(BaseModel):
    ignore_timetable: bool = True


class DelayedSiteRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1)
    delay: int = Field(default=0, ge=0)


class ActionResponse(BaseModel):
    status: Literal["success", "error"]
    message: str


class SiteSummary(BaseModel):
    name: str
    status: SiteStatus
    creator: str
    world: str
    state: Optional[str]
    open_now: bool
    pending_blocks: int


class SiteListResponse(BaseModel):
    sites: list[SiteSummary]
