from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
import hashlib
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

HISTORY_SIZE = 60


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_token() -> str:
    return uuid4().hex


class ContainerState(StrEnum):
    created = "created"
    running = "running"
    paused = "paused"
    restarting = "restarting"
    removing = "removing"
    exited = "exited"
    dead = "dead"
    unknown = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> ContainerState:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.unknown


class HealthStatus(StrEnum):
    none = "none"
    starting = "starting"
    healthy = "healthy"
    unhealthy = "unhealthy"

    @classmethod
    def parse(cls, value: str | None) -> HealthStatus:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.none

    @classmethod
    def from_status_text(cls, status: str) -> HealthStatus:
        lowered = status.lower()
        if "(unhealthy)" in lowered:
            return cls.unhealthy
        if "(healthy)" in lowered:
            return cls.healthy
        if "(health: starting)" in lowered:
            return cls.starting
        return cls.none


class CommandKind(StrEnum):
    start = "start"
    stop = "stop"
    restart = "restart"
    pause = "pause"
    unpause = "unpause"
    delete = "delete"
    exec = "exec"


class CommandStatus(StrEnum):
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class RejectionReason(StrEnum):
    duplicate = "duplicate"
    no_op = "no_op"
    invalid_state = "invalid_state"
    not_found = "not_found"


class SortColumn(StrEnum):
    name = "name"
    state = "state"
    status = "status"
    cpu = "cpu"
    memory = "memory"
    id = "id"
    image = "image"
    rx = "rx"
    tx = "tx"


class SortOrder(StrEnum):
    asc = "asc"
    desc = "desc"


class FilterBy(StrEnum):
    name = "name"
    image = "image"
    status = "status"
    all = "all"

    def next(self) -> FilterBy | None:
        members = list(FilterBy)
        index = members.index(self)
        return members[index + 1] if index + 1 < len(members) else None

    def prev(self) -> FilterBy | None:
        members = list(FilterBy)
        index = members.index(self)
        return members[index - 1] if index > 0 else None


class LogMode(StrEnum):
    plain = "plain"
    raw = "raw"
    color = "color"


class NoticeLevel(StrEnum):
    info = "info"
    warning = "warning"
    error = "error"


STATE_ORDER: dict[ContainerState, int] = {
    ContainerState.running: 0,
    ContainerState.paused: 2,
    ContainerState.restarting: 3,
    ContainerState.removing: 4,
    ContainerState.exited: 5,
    ContainerState.dead: 6,
    ContainerState.created: 7,
    ContainerState.unknown: 8,
}

STATS_STATES = frozenset({ContainerState.running, ContainerState.restarting})

COMMANDS_BY_STATE: dict[ContainerState, tuple[CommandKind, ...]] = {
    ContainerState.created: (CommandKind.start, CommandKind.restart, CommandKind.delete),
    ContainerState.running: (
        CommandKind.pause,
        CommandKind.restart,
        CommandKind.stop,
        CommandKind.delete,
        CommandKind.exec,
    ),
    ContainerState.paused: (CommandKind.unpause, CommandKind.stop, CommandKind.delete),
    ContainerState.restarting: (CommandKind.stop, CommandKind.delete),
    ContainerState.removing: (CommandKind.delete,),
    ContainerState.exited: (CommandKind.start, CommandKind.restart, CommandKind.delete),
    ContainerState.dead: (CommandKind.start, CommandKind.restart, CommandKind.delete),
    ContainerState.unknown: (CommandKind.delete,),
}

# Commands whose target state is already reached are no-ops, not runtime errors.
NO_OP_STATES: dict[CommandKind, frozenset[ContainerState]] = {
    CommandKind.start: frozenset({ContainerState.running}),
    CommandKind.stop: frozenset({ContainerState.exited, ContainerState.created, ContainerState.dead}),
    CommandKind.pause: frozenset({ContainerState.paused}),
    CommandKind.unpause: frozenset({ContainerState.running}),
}

STATE_AFTER_COMMAND: dict[CommandKind, ContainerState] = {
    CommandKind.start: ContainerState.running,
    CommandKind.stop: ContainerState.exited,
    CommandKind.restart: ContainerState.running,
    CommandKind.pause: ContainerState.paused,
    CommandKind.unpause: ContainerState.running,
    CommandKind.delete: ContainerState.removing,
}


class PortMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    private: int
    public: int | None = None
    ip: str | None = None
    protocol: str = "tcp"


class ContainerSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    image: str = ""
    state: ContainerState = ContainerState.unknown
    status: str = ""
    created: int = 0
    command: str = ""
    ports: tuple[PortMapping, ...] = ()


class ContainerDetail(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    state: ContainerState = ContainerState.unknown
    health: HealthStatus = HealthStatus.none
    restart_count: int = 0
    started_at: str = ""
    command: str = ""


class ContainerStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpu_percent: float | None = None
    memory_usage: int | None = None
    memory_limit: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0


class ContainerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    image: str = ""
    state: ContainerState = ContainerState.unknown
    health: HealthStatus = HealthStatus.none
    status: str = ""
    created: int = 0
    command: str = ""
    ports: tuple[PortMapping, ...] = ()
    restart_count: int = 0
    started_at: str = ""
    is_self: bool = False

    cpu_percent: float | None = None
    memory_usage: int | None = None
    memory_limit: int | None = None
    rx_bytes: int = 0
    tx_bytes: int = 0
    stats_stale: bool = True
    cpu_history: tuple[float, ...] = ()
    memory_history: tuple[int, ...] = ()

    last_error: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def is_alive(self) -> bool:
        return self.state == ContainerState.running

    @property
    def display_state(self) -> str:
        if self.state == ContainerState.running and self.health in {HealthStatus.healthy, HealthStatus.unhealthy}:
            return self.health.value
        return self.state.value

    @property
    def state_order(self) -> int:
        if self.state == ContainerState.running and self.health == HealthStatus.unhealthy:
            return 1
        return STATE_ORDER[self.state]

    @property
    def available_commands(self) -> tuple[CommandKind, ...]:
        return COMMANDS_BY_STATE[self.state]


class Command(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: CommandKind
    container_id: str
    token: str = Field(default_factory=new_token)
    created_at: datetime = Field(default_factory=utc_now)


class CommandOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    error: str | None = None

    @classmethod
    def success(cls) -> CommandOutcome:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> CommandOutcome:
        return cls(ok=False, error=error)


class Notice(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: NoticeLevel = NoticeLevel.info
    message: str
    container_id: str | None = None
    token: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class StyledSpan(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    style: str = ""


class LogLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    sequence: int
    timestamp: str
    text: str
    raw: str
    spans: tuple[StyledSpan, ...] = ()

    @property
    def dedup_key(self) -> tuple[str, str]:
        return dedup_key(self.timestamp, self.raw)

    @property
    def width(self) -> int:
        return len(self.text)


def dedup_key(timestamp: str, raw: str) -> tuple[str, str]:
    return timestamp, hashlib.sha1(raw.encode("utf-8", errors="replace")).hexdigest()


class ScrollState(BaseModel):
    model_config = ConfigDict(frozen=True)

    offset_x: int = 0
    offset_y: int = 0
    selected: int | None = None
    follow: bool = True


class LogView(BaseModel):
    model_config = ConfigDict(frozen=True)

    container_id: str
    lines: tuple[LogLine, ...] = ()
    search_term: str | None = None
    case_sensitive: bool = False
    search_matches: tuple[int, ...] = ()
    search_position: str | None = None
    scroll: ScrollState = Field(default_factory=ScrollState)


class SortSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    column: SortColumn
    order: SortOrder = SortOrder.asc


class RegistrySnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    containers: tuple[ContainerRecord, ...] = ()
    sort: SortSpec | None = None
    filter_term: str | None = None
    filter_by: FilterBy = FilterBy.name
    total: int = 0
    notices: tuple[Notice, ...] = ()
    generated_at: datetime = Field(default_factory=utc_now)

    @property
    def ids(self) -> list[str]:
        return [item.id for item in self.containers]
