from __future__ import annotations
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


IniSections = Dict[str, Dict[str, str]]

# `?` separates launch-URL options, quotes and whitespace end the argument
FORBIDDEN_SECRET_CHARS = set('?"')


def check_secret(value: Optional[str]) -> Optional[str]:
    if value and any(c in FORBIDDEN_SECRET_CHARS or c.isspace() for c in value):
        raise ValueError("passwords must not contain '?', '\"' or whitespace")
    return value


DEFAULT_MULTIPLIERS: Dict[str, float] = {
    "HarvestAmountMultiplier": 3.0,
    "TamingSpeedMultiplier": 5.0,
    "XPMultiplier": 3.0,
}


# --- persisted records ---

class ServerConfig(BaseModel):
    name: str
    map: str = "TheIsland"
    game_port: int = 7777
    query_port: int = 27015
    rcon_port: int = 32330
    max_players: int = 70
    admin_password: str
    server_password: Optional[str] = None
    mods: List[int] = Field(default_factory=list)
    exclude_shared_mods: bool = False
    disable_battleye: bool = False
    dynamic_config_url: Optional[str] = None
    cluster_id: Optional[str] = None
    game_ini: IniSections = Field(default_factory=dict)
    game_user_settings: IniSections = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not v or not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError("name may only contain letters, digits, '-' and '_'")
        return v

    @field_validator("admin_password", "server_password")
    @classmethod
    def _valid_secret(cls, v: Optional[str]) -> Optional[str]:
        return check_secret(v)

    @field_validator("game_port", "query_port", "rcon_port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not 1024 <= v <= 65535:
            raise ValueError(f"port {v} outside 1024-65535")
        return v

    @property
    def rcon_password(self) -> str:
        # ASA authenticates RCON with the admin password
        return self.admin_password

    def ports(self) -> List[int]:
        return [self.game_port, self.query_port, self.rcon_port]


class ClusterConfig(BaseModel):
    name: str
    password: str = ""
    base_port: int = 7777
    multipliers: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_MULTIPLIERS))
    game_ini: IniSections = Field(default_factory=dict)
    game_user_settings: IniSections = Field(default_factory=dict)
    members: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class SharedMod(BaseModel):
    id: int
    name: Optional[str] = None
    enabled: bool = True


class AutoShutdownPolicy(BaseModel):
    enabled: bool = False
    timeout_minutes: int = 30
    save_before_shutdown: bool = True
    save_timeout_seconds: float = 30.0
    warning_intervals: List[int] = Field(default_factory=lambda: [15, 10, 5, 2])
    poll_interval_seconds: float = 60.0

    @field_validator("warning_intervals")
    @classmethod
    def _sorted_desc(cls, v: List[int]) -> List[int]:
        return sorted({int(x) for x in v if x > 0}, reverse=True)


# --- requests ---

class MemberSpec(BaseModel):
    name: str
    map: Optional[str] = None
    game_port: Optional[int] = None
    query_port: Optional[int] = None
    rcon_port: Optional[int] = None
    max_players: Optional[int] = None
    mods: List[int] = Field(default_factory=list)
    exclude_shared_mods: Optional[bool] = None
    disable_battleye: bool = False


class ClusterCreateRequest(BaseModel):
    name: str
    server_count: int = 1
    base_port: int = 7777
    map: str = "TheIsland"
    max_players: int = 70
    admin_password: str
    server_password: Optional[str] = None
    cluster_password: str = ""
    mods: List[int] = Field(default_factory=list)
    multipliers: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_MULTIPLIERS))
    members: List[MemberSpec] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not v or not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError("cluster name may only contain letters, digits, '-' and '_'")
        return v

    @field_validator("base_port")
    @classmethod
    def _valid_base(cls, v: int) -> int:
        if not 1024 <= v <= 65535:
            raise ValueError("base_port must be between 1024 and 65535")
        return v

    @field_validator("admin_password", "server_password", "cluster_password")
    @classmethod
    def _valid_secret(cls, v: Optional[str]) -> Optional[str]:
        return check_secret(v)


# --- runtime / results ---

class ServerState(str, Enum):
    stopped = "stopped"
    starting = "starting"
    running = "running"
    crashed = "crashed"


class ActionOutcome(str, Enum):
    started = "started"
    already_running = "already_running"
    stopped = "stopped"
    killed = "killed"
    not_running = "not_running"
    failed = "failed"


class ActionResult(BaseModel):
    name: str
    outcome: ActionOutcome
    success: bool = True
    pid: Optional[int] = None
    message: Optional[str] = None


class MemberResult(BaseModel):
    name: str
    success: bool
    error: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None


class ProcessStats(BaseModel):
    pid: int
    uptime_seconds: float
    rss_bytes: int
    cpu_percent: float


class ServerStatus(BaseModel):
    name: str
    state: ServerState
    pid: Optional[int] = None
    uptime_seconds: Optional[float] = None
    rcon_ok: bool = False
    players: Optional[List[str]] = None
    player_count: Optional[int] = None
    day: Optional[int] = None
    # crash detection compares process loss against the last requested stop only
    crash_reliable: bool = False
    last_stop_requested_at: Optional[datetime] = None
    error: Optional[str] = None


class BackupInfo(BaseModel):
    id: str
    kind: str
    name: str
    created_at: datetime
    members: List[str] = Field(default_factory=list)
    path: str


# --- jobs ---

class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed)


class ProgressEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    message: str


class Job(BaseModel):
    id: str
    type: str
    status: JobStatus = JobStatus.pending
    metadata: Dict[str, Any] = Field(default_factory=dict)
    progress: List[ProgressEntry] = Field(default_factory=list)
    percent: Optional[int] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class JobEvent(BaseModel):
    jobId: str
    status: JobStatus
    progress: int
    message: Optional[str] = None
    result: Optional[Any] = None
    error: Optional[str] = None


class TimerInfo(BaseModel):
    server_name: str
    deadline: datetime
    remaining_seconds: float
    warnings_sent: List[int] = Field(default_factory=list)
