"""Data models for Baton."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

Health = Literal["ok", "recovering", "down"]
HEALTH_VALUES: frozenset[str] = frozenset({"ok", "recovering", "down"})

AgentState = Literal["busy", "idle", "offline"]
AGENT_STATES: frozenset[str] = frozenset({"busy", "idle", "offline"})

MessageStatus = Literal["pending", "running", "done", "failed"]
ControlStatus = Literal["pending", "running", "done", "failed", "timeout"]
FINAL_CONTROL_STATUSES: frozenset[str] = frozenset({"done", "failed", "timeout"})

TaskType = Literal["one-time", "recurring", "interval"]
TaskStatus = Literal["pending", "running", "completed", "failed", "paused"]

AdmissionCode = Literal["INVALID_ARGS", "HEALTH_RECOVERING", "HEALTH_DOWN", "INTERNAL_ERROR"]


@dataclass
class Message:
    id: int
    direction: Literal["in", "out"]
    channel: str
    content: str
    priority: int = 3
    status: MessageStatus = "pending"
    endpoint: str | None = None
    content_preview: str | None = None  # Set only when the payload was spilled to disk
    attachment_path: str | None = None
    require_idle: bool = False
    retry_count: int = 0
    last_error: str | None = None
    available_at: str = ""
    started_at: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class ControlRecord:
    id: int
    content: str
    priority: int = 3  # 0 is reserved for liveness probes
    status: ControlStatus = "pending"
    require_idle: bool = False
    bypass_state: bool = False  # Deliverable regardless of health/idle
    retry_count: int = 0
    last_error: str | None = None
    ack_deadline_at: str | None = None
    available_at: str = ""
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_CONTROL_STATUSES


@dataclass
class AckResult:
    found: bool
    already_final: bool = False
    status: ControlStatus | None = None

    @property
    def ok(self) -> bool:
        return self.found and self.status == "done"


@dataclass
class Checkpoint:
    id: int
    start_conversation_id: int
    end_conversation_id: int
    summary: str | None = None
    created_at: str = ""

    def to_dict(self) -> dict[str, int | str | None]:
        return {
            "id": self.id,
            "start_id": self.start_conversation_id,
            "end_id": self.end_conversation_id,
            "summary": self.summary,
            "timestamp": self.created_at,
        }


@dataclass
class UnsummarizedRange:
    begin_id: int | None
    end_id: int | None
    count: int


@dataclass
class AdmissionResult:
    """Synchronous answer from the intake gate. Never retried by the gate itself."""

    ok: bool
    id: int | None = None
    code: AdmissionCode | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        if self.ok:
            return {"ok": True, "id": self.id}
        out: dict[str, object] = {"ok": False, "code": self.code}
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class LivenessStatus:
    """Decoded view of the agent status file.

    Every field has a fallback so a missing or half-written file still
    yields a usable (healthy) reading.
    """

    state: AgentState | None = None
    idle_seconds: int | None = None
    health: Health = "ok"
    monitor_checked_at: float | None = None  # Monitor's last_check (epoch seconds)
    health_checked_at: str | None = None
    source: str | None = None


@dataclass(frozen=True)
class PendingChannel:
    channel: str
    endpoint: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {"channel": self.channel, "endpoint": self.endpoint}


@dataclass
class ScheduledTask:
    id: str
    name: str
    prompt: str
    type: TaskType
    next_run_at: str | None = None
    cron_expression: str | None = None
    interval_seconds: int | None = None
    timezone: str | None = None
    last_run_at: str | None = None
    priority: int = 3
    require_idle: bool = False
    reply_channel: str | None = None
    reply_endpoint: str | None = None
    miss_threshold_seconds: int | None = None  # None → scheduler default
    status: TaskStatus = "pending"
    last_error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_repeating(self) -> bool:
        return self.type in ("recurring", "interval")


@dataclass
class TaskRun:
    task_id: str
    status: Literal["started", "success", "failed", "timeout"]
    run_at: str
    error: str | None = None
    id: int | None = None


@dataclass
class HeartbeatProbe:
    """In-flight liveness probe, persisted so a gateway restart can resume it."""

    control_id: int
    phase: Literal["primary", "verify", "recovery", "down"]
    sent_at: str
    attempt: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "control_id": self.control_id,
            "phase": self.phase,
            "sent_at": self.sent_at,
            "attempt": self.attempt,
        }


@dataclass
class HeartbeatState:
    health: Health = "ok"
    restart_attempts: int = 0
    last_probe_at: str | None = None
    last_down_check_at: str | None = None
    pending: HeartbeatProbe | None = None


@runtime_checkable
class HostedSession(Protocol):
    """The interactive terminal session the agent runs in."""

    async def exists(self) -> bool: ...

    async def inject(self, text: str) -> bool:
        """Deliver *text* to the agent as if typed. Returns False on failure."""
        ...

    async def start(self) -> bool: ...

    async def kill(self) -> None: ...


@runtime_checkable
class IdleSource(Protocol):
    def get_idle_seconds(self) -> int | None:
        """Seconds since the agent last showed activity; None when unknown."""
        ...


@runtime_checkable
class ChannelSender(Protocol):
    async def send(self, channel: str, endpoint: str | None, text: str) -> bool: ...
