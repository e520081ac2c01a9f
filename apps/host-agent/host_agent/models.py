"""
Agent Data Model
================

Everything that crosses a boundary — the registry file on disk, the heartbeat
request/response, the deploy-config document — is converted to and from these
dataclasses at that boundary. Handlers deeper in the daemon only see typed
objects.
"""

from __future__ import annotations
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Iterable, Optional, Union

# ─── Enums (plain string constants, as they appear on the wire) ──────────────

RUNNING   = "running"
STOPPED   = "stopped"
DEPLOYING = "deploying"
ERROR     = "error"
STATUSES  = (RUNNING, STOPPED, DEPLOYING, ERROR)

CONTAINER = "container"
FALLBACK  = "fallback"
NONE      = "none"

# State files written by older daemons used the runtime names directly
_LEGACY_ISOLATION = {"docker": CONTAINER, "profile": FALLBACK}

ACKED = "acked"

_AGENT_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]{0,127}")


class CommandParseError(ValueError):
    """A command from the control plane is malformed."""

    def __init__(self, message: str, command_id: Optional[str] = None):
        super().__init__(message)
        self.command_id = command_id


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def default_profile(agent_id: str) -> str:
    return f"sparebox-agent-{agent_id[:8]}"


# ─── Agent Record ─────────────────────────────────────────────────────────────

@dataclass
class Resources:
    ram_mb:    int   = 2048
    cpu_cores: float = 1.0
    disk_gb:   int   = 10

    @classmethod
    def from_dict(cls, raw: Optional[dict]) -> "Resources":
        raw = raw or {}
        defaults = cls()
        return cls(
            ram_mb    = int(raw.get("ramMb") or defaults.ram_mb),
            cpu_cores = float(raw.get("cpuCores") or defaults.cpu_cores),
            disk_gb   = int(raw.get("diskGb") or defaults.disk_gb),
        )

    def to_dict(self) -> dict:
        return {"ramMb": self.ram_mb, "cpuCores": self.cpu_cores, "diskGb": self.disk_gb}


@dataclass
class AgentRecord:
    """One deployed workload. Owned exclusively by the AgentRegistry."""
    agent_id:     str
    profile:      str
    port:         int
    isolation:    str
    image:        str
    status:       str                = DEPLOYING
    container_id: Optional[str]      = None
    pid:          Optional[int]      = None
    resources:    Resources          = field(default_factory=Resources)
    env:          dict               = field(default_factory=dict)
    deployed_at:  str                = field(default_factory=utc_now_iso)

    @property
    def handle(self) -> Optional[str]:
        """
        Adapter-specific identifier reported to the control plane.

        Container agents report the container id. Fallback agents report
        ``pid:<pid>``, or ``profile:<name>`` when the launcher PID could not be
        tracked — the profile name is what the workload binary itself uses to
        address the instance.
        """
        if self.isolation == CONTAINER:
            return self.container_id
        if self.isolation == FALLBACK:
            if self.pid:
                return f"pid:{self.pid}"
            if self.status == RUNNING:
                return f"profile:{self.profile}"
        return None

    def to_dict(self) -> dict:
        return {
            "agentId":     self.agent_id,
            "profile":     self.profile,
            "containerId": self.container_id,
            "pid":         self.pid,
            "port":        self.port,
            "status":      self.status,
            "isolation":   self.isolation,
            "image":       self.image,
            "deployedAt":  self.deployed_at,
            "resources":   self.resources.to_dict(),
            "env":         dict(self.env),
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "AgentRecord":
        isolation = raw.get("isolation") or NONE
        isolation = _LEGACY_ISOLATION.get(isolation, isolation)
        status = raw.get("status") or STOPPED
        if status not in STATUSES:
            status = ERROR
        pid = raw.get("pid")
        return cls(
            agent_id     = str(raw["agentId"]),
            profile      = raw.get("profile") or default_profile(str(raw["agentId"])),
            port         = int(raw["port"]),
            isolation    = isolation,
            image        = raw.get("image") or "",
            status       = status,
            container_id = raw.get("containerId") or None,
            pid          = int(pid) if pid else None,
            resources    = Resources.from_dict(raw.get("resources")),
            env          = dict(raw.get("env") or {}),
            deployed_at  = raw.get("deployedAt") or utc_now_iso(),
        )


# ─── Commands (closed tagged union keyed by "type") ──────────────────────────

@dataclass
class _CommandBase:
    id:       str
    agent_id: str
    type:     ClassVar[str] = ""


@dataclass
class DeployCommand(_CommandBase):
    type:       ClassVar[str] = "deploy"
    profile:    Optional[str] = None
    image:      Optional[str] = None
    resources:  Resources     = field(default_factory=Resources)
    env:        dict          = field(default_factory=dict)
    config_url: Optional[str] = None


@dataclass
class StartCommand(_CommandBase):
    type: ClassVar[str] = "start"


@dataclass
class StopCommand(_CommandBase):
    type: ClassVar[str] = "stop"


@dataclass
class RestartCommand(_CommandBase):
    type: ClassVar[str] = "restart"


@dataclass
class UndeployCommand(_CommandBase):
    type: ClassVar[str] = "undeploy"


@dataclass
class UpdateConfigCommand(_CommandBase):
    type:       ClassVar[str] = "update_config"
    env:        dict          = field(default_factory=dict)
    config_url: Optional[str] = None


Command = Union[
    DeployCommand, StartCommand, StopCommand,
    RestartCommand, UndeployCommand, UpdateConfigCommand,
]

COMMAND_TYPES = {
    c.type: c for c in (
        DeployCommand, StartCommand, StopCommand,
        RestartCommand, UndeployCommand, UpdateConfigCommand,
    )
}


def _string_env(raw: Any, command_id: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CommandParseError("payload.env must be an object", command_id)
    env = {str(k): "" if v is None else str(v) for k, v in raw.items()}
    for key, value in env.items():
        # Not representable in a process environment
        if not key or "=" in key or "\x00" in key:
            raise CommandParseError(f"invalid env var name: {key[:64]!r}", command_id)
        if "\x00" in value:
            raise CommandParseError(f"env var {key} contains a NUL byte", command_id)
    return env


def parse_command(raw: Any) -> Command:
    """
    Validate one command from a heartbeat response.

    Raises CommandParseError; ``command_id`` is set on the error whenever the
    raw command had a usable id, so the caller can still ack it.
    """
    if not isinstance(raw, dict):
        raise CommandParseError(f"command must be an object, got {type(raw).__name__}")

    cmd_id = raw.get("id")
    if not isinstance(cmd_id, str) or not cmd_id:
        raise CommandParseError("command is missing an id")

    kind = raw.get("type")
    cls = COMMAND_TYPES.get(kind)
    if cls is None:
        raise CommandParseError(f"Unknown command type: {kind}", cmd_id)

    agent_id = raw.get("agentId")
    if not isinstance(agent_id, str) or not agent_id:
        raise CommandParseError("command is missing an agentId", cmd_id)
    # agentId names an on-disk directory
    if not _AGENT_ID_RE.fullmatch(agent_id):
        raise CommandParseError(f"invalid agentId: {agent_id[:64]!r}", cmd_id)

    payload = raw.get("payload") or {}
    if not isinstance(payload, dict):
        raise CommandParseError("payload must be an object", cmd_id)

    config_url = payload.get("configUrl")
    if config_url is not None and not isinstance(config_url, str):
        raise CommandParseError("payload.configUrl must be a string", cmd_id)

    if cls is DeployCommand:
        resources = payload.get("resources")
        if resources is not None and not isinstance(resources, dict):
            raise CommandParseError("payload.resources must be an object", cmd_id)
        try:
            parsed_resources = Resources.from_dict(resources)
        except (TypeError, ValueError) as e:
            raise CommandParseError(f"invalid payload.resources: {e}", cmd_id) from e
        return DeployCommand(
            id         = cmd_id,
            agent_id   = agent_id,
            profile    = payload.get("profile") or None,
            image      = payload.get("image") or None,
            resources  = parsed_resources,
            env        = _string_env(payload.get("env"), cmd_id),
            config_url = config_url or None,
        )
    if cls is UpdateConfigCommand:
        return UpdateConfigCommand(
            id         = cmd_id,
            agent_id   = agent_id,
            env        = _string_env(payload.get("env"), cmd_id),
            config_url = config_url or None,
        )
    return cls(id=cmd_id, agent_id=agent_id)


# ─── Acks & statuses ─────────────────────────────────────────────────────────

@dataclass
class CommandAck:
    id:     str
    status: str                = ACKED
    handle: Optional[str]      = None
    error:  Optional[str]      = None

    @classmethod
    def ok(cls, cmd_id: str, handle: Optional[str] = None) -> "CommandAck":
        return cls(id=cmd_id, status=ACKED, handle=handle)

    @classmethod
    def failed(cls, cmd_id: str, error: str) -> "CommandAck":
        return cls(id=cmd_id, status=ERROR, error=error)

    def to_dict(self) -> dict:
        out: dict = {"id": self.id, "status": self.status}
        if self.handle is not None:
            out["containerId"] = self.handle
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class AgentStatus:
    agent_id:     str
    container_id: Optional[str]
    status:       str
    port:         int
    cpu_percent:  float = 0.0
    ram_usage_mb: int   = 0
    ram_limit_mb: int   = 0

    def to_dict(self) -> dict:
        return {
            "agentId":     self.agent_id,
            "containerId": self.container_id,
            "status":      self.status,
            "cpuPercent":  self.cpu_percent,
            "ramUsageMb":  self.ram_usage_mb,
            "ramLimitMb":  self.ram_limit_mb,
            "port":        self.port,
        }


@dataclass
class DeployConfig:
    """Document returned by a deploy-config URL."""
    env:             dict           = field(default_factory=dict)
    workspace_files: dict           = field(default_factory=dict)
    workload_config: Optional[dict] = None
    raw:             dict           = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict) -> "DeployConfig":
        env = raw.get("env") if isinstance(raw.get("env"), dict) else {}
        files = raw.get("workspaceFiles") if isinstance(raw.get("workspaceFiles"), dict) else {}
        workload = raw.get("workloadConfig", raw.get("openclawConfig"))
        return cls(
            env             = {str(k): str(v) for k, v in env.items() if v is not None},
            workspace_files = {str(k): v for k, v in files.items() if isinstance(v, str)},
            workload_config = workload if isinstance(workload, dict) else None,
            raw             = raw,
        )


# ─── Outbound queue ──────────────────────────────────────────────────────────

class OutboundQueue:
    """
    FIFO of items waiting to ride along on the next heartbeat.

    ``drain`` empties the queue; ``requeue`` puts a drained batch back in
    front of anything queued meanwhile so a failed send loses nothing and
    keeps ordering.
    """

    def __init__(self):
        self._items: deque = deque()
        self._lock = threading.Lock()

    def extend(self, items: Iterable) -> None:
        with self._lock:
            self._items.extend(items)

    def drain(self) -> list:
        with self._lock:
            items = list(self._items)
            self._items.clear()
            return items

    def requeue(self, items: list) -> None:
        with self._lock:
            self._items.extendleft(reversed(items))

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
