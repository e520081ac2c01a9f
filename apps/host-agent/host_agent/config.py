"""
Daemon Configuration
====================

Priority: environment variables > ~/.sparebox/config.json > defaults.

    {
      "apiKey": "sbx_host_...",
      "hostId": "uuid",
      "apiUrl": "https://www.sparebox.dev",
      "heartbeatIntervalMs": 60000
    }
"""

from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

DEFAULT_API_URL        = "https://www.sparebox.dev"
DEFAULT_INTERVAL_MS    = 60_000
MIN_INTERVAL_MS        = 30_000
DEFAULT_BASE_PORT      = 19001
DEFAULT_IMAGE          = "ghcr.io/openclaw/openclaw:latest"
DEFAULT_WORKLOAD_BIN   = "openclaw"
API_KEY_PREFIX         = "sbx_host_"

STATE_DIR   = Path.home() / ".sparebox"
CONFIG_PATH = STATE_DIR / "config.json"


@dataclass
class AgentConfig:
    api_key:              str
    host_id:              str
    api_url:              str   = DEFAULT_API_URL
    heartbeat_interval_ms: int  = DEFAULT_INTERVAL_MS
    state_dir:            Path  = field(default_factory=lambda: STATE_DIR)
    base_port:            int   = DEFAULT_BASE_PORT
    default_image:        str   = DEFAULT_IMAGE
    workload_binary:      str   = DEFAULT_WORKLOAD_BIN

    def __post_init__(self):
        self.api_url = self.api_url.rstrip("/")
        self.state_dir = Path(self.state_dir)

    def masked_key(self) -> str:
        if not self.api_key:
            return "(not set)"
        return f"{self.api_key[:12]}...{self.api_key[-4:]}"


def _read_file(path: Path) -> dict:
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
            log.warning(f"Config file {path} is not a JSON object — ignoring")
    except (OSError, ValueError) as e:
        log.warning(f"Failed to read config file at {path}: {e}")
    return {}


def load_config(path: Optional[Path] = None, environ: Optional[dict] = None) -> AgentConfig:
    """Merge env vars, the config file and defaults into an AgentConfig."""
    env  = os.environ if environ is None else environ
    path = Path(path) if path else CONFIG_PATH
    file_cfg = _read_file(path)

    state_dir = env.get("SPAREBOX_STATE_DIR") or file_cfg.get("stateDir") or STATE_DIR

    return AgentConfig(
        api_key  = env.get("SPAREBOX_API_KEY") or file_cfg.get("apiKey") or "",
        host_id  = env.get("SPAREBOX_HOST_ID") or file_cfg.get("hostId") or "",
        api_url  = env.get("SPAREBOX_API_URL") or file_cfg.get("apiUrl") or DEFAULT_API_URL,
        heartbeat_interval_ms = int(file_cfg.get("heartbeatIntervalMs", DEFAULT_INTERVAL_MS)),
        state_dir       = Path(state_dir).expanduser(),
        base_port       = int(file_cfg.get("basePort", DEFAULT_BASE_PORT)),
        default_image   = file_cfg.get("defaultImage") or DEFAULT_IMAGE,
        workload_binary = file_cfg.get("workloadBinary") or DEFAULT_WORKLOAD_BIN,
    )


def validate_config(cfg: AgentConfig) -> list[str]:
    """Return a list of human-readable problems (empty list = valid)."""
    errors = []

    if not cfg.api_key:
        errors.append(
            f"Missing API key. Set SPAREBOX_API_KEY env var or apiKey in {CONFIG_PATH}"
        )
    elif not cfg.api_key.startswith(API_KEY_PREFIX):
        errors.append(
            f'Invalid API key format — expected "{API_KEY_PREFIX}..." prefix, '
            f'got "{cfg.api_key[:12]}..."'
        )

    if not cfg.host_id:
        errors.append(
            f"Missing Host ID. Set SPAREBOX_HOST_ID env var or hostId in {CONFIG_PATH}"
        )

    if not cfg.api_url.startswith(("https://", "http://")):
        errors.append(f'Invalid API URL: "{cfg.api_url}" — must start with https:// or http://')

    if cfg.heartbeat_interval_ms < MIN_INTERVAL_MS:
        errors.append(
            f"Heartbeat interval too low: {cfg.heartbeat_interval_ms}ms — "
            f"minimum is {MIN_INTERVAL_MS}ms"
        )

    return errors
