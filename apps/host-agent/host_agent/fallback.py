"""
Fallback Adapter
================

For hosts without a container engine: each agent runs as its own
``openclaw --profile <name> gateway`` instance, spawned detached so it
outlives the daemon's own invocation of it.
"""

from __future__ import annotations
import json
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional

import psutil  # type: ignore

log = logging.getLogger(__name__)

VERSION_TIMEOUT = 10
STOP_TIMEOUT    = 15
STATUS_TIMEOUT  = 10
KILL_GRACE      = 3.0

WELL_KNOWN_PATHS = (
    Path.home() / ".local" / "bin",
    Path("/usr/local/bin"),
    Path("/usr/bin"),
)

UNKNOWN = "unknown"


class FallbackError(RuntimeError):
    """The workload binary could not be invoked."""


def parse_gateway_status(text: str) -> str:
    """
    Map ``gateway status`` output to running / stopped / unknown.

        "Gateway running (pid 4242, port 19001)" → "running"
        "gateway is not running"                 → "stopped"
        "Gateway stopped"                        → "stopped"
        ""                                       → "unknown"
    """
    lowered = text.lower()
    if "not running" in lowered or "stopped" in lowered or "inactive" in lowered:
        return "stopped"
    if "running" in lowered:
        return "running"
    return UNKNOWN


def pid_alive(pid: Optional[int]) -> bool:
    """No-op signal liveness check; a zombie counts as gone."""
    if not pid:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        # AccessDenied means the PID exists but belongs to someone else now
        return psutil.pid_exists(pid)


def find_workload_binary(name: str = "openclaw") -> Optional[str]:
    """Locate the workload binary on PATH or in a well-known install dir."""
    candidates = []
    on_path = shutil.which(name)
    if on_path:
        candidates.append(on_path)
    candidates += [str(d / name) for d in WELL_KNOWN_PATHS]

    for path in candidates:
        try:
            result = subprocess.run(
                [path, "--version"],
                capture_output = True,
                text           = True,
                timeout        = VERSION_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired):
            continue
        if result.returncode == 0:
            return path
    return None


# ─── Profile credentials ─────────────────────────────────────────────────────

ANTHROPIC_MODEL = "anthropic/claude-sonnet-4-20250514"
OPENAI_MODEL    = "openai/gpt-4o"


def profile_dir(profile: str, home: Optional[Path] = None) -> Path:
    return (home or Path.home()) / f".openclaw-{profile}"


def _write_json_private(path: Path, data: dict):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def write_profile_auth(profile: str, env: dict, home: Optional[Path] = None) -> Optional[Path]:
    """
    Seed a profile's provider credentials from the agent env.

    A gateway started with ``--profile`` reads its API keys from
    ``~/.openclaw-<profile>/agents/main/agent/auth-profiles.json`` rather than
    the process environment. Returns the profile dir, or None when the env
    carries no provider key. Raises OSError on write failure.
    """
    anthropic_key = env.get("ANTHROPIC_API_KEY")
    openai_key    = env.get("OPENAI_API_KEY")
    if not anthropic_key and not openai_key:
        return None

    auth: dict = {"version": 1, "profiles": {}, "lastGood": {}}
    if anthropic_key:
        auth["profiles"]["anthropic:sparebox"] = {
            "type": "token", "provider": "anthropic", "token": anthropic_key,
        }
        auth["lastGood"]["anthropic"] = "anthropic:sparebox"
    if openai_key:
        auth["profiles"]["openai:sparebox"] = {
            "type": "token", "provider": "openai", "token": openai_key,
        }
        auth["lastGood"]["openai"] = "openai:sparebox"

    openai_only = bool(openai_key) and not anthropic_key
    provider = "openai" if openai_only else "anthropic"
    workload_config = {
        "auth": {"profiles": {f"{provider}:sparebox": {"provider": provider, "mode": "token"}}},
        "agents": {"defaults": {"model": {"primary": OPENAI_MODEL if openai_only else ANTHROPIC_MODEL}}},
    }

    root = profile_dir(profile, home)
    _write_json_private(root / "agents" / "main" / "agent" / "auth-profiles.json", auth)
    _write_json_private(root / "openclaw.json", workload_config)
    log.info(f"[fallback] Wrote auth profiles and config for {profile}")
    return root


class FallbackAdapter:
    def __init__(self, binary: str):
        self.binary = binary
        self._spawned: dict[int, subprocess.Popen] = {}

    def _reap(self):
        """Collect exit status of launched gateways so they do not linger as zombies."""
        for pid, proc in list(self._spawned.items()):
            if proc.poll() is not None:
                del self._spawned[pid]

    def _cli(self, profile: str, *args: str) -> list[str]:
        return [self.binary, "--profile", profile, *args]

    def _run(self, cmd: list[str], timeout: int) -> str:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise FallbackError(f"{' '.join(cmd[3:])} timed out after {timeout}s") from e
        except OSError as e:
            raise FallbackError(f"{self.binary} could not be run: {e}") from e
        if result.returncode != 0:
            raise FallbackError(
                f"{' '.join(cmd[3:])} failed (exit {result.returncode}): "
                f"{(result.stderr or result.stdout).strip()[:300]}"
            )
        return result.stdout

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def start(self, profile: str, port: int, env: dict) -> Optional[int]:
        """
        Spawn and disown the gateway. Returns its PID, or None when the
        launcher has already handed off and exited.
        """
        cmd = self._cli(profile, "gateway", "start", "--port", str(port))
        try:
            proc = subprocess.Popen(
                cmd,
                stdin             = subprocess.DEVNULL,
                stdout            = subprocess.DEVNULL,
                stderr            = subprocess.DEVNULL,
                env               = {**os.environ, **{str(k): str(v) for k, v in env.items()}},
                start_new_session = True,
            )
        except (OSError, ValueError) as e:
            raise FallbackError(f"Failed to start profile agent {profile}: {e}") from e

        if proc.poll() is not None:
            log.warning(f"[fallback] Profile agent {profile} launcher exited immediately — no PID tracked")
            return None
        self._spawned[proc.pid] = proc
        log.info(f"[fallback] Profile agent started: {profile} (PID: {proc.pid}, port: {port})")
        return proc.pid

    def stop(self, profile: str):
        """Graceful ``gateway stop``. Failures are logged, never raised."""
        try:
            self._run(self._cli(profile, "gateway", "stop"), STOP_TIMEOUT)
            log.info(f"[fallback] Profile agent stopped: {profile}")
        except FallbackError as e:
            log.warning(f"[fallback] Failed to stop profile agent {profile}: {e}")

    def kill(self, pid: Optional[int], grace: float = KILL_GRACE):
        """SIGTERM, wait ``grace`` seconds, then SIGKILL. A missing process is fine."""
        if not pid:
            return
        self._spawned.pop(pid, None)
        try:
            proc = psutil.Process(pid)
            proc.terminate()
            try:
                proc.wait(timeout=grace)
            except psutil.TimeoutExpired:
                log.warning(f"[fallback] PID {pid} ignored SIGTERM — killing")
                proc.kill()
                proc.wait(timeout=grace)
        except psutil.NoSuchProcess:
            pass
        except (psutil.AccessDenied, psutil.TimeoutExpired) as e:
            log.warning(f"[fallback] Could not kill PID {pid}: {e}")

    # ─── Inspection ───────────────────────────────────────────────────────────

    def status(self, profile: str, pid: Optional[int]) -> str:
        """running / stopped / unknown — CLI first, PID liveness second."""
        self._reap()
        try:
            out = self._run(self._cli(profile, "gateway", "status"), STATUS_TIMEOUT)
            state = parse_gateway_status(out)
            if state != UNKNOWN:
                return state
        except FallbackError as e:
            log.debug(f"[fallback] gateway status failed for {profile}: {e}")

        if pid:
            return "running" if pid_alive(pid) else "stopped"
        return UNKNOWN

    def run_agent(self, profile: str, args: list[str], timeout: int) -> tuple[str, str]:
        """Invoke ``<bin> --profile <profile> <args>``. Returns (stdout, stderr)."""
        cmd = self._cli(profile, *args)
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise FallbackError(f"{self.binary} {args[0]} timed out after {timeout}s") from e
        except OSError as e:
            raise FallbackError(f"{self.binary} could not be run: {e}") from e
        if result.returncode != 0:
            raise FallbackError(
                f"{self.binary} {args[0]} failed (exit {result.returncode}): {result.stderr.strip()[:300]}"
            )
        return result.stdout, result.stderr
