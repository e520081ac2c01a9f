"""
Container Adapter
=================

Drives an OCI container engine (docker or podman) through its CLI.

Security guarantees for every agent container:
  - --memory / --cpus:   hard limits from the deploy payload
  - --read-only:         read-only root filesystem
  - --cap-drop=ALL:      drop all Linux capabilities
  - --security-opt=no-new-privileges: prevent privilege escalation
  - one published port:  host <port> → container 3000
  - /workspace and /state bind mounts, nothing else from the host
  - noexec tmpfs for /tmp and the workload's home directory
  - --env:               only declared env vars, never host environment

Every call has an explicit timeout; a hung engine is reported as a failure.
"""

from __future__ import annotations
import logging
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

log = logging.getLogger(__name__)

INTERNAL_PORT   = 3000
CONTAINER_HOME  = "/home/node"

CHECK_TIMEOUT     = 10
PULL_TIMEOUT      = 300
RUN_TIMEOUT       = 120
LIFECYCLE_TIMEOUT = 30
STATS_TIMEOUT     = 15
INSPECT_TIMEOUT   = 10


class ContainerError(RuntimeError):
    """An engine CLI invocation failed or timed out."""


@dataclass
class ContainerSpec:
    name:          str
    image:         str
    ram_mb:        int
    cpu_cores:     float
    port:          int
    workspace_dir: Path
    state_dir:     Path
    env:           dict
    network:       str = "bridge"


@dataclass
class ContainerStats:
    cpu_percent:  float = 0.0
    ram_usage_mb: int   = 0
    ram_limit_mb: int   = 0


# ─── Output parsing ──────────────────────────────────────────────────────────

def parse_mem_value(text: str) -> int:
    """
    Convert one engine-reported memory figure to whole megabytes.

        "123.4MiB" → 123     "2GiB" → 2048     "512KiB" → 0
        "1.5GB"    → 1536    "garbage" → 0
    """
    text = text.strip()
    digits = ""
    for ch in text:
        if ch.isdigit() or ch == ".":
            digits += ch
        else:
            break
    try:
        num = float(digits)
    except ValueError:
        return 0

    unit = text[len(digits):].strip().upper()
    if unit.startswith(("GIB", "GB")):
        return round(num * 1024)
    if unit.startswith(("MIB", "MB")):
        return round(num)
    if unit.startswith(("KIB", "KB")):
        return round(num / 1024)
    if unit.startswith(("TIB", "TB")):
        return round(num * 1024 * 1024)
    # bare bytes
    return round(num / (1024 * 1024))


def parse_stats_line(line: str) -> ContainerStats:
    """
    Parse ``stats --format "{{.CPUPerc}}|{{.MemUsage}}"`` output.

        "1.23%|123.4MiB / 2GiB" → ContainerStats(1.23, 123, 2048)
        "--|-- / --"            → ContainerStats(0.0, 0, 0)
        ""                      → ContainerStats(0.0, 0, 0)

    Anything unparsable degrades to zero instead of raising.
    """
    line = line.strip().splitlines()[0] if line.strip() else ""
    cpu_str, _, mem_str = line.partition("|")

    try:
        cpu = float(cpu_str.strip().rstrip("%"))
    except ValueError:
        cpu = 0.0

    used, _, limit = mem_str.partition("/")
    return ContainerStats(
        cpu_percent  = cpu,
        ram_usage_mb = parse_mem_value(used),
        ram_limit_mb = parse_mem_value(limit),
    )


def build_env_args(env: dict) -> list[str]:
    """Build --env flags from the agent env. Never passes host env vars."""
    args = []
    for k, v in env.items():
        # Sanitize key: only allow alphanumeric + underscore
        clean_key = "".join(c for c in str(k) if c.isalnum() or c == "_")
        if not clean_key:
            continue
        # Strip null bytes, newlines, and carriage returns; cap at 4096 chars
        clean_val = (
            str(v)
            .replace("\x00", "")
            .replace("\n", "")
            .replace("\r", "")
            [:4096]
        )
        args += ["--env", f"{clean_key}={clean_val}"]
    return args


# ─── Adapter ─────────────────────────────────────────────────────────────────

class ContainerAdapter:
    def __init__(self, engine: str):
        self.engine = engine

    def _run(self, args: list[str], timeout: int) -> str:
        cmd = [self.engine, *args]
        log.debug(f"[container] cmd: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output = True,
                text           = True,
                timeout        = timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ContainerError(f"{self.engine} {args[0]} timed out after {timeout}s") from e
        except OSError as e:
            raise ContainerError(f"{self.engine} {args[0]} could not be run: {e}") from e

        if result.returncode != 0:
            raise ContainerError(
                f"{self.engine} {args[0]} failed (exit {result.returncode}): "
                f"{(result.stderr or result.stdout).strip()[:300]}"
            )
        return result.stdout

    # ─── Images ───────────────────────────────────────────────────────────────

    def pull_image(self, image: str):
        """Best-effort pull — a cached local image may still be usable."""
        log.info(f"[container] Pulling image {image}")
        try:
            self._run(["pull", image], PULL_TIMEOUT)
            log.info(f"[container] Image pulled: {image}")
        except ContainerError as e:
            log.warning(f"[container] Failed to pull image (may use cached): {e}")

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def create(self, spec: ContainerSpec) -> str:
        """Create and start a hardened container. Returns the short container id."""
        cmd = [
            "run", "-d",
            "--name", spec.name,
            "--memory", f"{spec.ram_mb}m",                   # Hard memory limit
            "--cpus", f"{spec.cpu_cores:g}",
            "--read-only",                                   # Read-only root FS
            "--cap-drop=ALL",                                # Drop all capabilities
            "--security-opt=no-new-privileges",
            "--network", spec.network,
            "-p", f"{spec.port}:{INTERNAL_PORT}",
            "-v", f"{spec.workspace_dir}:/workspace",
            "-v", f"{spec.state_dir}:/state",
            "--tmpfs", "/tmp:rw,noexec,nosuid,size=256m",   # Writable /tmp only
            "--tmpfs", f"{CONTAINER_HOME}:rw,noexec,nosuid,size=64m",
            *build_env_args(spec.env),
            spec.image,
        ]
        out = self._run(cmd, RUN_TIMEOUT)
        container_id = out.strip()[:12]
        if not container_id:
            raise ContainerError(f"{self.engine} run returned no container id for {spec.name}")
        log.info(f"[container] Container created: {spec.name} ({container_id})")
        return container_id

    def wait_until_running(self, container_id: str, attempts: int = 10, interval: float = 1.0) -> bool:
        for _ in range(attempts):
            time.sleep(interval)
            try:
                if self.is_running(container_id):
                    return True
            except ContainerError as e:
                log.debug(f"[container] Health check for {container_id} failed: {e}")
        log.warning(f"[container] Container {container_id} did not become healthy in {attempts * interval:g}s")
        return False

    def start(self, container_id: str):
        self._run(["start", container_id], LIFECYCLE_TIMEOUT)
        log.info(f"[container] Container started: {container_id}")

    def stop(self, container_id: str, grace: int = 10):
        """Stop with a grace period. Failures are logged, never raised."""
        try:
            self._run(["stop", "-t", str(grace), container_id], LIFECYCLE_TIMEOUT)
            log.info(f"[container] Container stopped: {container_id}")
        except ContainerError as e:
            log.warning(f"[container] Failed to stop container {container_id}: {e}")

    def remove(self, container_id: str, force: bool = True):
        args = ["rm", "-f", container_id] if force else ["rm", container_id]
        self._run(args, LIFECYCLE_TIMEOUT)
        log.info(f"[container] Container removed: {container_id}")

    # ─── Inspection ───────────────────────────────────────────────────────────

    def is_running(self, container_id: str) -> bool:
        """
        True/False from the engine's view of the container.

        A container the engine no longer knows about is not running; any
        other failure (engine down, timeout) raises ContainerError so callers
        can tell "stopped" from "could not ask".
        """
        try:
            out = self._run(
                ["inspect", "--format", "{{.State.Running}}", container_id],
                INSPECT_TIMEOUT,
            )
        except ContainerError as e:
            if "no such" in str(e).lower():
                return False
            raise
        return out.strip().lower() == "true"

    def stats(self, container_id: str) -> ContainerStats:
        try:
            out = self._run(
                ["stats", "--no-stream", "--format", "{{.CPUPerc}}|{{.MemUsage}}", container_id],
                STATS_TIMEOUT,
            )
        except ContainerError as e:
            log.debug(f"[container] Stats unavailable for {container_id}: {e}")
            return ContainerStats()
        return parse_stats_line(out)

    def exec(self, container_id: str, args: list[str], timeout: int) -> tuple[str, str]:
        """Run a command inside the container. Returns (stdout, stderr)."""
        cmd = [self.engine, "exec", container_id, *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise ContainerError(f"{self.engine} exec timed out after {timeout}s") from e
        except OSError as e:
            raise ContainerError(f"{self.engine} exec could not be run: {e}") from e
        if result.returncode != 0:
            raise ContainerError(
                f"{self.engine} exec failed (exit {result.returncode}): {result.stderr.strip()[:300]}"
            )
        return result.stdout, result.stderr


def check_engine(engine: str) -> bool:
    """True if ``engine info`` answers within the check timeout."""
    try:
        result = subprocess.run(
            [engine, "info", "--format", "{{.ServerVersion}}"],
            capture_output = True,
            text           = True,
            timeout        = CHECK_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return result.returncode == 0
