"""
Command Processor
=================

Applies control-plane commands to the registry and the runtime adapters.

Per-agent states:

    absent → deploying → running ⇄ stopped
                 └────────→ error (from any failed transition)
    any → absent only via undeploy

Every handler is safe to re-run: commands can be delivered more than once.
Each command's outcome becomes exactly one CommandAck; one failing command
never stops the rest of the batch.
"""

from __future__ import annotations
import json
import logging
import os
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

import requests

from .config import DEFAULT_IMAGE
from .container import ContainerError, ContainerSpec
from .fallback import FallbackError, write_profile_auth
from .models import (
    CONTAINER, ERROR, FALLBACK, NONE, RUNNING, STOPPED, DEPLOYING,
    AgentRecord, Command, CommandAck, CommandParseError, DeployCommand,
    DeployConfig, RestartCommand, StartCommand, StopCommand,
    UndeployCommand, UpdateConfigCommand, default_profile, parse_command,
)
from .registry import AgentRegistry
from .runtime import NoRuntimeError, Runtime

log = logging.getLogger(__name__)

CONFIG_FETCH_TIMEOUT = 30
RESTART_PAUSE        = 1.0


class ConfigFetchError(RuntimeError):
    """The deploy-config document could not be fetched or parsed."""


# Errors a lifecycle operation is expected to raise
LIFECYCLE_ERRORS = (ContainerError, FallbackError, NoRuntimeError, ConfigFetchError, OSError)


# ─── Deploy config ───────────────────────────────────────────────────────────

def fetch_deploy_config(config_url: str, api_url: str, api_key: str) -> DeployConfig:
    """GET a deploy-config document; relative URLs resolve against the API URL."""
    url = config_url if config_url.startswith("http") else f"{api_url.rstrip('/')}{config_url}"
    try:
        resp = requests.get(
            url,
            headers = {
                "Authorization": f"Bearer {api_key}",
                "Accept":        "application/json",
            },
            timeout = CONFIG_FETCH_TIMEOUT,
        )
    except requests.RequestException as e:
        raise ConfigFetchError(f"Deploy config fetch failed: {e}") from e

    if resp.status_code != 200:
        raise ConfigFetchError(
            f"Deploy config fetch failed: {resp.status_code} — {resp.text[:200]}"
        )
    try:
        data = resp.json()
    except ValueError as e:
        raise ConfigFetchError(f"Invalid JSON in deploy config: {resp.text[:200]}") from e
    if not isinstance(data, dict):
        raise ConfigFetchError("Deploy config is not a JSON object")
    return DeployConfig.from_dict(data)


def _write_private(path: Path, text: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(text)


def write_deploy_config(cfg: DeployConfig, workspace_dir: Path, state_dir: Path):
    """Materialize a deploy config: workspace files, workload config, full copy."""
    root = workspace_dir.resolve()
    for filename, content in cfg.workspace_files.items():
        target = (workspace_dir / filename).resolve()
        if root not in target.parents:
            log.warning(f"[commands] Skipping workspace file outside workspace: {filename}")
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        log.info(f"[commands] Wrote workspace file: {filename} ({len(content)} bytes)")

    if cfg.workload_config is not None:
        _write_private(state_dir / "openclaw-config.json", json.dumps(cfg.workload_config, indent=2))

    _write_private(state_dir / "deploy-config.json", json.dumps(cfg.raw, indent=2))


# ─── Processor ───────────────────────────────────────────────────────────────

class CommandProcessor:
    def __init__(
        self,
        registry:      AgentRegistry,
        runtime:       Runtime,
        fetch_config:  Callable[[str], DeployConfig],
        default_image: str   = DEFAULT_IMAGE,
        restart_pause: float = RESTART_PAUSE,
        profile_home:  Optional[Path] = None,
    ):
        self.registry      = registry
        self.runtime       = runtime
        self.fetch_config  = fetch_config
        self.default_image = default_image
        self.restart_pause = restart_pause
        self.profile_home  = profile_home

    # ─── Batches ──────────────────────────────────────────────────────────────

    def process_raw(self, raw_commands: Iterable) -> list[CommandAck]:
        """Validate raw heartbeat commands, then process the valid ones in order."""
        acks = []
        for raw in raw_commands:
            try:
                cmd = parse_command(raw)
            except CommandParseError as e:
                if e.command_id:
                    log.warning(f"[commands] Rejected command {e.command_id}: {e}")
                    acks.append(CommandAck.failed(e.command_id, str(e)))
                else:
                    log.warning(f"[commands] Dropped malformed command: {e}")
                continue
            acks.append(self.process_one(cmd))
        return acks

    def process_one(self, cmd: Command) -> CommandAck:
        log.info(f"[commands] Processing command: {cmd.type} for agent {cmd.agent_id} (cmd: {cmd.id})")
        try:
            if isinstance(cmd, DeployCommand):
                ack = self.deploy(cmd)
            elif isinstance(cmd, StartCommand):
                ack = self.start(cmd)
            elif isinstance(cmd, StopCommand):
                ack = self.stop(cmd)
            elif isinstance(cmd, RestartCommand):
                ack = self.restart(cmd)
            elif isinstance(cmd, UndeployCommand):
                ack = self.undeploy(cmd)
            elif isinstance(cmd, UpdateConfigCommand):
                ack = self.update_config(cmd)
            else:
                ack = CommandAck.failed(cmd.id, f"Unknown command type: {cmd.type}")
        except Exception as e:
            log.exception(f"[commands] Command {cmd.id} ({cmd.type}) failed unexpectedly")
            return CommandAck.failed(cmd.id, str(e) or type(e).__name__)

        if ack.error:
            log.error(f"[commands] Command {cmd.id} ({cmd.type}) failed: {ack.error}")
        return ack

    # ─── Helpers ──────────────────────────────────────────────────────────────

    def _not_found(self, cmd: Command) -> CommandAck:
        return CommandAck.failed(cmd.id, f"Agent {cmd.agent_id} not found")

    def _fail(self, record: AgentRecord, cmd: Command, err: Exception) -> CommandAck:
        record.status = ERROR
        self.registry.upsert(record)
        return CommandAck.failed(cmd.id, str(err))

    def _apply_config(self, record: AgentRecord, config_url: str) -> DeployConfig:
        workspace, state = self.registry.ensure_dirs(record.agent_id)
        cfg = self.fetch_config(config_url)
        write_deploy_config(cfg, workspace, state)
        return cfg

    def _launch(self, record: AgentRecord):
        """Create + start the workload for ``record`` and fill in its handle."""
        workspace, state = self.registry.ensure_dirs(record.agent_id)

        if record.isolation == CONTAINER:
            engine = self.runtime.container
            engine.pull_image(record.image)
            record.container_id = engine.create(ContainerSpec(
                name          = record.profile,
                image         = record.image,
                ram_mb        = record.resources.ram_mb,
                cpu_cores     = record.resources.cpu_cores,
                port          = record.port,
                workspace_dir = workspace,
                state_dir     = state,
                env           = record.env,
            ))
            engine.wait_until_running(record.container_id)
        elif record.isolation == FALLBACK:
            fallback = self.runtime.fallback
            self._seed_profile_auth(record)
            record.pid = fallback.start(record.profile, record.port, record.env)
        else:
            raise NoRuntimeError("No isolation runtime available")

        record.status = RUNNING

    def _seed_profile_auth(self, record: AgentRecord):
        """Best-effort: a missing credential file only degrades the gateway."""
        try:
            write_profile_auth(record.profile, record.env, self.profile_home)
        except OSError as e:
            log.warning(f"[commands] Failed to write auth profiles for {record.profile}: {e}")

    def _stop_workload(self, record: AgentRecord):
        if record.isolation == CONTAINER:
            if record.container_id:
                self.runtime.container.stop(record.container_id)
        elif record.isolation == FALLBACK:
            fallback = self.runtime.fallback
            fallback.stop(record.profile)
            fallback.kill(record.pid)
            record.pid = None

    def _start_workload(self, record: AgentRecord):
        if record.isolation == CONTAINER:
            if not record.container_id:
                raise ContainerError(f"Agent {record.agent_id} has no container")
            self.runtime.container.start(record.container_id)
        elif record.isolation == FALLBACK:
            record.pid = self.runtime.fallback.start(record.profile, record.port, record.env)
        else:
            raise NoRuntimeError("No isolation runtime available")

    # ─── Handlers ─────────────────────────────────────────────────────────────

    def deploy(self, cmd: DeployCommand) -> CommandAck:
        existing = self.registry.get(cmd.agent_id)
        # A deploy that failed or died mid-launch without a workload is retried in place
        retry = (
            existing is not None
            and existing.status in (ERROR, DEPLOYING)
            and existing.handle is None
        )
        if existing is not None and not retry:
            log.warning(f"[commands] Agent {cmd.agent_id} already deployed as {existing.handle}")
            return CommandAck.ok(cmd.id, existing.handle)

        mode = self.runtime.mode
        if mode == NONE:
            return CommandAck.failed(cmd.id, "No isolation runtime available")

        record = AgentRecord(
            agent_id  = cmd.agent_id,
            profile   = cmd.profile or default_profile(cmd.agent_id),
            port      = existing.port if existing else self.registry.allocate_port(),
            isolation = mode,
            image     = cmd.image or self.default_image,
            status    = DEPLOYING,
            resources = cmd.resources,
            env       = dict(cmd.env),
        )
        self.registry.ensure_dirs(record.agent_id)

        if cmd.config_url:
            try:
                cfg = self._apply_config(record, cmd.config_url)
                record.env.update(cfg.env)
                log.info(
                    f"[commands] Deploy config applied for {record.agent_id}: "
                    f"{', '.join(record.env) or 'no env vars'}"
                )
            except (ConfigFetchError, OSError) as e:
                log.warning(f"[commands] Failed to fetch deploy config for {record.agent_id}: {e}")

        self.registry.upsert(record)

        try:
            if retry and record.isolation == CONTAINER:
                self._discard_leftover_container(record.profile)
            self._launch(record)
        except LIFECYCLE_ERRORS as e:
            return self._fail(record, cmd, e)
        except Exception as e:
            log.exception(f"[commands] Deploy of {record.agent_id} failed unexpectedly")
            return self._fail(record, cmd, e)

        self.registry.upsert(record)
        log.info(f"[commands] Agent {record.agent_id} deployed: {record.handle} on port {record.port}")
        return CommandAck.ok(cmd.id, record.handle)

    def _discard_leftover_container(self, name: str):
        try:
            self.runtime.container.remove(name)
        except ContainerError as e:
            log.debug(f"[commands] No leftover container {name} to remove: {e}")

    def start(self, cmd: StartCommand) -> CommandAck:
        record = self.registry.get(cmd.agent_id)
        if record is None:
            return self._not_found(cmd)
        if record.status == RUNNING and record.handle:
            return CommandAck.ok(cmd.id, record.handle)

        try:
            self._start_workload(record)
        except LIFECYCLE_ERRORS as e:
            return self._fail(record, cmd, e)

        record.status = RUNNING
        self.registry.upsert(record)
        return CommandAck.ok(cmd.id, record.handle)

    def stop(self, cmd: StopCommand) -> CommandAck:
        record = self.registry.get(cmd.agent_id)
        if record is None:
            return self._not_found(cmd)

        handle = record.handle
        pid = record.pid
        try:
            self._stop_workload(record)
        except LIFECYCLE_ERRORS as e:
            # record unchanged
            record.pid = pid
            return CommandAck.failed(cmd.id, str(e))

        record.status = STOPPED
        self.registry.upsert(record)
        return CommandAck.ok(cmd.id, handle)

    def restart(self, cmd: RestartCommand) -> CommandAck:
        record = self.registry.get(cmd.agent_id)
        if record is None:
            return self._not_found(cmd)

        try:
            self._stop_workload(record)
            if record.isolation == FALLBACK:
                time.sleep(self.restart_pause)
            self._start_workload(record)
        except LIFECYCLE_ERRORS as e:
            return self._fail(record, cmd, e)

        record.status = RUNNING
        self.registry.upsert(record)
        return CommandAck.ok(cmd.id, record.handle)

    def undeploy(self, cmd: UndeployCommand) -> CommandAck:
        record = self.registry.get(cmd.agent_id)
        if record is None:
            return CommandAck.ok(cmd.id)  # Already gone

        error: Optional[str] = None
        try:
            if record.isolation == CONTAINER and record.container_id:
                self.runtime.container.remove(record.container_id)
            elif record.isolation == FALLBACK:
                fallback = self.runtime.fallback
                fallback.stop(record.profile)
                fallback.kill(record.pid)
        except LIFECYCLE_ERRORS as e:
            error = str(e)
            log.warning(f"[commands] Runtime cleanup for {cmd.agent_id} failed: {error}")

        self.registry.remove_dirs(cmd.agent_id)
        self.registry.remove(cmd.agent_id)
        log.info(f"[commands] Agent {cmd.agent_id} undeployed")

        if error:
            return CommandAck.failed(cmd.id, error)
        return CommandAck.ok(cmd.id)

    def update_config(self, cmd: UpdateConfigCommand) -> CommandAck:
        record = self.registry.get(cmd.agent_id)
        if record is None:
            return self._not_found(cmd)

        try:
            if cmd.config_url or cmd.env:
                # Full replacement: nothing from the previous config survives
                env = dict(cmd.env)
                if cmd.config_url:
                    env.update(self._apply_config(record, cmd.config_url).env)
                record.env = env

            if record.isolation == CONTAINER:
                # env is fixed at container creation, so recreate
                engine = self.runtime.container
                if record.container_id:
                    engine.stop(record.container_id)
                    engine.remove(record.container_id)
                    record.container_id = None
                self._launch(record)
            elif record.isolation == FALLBACK:
                self._stop_workload(record)
                self._seed_profile_auth(record)
                time.sleep(self.restart_pause)
                self._start_workload(record)
            else:
                raise NoRuntimeError("No isolation runtime available")
        except LIFECYCLE_ERRORS as e:
            return self._fail(record, cmd, e)

        record.status = RUNNING
        self.registry.upsert(record)
        log.info(f"[commands] Agent {cmd.agent_id} config updated and restarted")
        return CommandAck.ok(cmd.id, record.handle)
