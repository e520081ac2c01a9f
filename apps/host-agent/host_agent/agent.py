"""
Sparebox Host Agent — Main Daemon
=================================

The entry point for the host-side daemon.

Startup sequence:
  1. Load + validate config (API key, host id, API URL)
  2. Load persisted agents from ~/.sparebox/agents.json
  3. Detect isolation: container engine → openclaw binary → none
  4. Reconcile persisted agent status with the runtime
  5. Heartbeat loop: report metrics/statuses/acks, apply returned commands

Safe shutdown:
  SIGTERM/SIGINT → stop ticking → stop running agents in parallel (15s cap) → exit
"""

from __future__ import annotations
import argparse
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from . import __version__
from .commands import CommandProcessor, fetch_deploy_config
from .config import AgentConfig, load_config, validate_config
from .heartbeat import HeartbeatOutcome, HeartbeatTransport
from .messages import MessageBridge
from .metrics import HostMetrics, cpu_usage, disk_usage, os_info, ram_usage
from .models import CONTAINER, FALLBACK, AgentRecord, OutboundQueue
from .reconcile import STATUS_ERRORS, collect_statuses, reconcile
from .registry import AgentRegistry
from .runtime import Runtime

log = logging.getLogger("sparebox.agent")

SHUTDOWN_TIMEOUT = 15.0
EXIT_AUTH_FAILED = 2

# ─── Host Agent ───────────────────────────────────────────────────────────────


class HostAgent:
    def __init__(
        self,
        config:    AgentConfig,
        registry:  AgentRegistry,
        runtime:   Runtime,
        transport: HeartbeatTransport,
        processor: CommandProcessor,
        bridge:    MessageBridge,
        metrics:   Optional[HostMetrics] = None,
        version:   str = __version__,
    ):
        self.config    = config
        self.registry  = registry
        self.runtime   = runtime
        self.transport = transport
        self.processor = processor
        self.bridge    = bridge
        self.metrics   = metrics or HostMetrics()
        self.version   = version

        self._running     = True
        self.auth_failed  = False

    @classmethod
    def from_config(cls, config: AgentConfig) -> "HostAgent":
        acks    = OutboundQueue()
        replies = OutboundQueue()
        registry = AgentRegistry(config.state_dir, base_port=config.base_port)
        runtime  = Runtime.detect(workload_binary=config.workload_binary)
        return cls(
            config    = config,
            registry  = registry,
            runtime   = runtime,
            transport = HeartbeatTransport(config, acks, replies),
            processor = CommandProcessor(
                registry,
                runtime,
                fetch_config  = lambda url: fetch_deploy_config(url, config.api_url, config.api_key),
                default_image = config.default_image,
            ),
            bridge    = MessageBridge(registry, runtime, replies),
        )

    # ─── Startup ──────────────────────────────────────────────────────────────

    def start(self) -> str:
        """Load state, select isolation, reconcile. Returns the isolation mode."""
        self.registry.load()
        mode = self.runtime.mode
        log.info(f"Agent isolation: {self.runtime.describe()}")
        reconcile(self.registry, self.runtime)
        log.info(f"Tracked agents: {len(self.registry)}")
        return mode

    # ─── Heartbeat ────────────────────────────────────────────────────────────

    def build_payload(self) -> dict:
        statuses = collect_statuses(self.registry, self.runtime)
        return {
            **self.metrics.collect(),
            "hostId":        self.config.host_id,
            "daemonVersion": self.version,
            "isolationMode": self.runtime.mode,
            "agentCount":    len(self.registry),
            "agentStatuses": [s.to_dict() for s in statuses],
        }

    def tick(self) -> HeartbeatOutcome:
        """Send one heartbeat and apply whatever it brought back."""
        outcome = self.transport.send(self.build_payload())
        if outcome.delivered and outcome.response is not None:
            if outcome.response.commands:
                acks = self.processor.process_raw(outcome.response.commands)
                # Delivered on the next heartbeat
                self.transport.acks.extend(acks)
            if outcome.response.messages:
                self.bridge.dispatch(outcome.response.messages)
        return outcome

    def _sleep(self, ms: int):
        deadline = time.monotonic() + ms / 1000
        while self._running:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, 0.5))

    # ─── Main Loop ────────────────────────────────────────────────────────────

    def run(self) -> int:
        log.info(f"Sparebox Host Agent v{self.version} starting — host {self.config.host_id}")
        log.info(f"API URL: {self.config.api_url}")
        log.info(f"Heartbeat interval: {self.config.heartbeat_interval_ms / 1000:g}s")

        self.start()
        log.info("Starting heartbeat loop… (Ctrl+C to stop)")

        delay_ms = 0
        while self._running:
            self._sleep(delay_ms)
            if not self._running:
                break
            try:
                outcome = self.tick()
            except Exception:
                log.exception("Heartbeat tick failed")
                delay_ms = self.transport.backoff.failure()
                continue

            if outcome.fatal:
                self.auth_failed = True
                log.error("Heartbeat loop halted — agents keep running until the daemon is stopped")
                while self._running:
                    time.sleep(0.5)
                break
            delay_ms = outcome.delay_ms

        self.shutdown()
        return EXIT_AUTH_FAILED if self.auth_failed else 0

    def stop(self):
        self._running = False

    # ─── Shutdown ─────────────────────────────────────────────────────────────

    def _stop_agent(self, record: AgentRecord):
        try:
            if record.isolation == CONTAINER and record.container_id:
                self.runtime.container.stop(record.container_id)
            elif record.isolation == FALLBACK:
                self.runtime.fallback.stop(record.profile)
        except STATUS_ERRORS as e:
            log.warning(f"Failed to stop agent {record.agent_id}: {e}")

    def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> bool:
        """
        Best-effort stop of every running agent, in parallel. Returns True if
        all stops finished before ``timeout``.
        """
        running = self.registry.list_running()
        log.info(f"Shutting down {len(running)} running agent(s)…")

        threads = []
        for record in running:
            log.info(f"Stopping agent {record.agent_id}…")
            t = threading.Thread(
                target = self._stop_agent,
                args   = (record,),
                name   = f"stop-{record.agent_id[:8]}",
                daemon = True,
            )
            t.start()
            threads.append(t)

        deadline = time.monotonic() + timeout
        for t in threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))

        finished = not any(t.is_alive() for t in threads)
        if finished:
            log.info("All agents stopped. Daemon exited cleanly.")
        else:
            log.warning(f"Shutdown timed out after {timeout:g}s — exiting anyway")
        return finished


# ─── Verify Mode ──────────────────────────────────────────────────────────────

def run_verify(config: AgentConfig) -> int:
    """Dry run: config, metrics and runtime detection, then exit."""
    errors = validate_config(config)

    print(f"\nSparebox Host Agent v{__version__} — Verify Mode\n")
    print("── Configuration ──")
    print(f"  API Key:    {config.masked_key()}")
    print(f"  Host ID:    {config.host_id or '(not set)'}")
    print(f"  API URL:    {config.api_url}")
    print(f"  Interval:   {config.heartbeat_interval_ms}ms")
    print(f"  State dir:  {config.state_dir}")
    if errors:
        print("\n── Config Errors ──")
        for e in errors:
            print(f"  ✗ {e}")
    else:
        print("\n  ✓ Config valid")

    print("\n── System Metrics ──")
    print("  Collecting CPU usage (1s sample)…")
    disk = disk_usage()
    print(f"  CPU:        {cpu_usage()}%")
    print(f"  RAM:        {ram_usage()}%")
    print(f"  Disk:       {'N/A (could not determine)' if disk == -1 else f'{disk}%'}")
    print(f"  OS:         {os_info()}")

    print("\n── Agent Manager ──")
    if errors:
        print("  (skipped — fix config errors first)")
    else:
        registry = AgentRegistry(config.state_dir, base_port=config.base_port)
        registry.load()
        runtime = Runtime.detect(workload_binary=config.workload_binary)
        print(f"  Isolation:  {runtime.describe()}")
        print(f"  Agents:     {len(registry)}")

    print("\n── Ready ──")
    if errors:
        print("  ✗ Fix config errors above before starting the daemon.")
        return 1
    print("  ✓ All checks passed. Run without --verify to start the daemon.")
    return 0


# ─── Entry Point ──────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None):
    parser = argparse.ArgumentParser(description="Sparebox Host Agent")
    parser.add_argument("--config",  type=Path, default=None,
                        help="Config file (default: ~/.sparebox/config.json)")
    parser.add_argument("--verify",  action="store_true",
                        help="Dry run: load config, collect metrics, detect runtime, then exit")
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("--debug",   action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level  = logging.DEBUG if args.debug else logging.INFO,
        format = "[%(asctime)s] %(levelname)s %(name)s — %(message)s",
        datefmt= "%Y-%m-%dT%H:%M:%S",
    )

    config = load_config(args.config)

    if args.verify:
        sys.exit(run_verify(config))

    errors = validate_config(config)
    if errors:
        for e in errors:
            log.error(e)
        log.error("Cannot start — fix configuration and try again.")
        sys.exit(1)

    agent = HostAgent.from_config(config)

    signal.signal(signal.SIGTERM, lambda s, f: agent.stop())
    signal.signal(signal.SIGINT,  lambda s, f: agent.stop())

    sys.exit(agent.run())


if __name__ == "__main__":
    main()
