"""
Reconciliation
==============

On startup the registry may disagree with reality — the host rebooted, a
container was removed by hand, a gateway crashed while the daemon was down.
``reconcile`` aligns recorded status with what the runtime reports.

It fails open: an agent whose runtime cannot be queried keeps its last-known
status, and no record is ever removed here.
"""

from __future__ import annotations
import logging

from .container import ContainerError, ContainerStats
from .fallback import UNKNOWN, FallbackError
from .models import CONTAINER, FALLBACK, RUNNING, STOPPED, AgentRecord, AgentStatus
from .registry import AgentRegistry
from .runtime import NoRuntimeError, Runtime

log = logging.getLogger(__name__)

STATUS_ERRORS = (ContainerError, FallbackError, NoRuntimeError, OSError)


def observe_status(record: AgentRecord, runtime: Runtime) -> str:
    """
    Live status of one agent: running / stopped / unknown.
    Raises when the adapter cannot be queried.
    """
    if record.isolation == CONTAINER and record.container_id:
        return RUNNING if runtime.container.is_running(record.container_id) else STOPPED
    if record.isolation == FALLBACK:
        return runtime.fallback.status(record.profile, record.pid)
    return UNKNOWN


def reconcile(registry: AgentRegistry, runtime: Runtime) -> int:
    """Correct persisted statuses. Returns the number of records changed."""
    if not len(registry):
        return 0

    log.info(f"[reconcile] Reconciling {len(registry)} persisted agent(s) with runtime...")
    changed = 0
    for record in registry:
        try:
            observed = observe_status(record, runtime)
        except STATUS_ERRORS as e:
            log.warning(f"[reconcile] Cannot check agent {record.agent_id}, keeping '{record.status}': {e}")
            continue

        if observed == UNKNOWN or observed == record.status:
            continue
        log.info(f"[reconcile] Agent {record.agent_id}: {record.status} → {observed} (reconciled)")
        record.status = observed
        changed += 1

    registry.save()
    return changed


def collect_statuses(registry: AgentRegistry, runtime: Runtime) -> list[AgentStatus]:
    """Per-agent entries for the heartbeat, with live stats where available."""
    statuses = []
    for record in registry:
        status = record.status
        stats = ContainerStats()
        try:
            observed = observe_status(record, runtime)
            if observed != UNKNOWN:
                status = observed
            if record.isolation == CONTAINER and observed == RUNNING:
                stats = runtime.container.stats(record.container_id)
        except STATUS_ERRORS as e:
            log.debug(f"[reconcile] Status check for {record.agent_id} failed: {e}")

        statuses.append(AgentStatus(
            agent_id     = record.agent_id,
            container_id = record.container_id,
            status       = status,
            port         = record.port,
            cpu_percent  = stats.cpu_percent,
            ram_usage_mb = stats.ram_usage_mb,
            ram_limit_mb = stats.ram_limit_mb,
        ))
    return statuses
