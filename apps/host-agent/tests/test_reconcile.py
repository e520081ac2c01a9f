from __future__ import annotations

from host_agent.models import CONTAINER, FALLBACK, NONE, RUNNING, STOPPED, AgentRecord
from host_agent.reconcile import collect_statuses, reconcile


def _add(registry, agent_id, port, **kw) -> AgentRecord:
    record = AgentRecord(agent_id=agent_id, profile=f"sparebox-agent-{agent_id}", port=port,
                         image="img", **kw)
    registry.upsert(record)
    return record


def test_reconcile_corrects_stale_statuses(registry, container, fallback, container_runtime) -> None:
    container.containers["c1"] = {"running": False, "env": {}}
    container.containers["c2"] = {"running": True, "env": {}}
    fallback.procs["sparebox-agent-f1"] = {"pid": 1, "running": True, "env": {}}
    _add(registry, "a1", 19001, isolation=CONTAINER, container_id="c1", status=RUNNING)
    _add(registry, "a2", 19002, isolation=CONTAINER, container_id="c2", status=STOPPED)
    _add(registry, "f1", 19003, isolation=FALLBACK, status=STOPPED)

    changed = reconcile(registry, container_runtime)

    assert changed == 3
    assert registry.get("a1").status == STOPPED
    assert registry.get("a2").status == RUNNING
    assert registry.get("f1").status == RUNNING


def test_reconcile_fails_open(registry, container, fallback, container_runtime) -> None:
    container.inspect_error = True
    fallback.status_error = True
    _add(registry, "a1", 19001, isolation=CONTAINER, container_id="c1", status=RUNNING)
    _add(registry, "f1", 19002, isolation=FALLBACK, status=RUNNING)

    assert reconcile(registry, container_runtime) == 0
    assert registry.get("a1").status == RUNNING
    assert registry.get("f1").status == RUNNING


def test_reconcile_keeps_unknown_and_never_removes(registry, fallback_runtime) -> None:
    # Fallback status unknown for a profile the binary has never seen
    _add(registry, "f1", 19001, isolation=FALLBACK, status=RUNNING)
    _add(registry, "n1", 19002, isolation=NONE, status=STOPPED)
    # No container runtime: probing a container record raises
    _add(registry, "a1", 19003, isolation=CONTAINER, container_id="c9", status=RUNNING)

    assert reconcile(registry, fallback_runtime) == 0
    assert len(registry) == 3
    assert registry.get("a1").status == RUNNING


def test_reconcile_persists_changes(registry, container, container_runtime) -> None:
    _add(registry, "a1", 19001, isolation=CONTAINER, container_id="gone", status=RUNNING)

    reconcile(registry, container_runtime)

    registry.load()
    assert registry.get("a1").status == STOPPED


def test_collect_statuses_reports_live_stats(registry, container, container_runtime) -> None:
    container.containers["c1"] = {"running": True, "env": {}}
    _add(registry, "a1", 19001, isolation=CONTAINER, container_id="c1", status=RUNNING)
    _add(registry, "a2", 19002, isolation=CONTAINER, container_id="c2", status=RUNNING)

    statuses = {s.agent_id: s for s in collect_statuses(registry, container_runtime)}

    assert statuses["a1"].to_dict() == {
        "agentId": "a1", "containerId": "c1", "status": "running",
        "cpuPercent": 5.0, "ramUsageMb": 100, "ramLimitMb": 2048, "port": 19001,
    }
    assert statuses["a2"].status == STOPPED
    assert statuses["a2"].ram_usage_mb == 0
