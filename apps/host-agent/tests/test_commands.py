from __future__ import annotations

import json
import stat

from host_agent.models import CONTAINER, DEPLOYING, ERROR, FALLBACK, RUNNING, STOPPED, AgentRecord
from host_agent.registry import BASE_PORT
from host_agent.runtime import Runtime


def _cmd(cmd_id: str, kind: str, agent_id: str, **payload) -> dict:
    return {"id": cmd_id, "type": kind, "agentId": agent_id, "payload": payload}


def test_deploy_creates_single_running_record(registry, container, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)

    [ack] = processor.process_raw([_cmd("c1", "deploy", "agent-a", resources={"ramMb": 2048})])

    assert ack.status == "acked"
    record = registry.get("agent-a")
    assert record is not None
    assert record.status == RUNNING
    assert record.isolation == CONTAINER
    assert record.handle is not None and ack.handle == record.handle
    assert record.port >= BASE_PORT
    assert record.profile == "sparebox-agent-agent-a"
    spec = container.containers[record.container_id]["spec"]
    assert spec.ram_mb == 2048
    assert spec.port == record.port
    assert registry.workspace_dir("agent-a").is_dir()
    assert registry.state_dir_for("agent-a").is_dir()


def test_repeated_deploy_is_idempotent(registry, container, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)

    first = processor.process_raw([_cmd("c1", "deploy", "agent-a")])[0]
    again = processor.process_raw([
        _cmd("c2", "deploy", "agent-a"),
        _cmd("c3", "deploy", "agent-a", image="other:latest"),
    ])

    assert [a.handle for a in again] == [first.handle, first.handle]
    assert all(a.status == "acked" for a in again)
    assert len(registry) == 1
    assert [c for c in container.calls if c[0] == "create"] == [("create", "sparebox-agent-agent-a")]


def test_deploys_get_distinct_ports(registry, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)

    processor.process_raw([_cmd(f"c{i}", "deploy", f"agent-{i}") for i in range(3)])

    ports = [r.port for r in registry.all()]
    assert sorted(ports) == [BASE_PORT, BASE_PORT + 1, BASE_PORT + 2]


def test_deploy_without_runtime_fails_cleanly(registry, make_processor) -> None:
    processor = make_processor(Runtime(container=None, fallback=None))

    [ack] = processor.process_raw([_cmd("c1", "deploy", "agent-a")])

    assert ack.status == "error"
    assert ack.error == "No isolation runtime available"
    assert len(registry) == 0


def test_deploy_failure_marks_error_and_retry_succeeds(registry, container, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)
    container.fail_create = True

    [failed] = processor.process_raw([_cmd("c1", "deploy", "agent-a")])

    assert failed.status == "error"
    assert registry.get("agent-a").status == ERROR
    port = registry.get("agent-a").port

    container.fail_create = False
    [retried] = processor.process_raw([_cmd("c2", "deploy", "agent-a")])

    assert retried.status == "acked"
    record = registry.get("agent-a")
    assert record.status == RUNNING
    assert record.port == port
    assert len(registry) == 1


def test_deploy_applies_remote_config(registry, container, container_runtime, fetcher, make_processor) -> None:
    fetcher.documents["/api/agents/agent-a/deploy-config"] = {
        "env": {"ANTHROPIC_API_KEY": "sk-test", "MODEL": "claude"},
        "workspaceFiles": {"SOUL.md": "# be helpful", "notes/todo.md": "- ship", "../escape.md": "nope"},
        "workloadConfig": {"agents": {"defaults": {"model": "claude"}}},
    }
    processor = make_processor(container_runtime)

    [ack] = processor.process_raw([
        _cmd("c1", "deploy", "agent-a", env={"MODEL": "payload", "TZ": "UTC"},
             configUrl="/api/agents/agent-a/deploy-config"),
    ])

    assert ack.status == "acked"
    workspace = registry.workspace_dir("agent-a")
    state = registry.state_dir_for("agent-a")
    assert (workspace / "SOUL.md").read_text() == "# be helpful"
    assert (workspace / "notes" / "todo.md").read_text() == "- ship"
    assert not (workspace.parent / "escape.md").exists()
    assert json.loads((state / "openclaw-config.json").read_text())["agents"]["defaults"]["model"] == "claude"
    assert (state / "deploy-config.json").exists()

    record = registry.get("agent-a")
    env = container.containers[record.container_id]["env"]
    assert env == {"MODEL": "claude", "TZ": "UTC", "ANTHROPIC_API_KEY": "sk-test"}


def test_deploy_survives_config_fetch_failure(registry, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)

    [ack] = processor.process_raw([_cmd("c1", "deploy", "agent-a", configUrl="/missing", env={"A": "1"})])

    assert ack.status == "acked"
    assert registry.get("agent-a").env == {"A": "1"}


def test_undeploy_cleans_up_even_when_remove_fails(registry, container, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-a")])
    agent_dir = registry.agent_dir("agent-a")
    assert agent_dir.exists()

    container.fail_remove = True
    [ack] = processor.process_raw([_cmd("c2", "undeploy", "agent-a")])

    assert ack.status == "error"
    assert "engine unavailable" in ack.error
    assert not agent_dir.exists()
    assert registry.get("agent-a") is None

    [again] = processor.process_raw([_cmd("c3", "undeploy", "agent-a")])
    assert again.status == "acked"
    assert again.handle is None


def test_undeploy_fallback_stops_and_kills(registry, fallback, fallback_runtime, make_processor) -> None:
    processor = make_processor(fallback_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-b")])
    pid = registry.get("agent-b").pid

    [ack] = processor.process_raw([_cmd("c2", "undeploy", "agent-b")])

    assert ack.status == "acked"
    assert ("stop", "sparebox-agent-agent-b") in fallback.calls
    assert ("kill", pid) in fallback.calls
    assert len(registry) == 0


def test_stop_fallback_agent_reports_not_running(registry, fallback, fallback_runtime, make_processor) -> None:
    processor = make_processor(fallback_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-b")])
    record = registry.get("agent-b")
    assert record.isolation == FALLBACK
    pid = record.pid
    assert pid is not None

    [ack] = processor.process_raw([_cmd("c2", "stop", "agent-b")])

    assert ack.status == "acked"
    assert ack.handle == f"pid:{pid}"
    assert registry.get("agent-b").status == STOPPED
    assert fallback.status(record.profile, pid) == "stopped"


def test_start_is_noop_for_running_agent(registry, container, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-a")])

    [ack] = processor.process_raw([_cmd("c2", "start", "agent-a")])

    assert ack.status == "acked"
    assert not [c for c in container.calls if c[0] == "start"]


def test_start_failure_marks_record_error(registry, container, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-a"), _cmd("c2", "stop", "agent-a")])
    assert registry.get("agent-a").status == STOPPED

    container.fail_start = True
    [ack] = processor.process_raw([_cmd("c3", "start", "agent-a")])

    assert ack.status == "error"
    assert registry.get("agent-a").status == ERROR


def test_restart_fallback_respawns_with_stored_env(registry, fallback, fallback_runtime, make_processor) -> None:
    processor = make_processor(fallback_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-b", env={"KEY": "v1"})])
    old_pid = registry.get("agent-b").pid

    [ack] = processor.process_raw([_cmd("c2", "restart", "agent-b")])

    record = registry.get("agent-b")
    assert ack.status == "acked"
    assert record.status == RUNNING
    assert record.pid != old_pid
    assert fallback.procs[record.profile]["env"] == {"KEY": "v1"}


def test_update_config_twice_keeps_only_latest_env_container(
    registry, container, container_runtime, make_processor,
) -> None:
    processor = make_processor(container_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-a", env={"MODEL": "initial", "EXTRA": "x"})])

    acks = processor.process_raw([
        _cmd("c2", "update_config", "agent-a", env={"MODEL": "first"}),
        _cmd("c3", "update_config", "agent-a", env={"MODEL": "second"}),
    ])

    assert [a.status for a in acks] == ["acked", "acked"]
    record = registry.get("agent-a")
    assert record.status == RUNNING
    assert container.containers[record.container_id]["env"] == {"MODEL": "second"}
    # Superseded containers are gone
    assert list(container.containers) == [record.container_id]


def test_update_config_twice_keeps_only_latest_env_fallback(
    registry, fallback, fallback_runtime, make_processor,
) -> None:
    processor = make_processor(fallback_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-b")])

    processor.process_raw([
        _cmd("c2", "update_config", "agent-b", env={"MODEL": "first", "OLD": "1"}),
        _cmd("c3", "update_config", "agent-b", env={"MODEL": "second"}),
    ])

    record = registry.get("agent-b")
    assert fallback.procs[record.profile]["env"] == {"MODEL": "second"}
    assert fallback.procs[record.profile]["running"] is True


def test_update_config_fetch_failure_marks_error(registry, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-a")])

    [ack] = processor.process_raw([_cmd("c2", "update_config", "agent-a", configUrl="/gone")])

    assert ack.status == "error"
    assert registry.get("agent-a").status == ERROR


def test_failing_command_does_not_abort_batch(registry, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)

    acks = processor.process_raw([
        _cmd("c1", "start", "ghost"),
        {"id": "c2", "type": "explode", "agentId": "agent-a"},
        {"type": "deploy", "agentId": "agent-a"},
        _cmd("c3", "deploy", "agent-a"),
    ])

    assert [(a.id, a.status) for a in acks] == [("c1", "error"), ("c2", "error"), ("c3", "acked")]
    assert acks[0].error == "Agent ghost not found"
    assert registry.get("agent-a").status == RUNNING


def test_unexpected_exception_becomes_error_ack(registry, container_runtime, make_processor) -> None:
    processor = make_processor(container_runtime)
    processor.process_raw([_cmd("c1", "deploy", "agent-a")])

    def explode(url):
        raise KeyError("boom")

    processor.fetch_config = explode
    acks = processor.process_raw([
        _cmd("c2", "update_config", "agent-a", configUrl="/cfg"),
        _cmd("c3", "stop", "agent-a"),
    ])

    assert [a.status for a in acks] == ["error", "acked"]


def test_unexpected_launch_error_marks_error_and_retry_succeeds(
    registry, fallback, fallback_runtime, make_processor, monkeypatch,
) -> None:
    processor = make_processor(fallback_runtime)

    def broken_start(profile, port, env):
        raise ValueError("illegal environment variable name")

    monkeypatch.setattr(fallback, "start", broken_start)
    [failed] = processor.process_raw([_cmd("c1", "deploy", "agent-b")])

    assert failed.status == "error"
    assert registry.get("agent-b").status == ERROR

    monkeypatch.undo()
    [retried] = processor.process_raw([_cmd("c2", "deploy", "agent-b")])

    assert retried.status == "acked"
    assert retried.handle is not None
    assert registry.get("agent-b").status == RUNNING


def test_deploy_interrupted_mid_launch_is_retried(registry, container, container_runtime, make_processor) -> None:
    registry.upsert(AgentRecord(
        agent_id  = "agent-a",
        profile   = "sparebox-agent-agent-a",
        port      = 19005,
        isolation = CONTAINER,
        image     = "img:1",
        status    = DEPLOYING,
    ))
    processor = make_processor(container_runtime)

    [ack] = processor.process_raw([_cmd("c1", "deploy", "agent-a")])

    record = registry.get("agent-a")
    assert ack.status == "acked"
    assert record.container_id is not None
    assert ack.handle == record.container_id
    assert record.status == RUNNING
    assert record.port == 19005


def test_env_that_cannot_reach_a_process_is_rejected(registry, fallback_runtime, make_processor) -> None:
    processor = make_processor(fallback_runtime)

    [ack] = processor.process_raw([_cmd("c1", "deploy", "agent-b", env={"BAD=KEY": "v"})])

    assert ack.status == "error"
    assert "invalid env var name" in ack.error
    assert registry.get("agent-b") is None


def test_fallback_deploy_writes_profile_credentials(registry, fallback_runtime, make_processor, tmp_path) -> None:
    processor = make_processor(fallback_runtime)

    [ack] = processor.process_raw([
        _cmd("c1", "deploy", "agent-b", env={"ANTHROPIC_API_KEY": "sk-ant", "OPENAI_API_KEY": "sk-oai"}),
    ])

    assert ack.status == "acked"
    profile_root = tmp_path / "home" / ".openclaw-sparebox-agent-agent-b"
    auth_file = profile_root / "agents" / "main" / "agent" / "auth-profiles.json"
    auth = json.loads(auth_file.read_text())
    assert auth["profiles"]["anthropic:sparebox"]["token"] == "sk-ant"
    assert auth["profiles"]["openai:sparebox"]["token"] == "sk-oai"
    assert auth["lastGood"] == {"anthropic": "anthropic:sparebox", "openai": "openai:sparebox"}
    assert stat.S_IMODE(auth_file.stat().st_mode) == 0o600
    workload = json.loads((profile_root / "openclaw.json").read_text())
    assert workload["agents"]["defaults"]["model"]["primary"] == "anthropic/claude-sonnet-4-20250514"


def test_fallback_deploy_survives_credential_write_failure(
    registry, fallback, fallback_runtime, make_processor, tmp_path,
) -> None:
    # A file where the home directory should be makes every write fail
    (tmp_path / "home").write_text("")
    processor = make_processor(fallback_runtime)

    [ack] = processor.process_raw([_cmd("c1", "deploy", "agent-b", env={"ANTHROPIC_API_KEY": "sk-ant"})])

    assert ack.status == "acked"
    assert registry.get("agent-b").status == RUNNING
    assert fallback.procs["sparebox-agent-agent-b"]["env"] == {"ANTHROPIC_API_KEY": "sk-ant"}


def test_container_deploy_writes_no_profile_credentials(container_runtime, make_processor, tmp_path) -> None:
    processor = make_processor(container_runtime)

    processor.process_raw([_cmd("c1", "deploy", "agent-a", env={"ANTHROPIC_API_KEY": "sk-ant"})])

    assert not (tmp_path / "home").exists()
