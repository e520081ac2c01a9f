from __future__ import annotations

import itertools

import pytest
import requests

from host_agent.commands import CommandProcessor, ConfigFetchError
from host_agent.config import AgentConfig
from host_agent.container import ContainerError, ContainerStats
from host_agent.fallback import FallbackError
from host_agent.models import DeployConfig
from host_agent.registry import AgentRegistry
from host_agent.runtime import Runtime


class FakeContainer:
    """In-memory stand-in for ContainerAdapter."""

    def __init__(self) -> None:
        self.engine = "docker"
        self.containers: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.pulled: list[str] = []
        self.fail_start = False
        self.fail_remove = False
        self.fail_create = False
        self.inspect_error = False
        self._ids = itertools.count(1)

    def pull_image(self, image: str) -> None:
        self.pulled.append(image)

    def create(self, spec) -> str:
        self.calls.append(("create", spec.name))
        if self.fail_create:
            raise ContainerError("docker run failed (exit 125): name already in use")
        cid = f"c{next(self._ids):011d}"
        self.containers[cid] = {"spec": spec, "env": dict(spec.env), "running": True}
        return cid

    def wait_until_running(self, container_id: str, attempts: int = 10, interval: float = 1.0) -> bool:
        return True

    def start(self, container_id: str) -> None:
        self.calls.append(("start", container_id))
        if self.fail_start:
            raise ContainerError(f"docker start failed: {container_id}")
        self.containers[container_id]["running"] = True

    def stop(self, container_id: str, grace: int = 10) -> None:
        self.calls.append(("stop", container_id))
        if container_id in self.containers:
            self.containers[container_id]["running"] = False

    def remove(self, container_id: str, force: bool = True) -> None:
        self.calls.append(("remove", container_id))
        if self.fail_remove:
            raise ContainerError("docker rm failed (exit 1): engine unavailable")
        if container_id not in self.containers:
            raise ContainerError(f"docker rm failed (exit 1): No such container: {container_id}")
        del self.containers[container_id]

    def is_running(self, container_id: str) -> bool:
        if self.inspect_error:
            raise ContainerError("docker inspect timed out after 10s")
        return self.containers.get(container_id, {}).get("running", False)

    def stats(self, container_id: str) -> ContainerStats:
        return ContainerStats(cpu_percent=5.0, ram_usage_mb=100, ram_limit_mb=2048)

    def exec(self, container_id: str, args: list, timeout: int) -> tuple:
        self.calls.append(("exec", container_id, tuple(args)))
        return '{"result": {"payloads": [{"text": "hello from container"}]}}', ""


class FakeFallback:
    """In-memory stand-in for FallbackAdapter."""

    def __init__(self) -> None:
        self.binary = "/usr/local/bin/openclaw"
        self.procs: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.status_error = False
        self.fail_start = False
        self._pids = itertools.count(4000)

    def start(self, profile: str, port: int, env: dict):
        self.calls.append(("start", profile))
        if self.fail_start:
            raise FallbackError(f"Failed to start profile agent {profile}: not executable")
        pid = next(self._pids)
        self.procs[profile] = {"pid": pid, "port": port, "env": dict(env), "running": True}
        return pid

    def stop(self, profile: str) -> None:
        self.calls.append(("stop", profile))
        if profile in self.procs:
            self.procs[profile]["running"] = False

    def kill(self, pid, grace: float = 3.0) -> None:
        self.calls.append(("kill", pid))
        for proc in self.procs.values():
            if proc["pid"] == pid:
                proc["running"] = False

    def status(self, profile: str, pid) -> str:
        if self.status_error:
            raise FallbackError("gateway status timed out after 10s")
        proc = self.procs.get(profile)
        if proc is None:
            return "unknown"
        return "running" if proc["running"] else "stopped"

    def run_agent(self, profile: str, args: list, timeout: int) -> tuple:
        self.calls.append(("agent", profile, tuple(args)))
        return '{"reply": "hello from profile"}', ""


class FakeResponse:
    def __init__(self, status_code: int, json_data=None, headers=None, text: str = "") -> None:
        self.status_code = status_code
        self._json = json_data
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("No JSON object could be decoded")
        return self._json


class FakeSession:
    """Replays queued responses (or exceptions) for Session.post."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.bodies: list[dict] = []
        self.headers: list[dict] = []

    def queue(self, *responses) -> None:
        self.responses.extend(responses)

    def post(self, url, json=None, headers=None, timeout=None):
        self.bodies.append(json)
        self.headers.append(headers)
        item = self.responses.pop(0) if self.responses else FakeResponse(200, {"ok": True, "commands": []})
        if isinstance(item, Exception):
            raise item
        return item


class StubConfigFetcher:
    def __init__(self) -> None:
        self.documents: dict[str, dict] = {}
        self.requested: list[str] = []

    def __call__(self, url: str) -> DeployConfig:
        self.requested.append(url)
        if url not in self.documents:
            raise ConfigFetchError(f"Deploy config fetch failed: 404 — {url}")
        return DeployConfig.from_dict(self.documents[url])


@pytest.fixture
def config(tmp_path) -> AgentConfig:
    return AgentConfig(
        api_key   = "sbx_host_testkey1234",
        host_id   = "host-1",
        api_url   = "https://api.test",
        state_dir = tmp_path / "sparebox",
    )


@pytest.fixture
def registry(tmp_path) -> AgentRegistry:
    reg = AgentRegistry(tmp_path / "sparebox")
    reg.load()
    return reg


@pytest.fixture
def container() -> FakeContainer:
    return FakeContainer()


@pytest.fixture
def fallback() -> FakeFallback:
    return FakeFallback()


@pytest.fixture
def fetcher() -> StubConfigFetcher:
    return StubConfigFetcher()


@pytest.fixture
def container_runtime(container, fallback) -> Runtime:
    return Runtime(container=container, fallback=fallback)


@pytest.fixture
def fallback_runtime(fallback) -> Runtime:
    return Runtime(container=None, fallback=fallback)


@pytest.fixture
def make_processor(registry, fetcher, tmp_path):
    def _make(runtime: Runtime) -> CommandProcessor:
        return CommandProcessor(
            registry,
            runtime,
            fetch_config  = fetcher,
            restart_pause = 0,
            profile_home  = tmp_path / "home",
        )
    return _make


@pytest.fixture
def network_error() -> Exception:
    return requests.ConnectionError("Connection refused")
