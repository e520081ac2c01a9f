"""
Agent Registry
==============

Authoritative record of every agent deployed on this host, persisted as a
single JSON document (``<state_dir>/agents.json``) that is rewritten in full
after each mutation. Also owns the per-agent directory pair:

    <state_dir>/agents/<agent_id>/workspace   → /workspace in the container
    <state_dir>/agents/<agent_id>/state       → /state in the container
"""

from __future__ import annotations
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterator, Optional

from .models import RUNNING, AgentRecord

log = logging.getLogger(__name__)

BASE_PORT = 19001


class AgentRegistry:
    def __init__(self, state_dir: Path, base_port: int = BASE_PORT):
        self.state_dir   = Path(state_dir)
        self.agents_dir  = self.state_dir / "agents"
        self.path        = self.state_dir / "agents.json"
        self.base_port   = base_port
        self._agents: dict[str, AgentRecord] = {}

    # ─── Persistence ──────────────────────────────────────────────────────────

    def load(self) -> int:
        """Load persisted records. A missing or corrupt file yields an empty registry."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        self._agents = {}

        if not self.path.exists():
            return 0
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError("expected a JSON list of agent records")
            records = [AgentRecord.from_dict(r) for r in raw]
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning(f"[registry] Failed to load agents state from {self.path}: {e}")
            return 0

        self._agents = {r.agent_id: r for r in records}
        log.info(f"[registry] Loaded {len(self._agents)} agent(s) from state file")
        return len(self._agents)

    def save(self):
        """Rewrite the whole document atomically. Failures are logged."""
        records = [r.to_dict() for r in self._agents.values()]
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".agents-", suffix=".json", dir=self.state_dir)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(records, f, indent=2)
                # Records carry agent env (API keys), owner only
                os.chmod(tmp, 0o600)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            log.error(f"[registry] Failed to save agents state: {e}")

    # ─── Records ──────────────────────────────────────────────────────────────

    def get(self, agent_id: str) -> Optional[AgentRecord]:
        return self._agents.get(agent_id)

    def upsert(self, record: AgentRecord):
        self._agents[record.agent_id] = record
        self.save()

    def remove(self, agent_id: str) -> Optional[AgentRecord]:
        record = self._agents.pop(agent_id, None)
        self.save()
        return record

    def all(self) -> list[AgentRecord]:
        return list(self._agents.values())

    def list_running(self) -> list[AgentRecord]:
        return [r for r in self._agents.values() if r.status == RUNNING]

    def allocate_port(self) -> int:
        """First free port at or above the base port."""
        used = {r.port for r in self._agents.values()}
        port = self.base_port
        while port in used:
            port += 1
        return port

    def __len__(self) -> int:
        return len(self._agents)

    def __iter__(self) -> Iterator[AgentRecord]:
        return iter(list(self._agents.values()))

    # ─── Directories ──────────────────────────────────────────────────────────

    def agent_dir(self, agent_id: str) -> Path:
        return self.agents_dir / agent_id

    def workspace_dir(self, agent_id: str) -> Path:
        return self.agent_dir(agent_id) / "workspace"

    def state_dir_for(self, agent_id: str) -> Path:
        return self.agent_dir(agent_id) / "state"

    def ensure_dirs(self, agent_id: str) -> tuple[Path, Path]:
        workspace = self.workspace_dir(agent_id)
        state     = self.state_dir_for(agent_id)
        # Owner only, other local users must not read agent files
        for d in (self.agent_dir(agent_id), workspace, state):
            d.mkdir(mode=0o700, parents=True, exist_ok=True)
        return workspace, state

    def remove_dirs(self, agent_id: str):
        """Best-effort removal of the agent's workspace and state."""
        target = self.agent_dir(agent_id)
        if not target.exists():
            return
        try:
            shutil.rmtree(target)
        except OSError as e:
            log.warning(f"[registry] Failed to clean up agent dir {target}: {e}")
