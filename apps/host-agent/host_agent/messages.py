"""
Chat Message Bridge
===================

Heartbeat responses can carry chat messages for deployed agents. Each message
is handed to the workload's own CLI (``openclaw agent --message ...``) — via
``exec`` for container agents, via ``--profile`` for fallback agents — on a
background thread, because an agent reply can take minutes. Replies are
queued and ride along on the next heartbeat.
"""

from __future__ import annotations
import dataclasses
import json
import logging
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

from .container import ContainerError
from .fallback import FallbackError
from .models import CONTAINER, FALLBACK, RUNNING, AgentRecord, OutboundQueue
from .registry import AgentRegistry
from .runtime import NoRuntimeError, Runtime

log = logging.getLogger(__name__)

REPLY_TIMEOUT = 120
AGENT_TIMEOUT = 90


@dataclass
class IncomingMessage:
    id:       str
    agent_id: str
    content:  str

    @classmethod
    def from_dict(cls, raw: object) -> "IncomingMessage":
        if not isinstance(raw, dict):
            raise ValueError("message must be an object")
        msg_id, agent_id, content = raw.get("id"), raw.get("agentId"), raw.get("content")
        if not (isinstance(msg_id, str) and isinstance(agent_id, str) and isinstance(content, str)):
            raise ValueError("message needs string id, agentId and content")
        return cls(id=msg_id, agent_id=agent_id, content=content)


@dataclass
class MessageResponse:
    message_id: str
    agent_id:   str
    content:    str

    def to_dict(self) -> dict:
        return {"messageId": self.message_id, "agentId": self.agent_id, "content": self.content}


def parse_agent_reply(stdout: str, stderr: str = "") -> str:
    """
    Extract reply text from ``openclaw agent --json`` output.

        {"result": {"payloads": [{"text": "hi"}]}}  → "hi"
        {"reply": "hi"}                             → "hi"
        {"status": "error", "error": "boom"}        → "[System] Agent error: boom"
        "plain text"                                → "plain text"
    """
    trimmed = stdout.strip()
    try:
        data = json.loads(trimmed)
    except ValueError:
        if trimmed:
            return trimmed
        if stderr.strip():
            return f"[System] Agent error: {stderr.strip()}"
        return "[Agent returned empty response]"

    if isinstance(data, str):
        return data
    if not isinstance(data, dict):
        return json.dumps(data, indent=2)

    result = data.get("result")
    payloads = result.get("payloads") if isinstance(result, dict) else None
    if isinstance(payloads, list):
        texts = [p.get("text") for p in payloads if isinstance(p, dict) and p.get("text")]
        if texts:
            return "\n\n".join(texts)

    if data.get("status") == "error" or data.get("error"):
        err = data.get("error") or data.get("message") or data.get("summary") or "Unknown error"
        return f"[System] Agent error: {err}"

    for key in ("reply", "text", "content", "message", "output", "response"):
        if isinstance(data.get(key), str) and data[key]:
            return data[key]

    return json.dumps(data, indent=2)


class MessageBridge:
    def __init__(self, registry: AgentRegistry, runtime: Runtime, replies: OutboundQueue):
        self.registry = registry
        self.runtime  = runtime
        self.replies  = replies

    def dispatch(self, raw_messages: Iterable) -> list[threading.Thread]:
        """Start one delivery thread per valid message."""
        threads = []
        for raw in raw_messages:
            try:
                msg = IncomingMessage.from_dict(raw)
            except ValueError as e:
                log.warning(f"[messages] Dropped malformed message: {e}")
                continue

            record = self.registry.get(msg.agent_id)
            # Snapshot so the worker never reads registry state
            snapshot = dataclasses.replace(record) if record and record.status == RUNNING else None

            t = threading.Thread(
                target = self.deliver,
                args   = (msg, snapshot),
                name   = f"msg-{msg.id[:8]}",
                daemon = True,
            )
            t.start()
            threads.append(t)
        return threads

    def deliver(self, msg: IncomingMessage, record: Optional[AgentRecord]) -> MessageResponse:
        content = self._reply(msg, record)
        response = MessageResponse(message_id=msg.id, agent_id=msg.agent_id, content=content)
        self.replies.extend([response])
        return response

    def _reply(self, msg: IncomingMessage, record: Optional[AgentRecord]) -> str:
        if record is None:
            log.warning(f"[messages] Message for unknown agent {msg.agent_id} — skipping")
            return "[System] Agent not found on this host."

        # Stable session per agent so the conversation persists
        agent_args = [
            "agent",
            "--session-id", f"sparebox-chat-{msg.agent_id[:12]}",
            "--message", msg.content,
            "--json",
            "--timeout", str(AGENT_TIMEOUT),
        ]
        try:
            if record.isolation == CONTAINER and record.container_id:
                log.info(f"[messages] Sending message to container agent {msg.agent_id} ({record.container_id})")
                stdout, stderr = self.runtime.container.exec(
                    record.container_id, ["openclaw", *agent_args], REPLY_TIMEOUT,
                )
            elif record.isolation == FALLBACK:
                log.info(f"[messages] Sending message to profile agent {msg.agent_id} ({record.profile})")
                stdout, stderr = self.runtime.fallback.run_agent(record.profile, agent_args, REPLY_TIMEOUT)
            else:
                log.warning(f"[messages] Agent {msg.agent_id} has unsupported isolation: {record.isolation}")
                return "[System] Agent isolation mode does not support messaging."
        except (ContainerError, FallbackError, NoRuntimeError) as e:
            log.error(f"[messages] Message {msg.id} for agent {msg.agent_id} failed: {e}")
            return f"[System] Failed to deliver message to agent: {e}"

        reply = parse_agent_reply(stdout, stderr)
        log.info(f"[messages] Agent {msg.agent_id} responded ({len(reply)} chars)")
        return reply
