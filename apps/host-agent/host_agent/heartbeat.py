"""
Heartbeat Transport
===================

One POST per tick to ``<api_url>/api/hosts/heartbeat``:

  request:  host metrics + agent statuses + queued command acks + chat replies
  response: {ok, commands[], messages[], nextHeartbeatMs?}

Status handling:
  2xx      → reset backoff, next tick at server/default interval ± 5s jitter
  401/403  → fatal for this run (dead credential), loop halts
  429      → wait Retry-After seconds if given, else backoff
  5xx etc. → exponential backoff, 1s doubling up to 5min

Queued acks and replies are only considered delivered on a 2xx; every other
path puts them back at the front of their queue.
"""

from __future__ import annotations
import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Optional

import requests

from .config import AgentConfig
from .models import OutboundQueue

log = logging.getLogger(__name__)

MIN_BACKOFF_MS     = 1_000
MAX_BACKOFF_MS     = 300_000     # 5 minutes
MIN_SERVER_MS      = 30_000      # floor for a server-suggested interval
MIN_DELAY_MS       = 5_000       # floor after jitter
JITTER_MS          = 5_000
REQUEST_TIMEOUT    = 30


# ─── Backoff ──────────────────────────────────────────────────────────────────

@dataclass
class Backoff:
    """After N consecutive failures ``current_ms == min(floor * 2**N, ceiling)``."""
    floor_ms:   int = MIN_BACKOFF_MS
    ceiling_ms: int = MAX_BACKOFF_MS
    current_ms: int = field(init=False)
    failures:   int = field(default=0, init=False)

    def __post_init__(self):
        self.current_ms = self.floor_ms

    def failure(self) -> int:
        """Record a failure and return how long to wait before retrying."""
        wait = self.current_ms
        self.current_ms = min(self.current_ms * 2, self.ceiling_ms)
        self.failures += 1
        return wait

    def reset(self):
        self.current_ms = self.floor_ms
        self.failures = 0


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Retry-After in seconds → milliseconds. HTTP-date form is not honoured."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return int(seconds * 1000)


# ─── Wire types ───────────────────────────────────────────────────────────────

@dataclass
class HeartbeatResponse:
    ok:                bool          = True
    commands:          list          = field(default_factory=list)
    messages:          list          = field(default_factory=list)
    next_heartbeat_ms: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "HeartbeatResponse":
        commands = data.get("commands")
        messages = data.get("messages")
        next_ms = data.get("nextHeartbeatMs")
        try:
            next_ms = int(next_ms) if next_ms is not None else None
        except (TypeError, ValueError):
            next_ms = None
        return cls(
            ok                = bool(data.get("ok", True)),
            commands          = commands if isinstance(commands, list) else [],
            messages          = messages if isinstance(messages, list) else [],
            next_heartbeat_ms = next_ms,
        )


@dataclass
class HeartbeatOutcome:
    delay_ms:    int
    delivered:   bool                        = False
    fatal:       bool                        = False
    status_code: Optional[int]               = None
    response:    Optional[HeartbeatResponse] = None


# ─── Transport ────────────────────────────────────────────────────────────────

class HeartbeatTransport:
    def __init__(
        self,
        config:  AgentConfig,
        acks:    OutboundQueue,
        replies: OutboundQueue,
        session: Optional[requests.Session] = None,
        backoff: Optional[Backoff] = None,
        jitter:  Optional[Callable[[], int]] = None,
    ):
        self.config   = config
        self.acks     = acks
        self.replies  = replies
        self.url      = f"{config.api_url}/api/hosts/heartbeat"
        self.backoff  = backoff or Backoff()
        self._session = session or requests.Session()
        self._jitter  = jitter or (lambda: random.randint(-JITTER_MS, JITTER_MS - 1))

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type":  "application/json",
            "X-Host-Id":     self.config.host_id,
        }

    def _requeue(self, acks: list, replies: list):
        self.acks.requeue(acks)
        self.replies.requeue(replies)

    def next_interval(self, server_ms: Optional[int]) -> int:
        """Server-suggested (floored at 30s) or configured interval, plus jitter."""
        if server_ms and server_ms > 0:
            interval = max(server_ms, MIN_SERVER_MS)
        else:
            interval = self.config.heartbeat_interval_ms
        return max(interval + self._jitter(), MIN_DELAY_MS)

    def send(self, payload: dict) -> HeartbeatOutcome:
        acks    = self.acks.drain()
        replies = self.replies.drain()
        body = {
            **payload,
            "commandAcks":      [a.to_dict() for a in acks],
            "messageResponses": [r.to_dict() for r in replies],
        }

        try:
            resp = self._session.post(
                self.url,
                json    = body,
                headers = self._headers(),
                timeout = REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            self._requeue(acks, replies)
            wait = self.backoff.failure()
            log.warning(
                f"[heartbeat] Heartbeat failed: {e} — retrying in {wait / 1000:g}s "
                f"(attempt {self.backoff.failures})"
            )
            return HeartbeatOutcome(delay_ms=wait)

        code = resp.status_code

        if 200 <= code < 300:
            self.backoff.reset()
            try:
                data = resp.json()
                response = HeartbeatResponse.from_dict(data if isinstance(data, dict) else {})
            except ValueError:
                log.warning(f"[heartbeat] Unparsable heartbeat response: {resp.text[:200]}")
                response = HeartbeatResponse(ok=False)

            disk = payload.get("diskUsage", -1)
            log.info(
                f"[heartbeat] Heartbeat sent (CPU: {payload.get('cpuUsage')}%, "
                f"RAM: {payload.get('ramUsage')}%, Disk: {'N/A' if disk == -1 else f'{disk}%'}, "
                f"acks: {len(acks)}, commands: {len(response.commands)})"
            )
            return HeartbeatOutcome(
                delay_ms    = self.next_interval(response.next_heartbeat_ms),
                delivered   = True,
                status_code = code,
                response    = response,
            )

        self._requeue(acks, replies)

        if code in (401, 403):
            log.error(f"[heartbeat] Authentication failed ({code}). Check your API key.")
            log.error("[heartbeat] Heartbeats stopped — fix your API key and restart the daemon.")
            return HeartbeatOutcome(delay_ms=0, fatal=True, status_code=code)

        if code == 429:
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
            wait = retry_after if retry_after is not None else self.backoff.failure()
            log.warning(f"[heartbeat] Rate limited (429). Retrying in {wait / 1000:g}s")
            return HeartbeatOutcome(delay_ms=wait, status_code=code)

        wait = self.backoff.failure()
        if code >= 500:
            log.warning(f"[heartbeat] Server error ({code}). Retrying in {wait / 1000:g}s")
        else:
            log.warning(f"[heartbeat] Unexpected response: {code} — {resp.text[:200]}")
        return HeartbeatOutcome(delay_ms=wait, status_code=code)
