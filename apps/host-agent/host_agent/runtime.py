"""
Isolation Strategy
==================

Picks how agents run on this host, once per process:

  1. A container engine (docker, then podman) that answers ``info``
  2. Otherwise the openclaw workload binary, run as detached profiles
  3. Otherwise nothing — the daemon keeps reporting metrics but refuses deploys
"""

from __future__ import annotations
import logging
from typing import Callable, Optional, Sequence

from .container import ContainerAdapter, check_engine
from .fallback import FallbackAdapter, find_workload_binary
from .models import CONTAINER, FALLBACK, NONE

log = logging.getLogger(__name__)

ENGINE_CANDIDATES = ("docker", "podman")

_UNSET = object()


class NoRuntimeError(RuntimeError):
    """No isolation runtime is available for the requested operation."""


def detect_container_engine(candidates: Sequence[str] = ENGINE_CANDIDATES) -> Optional[str]:
    for engine in candidates:
        if check_engine(engine):
            log.info(f"[runtime] Container runtime detected: {engine}")
            return engine
    log.warning("[runtime] No container runtime (docker/podman) detected")
    return None


class Runtime:
    """
    Cached view of the isolation mechanisms available on this host.

    Adapters can be injected directly (tests) or discovered lazily via the
    detection callables. Each one runs at most once.
    """

    def __init__(
        self,
        container: object = _UNSET,
        fallback:  object = _UNSET,
        detect_container: Callable[[], Optional[ContainerAdapter]] = lambda: None,
        detect_fallback:  Callable[[], Optional[FallbackAdapter]]  = lambda: None,
    ):
        self._container = container
        self._fallback  = fallback
        self._detect_container = detect_container
        self._detect_fallback  = detect_fallback

    @classmethod
    def detect(cls, workload_binary: str = "openclaw",
               engines: Sequence[str] = ENGINE_CANDIDATES) -> "Runtime":
        def detect_container():
            engine = detect_container_engine(engines)
            return ContainerAdapter(engine) if engine else None

        def detect_fallback():
            path = find_workload_binary(workload_binary)
            if path:
                log.info(f"[runtime] Workload binary found at {path}")
                return FallbackAdapter(path)
            return None

        return cls(detect_container=detect_container, detect_fallback=detect_fallback)

    # ─── Cached detection ─────────────────────────────────────────────────────

    def container_adapter(self) -> Optional[ContainerAdapter]:
        if self._container is _UNSET:
            self._container = self._detect_container()
        return self._container  # type: ignore[return-value]

    def fallback_adapter(self) -> Optional[FallbackAdapter]:
        if self._fallback is _UNSET:
            self._fallback = self._detect_fallback()
        return self._fallback  # type: ignore[return-value]

    @property
    def mode(self) -> str:
        if self.container_adapter() is not None:
            return CONTAINER
        if self.fallback_adapter() is not None:
            return FALLBACK
        return NONE

    # ─── Required adapters ────────────────────────────────────────────────────

    @property
    def container(self) -> ContainerAdapter:
        adapter = self.container_adapter()
        if adapter is None:
            raise NoRuntimeError("Container runtime not available on this host")
        return adapter

    @property
    def fallback(self) -> FallbackAdapter:
        adapter = self.fallback_adapter()
        if adapter is None:
            raise NoRuntimeError("openclaw binary not found on this host")
        return adapter

    def describe(self) -> str:
        mode = self.mode
        if mode == CONTAINER:
            return f"container ({self.container.engine})"
        if mode == FALLBACK:
            return f"fallback (openclaw at {self.fallback.binary})"
        return "none — no docker/podman or openclaw binary found"
