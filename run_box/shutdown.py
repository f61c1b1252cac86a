"""Shutdown coordinator — drains sessions and processes before the daemon exits."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable

from run_box.registry import ProcessRegistry
from run_box.sessions import SessionRouter

log = logging.getLogger(__name__)


class ShutdownState(str, enum.Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ShutdownCoordinator:
    """One-shot RUNNING → DRAINING → STOPPED state machine.

    Draining stops the router from accepting work, closes every session and
    terminates all running commands (SIGKILL after the grace period).  Once
    stopped, ``stop_listener`` is called to halt the HTTP server.
    """

    def __init__(
        self,
        router: SessionRouter,
        registry: ProcessRegistry,
        grace_ms: int,
        stop_listener: Callable[[], None],
    ) -> None:
        self._router = router
        self._registry = registry
        self._grace_ms = grace_ms
        self._stop_listener = stop_listener
        self._state = ShutdownState.RUNNING

    @property
    def state(self) -> ShutdownState:
        return self._state

    async def shutdown(self) -> None:
        """Drain and stop. Calls after the first one are no-ops."""
        if self._state is not ShutdownState.RUNNING:
            log.debug("Shutdown already %s — ignoring", self._state.value)
            return

        self._state = ShutdownState.DRAINING
        log.info(
            "Draining: %d session(s), %d running process(es)",
            self._router.session_count(), self._registry.count(),
        )
        self._router.begin_shutdown()
        try:
            await self._router.close_all()
        finally:
            await self._registry.terminate_all(self._grace_ms)

        self._state = ShutdownState.STOPPED
        log.info("Drained — stopping listener")
        self._stop_listener()
