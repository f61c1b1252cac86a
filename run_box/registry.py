"""Process registry — tracks live command processes by execution id."""

from __future__ import annotations

import asyncio
import logging
import os
import signal

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.1  # seconds


def signal_process_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    """Send ``sig`` to the process group led by ``process``.

    Every command is spawned as a session leader, so its pid is also its
    process group id.  Returns False if the group is already gone.
    """
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, OSError):
        return False
    return True


class ProcessRegistry:
    """Mapping of execution id to the process running it.

    Only the executor mutates the registry: it registers a process right
    after spawning it and unregisters it once the process has closed.
    """

    def __init__(self) -> None:
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    def register(self, execution_id: str, process: asyncio.subprocess.Process) -> None:
        if execution_id in self._processes:
            raise ValueError(f"Execution '{execution_id}' is already registered")
        self._processes[execution_id] = process
        log.debug("Registered execution %s (pid=%s)", execution_id, process.pid)

    def unregister(self, execution_id: str) -> bool:
        removed = self._processes.pop(execution_id, None) is not None
        if removed:
            log.debug("Unregistered execution %s", execution_id)
        return removed

    def count(self) -> int:
        return len(self._processes)

    def __len__(self) -> int:
        return len(self._processes)

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._processes

    async def terminate_all(self, grace_ms: int) -> None:
        """SIGTERM every tracked process group, then SIGKILL after ``grace_ms``.

        Returns as soon as the registry drains or the grace period expires,
        whichever comes first.
        """
        if not self._processes:
            return

        log.info(
            "Terminating %d running process(es), grace period %d ms",
            len(self._processes), grace_ms,
        )
        self._signal_all(signal.SIGTERM)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace_ms / 1000
        while self._processes and loop.time() < deadline:
            await asyncio.sleep(POLL_INTERVAL)

        if self._processes:
            log.warning(
                "%d process(es) still running after grace period — sending SIGKILL",
                len(self._processes),
            )
            self._signal_all(signal.SIGKILL)

    def _signal_all(self, sig: int) -> None:
        for process in list(self._processes.values()):
            signal_process_group(process, sig)
