"""Command executor — runs one shell command per request and captures its output."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from run_box.models import CancelToken, ExecuteResult, TerminationReason
from run_box.registry import ProcessRegistry, signal_process_group

log = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
ESCALATION_DELAY = 2.0  # seconds between SIGTERM and SIGKILL

ProgressCallback = Callable[[str], None]


def validate_cwd(cwd: str) -> bool:
    """Return True if ``cwd`` is an existing directory we can read."""
    return os.path.isdir(cwd) and os.access(cwd, os.R_OK)


def truncation_marker(max_output_bytes: int) -> str:
    return f"\n[OUTPUT TRUNCATED at {max_output_bytes} bytes]"


@dataclass
class Execution:
    """State for a single running command."""

    command: str
    cwd: str
    timeout_ms: int
    max_output_bytes: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    start_time: float = field(default_factory=time.time)
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)
    total_bytes: int = 0
    cap_reached: bool = False
    killed: bool = False
    truncated: bool = False
    _process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    _escalation: asyncio.TimerHandle | None = field(default=None, repr=False)
    _deadline: asyncio.TimerHandle | None = field(default=None, repr=False)

    def terminate(self, reason: TerminationReason) -> None:
        """Kill the process group. Only the first call has any effect."""
        if self.killed or self._process is None:
            return
        self.killed = True
        self.truncated = reason is TerminationReason.TRUNCATION
        log.info("Terminating execution %s (%s)", self.id, reason.value)

        signal_process_group(self._process, signal.SIGTERM)
        self._escalation = asyncio.get_running_loop().call_later(
            ESCALATION_DELAY, signal_process_group, self._process, signal.SIGKILL,
        )

    def arm_timeout(self) -> None:
        """Schedule termination ``timeout_ms`` after now (the spawn time)."""
        self._deadline = asyncio.get_running_loop().call_later(
            self.timeout_ms / 1000, self.terminate, TerminationReason.TIMEOUT,
        )

    def cancel_timers(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None

    def result(self, returncode: int | None) -> ExecuteResult:
        stdout = "".join(self.stdout)
        if self.truncated:
            stdout += truncation_marker(self.max_output_bytes)

        if self.killed:
            exit_code = -1
        elif returncode is None or returncode < 0:
            # Negative return codes mean death by a signal: no exit status.
            exit_code = -1
        else:
            exit_code = returncode

        return ExecuteResult(
            stdout=stdout,
            stderr="".join(self.stderr),
            exit_code=exit_code,
            truncated=self.truncated,
            killed=self.killed,
        )


class CommandExecutor:
    """Spawns shell commands and enforces their timeout, output cap and cancellation."""

    def __init__(self, registry: ProcessRegistry) -> None:
        self._registry = registry
        self._inflight: set[asyncio.Task[ExecuteResult]] = set()

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    async def execute(
        self,
        command: str,
        cwd: str,
        timeout_ms: int,
        max_output_bytes: int,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancelToken | None = None,
    ) -> ExecuteResult:
        """Run ``command`` through ``/bin/sh -c`` and wait for its result.

        Failures to spawn are reported in the result (exit code -1, message
        in stderr) rather than raised.  The timeout runs from the moment the
        process is spawned.  If the awaiting task is cancelled the process
        group is terminated and bookkeeping finishes in the background
        before CancelledError propagates; ``cancel_token`` itself is only
        observed, never cancelled here.
        """
        execution = Execution(
            command=command,
            cwd=cwd,
            timeout_ms=timeout_ms,
            max_output_bytes=max_output_bytes,
        )

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                # Create new process group so we can kill the whole tree
                preexec_fn=os.setsid,
            )
        except (OSError, ValueError) as exc:
            # ValueError: arguments the OS cannot take, e.g. an embedded NUL
            log.warning("Failed to start %r in %s: %s", command, cwd, exc)
            return ExecuteResult(
                stdout="",
                stderr=str(exc),
                exit_code=-1,
                truncated=False,
                killed=False,
            )

        execution._process = process
        execution.arm_timeout()
        self._registry.register(execution.id, process)
        log.debug("Spawned execution %s (pid=%s): %s", execution.id, process.pid, command)

        # Private token: cancelling our caller must not cancel a shared token
        token = CancelToken()
        unlink = cancel_token.subscribe(token.cancel) if cancel_token is not None else None

        task = asyncio.ensure_future(self._supervise(execution, token, on_progress))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        if unlink is not None:
            task.add_done_callback(lambda _: unlink())

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            token.cancel()
            raise

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _supervise(
        self,
        execution: Execution,
        token: CancelToken,
        on_progress: ProgressCallback | None,
    ) -> ExecuteResult:
        process = execution._process
        assert process is not None

        unsubscribe: Callable[[], None] | None = None
        if token.cancelled:
            execution.terminate(TerminationReason.CANCEL)
        else:
            unsubscribe = token.subscribe(
                lambda: execution.terminate(TerminationReason.CANCEL)
            )

        returncode: int | None = None
        try:
            await asyncio.gather(
                self._read_stream(execution, process.stdout, execution.stdout, on_progress),  # type: ignore[arg-type]
                self._read_stream(execution, process.stderr, execution.stderr, on_progress),  # type: ignore[arg-type]
            )
            returncode = await process.wait()
        finally:
            execution.cancel_timers()
            if unsubscribe is not None:
                unsubscribe()
            if process.returncode is None:
                # Supervision was interrupted; never leave the group behind
                signal_process_group(process, signal.SIGKILL)
            self._registry.unregister(execution.id)

        result = execution.result(returncode)
        log.info(
            "Execution %s finished: exit=%d killed=%s truncated=%s (%.1fs)",
            execution.id, result.exit_code, result.killed, result.truncated,
            time.time() - execution.start_time,
        )
        return result

    @staticmethod
    async def _read_stream(
        execution: Execution,
        stream: asyncio.StreamReader,
        sink: list[str],
        on_progress: ProgressCallback | None,
    ) -> None:
        """Read a pipe to EOF, buffering output until the byte cap is hit."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            if execution.cap_reached:
                # Keep draining so the pipe never blocks the dying process
                continue

            remaining = execution.max_output_bytes - execution.total_bytes
            if len(chunk) > remaining:
                sink.append(decoder.decode(chunk[:remaining], final=True))
                execution.total_bytes = execution.max_output_bytes
                execution.cap_reached = True
                execution.terminate(TerminationReason.TRUNCATION)
                continue

            execution.total_bytes += len(chunk)
            text = decoder.decode(chunk)
            if not text:
                continue
            sink.append(text)
            if on_progress is not None:
                try:
                    on_progress(text)
                except Exception:
                    log.exception("Progress callback failed for execution %s", execution.id)

        if not execution.cap_reached:
            tail = decoder.decode(b"", final=True)
            if tail:
                sink.append(tail)
