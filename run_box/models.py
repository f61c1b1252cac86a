from __future__ import annotations

import enum
import logging
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ExecuteResult: terminal outcome of one execution (also the tool's output)
# ---------------------------------------------------------------------------

class ExecuteResult(BaseModel):
    """Immutable result of a finished command.

    ``exit_code`` is serialized as ``exitCode`` on the wire.  A killed
    execution always reports ``-1``; the cause (timeout, output cap or
    cancellation) is not recorded.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    stdout: str = Field(description="Standard output from the command")
    stderr: str = Field(description="Standard error from the command")
    exit_code: int = Field(alias="exitCode", description="Process exit code")
    truncated: bool = Field(description="Whether output was truncated")
    killed: bool = Field(description="Whether the process was killed")

    def to_wire(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


class TerminationReason(enum.Enum):
    TIMEOUT = "timeout"
    TRUNCATION = "truncation"
    CANCEL = "cancel"


# ---------------------------------------------------------------------------
# CancelToken: cooperative cancellation with one-shot subscribers
# ---------------------------------------------------------------------------

class CancelToken:
    """Cancellation signal shared between a caller and an execution.

    ``cancel()`` is idempotent.  Each subscriber runs at most once, either
    when the token is cancelled or immediately if it already was.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                log.exception("Cancellation callback failed")

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a one-shot callback; returns a function that removes it."""
        if self._cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe
