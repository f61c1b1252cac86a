"""MCP server exposing the ``execute`` tool."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from mcp.server.fastmcp import Context, FastMCP
from mcp.types import CallToolResult, TextContent
from pydantic import Field

from run_box.config import Config
from run_box.executor import CommandExecutor, truncation_marker, validate_cwd
from run_box.models import ExecuteResult

log = logging.getLogger(__name__)

SERVER_NAME = "run-box"


def format_text_response(
    cwd: str,
    command: str,
    result: ExecuteResult,
    max_output_bytes: int,
) -> str:
    """Render a result the way a terminal transcript would look."""
    text = f"{cwd} $ {command}\n"
    text += result.stdout
    text += result.stderr

    if result.killed and result.truncated:
        text += truncation_marker(max_output_bytes)
    elif result.killed:
        text += "\n[KILLED: timeout]"
    else:
        text += f"\n[exit code: {result.exit_code}]"
    return text


def cwd_error(cwd: str) -> CallToolResult:
    """Error result for a working directory that cannot be used."""
    message = f"Working directory does not exist: {cwd}"
    # structuredContent must still satisfy the tool's output schema
    result = ExecuteResult(stdout="", stderr=message, exit_code=-1, truncated=False, killed=False)
    return CallToolResult(
        content=[TextContent(type="text", text=f"ERROR: {message}")],
        structuredContent=result.to_wire(),
        isError=True,
    )


async def _forward_progress(ctx: Context, chunks: asyncio.Queue[str | None]) -> None:
    """Send queued output chunks as progress notifications, in order."""
    counter = 0
    while True:
        chunk = await chunks.get()
        if chunk is None:
            return
        counter += 1
        try:
            await ctx.report_progress(counter, None, chunk)
        except Exception:
            # Client may have disconnected
            log.debug("Dropping progress notification %d", counter, exc_info=True)


def create_server(config: Config, executor: CommandExecutor) -> FastMCP:
    """Create and configure the run-box MCP server."""

    mcp = FastMCP(
        name=SERVER_NAME,
        instructions=(
            "Runs shell commands on this host. Use execute to run a command "
            "and receive its stdout, stderr and exit code. Request progress "
            "to receive output incrementally while the command runs."
        ),
    )

    # ------------------------------------------------------------------
    # Tool: execute
    # ------------------------------------------------------------------
    @mcp.tool(name="execute", title="Execute Shell Command")
    async def execute(
        command: Annotated[str, Field(min_length=1)],
        ctx: Context,
        cwd: Annotated[str, Field(pattern=r"^/")] | None = None,
        timeout: Annotated[int, Field(ge=1000, le=3_600_000)] | None = None,
    ) -> Annotated[CallToolResult, ExecuteResult]:
        """Execute a shell command in /bin/sh and return stdout, stderr, and exit code.

        Args:
            command: Shell command to execute (passed to /bin/sh -c).
            cwd: Working directory (absolute path). Defaults to DEFAULT_CWD.
            timeout: Timeout in milliseconds (1000-3600000). Defaults to
                     DEFAULT_TIMEOUT_MS.
        """
        workdir = cwd or config.default_cwd
        timeout_ms = timeout or config.default_timeout_ms

        if not validate_cwd(workdir):
            return cwd_error(workdir)

        meta = ctx.request_context.meta
        progress_token = meta.progressToken if meta else None

        chunks: asyncio.Queue[str | None] = asyncio.Queue()
        forwarder: asyncio.Task[None] | None = None
        if progress_token is not None:
            forwarder = asyncio.create_task(_forward_progress(ctx, chunks))

        try:
            result = await executor.execute(
                command=command,
                cwd=workdir,
                timeout_ms=timeout_ms,
                max_output_bytes=config.max_output_bytes,
                on_progress=chunks.put_nowait if forwarder else None,
            )
        except BaseException:
            if forwarder is not None:
                forwarder.cancel()
            raise

        if forwarder is not None:
            chunks.put_nowait(None)
            await forwarder

        return CallToolResult(
            content=[
                TextContent(
                    type="text",
                    text=format_text_response(
                        workdir, command, result, config.max_output_bytes,
                    ),
                )
            ],
            structuredContent=result.to_wire(),
            isError=result.killed or result.truncated,
        )

    return mcp
