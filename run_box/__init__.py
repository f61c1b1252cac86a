"""run-box — runs shell commands for remote MCP clients.

Exposes one MCP tool over streamable HTTP:
  - execute: run a shell command with a timeout and an output cap,
             streaming output as progress notifications

Each command runs in its own process group so timeouts, output caps,
cancellation and daemon shutdown reclaim every process it spawned.

Run the daemon:
    python -m run_box
"""

from run_box.config import Config
from run_box.executor import CommandExecutor, validate_cwd
from run_box.models import CancelToken, ExecuteResult
from run_box.registry import ProcessRegistry
from run_box.server import create_server
from run_box.sessions import SessionRouter
from run_box.shutdown import ShutdownCoordinator, ShutdownState

__all__ = [
    "CancelToken",
    "CommandExecutor",
    "Config",
    "ExecuteResult",
    "ProcessRegistry",
    "SessionRouter",
    "ShutdownCoordinator",
    "ShutdownState",
    "create_server",
    "validate_cwd",
]
