"""Run run-box as an MCP daemon over HTTP.

Usage:
    python -m run_box [--host HOST] [--port PORT]

Configuration is read from the environment (and a ``.env`` file); the
command-line flags override HOST and PORT.  SIGTERM or SIGINT drains the
daemon: sessions are closed, running commands are terminated (killed after
SHUTDOWN_GRACE_MS), then the listener stops and the process exits with 0.
"""

import argparse
import asyncio
import dataclasses
import errno
import logging
import signal
import socket
import sys

import uvicorn

from run_box.app import create_app
from run_box.config import Config
from run_box.executor import CommandExecutor
from run_box.registry import ProcessRegistry
from run_box.server import create_server
from run_box.sessions import SessionRouter
from run_box.shutdown import ShutdownCoordinator

log = logging.getLogger(__name__)

# Seconds uvicorn waits for open connections before cancelling them
CONNECTION_CLOSE_TIMEOUT = 1


def _bind_socket(host: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family=family)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


async def _run(config: Config, sock: socket.socket) -> int:
    registry = ProcessRegistry()
    executor = CommandExecutor(registry)
    router = SessionRouter(create_server(config, executor))
    app = create_app(router)

    uvi = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            timeout_graceful_shutdown=CONNECTION_CLOSE_TIMEOUT,
        )
    )

    def stop_listener() -> None:
        uvi.should_exit = True

    coordinator = ShutdownCoordinator(
        router=router,
        registry=registry,
        grace_ms=config.shutdown_grace_ms,
        stop_listener=stop_listener,
    )

    # Use _serve() instead of serve() to bypass uvicorn's
    # capture_signals() context manager which overrides signal
    # handlers with signal.signal(), preventing our async
    # handlers from working.
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    serve_task = asyncio.create_task(uvi._serve(sockets=[sock]))
    signal_task = asyncio.create_task(shutdown.wait())

    # Block until a signal arrives (or the server dies on its own)
    await asyncio.wait({serve_task, signal_task}, return_when=asyncio.FIRST_COMPLETED)
    if signal_task.done():
        log.info("Signal received — shutting down")
        await coordinator.shutdown()
    else:
        signal_task.cancel()

    await serve_task
    log.info("run-box stopped")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="run-box MCP command execution daemon")
    parser.add_argument("--host", help="Interface to listen on (default: $HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: $PORT or 3100)")
    args = parser.parse_args()

    try:
        config = Config.from_env()
        overrides = {k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None}
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ValueError as exc:
        logging.basicConfig(level=logging.INFO)
        log.error("Invalid configuration: %s", exc)
        sys.exit(2)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [run-box] %(levelname)s %(message)s",
    )

    # The MCP SDK logs a noisy full traceback when the HTTP client
    # disconnects before the response is sent (ClosedResourceError).
    # This is harmless; downgrade it from ERROR to DEBUG.
    class _SuppressDisconnect(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info and record.exc_info[1] is not None:
                chain = str(record.exc_info[1])
                if "ClosedResourceError" in chain:
                    record.levelno = logging.DEBUG
                    record.levelname = "DEBUG"
                    record.msg = "Client disconnected before response completed"
                    record.args = None
                    record.exc_info = None
                    record.exc_text = None
            return True

    logging.getLogger("mcp.server.streamable_http").addFilter(_SuppressDisconnect())

    try:
        sock = _bind_socket(config.host, config.port)
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            log.error("Port %d is already in use", config.port)
        else:
            log.error("Cannot listen on %s:%d: %s", config.host, config.port, exc)
        sys.exit(1)

    log.info(
        "run-box listening on http://%s:%d (cwd=%s, timeout=%dms, max output=%d bytes)",
        config.host, config.port, config.default_cwd,
        config.default_timeout_ms, config.max_output_bytes,
    )
    sys.exit(asyncio.run(_run(config, sock)))


if __name__ == "__main__":
    main()
