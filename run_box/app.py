"""HTTP application: health check plus the MCP session endpoint."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from run_box.sessions import SessionRouter


async def health(request: Request) -> JSONResponse:
    # Stays "ok" while draining; rejection is reported on /mcp only.
    return JSONResponse({"status": "ok"})


async def not_found(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse({"error": "Not found"}, status_code=404)


def create_app(router: SessionRouter) -> Starlette:
    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with router.run():
            yield

    return Starlette(
        routes=[
            Route("/health", health, methods=["GET"]),
            Route("/mcp", endpoint=router),
        ],
        exception_handlers={404: not_found},
        lifespan=lifespan,
    )
