"""Entry-point for the policy agent ASGI app.

This module constructs the FastAPI instance, wires request logging, starts
the pollers for the lifetime of the app and exposes the `app` variable ASGI
servers look for.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from contextvars import ContextVar
from time import perf_counter
from typing import Awaitable, Callable, Dict

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from policy_agent import APP_ENV
from policy_agent.poller import ResilientPoller
from policy_agent.settings import AgentSettings, load_settings
from policy_agent.utils.dependencies import LoggingSink, build_policy_poller, build_usergroup_poller
from policy_agent.utils.logger import configure_logging, logger


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach request-level context vars for structured logging."""

    _request_id_ctx: ContextVar[str] = ContextVar("request_id", default="-")

    async def dispatch(self, request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:  # type: ignore[override]
        start = perf_counter()
        request_id = request.headers.get("X-Request-Id", os.urandom(4).hex())
        token = self._request_id_ctx.set(request_id)
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration_ms = (perf_counter() - start) * 1000
            logger.debug(
                "request.complete",
                extra={
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                    "request_id": request_id,
                },
            )
            self._request_id_ctx.reset(token)
        return response


def create_app(
    *,
    settings: AgentSettings | None = None,
    policy_poller: ResilientPoller | None = None,
    usergroup_poller: ResilientPoller | None = None,
    start_pollers: bool = True,
) -> FastAPI:
    """Build the app.

    Pollers passed in are used as-is; otherwise they are built from
    ``settings`` (or the environment) at startup.  A missing policy URL or
    user/group file simply leaves that poller out.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings if settings is not None else load_settings()
        if app.state.policy_poller is None and cfg.policy_url:
            app.state.policy_poller = build_policy_poller(cfg)
        if app.state.usergroup_poller is None and cfg.usergroup_file:
            # Unreadable source raises ConfigurationError and aborts startup
            app.state.usergroup_poller = build_usergroup_poller(cfg, LoggingSink())

        pollers = [p for p in (app.state.policy_poller, app.state.usergroup_poller) if p is not None]
        if start_pollers:
            for poller in pollers:
                poller.start()
        try:
            yield
        finally:
            for poller in pollers:
                await poller.stop()

    app = FastAPI(
        title="Policy Agent",
        version="0.1.0",
        docs_url="/docs" if APP_ENV != "production" else None,
        redoc_url=None,
        openapi_url="/openapi.json" if APP_ENV != "production" else None,
        lifespan=lifespan,
    )
    app.state.policy_poller = policy_poller
    app.state.usergroup_poller = usergroup_poller

    app.add_middleware(RequestContextMiddleware)

    # Health check
    @app.get("/")
    async def root() -> Dict[str, str]:  # pylint: disable=unused-variable
        return {"status": "ok"}

    from policy_agent.routers import policy_routes  # noqa: WPS433 (runtime import)

    app.include_router(policy_routes.router)
    app.include_router(policy_routes.usergroup_router)

    return app


# The object ASGI servers import
app = create_app()
