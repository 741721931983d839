# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""
FastAPI entry point for the driftguard proxy.

Point a messages-API client at the proxy and it forwards every request
upstream, injecting memory previews and drift corrections on the way:

    export ANTHROPIC_BASE_URL=http://127.0.0.1:8080
    driftguard

Endpoints:
- POST /v1/messages  proxied messages endpoint
- GET  /health       liveness and collaborator status
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from driftguard.config.settings import ProxySettings, get_settings, mask_sensitive_value
from driftguard.lib.errors import ForwardError

from .orchestrator import ProxyOrchestrator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def proxy_error(status_code: int, message: str, error_type: str = "proxy_error") -> JSONResponse:
    """Error envelope shaped like the upstream API's own errors."""
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": message}},
    )


def _masked(headers: Any) -> dict[str, str]:
    return {key: mask_sensitive_value(key, value) for key, value in headers.items()}


def create_app(
    settings: ProxySettings | None = None,
    orchestrator: ProxyOrchestrator | None = None,
) -> FastAPI:
    """Build the proxy application.

    Args:
        settings: Proxy settings; defaults to the environment singleton.
        orchestrator: Pre-built orchestrator, mainly for tests.
    """
    settings = settings or get_settings()
    proxy = orchestrator or ProxyOrchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting driftguard proxy...")
        await proxy.start()
        logger.info(
            f"driftguard proxy ready: upstream={settings.anthropic_base_url} "
            f"scorer={settings.scorer_enabled} memory_sync={settings.memory_sync_enabled}"
        )
        yield
        logger.info("Shutting down driftguard proxy...")
        await proxy.close()
        logger.info("driftguard proxy stopped")

    app = FastAPI(
        title="driftguard",
        description="Messages API proxy with memory injection and drift correction",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = proxy

    # ========================================================================
    # Proxy endpoints
    # ========================================================================

    @app.post("/v1/messages")
    async def proxy_messages(request: Request) -> Response:
        raw = await request.body()
        if len(raw) > settings.body_limit_bytes:
            logger.warning(f"Rejected request body of {len(raw)} bytes")
            return proxy_error(413, f"Request body exceeds {settings.body_limit_bytes} bytes")
        try:
            body = json.loads(raw)
        except ValueError:
            return proxy_error(400, "Request body is not valid JSON")
        if not isinstance(body, dict):
            return proxy_error(400, "Request body must be a JSON object")

        if settings.log_requests:
            logger.debug(f"Incoming request model={body.get('model')} headers={_masked(request.headers)}")

        try:
            result = await proxy.handle(raw, body, request.headers)
        except ForwardError as e:
            logger.error(f"Upstream forwarding failed: {e}")
            return proxy_error(e.status_code, e.client_message)
        except Exception as e:
            logger.error(f"Error in proxy endpoint: {e}", exc_info=True)
            return proxy_error(500, "Internal proxy error", error_type="internal_error")

        return Response(
            content=result.body,
            status_code=result.status_code,
            headers=result.headers,
            media_type=result.media_type,
        )

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "active_sessions": proxy.sessions.active_count,
            "scorer_enabled": settings.scorer_enabled,
            "memory_sync_enabled": settings.memory_sync_enabled,
        }

    return app


# ============================================================================
# Main entry point
# ============================================================================


def main() -> None:
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
