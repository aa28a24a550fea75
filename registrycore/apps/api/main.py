from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from registrycore.apps.api.errors import install_exception_handlers
from registrycore.apps.api.response import API_VERSION
from registrycore.apps.api.routes.audit import router as audit_router
from registrycore.apps.api.routes.health import router as health_router
from registrycore.apps.api.routes.memberships import router as memberships_router
from registrycore.apps.api.routes.permissions import router as permissions_router
from registrycore.core.config import get_settings
from registrycore.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    install_exception_handlers(app)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(memberships_router, prefix=f"/{API_VERSION}")
    app.include_router(permissions_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
