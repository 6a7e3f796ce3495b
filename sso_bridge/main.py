"""
Ghost <-> Discourse bridge application: forum SSO, member webhooks and staff admin endpoints.
Every route is served under the publisher's mount path (Config.mounted_base_path).
"""
import logging
import sys
import time
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sso_bridge.admin import router as admin_router
from sso_bridge.config import Config, ConfigError
from sso_bridge.context import build_bridge, close_bridge
from sso_bridge.sso import router as sso_router
from sso_bridge.webhooks import build_webhook_router

logger = logging.getLogger(__name__)

GENERIC_ERROR = {"error": "Something went wrong. Unable to complete request."}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Upstream calls are logged by our own hooks when enabled
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app(
    config: Config | None = None,
    *,
    ghost_transport: httpx.AsyncBaseTransport | None = None,
    discourse_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    config = config or Config.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the upstream clients and services on startup; close them on shutdown."""
        app.state.bridge = build_bridge(
            config, ghost_transport=ghost_transport, discourse_transport=discourse_transport
        )
        logger.info("Bridge mounted at %s (sso method: %s)", config.mounted_public_url, config.sso_method)
        try:
            yield
        finally:
            await close_bridge(app.state.bridge)

    app = FastAPI(title="Ghost Discourse Bridge", version="0.1.0", lifespan=lifespan)

    mounted = APIRouter(prefix=config.mounted_base_path.rstrip("/"))

    @mounted.get("/health")
    def health():
        """Health check endpoint."""
        return {"message": "Howdy!"}

    mounted.include_router(sso_router, tags=["sso"])
    mounted.include_router(admin_router, tags=["admin"])
    if config.enable_ghost_webhooks:
        mounted.include_router(build_webhook_router(config), tags=["webhooks"])
        logger.info(
            "Webhooks mounted: member updated @ hook/%s, member deleted (%s) @ hook/%s",
            config.ghost_member_updated_route,
            config.ghost_member_delete_discourse_action,
            config.ghost_member_deleted_route,
        )
    app.include_router(mounted)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started_at = time.monotonic()
        response = await call_next(request)
        logger.info(
            "%s %s %d %dms",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started_at) * 1000,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
        return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception):
        logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content=GENERIC_ERROR)

    return app


def main() -> None:
    try:
        config = Config.from_env()
    except ConfigError as e:
        configure_logging()
        logger.error("%s", e)
        sys.exit(1)
    configure_logging(config.log_level)

    import uvicorn
    uvicorn.run(create_app(config), host=config.hostname, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
