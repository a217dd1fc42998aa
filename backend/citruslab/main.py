"""CitrusLab Collaboration Backend.

Real-time presence and room broadcast for shared AI-prompt chats.

Modules:
    - collaboration: collaborators, share links, presence roster (HTTP)
    - realtime: WebSocket rooms, direct messages, live presence
    - auth: bearer JWT issuance and verification
    - mail: invitation emails (console / SendGrid)
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from citruslab.auth.router import router as auth_router
from citruslab.collaboration.errors import CollaborationError, ValidationFailedError
from citruslab.collaboration.router import router as collaboration_router
from citruslab.collaboration.service import CollaborationService
from citruslab.collaboration.store import CollaborationStore
from citruslab.config import AppConfig, get_config
from citruslab.mail.service import MailSender
from citruslab.realtime.hub import PresenceHub
from citruslab.realtime.router import router as realtime_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every TCP connection and TLS handshake.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "urllib3",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config: AppConfig = app.state.config

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in citruslab.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port} "
        f"(presence ttl={config.presence.ttl_seconds}s, mail={config.mail.provider})"
    )

    yield  # Application runs here

    # Shutdown
    app.state.store.close()
    logger.info("Application shutdown complete")


# =============================================================================
# Error envelope
# =============================================================================


async def collaboration_error_handler(request: Request, exc: CollaborationError) -> JSONResponse:
    body = {"success": False, "message": exc.message}
    if isinstance(exc, ValidationFailedError) and exc.errors:
        body["errors"] = exc.errors
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=body)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            # Drop the leading "body"/"query"/"path" segment
            "field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


# =============================================================================
# Application factory
# =============================================================================


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI app and the services it shares between routes.

    Args:
        config: Explicit configuration (tests); defaults to ``get_config()``.

    Returns:
        The application, with ``store``, ``service``, ``hub``, ``mailer``
        and ``config`` on ``app.state``.
    """
    config = config or get_config()

    app = FastAPI(
        title="CitrusLab Collaboration API",
        description="Presence and room broadcast for shared AI-prompt chats",
        version="0.1.0",
        lifespan=lifespan,
    )

    store = CollaborationStore(config.database.path)
    mailer = MailSender(
        provider=config.mail.provider,
        from_email=config.mail.from_email,
        from_name=config.mail.from_name,
        api_key=config.secrets.sendgrid.api_key,
        timeout_seconds=config.mail.timeout_seconds,
    )
    service = CollaborationService(
        store,
        mailer,
        ttl=timedelta(seconds=config.presence.ttl_seconds),
        frontend_url=config.collaboration.frontend_url,
        share_token_bytes=config.collaboration.share_token_bytes,
    )

    app.state.config = config
    app.state.store = store
    app.state.mailer = mailer
    app.state.service = service
    app.state.hub = PresenceHub(service)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CollaborationError, collaboration_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    # Register all routers
    app.include_router(auth_router)
    app.include_router(collaboration_router)
    app.include_router(realtime_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()
