"""chatrelay Backend Application.

This is the main entry point for the chatrelay backend service: a real-time
chat backend where authenticated clients open direct or group
conversations, exchange text and media messages, and see read receipts and
membership changes propagate live.

Modules:
    - auth: JWT bearer authentication (Identity Gate)
    - conversations: conversation and message endpoints (Conversation Store)
    - realtime: WebSocket endpoint and broadcast groups (Presence Router)
    - messaging: the send path (Message Pipeline)
    - readstate: read markers (Read-State Tracker)
    - membership: group membership (Membership Manager)
    - users: user lookup
    - media: media uploads
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatrelay import __version__
from chatrelay.config import get_config
from chatrelay.container import ChatServices, build_services
from chatrelay.conversations.router import router as conversations_router
from chatrelay.errors import ChatError
from chatrelay.media.router import router as media_router
from chatrelay.realtime.router import router as realtime_router
from chatrelay.users.router import router as users_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "multipart",
    "python_multipart",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', 'invalid')}"
        for e in errors
    ) or "Invalid request"
    return JSONResponse({"error": "invalid_payload", "detail": detail}, status_code=400)


def create_app(services: Optional[ChatServices] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        services: Pre-built container (tests inject one around an in-memory
            repository). When None, the lifespan builds one from config.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        owned = services is None
        if owned:
            config = get_config()

            # Apply configured log level to root logger so that
            # `logging.level: "debug"` in chatrelay.settings.yaml activates DEBUG output.
            configured_level = getattr(logging, config.logging.level.upper(), None)
            if configured_level is not None:
                logging.getLogger().setLevel(configured_level)
                logger.info("Root logger level set to %s", config.logging.level.upper())

            app.state.services = build_services(config)
        logger.info(
            "chatrelay %s ready on http://%s:%s",
            __version__,
            app.state.services.config.server.host,
            app.state.services.config.server.port,
        )

        yield  # Application runs here

        # Shutdown
        if owned:
            app.state.services.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="chatrelay API",
        description="Real-time chat backend: conversations, messages, read state and presence",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    origins = services.config.server.allowed_origins if services else get_config().server.allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # Register all routers
    app.include_router(conversations_router)
    app.include_router(users_router)
    app.include_router(media_router)
    app.include_router(realtime_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    config = get_config()
    uvicorn.run(
        "chatrelay.main:create_app",
        factory=True,
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )
