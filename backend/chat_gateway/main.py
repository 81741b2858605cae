"""Chapter Chat Gateway Application.

This is the main entry point for the chat gateway service: a long-lived
process that keeps chapter chat rooms in memory, checks room membership
with the main web application, and fans new messages out to every
connected member.

Modules:
    - chat.store: Per-room message logs with retention eviction
    - chat.registry: Room -> live connection pub/sub hub
    - chat.gateway: Connection state machine (join/send/leave/disconnect)
    - chat.router: WebSocket endpoint and HTTP fallback/history API
    - membership: Membership oracle client
    - users: User directory client (sender names and avatars)
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat_gateway import __version__
from chat_gateway.chat.gateway import ChatGateway
from chat_gateway.chat.registry import RoomRegistry
from chat_gateway.chat.router import router as chat_router
from chat_gateway.chat.store import MessageStore, utc_now
from chat_gateway.chat.sweeper import RetentionSweeper
from chat_gateway.config import AppConfig, get_config
from chat_gateway.membership.oracle import MembershipOracle
from chat_gateway.users.directory import UserDirectory

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every oracle request and connection; not useful here.
for _noisy in ("httpx", "httpcore", "httpcore.http11", "httpcore.connection"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config: AppConfig = app.state.config

    configured_level = getattr(logging, config.server.log_level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.server.log_level.upper())

    sweeper: RetentionSweeper = app.state.sweeper
    if config.retention.enabled:
        sweeper.start()
    else:
        logger.warning("Message retention sweep disabled; history will grow without bound")

    yield  # Application runs here

    # Shutdown
    await sweeper.stop()
    await app.state.gateway.oracle.aclose()
    if app.state.gateway.directory is not None:
        await app.state.gateway.directory.aclose()
    logger.info("Application shutdown complete")


def create_app(
    config: Optional[AppConfig] = None,
    oracle_transport: Optional[httpx.AsyncBaseTransport] = None,
    directory_transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    """Build the gateway application.

    Args:
        config: Settings to use; defaults to ``get_config()``.
        oracle_transport: httpx transport for the membership oracle
            (tests pass an ``httpx.MockTransport``).
        directory_transport: httpx transport for the user directory.
        clock: Time source for message timestamps and retention sweeps.
    """
    config = config or get_config()

    store = MessageStore(clock=clock)
    registry = RoomRegistry()
    oracle = MembershipOracle.from_settings(config.membership, transport=oracle_transport)
    directory = None
    if config.directory.enabled:
        directory = UserDirectory.from_settings(
            config.directory, config.membership.base_url, transport=directory_transport
        )
    gateway = ChatGateway(
        store,
        registry,
        oracle,
        settings=config.chat,
        recheck_on_send=config.membership.recheck_on_send,
        directory=directory,
    )
    sweeper = RetentionSweeper(
        store,
        retention=timedelta(seconds=config.retention.retention_seconds),
        interval=timedelta(seconds=config.retention.sweep_interval_seconds),
        clock=clock,
    )

    app = FastAPI(
        title="Chapter Chat Gateway",
        description="Real-time chapter chat rooms with HTTP fallback",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.gateway = gateway
    app.state.sweeper = sweeper

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with the current server time.
        """
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "chat_gateway.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level,
    )
