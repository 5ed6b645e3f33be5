"""Roomwire Backend Application.

Real-time room messaging layer that runs alongside the blog CMS backend.

Modules:
    - chat: Presence and broadcast engine (WebSocket rooms, typing, reactions)
    - history: DuckDB message log and history/retention endpoints
    - files: Blob store and file-share endpoints
    - auth: Handshake identity verification (JWT or CMS lookup)
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomwire.chat.errors import PersistenceError
from roomwire.chat.hub import ChatHub
from roomwire.chat.router import router as chat_router
from roomwire.config import get_config
from roomwire.files.router import router as files_router
from roomwire.history.router import router as history_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx logs every identity lookup; uvicorn.access every request.
for _noisy in (
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def retention_loop(hub: ChatHub, retention_days: float, interval_minutes: float) -> None:
    """Purge messages older than ``retention_days`` every ``interval_minutes``."""
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            hub.purge(retention_days)
        except PersistenceError as e:
            logger.error(f"Retention purge failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in roomwire.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    hub = ChatHub.get_instance()
    logger.info(
        "Chat hub ready (verifier=%s, queue=%d, typing_timeout=%.1fs)",
        config.auth.verifier,
        config.chat.outbound_queue_size,
        config.chat.typing_timeout_seconds,
    )

    retention_task = None
    history = config.history
    if history.retention_days > 0 and history.purge_interval_minutes > 0:
        retention_task = asyncio.create_task(
            retention_loop(hub, history.retention_days, history.purge_interval_minutes)
        )
        logger.info(
            "Retention purge every %d min (keep %d days)",
            history.purge_interval_minutes,
            history.retention_days,
        )
    else:
        logger.info("Retention purge disabled")

    yield  # Application runs here

    # Shutdown
    if retention_task is not None:
        retention_task.cancel()
        try:
            await retention_task
        except asyncio.CancelledError:
            pass
    ChatHub.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Roomwire API",
    description="Real-time presence and broadcast service for the blog CMS",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(history_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with live room and connection counts.
    """
    hub = ChatHub.get_instance()
    return {
        "status": "ok",
        "rooms": len(hub.registry.rooms()),
        "connections": hub.registry.connection_count(),
    }


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "roomwire.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )
