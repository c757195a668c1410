"""Direct-message relay backend.

Main entry point for the relay service: authenticated users exchange text
and attachments over WebSockets, see who is online, and get read receipts.

Modules:
    - chat: live connections, presence, heartbeats, relay, read receipts
    - messages: DuckDB message store, history and people endpoints
    - files: attachment storage
    - auth: JWT credential verification
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.auth.router import router as auth_router
from app.chat.manager import get_manager
from app.chat.router import router as chat_router
from app.config import get_config
from app.messages.router import router as messages_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-request chatter from the server and HTTP stack
for _noisy in ("uvicorn.access", "httpx", "httpcore"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    manager = get_manager()
    logger.info(
        "Relay ready: heartbeat every %ss (pong deadline %ss)",
        manager.liveness.ping_interval,
        manager.liveness.pong_timeout,
    )

    yield  # Application runs here

    # Shutdown
    await manager.shutdown()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Relay API",
    description="Real-time direct messaging backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(messages_router)
app.include_router(auth_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    config = get_config()
    uvicorn.run("app.main:app", host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    run()
