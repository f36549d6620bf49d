"""Chatbroker Backend Application.

This is the main entry point for the chat broker service: a real-time,
room-scoped message broker for browser chat clients.

Modules:
    - chat: WebSocket protocol, presence, rooms, reactions, read receipts
    - config: YAML + pydantic settings
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatbroker.chat.router import broker
from chatbroker.chat.router import router as chat_router
from chatbroker.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence per-connection transport chatter.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the room sweeper on startup and stop it on shutdown."""
    # Startup
    config = get_config()

    # Honour the configured level on the root logger, so that
    # `logging.level: "debug"` in chatbroker.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    broker.lifecycle.start()
    logger.info(
        f"Chat broker ready on http://{config.server.host}:{config.server.port} "
        f"(rooms: {', '.join(broker.directory.names())})"
    )

    yield

    # Shutdown
    await broker.lifecycle.stop()
    logger.info("Chat broker stopped")


# FastAPI application
app = FastAPI(
    title="Chatbroker API",
    description="Real-time room-scoped chat message broker",
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


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: ``{"status": "ok"}`` while the broker process is up.
    """
    return {"status": "ok"}


def run() -> None:
    """Console entry point: serve the app with Uvicorn."""
    config = get_config()
    uvicorn.run(
        "chatbroker.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
