"""FastAPI application for the shared API key pool."""

import logging
from contextlib import asynccontextmanager
from typing import Dict

from fastapi import FastAPI, Request

from keypool.admin import admin_router
from keypool.allocation import allocation_router
from keypool.config import load_config
from keypool.key_manager import KeyManager
from keypool.storage import JsonFileStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle: startup and shutdown."""
    config = load_config()

    logging.basicConfig(level=getattr(logging, config.log_level))

    key_manager = KeyManager(JsonFileStore(config.data_file), config)
    await key_manager.load()

    app.state.config = config
    app.state.key_manager = key_manager

    status = key_manager.get_status()
    logger.info(
        "Key pool started with %d services and %d keys (data=%s)",
        status["total_services"],
        status["total_keys"],
        config.data_file,
    )

    yield

    logger.info("Key pool stopped")


app = FastAPI(title="API Key Pool", lifespan=lifespan)

app.include_router(admin_router)
app.include_router(allocation_router)


@app.get("/")
async def root(request: Request) -> Dict[str, object]:
    key_manager = request.app.state.key_manager
    status = key_manager.get_status()
    return {
        "service": "API Key Pool",
        "status": "running",
        "services": key_manager.service_names(),
        "keys_available": status["keys_available"],
        "total_keys": status["total_keys"],
    }


@app.get("/health")
async def health_check(request: Request) -> Dict[str, object]:
    """Health check endpoint with key pool status."""
    key_manager = request.app.state.key_manager
    status = key_manager.get_status()
    return {
        "status": "healthy",
        "total_services": status["total_services"],
        "keys_available": status["keys_available"],
        "total_keys": status["total_keys"],
    }
