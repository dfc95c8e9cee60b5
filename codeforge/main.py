"""
CodeForge — FastAPI entrypoint.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load .env before anything else
load_dotenv()

from codeforge.agent.conversations import ConversationStore
from codeforge.config import CodeForgeConfig, get_settings, load_config
from codeforge.logging_config import setup_logging
from codeforge.models.registry import ProviderRegistry, build_registry
from codeforge.routers.chat import router as chat_router
from codeforge.routers.config import router as config_router

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    config: Optional[CodeForgeConfig] = None,
    registry: Optional[ProviderRegistry] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or load_config()
        reg = registry or build_registry(cfg)
        if not reg.names():
            logger.warning("No providers available; check codeforge.json and API keys")
        app.state.config = cfg
        app.state.registry = reg
        app.state.conversations = ConversationStore(reg, cfg)

        yield

        await reg.close()

    app = FastAPI(
        title="CodeForge",
        description="Coding assistant with permission-gated file and shell tools",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS_ORIGINS env var: comma-separated list of allowed origins.
    # Default: localhost only (development).
    raw_origins = os.getenv("CORS_ORIGINS", "")
    cors_origins: list[str] = (
        [o.strip() for o in raw_origins.split(",") if o.strip()]
        if raw_origins
        else ["http://localhost:5173", "http://127.0.0.1:5173",
              "http://localhost:3000", "http://127.0.0.1:3000"]
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router, prefix="/api")
    app.include_router(config_router, prefix="/api")

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": VERSION}

    return app


def start():
    import uvicorn
    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run("codeforge.main:app", host=settings.host, port=settings.port)


app = create_app()


if __name__ == "__main__":
    start()
