"""FastAPI application: entry point."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.dependencies import get_api_key
from app.errors import register_exception_handlers
from app.routes import quota, rules, transactions
from app.routes.health import get_db_info
from config import Settings, get_settings
from db.connection import init_database
from rewardquota.services._types import DbInfoDict

logger: logging.Logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = get_settings()
    logger.info("DB: %s", settings.database.db_info_for_logging())
    logger.info("Quota timezone: %s", settings.quota.timezone)

    init_database()
    yield


def create_app(init_db: bool = True) -> FastAPI:
    app: FastAPI = FastAPI(
        title="Reward Quota Engine",
        version="0.1.0",
        lifespan=_lifespan if init_db else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    register_exception_handlers(app)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/health/db", dependencies=[Depends(get_api_key)])
    def health_db() -> DbInfoDict:
        return get_db_info()

    app.include_router(transactions.router)
    app.include_router(quota.router)
    app.include_router(rules.router)

    return app


app: FastAPI = create_app()


def start() -> None:
    """Entry point for rewardquota-api."""
    project_root: Path = Path(__file__).resolve().parent.parent
    os.chdir(project_root)

    for candidate in (project_root / ".env", project_root.parent / ".env"):
        if candidate.exists():
            load_dotenv(candidate, override=False)

    reload: bool = os.environ.get("REWARDQUOTA_RELOAD", "false").lower() in ("1", "true", "yes")
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=reload,
    )
