import asyncio
import logging
import socket
import time
from pathlib import Path
from urllib.parse import urlparse

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.responses import JSONResponse

from interview_credits.api.admin import router as admin_router
from interview_credits.api.credits import router as credits_router
from interview_credits.api.sessions import router as sessions_router
from interview_credits.core.config import settings
from interview_credits.core.logging import configure_logging
from interview_credits.db.async_session import AsyncSessionLocal
from interview_credits.services.ledger_service import LedgerService
from interview_credits.services.rule_engine import RuleEngine

configure_logging()
from interview_credits.core.error_handlers import register_exception_handlers

logger = logging.getLogger(__name__)

app = FastAPI(title="Interview Credits API")
register_exception_handlers(app)

# CORS should be outermost so it can attach headers to all responses, including errors
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=500)

# Routers
app.include_router(sessions_router)  # Interview session lifecycle
app.include_router(credits_router)  # Balance, history and rule triggers
app.include_router(admin_router)  # Grants, refunds, rules, reconciliation


@app.get("/health")
def health():
    # Health check with short cache to reduce overhead
    return JSONResponse({"ok": True}, headers={"Cache-Control": "public, max-age=60"})


def run_migrations() -> None:
    """Apply Alembic migrations with retries and helpful diagnostics."""
    # Basic DNS precheck for clearer errors
    parsed = urlparse(settings.database_url)
    host = parsed.hostname
    if host:
        try:
            socket.getaddrinfo(host, parsed.port or 5432)
        except OSError as e:
            # Continue to the retry loop below which will still attempt connection
            logger.error("Cannot resolve database host '%s'. Check network/DNS and DATABASE_URL. Error: %s", host, e)

    logger.info("Running database migrations")
    alembic_ini = Path(__file__).resolve().parents[1] / "alembic.ini"
    alembic_cfg = AlembicConfig(str(alembic_ini))
    # configparser treats % as interpolation
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url.replace("%", "%%"))
    alembic_cfg.attributes["configure_logger"] = False

    max_retries = max(1, settings.db_migrations_max_retries)
    last_err: Exception | None = None
    for attempt in range(1, max_retries + 1):
        try:
            alembic_command.upgrade(alembic_cfg, "head")
            logger.info("Database migrations applied")
            return
        except Exception as e:
            last_err = e
            logger.error("Alembic migration attempt %d/%d failed: %s", attempt, max_retries, e)
            if attempt < max_retries:
                time.sleep(settings.db_migrations_retry_delay_sec)
    logger.error(
        "Alembic migration failed after retries. "
        "If this is a temporary network/DNS issue, try again. "
        "To skip auto-migrations, set DB_MIGRATIONS_ON_STARTUP=0."
    )
    raise last_err


@app.on_event("startup")
async def on_startup() -> None:
    """API startup: run DB migrations, then seed the default credit rules."""
    if not settings.db_migrations_on_startup:
        logger.info("Skipping database migrations on startup (DB_MIGRATIONS_ON_STARTUP=0)")
    else:
        await asyncio.to_thread(run_migrations)

    ledger = LedgerService(AsyncSessionLocal)
    await RuleEngine(AsyncSessionLocal, ledger).ensure_default_rules()

    logger.info("API server ready on port %s (debug=%s)", settings.api_port, settings.debug)
