import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path

from fastmcp import FastMCP

from courtbook.config import Settings
from courtbook.engine.clock import PortalClock
from courtbook.engine.scheduler import ExecutionScheduler
from courtbook.storage.credentials import CredentialStore
from courtbook.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

_db: DatabaseManager | None = None
_credential_store: CredentialStore | None = None
_clock: PortalClock | None = None


def get_db() -> DatabaseManager:
    """Get the current DatabaseManager instance. Raises if not initialized."""
    if _db is None:
        raise RuntimeError("Database not initialized. Server lifespan has not started.")
    return _db


def get_credential_store() -> CredentialStore:
    """Get the current CredentialStore instance. Raises if not initialized."""
    if _credential_store is None:
        raise RuntimeError("Credential store not initialized. Server lifespan has not started.")
    return _credential_store


def get_clock() -> PortalClock | None:
    """Return the portal-synced clock, or ``None`` outside the server lifespan."""
    return _clock


def _reset_db() -> None:
    """Clear the module-level references. Used in tests."""
    global _db, _credential_store, _clock  # noqa: PLW0603
    _db = None
    _credential_store = None
    _clock = None


def build_scheduler(
    db: DatabaseManager,
    credentials: CredentialStore,
    clock: PortalClock,
    settings: Settings,
) -> ExecutionScheduler:
    """Wire the engine's collaborators from settings."""
    from courtbook.clients.challenge import BrowserChallengeSolver
    from courtbook.engine.reconciler import ResultReconciler, RetryPolicy
    from courtbook.engine.schedule import ScheduleCalculator
    from courtbook.engine.submission import SubmissionWorkflow

    solver = BrowserChallengeSolver(
        site_key=settings.challenge_site_key,
        action=settings.challenge_action,
        ttl_seconds=settings.challenge_token_ttl_seconds,
        timeout=settings.challenge_timeout_seconds,
        headless=settings.challenge_headless,
    )
    workflow = SubmissionWorkflow(credentials, solver, settings)
    reconciler = ResultReconciler(
        db, RetryPolicy.from_settings(settings), ScheduleCalculator.from_settings(settings)
    )
    return ExecutionScheduler(db, workflow, reconciler, clock, settings)


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[dict]:
    """Manage the database, credential store and scheduler loop for the server lifecycle."""
    global _db, _credential_store, _clock  # noqa: PLW0603
    from courtbook.config import get_settings

    settings = get_settings()
    if not settings.courtbook_master_key:
        raise RuntimeError(
            "COURTBOOK_MASTER_KEY is not set. It is required to encrypt portal credentials."
        )

    _db = DatabaseManager(settings.db_path)
    await _db.initialize()
    assert _db.connection is not None
    _credential_store = CredentialStore(_db.connection, settings.courtbook_master_key)
    _clock = PortalClock(settings.portal_base_url, timeout=settings.request_timeout_seconds)

    scheduler = build_scheduler(_db, _credential_store, _clock, settings)
    task: asyncio.Task | None = None
    if settings.scheduler_enabled:
        task = asyncio.create_task(scheduler.run_forever())
    else:
        logger.info("Scheduler disabled; bookings will not execute")

    try:
        yield {"db": _db, "scheduler": scheduler}
    finally:
        if task is not None:
            scheduler.stop()
            await task
        await _db.close()
        _reset_db()
        logger.info("Database closed")


mcp = FastMCP("courtbook", lifespan=app_lifespan)


def setup_logging(log_level: str, data_dir: Path) -> None:
    """Configure logging with file rotation and console output.

    Args:
        log_level: Logging level string (DEBUG, INFO, WARNING, ERROR).
        data_dir: Base data directory; logs go to data_dir/logs/server.log.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Exact type check: FileHandler subclasses StreamHandler
    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(formatter)
        root_logger.addHandler(console)

    log_dir = data_dir / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "server.log"

    if not any(isinstance(h, RotatingFileHandler) for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=3,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def initialize() -> FastMCP:
    """Set up directories, logging, and register tools. Returns the MCP server."""
    from courtbook.config import get_settings

    settings = get_settings()

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    (settings.data_dir / "logs").mkdir(exist_ok=True)

    setup_logging(settings.log_level, settings.data_dir)

    from courtbook.tools.bookings import register_booking_tools
    from courtbook.tools.credentials import register_credential_tools

    register_booking_tools(mcp)
    register_credential_tools(mcp)

    logger.info("Courtbook MCP server initialized")
    return mcp
