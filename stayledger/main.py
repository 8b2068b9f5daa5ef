import logging
import os
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from stayledger.api.routes.routes import router
from stayledger.application.booking_service import BookingService
from stayledger.application.settings import SyncSettings
from stayledger.application.sync_engine import EventSyncEngine
from stayledger.application.sync_worker import SyncWorker
from stayledger.domain.booking import FeeSchedule
from stayledger.domain.clock import SystemClock
from stayledger.domain.lifecycle import BookingLifecycle
from stayledger.infrastructure.db.session import engine, SessionLocal
from stayledger.infrastructure.db.models import Base
from stayledger.infrastructure.ledger.memory_ledger import InMemoryLedger
from stayledger.infrastructure.repositories.projection_repository import SqlProjection
from stayledger.infrastructure.repositories.sync_state_repository import SqlSyncStateStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title="StayLedger Sync Engine")

app.include_router(router)
logger = logging.getLogger(__name__)


def _wait_for_db() -> None:
    # Handles the common case where API starts before Postgres is ready.
    max_retries = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
    retry_delay_seconds = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


def _build_components(app: FastAPI) -> None:
    settings = SyncSettings.from_env()
    clock = SystemClock()
    lifecycle = BookingLifecycle(
        clock=clock,
        fee_schedule=FeeSchedule.from_env(),
        arbiter=os.getenv("ARBITER_ADDRESS", "arbiter"),
        treasury=os.getenv("TREASURY_ADDRESS", "treasury"),
    )
    ledger = InMemoryLedger(lifecycle)
    projection = SqlProjection(SessionLocal)
    state_store = SqlSyncStateStore(SessionLocal, clock=clock)
    sync_engine = EventSyncEngine(ledger, projection, state_store, settings)
    booking_service = BookingService(ledger, lifecycle)

    app.state.settings = settings
    app.state.lifecycle = lifecycle
    app.state.ledger = ledger
    app.state.projection = projection
    app.state.engine = sync_engine
    app.state.booking_service = booking_service
    app.state.worker = SyncWorker(sync_engine, settings, booking_service)


@app.on_event("startup")
def on_startup() -> None:
    _wait_for_db()
    Base.metadata.create_all(bind=engine)
    _build_components(app)
    app.state.engine.resume_from()

    if os.getenv("SYNC_WORKER_ENABLED", "true").lower() in ("1", "true", "yes"):
        app.state.worker.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    worker = getattr(app.state, "worker", None)
    if worker is not None:
        worker.stop()
    sync_engine = getattr(app.state, "engine", None)
    if sync_engine is not None:
        sync_engine.close()
