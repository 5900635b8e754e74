from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI

from stock_tracker.api.routes import router
from stock_tracker.config.settings import get_settings
from stock_tracker.errors import OperationCancelledError
from stock_tracker.services.tracker import build_tracker

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _run_hydration(tracker, cancel: threading.Event) -> None:
    try:
        tracker.hydrate(cancel)
    except OperationCancelledError:
        logger.info("[APP][hydration_cancelled]")
    except Exception:
        logger.exception("[APP][hydration_failed]")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.get_settings()
    configure_logging(settings.LOG_LEVEL)
    if getattr(app.state, "tracker", None) is None:
        app.state.tracker = build_tracker(settings)

    cancel = threading.Event()
    worker = threading.Thread(
        target=_run_hydration,
        args=(app.state.tracker, cancel),
        daemon=True,
        name="hydration-worker",
    )
    app.state.hydration_cancel = cancel
    app.state.hydration_thread = worker
    logger.info("[APP][hydration_start] thread=hydration-worker")
    worker.start()

    try:
        yield
    finally:
        cancel.set()
        worker.join(timeout=1.0)
        logger.info("[APP][hydration_stop] thread=hydration-worker alive=%s", int(worker.is_alive()))


app = FastAPI(title="Stock Tracker", version="0.1.0", lifespan=lifespan)
app.include_router(router, prefix="/v1")

# NOTE: lazy-loaded so app import does not require env during tests.
app.state.get_settings = get_settings
app.state.tracker = None
