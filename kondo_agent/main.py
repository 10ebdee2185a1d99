import asyncio
import os

from fastapi import Depends, FastAPI
from sqlalchemy.orm import Session

from kondo_agent.config import settings
from kondo_agent.database import SessionLocal, get_db, init_db
from kondo_agent.logging_config import get_logger, setup_logging
from kondo_agent.routers import admin, webhook
from kondo_agent.services.queue_service import get_queue_stats
from kondo_agent.wiring import build_pipeline

setup_logging(settings.log_level, json_logs=settings.log_json)

app = FastAPI(
    title="Kondo Agent API",
    description="WhatsApp intake and rate-limited reply queue for real-estate agents",
    version="0.1.0",
)

app.state.pipeline = build_pipeline(settings, SessionLocal)

app.include_router(webhook.router)
app.include_router(admin.router)

worker_logger = get_logger("queue_worker_loop")
_queue_worker_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_queue_worker_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.worker_enabled and _is_env_enabled(os.environ.get("QUEUE_WORKER_ENABLED"), default=True)


async def _queue_worker_loop() -> None:
    worker = app.state.pipeline.worker
    interval_seconds = max(settings.worker_interval_seconds, 0.1)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            # each tick opens its own session, so it can run off the event loop
            result = await asyncio.to_thread(worker.tick)
            if result.job_id is not None:
                worker_logger.info(
                    "Queue worker tick",
                    extra={"context": {"outcome": result.outcome, "job_id": result.job_id}},
                )
        except asyncio.CancelledError:
            break
        except Exception as exc:
            worker_logger.error(
                "Queue worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_queue_worker() -> None:
    global _queue_worker_task
    if settings.auto_create_tables:
        init_db()
    if not _is_queue_worker_enabled():
        return
    await asyncio.to_thread(app.state.pipeline.worker.recover)
    if _queue_worker_task is None or _queue_worker_task.done():
        _queue_worker_task = asyncio.create_task(_queue_worker_loop())
        worker_logger.info(
            "Queue worker started",
            extra={
                "context": {
                    "interval_seconds": settings.worker_interval_seconds,
                    "rate_limit_seconds": settings.rate_limit_seconds,
                    "rate_limit_scope": settings.rate_limit_scope,
                }
            },
        )


@app.on_event("shutdown")
async def stop_queue_worker() -> None:
    global _queue_worker_task
    if _queue_worker_task is None:
        return
    _queue_worker_task.cancel()
    try:
        await _queue_worker_task
    except asyncio.CancelledError:
        pass
    _queue_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    return {"status": "ok", "queue": get_queue_stats(db)}
