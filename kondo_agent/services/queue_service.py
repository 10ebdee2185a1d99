"""Durable reply queue backed by the queue_jobs table.

Jobs are appended by the orchestrator and only ever mutated in place by the
worker (status, retry bookkeeping, reply). Rows are never deleted.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from kondo_agent.logging_config import get_logger
from kondo_agent.models import QueueJob
from kondo_agent.services.state_machine import (
    JobStatus,
    complete,
    fail,
    schedule_retry,
    start_processing,
)

logger = get_logger("queue_service")

DEFAULT_MAX_RETRIES = 3
ERROR_MESSAGE_MAX_LENGTH = 1000


def build_external_message_id(
    message_id: str | None,
    channel_address: str | None,
    timestamp: int | str | None,
    message_text: str | None,
) -> str:
    if message_id:
        return message_id.strip()
    if channel_address and timestamp is not None:
        return f"{channel_address}:{timestamp}"
    if channel_address and message_text:
        digest = hashlib.sha256(message_text.encode("utf-8")).hexdigest()[:16]
        return f"{channel_address}:{digest}"
    return str(uuid.uuid4())


def find_job_by_external_id(db: Session, external_message_id: str) -> Optional[QueueJob]:
    return (
        db.query(QueueJob)
        .filter(QueueJob.external_message_id == external_message_id)
        .order_by(QueueJob.id)
        .first()
    )


def enqueue_job(
    db: Session,
    *,
    channel_address: str,
    message_content: str,
    external_message_id: str,
    conversation_id: int,
    counterparty_id: int,
    payload: dict[str, Any],
    admission_metadata: dict[str, Any],
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> tuple[QueueJob, bool]:
    """Append a pending job. Returns (job, created).

    A webhook redelivery carrying an already queued external_message_id gets
    the existing job back and nothing is appended. The caller commits.
    """
    existing = find_job_by_external_id(db, external_message_id)
    if existing is not None:
        logger.info(
            "Duplicate inbound message, job already queued",
            extra={"context": {"job_id": existing.id, "external_message_id": external_message_id}},
        )
        return existing, False

    now = datetime.now(timezone.utc)
    job = QueueJob(
        channel_address=channel_address,
        message_content=message_content,
        external_message_id=external_message_id,
        conversation_id=conversation_id,
        counterparty_id=counterparty_id,
        payload=payload,
        admission_metadata=admission_metadata,
        status=JobStatus.PENDING.value,
        retry_count=0,
        max_retries=max_retries,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.flush()

    logger.info(
        "Job queued",
        extra={"context": {"job_id": job.id, "channel_address": channel_address, "conversation_id": conversation_id}},
    )
    return job, True


def next_pending_job(db: Session, *, skip_addresses: Iterable[str] = ()) -> Optional[QueueJob]:
    """Oldest pending job by original arrival (created_at, then id)."""
    query = db.query(QueueJob).filter(QueueJob.status == JobStatus.PENDING.value)
    skip = list(skip_addresses)
    if skip:
        query = query.filter(QueueJob.channel_address.notin_(skip))
    return query.order_by(QueueJob.created_at.asc(), QueueJob.id.asc()).first()


def claim_job(db: Session, job: QueueJob) -> bool:
    """Atomically move a job pending -> processing.

    The conditional UPDATE only matches while the row is still pending, so at
    most one claimer wins even across processes sharing the database.
    """
    start_processing(JobStatus(job.status))
    result = db.execute(
        update(QueueJob)
        .where(QueueJob.id == job.id, QueueJob.status == JobStatus.PENDING.value)
        .values(status=JobStatus.PROCESSING.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(job)
    claimed = result.rowcount == 1
    if not claimed:
        logger.warning("Job claim lost", extra={"context": {"job_id": job.id, "status": job.status}})
    return claimed


def mark_completed(db: Session, job: QueueJob, *, reply_text: str, now: Optional[datetime] = None) -> None:
    job.status = complete(JobStatus(job.status)).value
    now = now or datetime.now(timezone.utc)
    job.reply_text = reply_text
    job.processed_at = now
    job.error_message = None
    job.updated_at = now
    db.commit()


def record_failure(
    db: Session,
    job: QueueJob,
    *,
    error_message: str,
    now: Optional[datetime] = None,
) -> JobStatus:
    """Count one failed attempt against the job's retry budget.

    Within budget the job goes back to pending with created_at untouched, so
    it keeps its original FIFO position. Past the budget it becomes failed
    and is never selected again.
    """
    current = JobStatus(job.status)
    now = now or datetime.now(timezone.utc)
    retry_count = (job.retry_count or 0) + 1
    error_message = (error_message or "unknown error")[:ERROR_MESSAGE_MAX_LENGTH]

    if retry_count <= job.max_retries:
        job.status = schedule_retry(current).value
        job.retry_count = retry_count
    else:
        job.status = fail(current).value
        # retry_count stays at max_retries so the stored invariant holds
        job.retry_count = job.max_retries
        job.processed_at = now

    job.error_message = error_message
    job.updated_at = now
    db.commit()
    return JobStatus(job.status)


def recover_stale_jobs(db: Session) -> int:
    """Return jobs orphaned in processing (crash mid-tick) to pending."""
    result = db.execute(
        update(QueueJob)
        .where(QueueJob.status == JobStatus.PROCESSING.value)
        .values(status=JobStatus.PENDING.value, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    recovered = result.rowcount or 0
    if recovered:
        logger.warning("Recovered orphaned processing jobs", extra={"context": {"count": recovered}})
    return recovered


def get_queue_stats(db: Session) -> dict[str, int]:
    stats = {status.value: 0 for status in JobStatus}
    rows = db.query(QueueJob.status, func.count(QueueJob.id)).group_by(QueueJob.status).all()
    for status, count in rows:
        stats[status] = int(count)
    stats["total"] = sum(stats[status.value] for status in JobStatus)
    return stats


def list_jobs(db: Session, *, status: Optional[JobStatus] = None, limit: int = 50) -> list[QueueJob]:
    query = db.query(QueueJob)
    if status is not None:
        query = query.filter(QueueJob.status == status.value)
    return query.order_by(QueueJob.created_at.asc(), QueueJob.id.asc()).limit(limit).all()
