"""Single-flight, rate-limited executor for queued reply jobs.

One tick handles at most one job: pick the oldest pending job, claim it,
generate the reply, persist it, send it, and record the outcome. Failures
are absorbed here and only show up on the job row (status / error_message);
the sender never sees an error.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from kondo_agent.logging_config import LoggerAdapter, get_logger
from kondo_agent.models import QueueJob
from kondo_agent.services import alert_service, queue_service
from kondo_agent.services.conversation_service import ConversationRegistry
from kondo_agent.services.message_service import DIRECTION_OUTGOING
from kondo_agent.services.rate_limiter import RateLimiter
from kondo_agent.services.reply_service import ReplyGenerator
from kondo_agent.services.result import ERROR_UNKNOWN, Result
from kondo_agent.services.state_machine import JobStatus
from kondo_agent.services.whatsapp_service import OutboundGateway

logger = get_logger("queue_worker")

TICK_BUSY = "busy"
TICK_RATE_LIMITED = "rate_limited"
TICK_IDLE = "idle"
TICK_CLAIM_LOST = "claim_lost"
TICK_COMPLETED = "completed"
TICK_RETRY_SCHEDULED = "retry_scheduled"
TICK_FAILED = "failed"


@dataclass(frozen=True)
class TickResult:
    outcome: str
    job_id: Optional[int] = None
    error: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueWorker:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: ConversationRegistry,
        reply_generator: ReplyGenerator,
        gateway: OutboundGateway,
        rate_limiter: RateLimiter,
        *,
        history_limit: int = 10,
        now: Callable[[], datetime] = _utcnow,
        on_terminal_failure: Optional[Callable[[str, dict], object]] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.reply_generator = reply_generator
        self.gateway = gateway
        self.rate_limiter = rate_limiter
        self.history_limit = history_limit
        self._now = now
        self._on_terminal_failure = on_terminal_failure or alert_service.alert_error
        # in-process only; cross-process exclusion comes from the conditional claim
        self._lock = threading.Lock()

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    def recover(self) -> int:
        """Reset jobs orphaned in processing by a previous crash. Call once at startup."""
        db = self.session_factory()
        try:
            recovered = queue_service.recover_stale_jobs(db)
        finally:
            db.close()
        if recovered:
            alert_service.alert_warning("Reply jobs recovered after restart", {"count": recovered})
        return recovered

    def tick(self) -> TickResult:
        if not self._lock.acquire(blocking=False):
            return TickResult(TICK_BUSY)
        try:
            return self._run_tick()
        finally:
            self._lock.release()

    def _run_tick(self) -> TickResult:
        if self.rate_limiter.blocks_all():
            logger.debug(f"Rate limit active, {self.rate_limiter.remaining_seconds():.0f}s remaining")
            return TickResult(TICK_RATE_LIMITED)

        db = self.session_factory()
        try:
            job = queue_service.next_pending_job(db, skip_addresses=self.rate_limiter.cooling_addresses())
            if job is None:
                return TickResult(TICK_IDLE)
            if not queue_service.claim_job(db, job):
                return TickResult(TICK_CLAIM_LOST, job.id)
            return self._execute(db, job)
        finally:
            db.close()

    def _execute(self, db: Session, job: QueueJob) -> TickResult:
        job_log = LoggerAdapter(logger, {"job_id": job.id, "conversation_id": job.conversation_id})
        job_log.info(
            "Processing job",
            context={"channel_address": job.channel_address, "attempt": (job.retry_count or 0) + 1},
        )

        try:
            outcome = self._deliver(db, job)
        except Exception as exc:
            db.rollback()
            job_log.error("Job delivery raised", context={"error": str(exc)}, exc_info=True)
            outcome = Result.failure(str(exc) or exc.__class__.__name__, ERROR_UNKNOWN)

        if outcome.ok:
            queue_service.mark_completed(db, job, reply_text=outcome.value, now=self._now())
            self.rate_limiter.record(job.channel_address)
            job_log.info("Job completed")
            return TickResult(TICK_COMPLETED, job.id)

        error_message = outcome.describe_error()
        status = queue_service.record_failure(db, job, error_message=error_message, now=self._now())
        if status == JobStatus.FAILED:
            job_log.error(
                "Job failed permanently",
                context={"max_retries": job.max_retries, "error": error_message},
            )
            self._notify_terminal_failure(job, error_message)
            return TickResult(TICK_FAILED, job.id, error_message)

        job_log.warning(
            "Job attempt failed, retry scheduled",
            context={"retry_count": job.retry_count, "max_retries": job.max_retries, "error": error_message},
        )
        return TickResult(TICK_RETRY_SCHEDULED, job.id, error_message)

    def _deliver(self, db: Session, job: QueueJob) -> Result[str]:
        history = self.registry.get_history(
            db,
            job.conversation_id,
            limit=self.history_limit,
            before=job.created_at,
            exclude_external_id=job.external_message_id,
        )
        payload = {**(job.payload or {}), "content": job.message_content}

        reply = self.reply_generator.generate(job.conversation_id, payload, history)
        if not reply.ok:
            return reply

        outgoing = self.registry.save_message(
            db,
            job.conversation_id,
            DIRECTION_OUTGOING,
            reply.value,
            message_metadata={"job_id": job.id, "in_reply_to": job.external_message_id},
        )

        sent = self.gateway.send(job.channel_address, "text", reply.value)
        if not sent.ok:
            # drop the unsent reply so a retry does not leave it in the history
            db.rollback()
            return Result.failure(sent.error or "send failed", sent.error_code or ERROR_UNKNOWN)

        outgoing.external_message_id = sent.value or None
        return reply

    def _notify_terminal_failure(self, job: QueueJob, error_message: str) -> None:
        try:
            self._on_terminal_failure(
                "Reply job failed permanently",
                {
                    "job_id": job.id,
                    "conversation_id": job.conversation_id,
                    "to": alert_service.mask_address(job.channel_address),
                    "error": error_message[:200],
                },
            )
        except Exception as exc:
            logger.warning("Terminal failure alert failed", extra={"context": {"job_id": job.id, "error": str(exc)}})
