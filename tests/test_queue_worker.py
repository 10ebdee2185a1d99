from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.orm import sessionmaker

from kondo_agent.models import ConversationMessage, QueueJob
from kondo_agent.services import queue_service
from kondo_agent.services.conversation_service import SqlConversationRegistry, SqlCounterpartyStore
from kondo_agent.services.queue_worker import (
    TICK_BUSY,
    TICK_COMPLETED,
    TICK_FAILED,
    TICK_IDLE,
    TICK_RATE_LIMITED,
    TICK_RETRY_SCHEDULED,
    QueueWorker,
)
from kondo_agent.services.rate_limiter import SCOPE_PER_ADDRESS, RateLimiter
from kondo_agent.services.result import ERROR_TIMEOUT, Result


@pytest.fixture
def alerts():
    return Mock()


@pytest.fixture
def make_worker(engine, reply_generator, gateway, clock, alerts):
    # rows handed to the fake reply generator must stay readable after the worker commits and closes
    session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    def _make_worker(reply_generator=reply_generator, gateway=gateway, scope="global", interval=60):
        return QueueWorker(
            session_factory,
            SqlConversationRegistry(),
            reply_generator,
            gateway,
            RateLimiter(interval, scope, clock=clock.monotonic),
            now=clock.now,
            on_terminal_failure=alerts,
        )

    return _make_worker


def _reload(db, job_id):
    db.expire_all()
    return db.get(QueueJob, job_id)


class TestHappyPath:
    def test_empty_queue_is_idle(self, make_worker):
        assert make_worker().tick().outcome == TICK_IDLE

    def test_job_completed_and_reply_sent(self, db, make_job, make_worker, gateway):
        job = make_job("Sou corretor, tenho apartamento disponível")

        result = make_worker().tick()

        assert result.outcome == TICK_COMPLETED
        assert result.job_id == job.id
        stored = _reload(db, job.id)
        assert stored.status == "completed"
        assert stored.reply_text == "Resposta para: Sou corretor, tenho apartamento disponível"
        assert stored.processed_at is not None
        assert gateway.sent == [("5511999990000", "text", stored.reply_text)]

        outgoing = db.query(ConversationMessage).filter(ConversationMessage.direction == "outgoing").one()
        assert outgoing.content == stored.reply_text
        assert outgoing.external_message_id == "wamid.1"

    def test_history_excludes_the_message_being_answered(self, db, make_job, make_worker, reply_generator):
        registry = SqlConversationRegistry()
        agency = SqlCounterpartyStore().create(db, "5511999990000", "Prime", confidence=1.0, first_message="oi")
        conversation = registry.find_or_create(db, agency.id, "5511999990000")
        registry.save_message(db, conversation.id, "outgoing", "Olá! Tudo bem?")
        registry.save_message(db, conversation.id, "incoming", "Tenho um lançamento", external_message_id="wamid.CUR")
        db.commit()
        job = make_job("Tenho um lançamento", external_id="wamid.CUR")
        registry.save_message(db, conversation.id, "incoming", "mensagem posterior")
        db.commit()

        make_worker().tick()

        call = reply_generator.calls[0]
        assert call["conversation_id"] == job.conversation_id
        assert call["payload"]["content"] == "Tenho um lançamento"
        assert call["payload"]["message_type"] == "text"
        assert [m.content for m in call["history"]] == ["Olá! Tudo bem?"]

    def test_later_job_sees_reply_sent_for_earlier_job(self, db, make_job, make_worker, reply_generator, clock):
        registry = SqlConversationRegistry()
        first = make_job("Sou corretor", external_id="wamid.A")
        registry.save_message(db, first.conversation_id, "incoming", "Sou corretor", external_message_id="wamid.A")
        db.commit()
        second = make_job("Tenho um lançamento", external_id="wamid.B")
        registry.save_message(db, second.conversation_id, "incoming", "Tenho um lançamento", external_message_id="wamid.B")
        db.commit()
        worker = make_worker()

        assert worker.tick().job_id == first.id
        clock.advance(61)
        assert worker.tick().job_id == second.id

        history = [(m.direction, m.content) for m in reply_generator.calls[1]["history"]]
        assert history == [("incoming", "Sou corretor"), ("outgoing", "Resposta para: Sou corretor")]


class TestRateLimit:
    def test_second_reply_waits_for_interval(self, db, make_job, make_worker, clock):
        first = make_job("A")
        second = make_job("B")
        worker = make_worker()

        assert worker.tick().outcome == TICK_COMPLETED
        clock.advance(30)
        assert worker.tick().outcome == TICK_RATE_LIMITED
        assert _reload(db, second.id).status == "pending"

        clock.advance(30)
        assert worker.tick().outcome == TICK_COMPLETED

        gap = _reload(db, second.id).processed_at - _reload(db, first.id).processed_at
        assert gap >= timedelta(seconds=60)

    def test_failure_does_not_start_cooldown(self, db, make_job, make_worker, make_reply_generator):
        calls = []

        def respond(payload):
            calls.append(payload["content"])
            if len(calls) == 1:
                return Result.failure("slow", ERROR_TIMEOUT)
            return Result.success("ok")

        make_job("A")
        worker = make_worker(reply_generator=make_reply_generator(respond))

        assert worker.tick().outcome == TICK_RETRY_SCHEDULED
        assert worker.tick().outcome == TICK_COMPLETED
        assert calls == ["A", "A"]

    def test_per_address_scope_serves_other_recipients(self, db, make_job, make_worker):
        make_job("A", address="5511911110000")
        make_job("B", address="5511911110000")
        other = make_job("C", address="5511922220000")
        worker = make_worker(scope=SCOPE_PER_ADDRESS)

        assert worker.tick().outcome == TICK_COMPLETED
        result = worker.tick()

        assert result.outcome == TICK_COMPLETED
        assert result.job_id == other.id


class TestRetries:
    def test_failed_job_keeps_fifo_position(self, db, make_job, make_worker, make_reply_generator, clock):
        calls = []

        def respond(payload):
            calls.append(payload["content"])
            if payload["content"] == "B" and calls.count("B") == 1:
                return Result.failure("HTTP 500", "http_error")
            return Result.success(f"re: {payload['content']}")

        make_job("A")
        job_b = make_job("B")
        make_job("C")
        worker = make_worker(reply_generator=make_reply_generator(respond))

        worker.tick()
        clock.advance(60)
        assert worker.tick().outcome == TICK_RETRY_SCHEDULED
        assert worker.tick().job_id == job_b.id
        assert calls == ["A", "B", "B"]

    def test_job_fails_after_exhausting_retries(self, db, make_job, make_worker, make_reply_generator, alerts):
        job = make_job("A")
        always_failing = make_reply_generator(lambda payload: Result.failure("read timed out", ERROR_TIMEOUT))
        worker = make_worker(reply_generator=always_failing)

        outcomes = [worker.tick().outcome for _ in range(3)]
        assert outcomes == [TICK_RETRY_SCHEDULED] * 3
        assert _reload(db, job.id).retry_count == 3

        result = worker.tick()

        assert result.outcome == TICK_FAILED
        stored = _reload(db, job.id)
        assert stored.status == "failed"
        assert stored.retry_count == stored.max_retries
        assert stored.error_message == "timeout: read timed out"
        assert stored.processed_at is not None
        alerts.assert_called_once()

        updated_at = stored.updated_at
        assert worker.tick().outcome == TICK_IDLE
        assert len(always_failing.calls) == 4
        assert _reload(db, job.id).updated_at == updated_at

    def test_send_failure_discards_unsent_reply(self, db, make_job, make_worker, make_gateway):
        job = make_job("A")
        failing_gateway = make_gateway(lambda address, content: Result.failure("WhatsApp API error: 500", "http_error"))

        result = make_worker(gateway=failing_gateway).tick()

        assert result.outcome == TICK_RETRY_SCHEDULED
        stored = _reload(db, job.id)
        assert stored.status == "pending"
        assert stored.error_message.startswith("http_error:")
        assert db.query(ConversationMessage).filter(ConversationMessage.direction == "outgoing").count() == 0

    def test_raising_generator_counts_as_failed_attempt(self, db, make_job, make_worker, make_reply_generator):
        job = make_job("A")

        def explode(payload):
            raise RuntimeError("kaboom")

        result = make_worker(reply_generator=make_reply_generator(explode)).tick()

        assert result.outcome == TICK_RETRY_SCHEDULED
        stored = _reload(db, job.id)
        assert stored.retry_count == 1
        assert stored.error_message == "unknown: kaboom"


class TestSingleFlight:
    def test_overlapping_tick_is_skipped(self, make_job, make_worker):
        make_job("A")
        worker = make_worker()
        worker._lock.acquire()
        try:
            assert worker.is_processing is True
            assert worker.tick().outcome == TICK_BUSY
        finally:
            worker._lock.release()
        assert worker.tick().outcome == TICK_COMPLETED

    @patch("kondo_agent.services.queue_worker.alert_service.alert_warning")
    def test_recover_resets_orphaned_jobs(self, mock_alert, db, make_job, make_worker):
        job = make_job("A")
        queue_service.claim_job(db, job)

        assert make_worker().recover() == 1
        assert _reload(db, job.id).status == "pending"
        mock_alert.assert_called_once_with("Reply jobs recovered after restart", {"count": 1})

    @patch("kondo_agent.services.queue_worker.alert_service.alert_warning")
    def test_recover_with_nothing_orphaned_is_silent(self, mock_alert, make_worker):
        assert make_worker().recover() == 0
        mock_alert.assert_not_called()

    def test_terminal_alert_masks_recipient(self, make_job, make_worker, make_reply_generator, alerts):
        make_job("A", address="5511987654321", max_retries=0)
        failing = make_reply_generator(lambda payload: Result.failure("boom", ERROR_TIMEOUT))

        make_worker(reply_generator=failing).tick()

        message, context = alerts.call_args[0]
        assert message == "Reply job failed permanently"
        assert context["to"] == "5511*****4321"
        assert context["error"] == "timeout: boom"
