"""
Unit tests for OutboxService.

Covers enqueue validation, claim ordering and exclusivity, the retry
transitions and the maintenance helpers.
"""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time
from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import sessionmaker

from backend.src.models import Base, IntentChannel, IntentPriority, IntentStatus, NotificationIntent
from backend.src.services.exceptions import NotFoundError, ValidationError
from backend.src.services.outbox_service import (
    OutboxService,
    REASON_RETRIES_EXHAUSTED,
)


# ============================================================================
# Test: enqueue
# ============================================================================


class TestEnqueue:
    """Tests for OutboxService.enqueue."""

    def test_creates_queued_intent(self, outbox):
        """Should persist a queued intent with zero attempts."""
        intent = outbox.enqueue(
            recipient_id="staff_1",
            tenant_id="rest_1",
            title="New Booking",
            body="Table for 4 at 19:30",
            payload={"booking_id": 7},
        )
        assert intent.id is not None
        assert intent.status == IntentStatus.QUEUED
        assert intent.attempts == 0
        assert intent.max_attempts == 3
        assert intent.channel == IntentChannel.PUSH
        assert intent.priority == IntentPriority.NORMAL
        assert intent.payload == {"booking_id": 7}
        assert intent.sent_at is None

    def test_duplicate_content_creates_two_intents(self, outbox):
        """Should not dedup by content."""
        first = outbox.enqueue("staff_1", "rest_1", "New Order")
        second = outbox.enqueue("staff_1", "rest_1", "New Order")
        assert first.id != second.id

    def test_defaults_payload_to_empty_object(self, outbox):
        intent = outbox.enqueue("staff_1", "rest_1", "Ping")
        assert intent.payload == {}

    @pytest.mark.parametrize(
        "kwargs,field",
        [
            ({"recipient_id": ""}, "recipient_id"),
            ({"tenant_id": " "}, "tenant_id"),
            ({"title": ""}, "title"),
            ({"channel": "sms"}, "channel"),
            ({"priority": "urgent"}, "priority"),
            ({"payload": ["not", "an", "object"]}, "payload"),
        ],
    )
    def test_rejects_invalid_input(self, outbox, test_db_session, kwargs, field):
        """Should raise ValidationError and enqueue nothing."""
        params = {"recipient_id": "staff_1", "tenant_id": "rest_1", "title": "Hello"}
        params.update(kwargs)
        with pytest.raises(ValidationError) as exc_info:
            outbox.enqueue(**params)
        assert exc_info.value.field == field
        assert outbox.count_pending_for("staff_1") == 0


# ============================================================================
# Test: claim_batch
# ============================================================================


class TestClaimBatch:
    """Tests for OutboxService.claim_batch."""

    def test_claims_move_to_processing(self, outbox, sample_intent):
        """Should set status processing and claimed_at."""
        intent = sample_intent()
        claimed = outbox.claim_batch(10)
        assert [i.id for i in claimed] == [intent.id]
        assert claimed[0].status == IntentStatus.PROCESSING
        assert claimed[0].claimed_at is not None

    def test_orders_by_priority_then_age(self, outbox, sample_intent):
        """Should claim high priority first, then oldest first."""
        now = datetime.utcnow()
        old_normal = sample_intent(created_at=now - timedelta(minutes=5))
        new_normal = sample_intent(created_at=now - timedelta(minutes=1))
        new_high = sample_intent(priority=IntentPriority.HIGH, created_at=now)

        claimed = outbox.claim_batch(10)
        assert [i.id for i in claimed] == [new_high.id, old_normal.id, new_normal.id]

    def test_respects_limit(self, outbox, sample_intent):
        for _ in range(5):
            sample_intent()
        assert len(outbox.claim_batch(2)) == 2
        assert len(outbox.claim_batch(10)) == 3

    def test_second_claim_gets_nothing(self, outbox, sample_intent):
        """Should never hand the same intent to two claimers."""
        sample_intent()
        assert len(outbox.claim_batch(10)) == 1
        assert outbox.claim_batch(10) == []

    def test_skips_terminal_and_exhausted(self, outbox, sample_intent):
        """Should ignore sent, failed and budget-exhausted intents."""
        sample_intent(status=IntentStatus.SENT)
        sample_intent(status=IntentStatus.FAILED)
        sample_intent(attempts=3, max_attempts=3)
        assert outbox.claim_batch(10) == []

    def test_filters_by_channel_and_recipient(self, outbox, sample_intent):
        push = sample_intent(recipient_id="staff_1")
        sample_intent(recipient_id="staff_1", channel=IntentChannel.IN_APP)
        sample_intent(recipient_id="staff_2")

        claimed = outbox.claim_batch(10, channel="push", recipient_id="staff_1")
        assert [i.id for i in claimed] == [push.id]

    def test_zero_limit_claims_nothing(self, outbox, sample_intent):
        sample_intent()
        assert outbox.claim_batch(0) == []


# ============================================================================
# Test: transitions
# ============================================================================


class TestTransitions:
    """Tests for mark_sent, mark_retry and mark_failed."""

    def test_mark_sent_sets_sent_at(self, outbox, sample_intent):
        intent = sample_intent()
        outbox.claim_batch(10)
        sent = outbox.mark_sent(intent.id)
        assert sent.status == IntentStatus.SENT
        assert sent.sent_at is not None
        assert sent.claimed_at is None

    def test_mark_retry_requeues_with_attempt(self, outbox, sample_intent):
        """Should return the intent to queued with attempts incremented."""
        intent = sample_intent()
        outbox.claim_batch(10)
        retried = outbox.mark_retry(intent.id, reason="gateway timeout")
        assert retried.status == IntentStatus.QUEUED
        assert retried.attempts == 1
        assert retried.failure_reason == "gateway timeout"
        assert retried.is_retryable

    def test_mark_retry_fails_at_max_attempts(self, outbox, sample_intent):
        """Should fail the intent once attempts reaches max_attempts."""
        intent = sample_intent(attempts=2, max_attempts=3)
        outbox.claim_batch(10)
        failed = outbox.mark_retry(intent.id)
        assert failed.status == IntentStatus.FAILED
        assert failed.attempts == 3
        assert failed.failure_reason == REASON_RETRIES_EXHAUSTED

    def test_attempts_never_exceed_max(self, outbox, sample_intent):
        intent = sample_intent()
        for _ in range(5):
            outbox.mark_retry(intent.id)
        assert intent.attempts == intent.max_attempts
        assert outbox.claim_batch(10) == []

    def test_mark_failed_keeps_attempts(self, outbox, sample_intent):
        """Should fail permanently without consuming retry budget."""
        intent = sample_intent()
        outbox.claim_batch(10)
        failed = outbox.mark_failed(intent.id, "no_subscriptions")
        assert failed.status == IntentStatus.FAILED
        assert failed.attempts == 0
        assert failed.failure_reason == "no_subscriptions"

    def test_terminal_intents_are_not_reopened(self, outbox, sample_intent):
        intent = sample_intent(status=IntentStatus.SENT)
        assert outbox.mark_retry(intent.id).status == IntentStatus.SENT
        assert outbox.mark_failed(intent.id, "x").status == IntentStatus.SENT

    def test_unknown_intent_raises(self, outbox):
        with pytest.raises(NotFoundError):
            outbox.mark_sent(999)


# ============================================================================
# Test: device views and maintenance
# ============================================================================


class TestDeviceViews:

    def test_list_queued_for_recipient(self, outbox, sample_intent):
        mine = sample_intent(recipient_id="staff_1")
        sample_intent(recipient_id="staff_2")
        sample_intent(recipient_id="staff_1", status=IntentStatus.SENT)

        assert [i.id for i in outbox.list_queued_for("staff_1")] == [mine.id]
        assert outbox.count_pending_for("staff_1") == 1

    def test_get_for_recipient_hides_other_recipients(self, outbox, sample_intent):
        intent = sample_intent(recipient_id="staff_2")
        with pytest.raises(NotFoundError):
            outbox.get_for_recipient(intent.id, "staff_1")


class TestMaintenanceHelpers:

    def test_requeue_stale_claims(self, outbox, sample_intent):
        """Should return old processing claims to the queue as a failed round."""
        stale = sample_intent(
            status=IntentStatus.PROCESSING,
            claimed_at=datetime.utcnow() - timedelta(minutes=10),
        )
        fresh = sample_intent(status=IntentStatus.PROCESSING, claimed_at=datetime.utcnow())

        released = outbox.requeue_stale_claims(datetime.utcnow() - timedelta(minutes=5))
        assert released == 1
        assert stale.status == IntentStatus.QUEUED
        assert stale.attempts == 1
        assert fresh.status == IntentStatus.PROCESSING

    def test_purge_finished(self, outbox, sample_intent, test_db_session):
        old = datetime.utcnow() - timedelta(days=40)
        sample_intent(status=IntentStatus.SENT, created_at=old)
        sample_intent(status=IntentStatus.FAILED, created_at=old)
        kept_queued = sample_intent(created_at=old)
        kept_recent = sample_intent(status=IntentStatus.SENT)

        purged = outbox.purge_finished(datetime.utcnow() - timedelta(days=30))
        assert purged == 2
        test_db_session.expire_all()
        assert outbox.get_for_recipient(kept_queued.id, "staff_1") is not None
        assert outbox.get_for_recipient(kept_recent.id, "staff_1") is not None

    def test_default_budget(self, test_db_session):
        service = OutboxService(test_db_session)
        intent = service.enqueue("staff_1", "rest_1", "Hello")
        assert intent.max_attempts == 5


# ============================================================================
# Test: scheduled delivery
# ============================================================================


class TestScheduledDelivery:
    """Tests for intents enqueued with scheduled_for."""

    def test_future_intent_waits_until_due(self, outbox):
        """Should keep a scheduled intent out of claims and pull views until its time."""
        with freeze_time("2026-03-01 19:00:00") as frozen:
            reminder = outbox.enqueue(
                "staff_1", "rest_1", "Booking Reminder",
                scheduled_for=datetime(2026, 3, 2, 19, 0),
            )
            assert outbox.claim_batch(10) == []
            assert outbox.list_queued_for("staff_1") == []
            assert outbox.count_pending_for("staff_1") == 0

            frozen.move_to("2026-03-02 19:00:01")
            assert outbox.count_pending_for("staff_1") == 1
            assert [i.id for i in outbox.claim_batch(10)] == [reminder.id]

    def test_past_schedule_is_claimable(self, outbox):
        intent = outbox.enqueue(
            "staff_1", "rest_1", "Late Reminder",
            scheduled_for=datetime.utcnow() - timedelta(minutes=1),
        )
        assert [i.id for i in outbox.claim_batch(10)] == [intent.id]

    def test_aware_datetime_stored_as_utc(self, outbox):
        """Should normalize timezone-aware times to naive UTC."""
        paris = timezone(timedelta(hours=1))
        intent = outbox.enqueue(
            "staff_1", "rest_1", "Booking Reminder",
            scheduled_for=datetime(2026, 3, 2, 20, 0, tzinfo=paris),
        )
        assert intent.scheduled_for == datetime(2026, 3, 2, 19, 0)

    def test_unscheduled_intents_claimed_alongside(self, outbox):
        now_intent = outbox.enqueue("staff_1", "rest_1", "New Order")
        outbox.enqueue(
            "staff_1", "rest_1", "Booking Reminder",
            scheduled_for=datetime.utcnow() + timedelta(hours=24),
        )
        assert [i.id for i in outbox.claim_batch(10)] == [now_intent.id]


# ============================================================================
# Test: concurrent claims
# ============================================================================


class TestConcurrentClaims:
    """Two workers claiming at the same time must get disjoint batches."""

    @pytest.fixture
    def file_engine(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'outbox.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(engine)
        yield engine
        engine.dispose()

    def test_parallel_workers_never_overlap(self, file_engine):
        Session = sessionmaker(bind=file_engine, autocommit=False, autoflush=False)
        seed = Session()
        queued_ids = {
            OutboxService(seed).enqueue(f"staff_{n % 3}", "rest_1", f"Order #{n}").id
            for n in range(20)
        }
        seed.close()

        barrier = threading.Barrier(2)
        results = {}
        errors = []

        def worker(name):
            session = Session()
            try:
                service = OutboxService(session)
                barrier.wait(timeout=5)
                results[name] = {intent.id for intent in service.claim_batch(10)}
            except Exception as e:
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=worker, args=(name,)) for name in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert results["a"].isdisjoint(results["b"])
        assert results["a"] | results["b"] == queued_ids

        check = Session()
        statuses = {row.status for row in check.query(NotificationIntent).all()}
        check.close()
        assert statuses == {IntentStatus.PROCESSING}

    def test_postgresql_candidates_skip_locked_rows(self):
        """Should lock candidate rows with SKIP LOCKED on PostgreSQL."""
        db = MagicMock()
        db.get_bind.return_value.dialect.name = "postgresql"
        service = OutboxService(db)

        sql = str(service.claim_candidates(10, datetime.utcnow()).compile(dialect=postgresql.dialect()))
        assert "FOR UPDATE SKIP LOCKED" in sql

    def test_sqlite_candidates_have_no_row_locks(self, outbox):
        sql = str(outbox.claim_candidates(10, datetime.utcnow()).compile())
        assert "FOR UPDATE" not in sql
