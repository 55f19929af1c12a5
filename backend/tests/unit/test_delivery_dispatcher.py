"""
Unit tests for DeliveryDispatcher.

Uses the FakePushGateway from conftest to script per-endpoint outcomes.
"""

import pytest

from backend.src.models import IntentChannel, IntentPriority, IntentStatus
from backend.src.services.delivery_dispatcher import (
    DeliveryDispatcher,
    build_push_message,
    notification_tag,
)
from backend.src.services.outbox_service import REASON_NO_SUBSCRIPTIONS
from backend.src.services.push_gateway import PushDeliveryError, PushGoneError


@pytest.fixture
def dispatcher(test_db_session, fake_gateway, outbox, registry):
    """Dispatcher sharing the test session, outbox and registry."""
    return DeliveryDispatcher(
        test_db_session, fake_gateway, max_attempts=3, outbox=outbox, registry=registry
    )


# ============================================================================
# Test: message building
# ============================================================================


class TestBuildPushMessage:

    def test_tag_prefers_booking_then_order(self, sample_intent):
        assert notification_tag(sample_intent(payload={"booking_id": 5})) == "booking-5"
        assert notification_tag(sample_intent(payload={"order_id": 9})) == "order-9"
        plain = sample_intent(payload={})
        assert notification_tag(plain) == f"notif-{plain.id}"

    def test_message_carries_payload_and_id(self, sample_intent):
        intent = sample_intent(
            payload={"order_id": 9, "url": "/orders/9"},
            priority=IntentPriority.HIGH,
        )
        message = build_push_message(intent)
        assert message["title"] == intent.title
        assert message["tag"] == "order-9"
        assert message["priority"] == "high"
        assert message["requireInteraction"] is True
        assert message["data"]["notification_id"] == intent.id
        assert message["data"]["url"] == "/orders/9"
        assert message["data"]["order_id"] == 9

    def test_url_defaults_to_root(self, sample_intent):
        assert build_push_message(sample_intent(payload={}))["data"]["url"] == "/"


# ============================================================================
# Test: dispatch_batch
# ============================================================================


class TestDispatchBatch:
    """Tests for DeliveryDispatcher.dispatch_batch outcomes."""

    def test_sends_to_every_active_subscription(
        self, dispatcher, fake_gateway, sample_intent, sample_subscription
    ):
        """Should deliver one copy per device and mark the intent sent."""
        sample_subscription()
        sample_subscription()
        intent = sample_intent()

        report = dispatcher.dispatch_batch()

        assert report.claimed == 1
        assert report.sent == 1
        assert len(fake_gateway.sent) == 2
        assert intent.status == IntentStatus.SENT
        assert intent.sent_at is not None
        assert intent.attempts == 0

    def test_no_subscriptions_fails_without_attempt(self, dispatcher, fake_gateway, sample_intent):
        intent = sample_intent()
        report = dispatcher.dispatch_batch()
        assert report.failed == 1
        assert fake_gateway.sent == []
        assert intent.status == IntentStatus.FAILED
        assert intent.failure_reason == REASON_NO_SUBSCRIPTIONS
        assert intent.attempts == 0

    def test_partial_success_counts_as_sent(
        self, dispatcher, fake_gateway, sample_intent, sample_subscription
    ):
        """Should mark sent when one device accepted and another failed."""
        ok = sample_subscription()
        broken = sample_subscription()
        fake_gateway.outcomes[broken.endpoint] = PushDeliveryError("503 from push service", 503)
        intent = sample_intent()

        dispatcher.dispatch_batch()
        assert intent.status == IntentStatus.SENT
        assert ok.is_active is True

    def test_transient_failure_retries(
        self, dispatcher, fake_gateway, sample_intent, sample_subscription
    ):
        sub = sample_subscription()
        fake_gateway.outcomes[sub.endpoint] = PushDeliveryError("timeout")
        intent = sample_intent()

        report = dispatcher.dispatch_batch()
        assert report.retried == 1
        assert intent.status == IntentStatus.QUEUED
        assert intent.attempts == 1
        assert intent.failure_reason == "timeout"

    def test_retries_until_budget_exhausted(
        self, dispatcher, fake_gateway, sample_intent, sample_subscription
    ):
        """Should fail the intent after max_attempts failed rounds, then stop claiming it."""
        sub = sample_subscription()
        fake_gateway.outcomes[sub.endpoint] = PushDeliveryError("timeout")
        intent = sample_intent(max_attempts=3)

        for _ in range(3):
            dispatcher.dispatch_batch()
        assert intent.status == IntentStatus.FAILED
        assert intent.attempts == 3

        assert dispatcher.dispatch_batch().claimed == 0
        assert len(fake_gateway.sent) == 3

    def test_gone_subscription_is_deactivated(
        self, dispatcher, fake_gateway, registry, sample_intent, sample_subscription
    ):
        """Should deactivate 404/410 endpoints without consuming an attempt."""
        ok = sample_subscription()
        gone = sample_subscription()
        fake_gateway.outcomes[gone.endpoint] = PushGoneError(gone.endpoint, 410)
        intent = sample_intent()

        report = dispatcher.dispatch_batch()
        assert report.deactivated == 1
        assert intent.status == IntentStatus.SENT
        assert [s.id for s in registry.active_for("staff_1")] == [ok.id]

    def test_all_gone_fails_with_no_subscriptions(
        self, dispatcher, fake_gateway, registry, sample_intent, sample_subscription
    ):
        sub = sample_subscription()
        fake_gateway.outcomes[sub.endpoint] = PushGoneError(sub.endpoint, 404)
        intent = sample_intent()

        dispatcher.dispatch_batch()
        assert intent.status == IntentStatus.FAILED
        assert intent.failure_reason == REASON_NO_SUBSCRIPTIONS
        assert intent.attempts == 0
        assert registry.active_for("staff_1") == []

    def test_in_app_intents_are_not_dispatched(
        self, dispatcher, fake_gateway, sample_intent, sample_subscription
    ):
        sample_subscription()
        intent = sample_intent(channel=IntentChannel.IN_APP)
        assert dispatcher.dispatch_batch().claimed == 0
        assert intent.status == IntentStatus.QUEUED

    def test_high_priority_uses_high_urgency(
        self, dispatcher, fake_gateway, sample_intent, sample_subscription
    ):
        sample_subscription()
        sample_intent(priority=IntentPriority.HIGH)
        dispatcher.dispatch_batch()
        assert fake_gateway.sent[0]["urgency"] == "high"

    def test_only_same_tenant_subscriptions(
        self, dispatcher, fake_gateway, sample_intent, sample_subscription
    ):
        sample_subscription(tenant_id="rest_2")
        intent = sample_intent(tenant_id="rest_1")
        dispatcher.dispatch_batch()
        assert fake_gateway.sent == []
        assert intent.status == IntentStatus.FAILED
