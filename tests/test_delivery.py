"""Tests for event delivery, retries and pull reads."""

from datetime import timedelta

import pytest

from conftest import FrozenClock, ScriptedTransport
from syncledger.connectors.base import DeliveryResponse
from syncledger.core.delivery import BackoffPolicy, classify_response, decode_cursor, encode_cursor
from syncledger.core.ledger import Ledger
from syncledger.errors import (
    ConfigurationError,
    DeliveryTerminalError,
    DeliveryTransientError,
    ValidationError,
)
from syncledger.models import (
    Event,
    EventMessage,
    EventSubscription,
    MessageStatus,
    SubscriptionStatus,
    SubscriptionStyle,
)


def _push(ledger: Ledger, **overrides) -> EventSubscription:
    data = {"reference": "crm", "sink": "https://crm.example.com/hook"}
    data.update(overrides)
    return ledger.subscriptions.create(EventSubscription.from_map(data))


def _event(event_type: str = "syncledger.contract.created") -> Event:
    return Event(type=event_type, source="syncledger/synchronizations/people", data={"n": 1})


class TestBackoffPolicy:
    """Test BackoffPolicy."""

    def test_doubles_per_attempt(self) -> None:
        """Test the delay grows exponentially from the base."""
        policy = BackoffPolicy(base_minutes=5, factor=2, max_minutes=1440)
        assert [policy.minutes(n) for n in range(1, 5)] == [5, 10, 20, 40]

    def test_monotonic_and_capped(self) -> None:
        """Test delays never shrink and never exceed the cap."""
        policy = BackoffPolicy(base_minutes=5, factor=2, max_minutes=60)
        delays = [policy.minutes(n) for n in range(1, 20)]

        assert delays == sorted(delays)
        assert max(delays) == 60
        assert policy.minutes(100000) == 60


class TestClassifyResponse:
    """Test response classification."""

    def test_success(self) -> None:
        assert classify_response(DeliveryResponse(status=204)) is None

    def test_transient(self) -> None:
        """Test network errors, throttling and 5xx are transient."""
        for status in (None, 408, 429, 500, 503):
            assert isinstance(classify_response(DeliveryResponse(status=status)), DeliveryTransientError)

    def test_terminal(self) -> None:
        """Test other 4xx are terminal."""
        for status in (400, 401, 404, 410, 422):
            assert isinstance(classify_response(DeliveryResponse(status=status)), DeliveryTerminalError)


class TestCursor:
    """Test pull cursors."""

    def test_round_trip(self) -> None:
        assert decode_cursor(encode_cursor(42)) == 42

    def test_invalid(self) -> None:
        """Test garbage cursors are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            decode_cursor("not-a-cursor")
        assert exc_info.value.code == "invalid_cursor"


class TestPublish:
    """Test fan-out of events to subscriptions."""

    @pytest.mark.asyncio()
    async def test_one_message_per_matching_subscription(
        self, ledger: Ledger, transport: ScriptedTransport
    ) -> None:
        """Test type filters and CloudEvents payloads."""
        wanted = _push(ledger, types=["syncledger.contract.created"])
        _push(ledger, reference="billing", types=["syncledger.contract.deleted"])

        messages = await ledger.delivery.publish(_event())

        assert [m.subscription_id for m in messages] == [wanted.id]
        sink, payload = transport.sent[0]
        assert sink == "https://crm.example.com/hook"
        assert payload["specversion"] == "1.0"
        assert payload["type"] == "syncledger.contract.created"
        assert ledger.messages.get(messages[0].id).status == MessageStatus.DELIVERED

    @pytest.mark.asyncio()
    async def test_deferred_delivery(self, ledger: Ledger, transport: ScriptedTransport) -> None:
        """Test deliver=False only queues the message."""
        _push(ledger)

        messages = await ledger.delivery.publish(_event(), deliver=False)

        assert transport.sent == []
        assert ledger.messages.get(messages[0].id).status == MessageStatus.PENDING
        summary = await ledger.delivery.retry_pending()
        assert summary.delivered == 1


class TestRetries:
    """Test the message retry state machine."""

    @pytest.mark.asyncio()
    async def test_transient_failures_then_delivery(
        self, ledger: Ledger, transport: ScriptedTransport, clock: FrozenClock
    ) -> None:
        """Test two 503 responses followed by a 200."""
        _push(ledger)
        transport.statuses = [503, 503]

        message = (await ledger.delivery.publish(_event()))[0]
        stored = ledger.messages.get(message.id)
        assert stored.status == MessageStatus.PENDING
        assert stored.retry_count == 1
        assert stored.next_attempt == clock.now + timedelta(minutes=5)

        early = await ledger.delivery.retry_pending()
        assert early.attempted == 0

        clock.advance(minutes=5)
        await ledger.delivery.retry_pending()
        stored = ledger.messages.get(message.id)
        assert stored.retry_count == 2
        assert stored.status == MessageStatus.PENDING

        clock.advance(minutes=10)
        summary = await ledger.delivery.retry_pending()

        stored = ledger.messages.get(message.id)
        assert summary.delivered == 1
        assert stored.status == MessageStatus.DELIVERED
        assert stored.retry_count == 2
        assert stored.next_attempt is None
        assert len(transport.sent) == 3

    @pytest.mark.asyncio()
    async def test_exhausted_retries_fail(
        self, ledger: Ledger, transport: ScriptedTransport, clock: FrozenClock
    ) -> None:
        """Test a message fails for good after max_retries attempts."""
        _push(ledger)
        transport.default = 500

        message = (await ledger.delivery.publish(_event()))[0]
        for _ in range(10):
            clock.advance(days=1)
            await ledger.delivery.retry_pending()

        stored = ledger.messages.get(message.id)
        assert stored.status == MessageStatus.FAILED
        assert stored.retry_count == ledger.settings.delivery.max_retries
        assert len(transport.sent) == ledger.settings.delivery.max_retries
        assert ledger.delivery.find_pending_retries() == []

    @pytest.mark.asyncio()
    async def test_connection_error_is_transient(
        self, ledger: Ledger, transport: ScriptedTransport
    ) -> None:
        """Test a missing response reschedules the message."""
        _push(ledger)
        transport.statuses = [None]

        message = (await ledger.delivery.publish(_event()))[0]

        stored = ledger.messages.get(message.id)
        assert stored.status == MessageStatus.PENDING
        assert stored.last_response["error"].startswith("Connection error")

    @pytest.mark.asyncio()
    async def test_gone_marks_subscription(
        self, ledger: Ledger, transport: ScriptedTransport
    ) -> None:
        """Test 410 fails the message and stops further fan-out."""
        subscription = _push(ledger)
        transport.statuses = [410]

        message = (await ledger.delivery.publish(_event()))[0]

        assert ledger.messages.get(message.id).status == MessageStatus.FAILED
        assert ledger.subscriptions.get(subscription.id).status == SubscriptionStatus.GONE
        assert await ledger.delivery.publish(_event()) == []

    @pytest.mark.asyncio()
    async def test_rejected_is_terminal(self, ledger: Ledger, transport: ScriptedTransport) -> None:
        """Test 400 fails the message without retry but keeps the subscription."""
        subscription = _push(ledger)
        transport.statuses = [400]

        message = (await ledger.delivery.publish(_event()))[0]

        stored = ledger.messages.get(message.id)
        assert stored.status == MessageStatus.FAILED
        assert stored.retry_count == 1
        assert ledger.subscriptions.get(subscription.id).status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio()
    async def test_retry_subscription_ignores_schedule(
        self, ledger: Ledger, transport: ScriptedTransport
    ) -> None:
        """Test a manual retry does not wait for next_attempt."""
        subscription = _push(ledger)
        transport.statuses = [503]
        message = (await ledger.delivery.publish(_event()))[0]

        summary = await ledger.delivery.retry_subscription(subscription.id)

        assert summary.delivered == 1
        assert ledger.messages.get(message.id).status == MessageStatus.DELIVERED

    @pytest.mark.asyncio()
    async def test_retry_unknown_subscription(self, ledger: Ledger) -> None:
        with pytest.raises(ConfigurationError):
            await ledger.delivery.retry_subscription(999)

    @pytest.mark.asyncio()
    async def test_delivered_message_is_not_resent(
        self, ledger: Ledger, transport: ScriptedTransport
    ) -> None:
        """Test deliver() skips messages that are no longer pending."""
        _push(ledger)
        message = (await ledger.delivery.publish(_event()))[0]

        outcome = await ledger.delivery.deliver(ledger.messages.get(message.id))

        assert outcome.attempted is False
        assert len(transport.sent) == 1


class TestPull:
    """Test pull subscriptions."""

    @pytest.mark.asyncio()
    async def test_pages_with_cursor(self, ledger: Ledger, transport: ScriptedTransport) -> None:
        """Test cursor paging over a pull subscription."""
        audit = ledger.subscriptions.create(EventSubscription(reference="audit", style=SubscriptionStyle.PULL))
        for index in range(3):
            await ledger.delivery.publish(_event(f"type.{index}"))

        first = ledger.delivery.read_pull(audit.id, limit=2)
        assert [m.payload["type"] for m in first.messages] == ["type.0", "type.1"]
        assert first.has_more is True

        second = ledger.delivery.read_pull(audit.id, cursor=first.cursor, limit=2)
        assert [m.payload["type"] for m in second.messages] == ["type.2"]
        assert second.has_more is False

        empty = ledger.delivery.read_pull(audit.id, cursor=second.cursor)
        assert empty.messages == []
        assert empty.cursor == second.cursor

        assert transport.sent == []
        assert ledger.delivery.find_pending_retries() == []

    @pytest.mark.asyncio()
    async def test_push_subscription_cannot_be_read(self, ledger: Ledger) -> None:
        subscription = _push(ledger)
        with pytest.raises(ValidationError) as exc_info:
            ledger.delivery.read_pull(subscription.id)
        assert exc_info.value.code == "not_pull"

    @pytest.mark.asyncio()
    async def test_unsaved_message_is_rejected(self, ledger: Ledger) -> None:
        """Test deliver() refuses a message that was never stored."""
        with pytest.raises(ValidationError) as exc_info:
            await ledger.delivery.deliver(EventMessage(1, "e1", {}))
        assert exc_info.value.code == "message_unsaved"
