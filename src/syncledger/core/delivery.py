"""
Event Delivery Engine - fan-out, push delivery and retry state machine.

Handles:
- Publishing an event as one EventMessage per matching subscription
- Push delivery through a PushTransport with a timeout
- Response classification (delivered / transient / terminal / gone)
- Deterministic exponential backoff between attempts
- Cursor reads for pull subscriptions

Message states: ``pending`` (waiting for an attempt), ``delivered`` and
``failed`` (both final). A transient failure below the retry budget sends
the message back to ``pending`` with ``next_attempt`` set; pull messages
stay ``pending`` and are never picked up by the retry sweep.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from syncledger.config import DeliveryConfig
from syncledger.connectors.base import DeliveryResponse, PushTransport
from syncledger.core.event_store import EventMessageStore, EventSubscriptionStore
from syncledger.core.store import Clock
from syncledger.errors import (
    ConfigurationError,
    DeliveryError,
    DeliveryTerminalError,
    DeliveryTransientError,
    ValidationError,
)
from syncledger.models import (
    Event,
    EventMessage,
    MessageStatus,
    SubscriptionStatus,
    SubscriptionStyle,
    utcnow,
)
from syncledger.utils.logger import context, get_logger


TRANSIENT_STATUSES = frozenset({408, 425, 429})
GONE_STATUSES = frozenset({404, 410})


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with a cap.

    The n-th failure (``retry_count == n``) waits
    ``base_minutes * factor ** (n - 1)`` minutes, never more than
    ``max_minutes``.
    """

    base_minutes: float = 5.0
    factor: float = 2.0
    max_minutes: float = 24 * 60.0

    @classmethod
    def from_config(cls, config: DeliveryConfig) -> "BackoffPolicy":
        return cls(
            base_minutes=config.backoff_base_minutes,
            factor=config.backoff_factor,
            max_minutes=config.backoff_max_minutes,
        )

    def minutes(self, retry_count: int) -> float:
        exponent = max(retry_count, 1) - 1
        try:
            delay = self.base_minutes * self.factor ** exponent
        except OverflowError:
            return self.max_minutes
        return min(delay, self.max_minutes)

    def delay(self, retry_count: int) -> timedelta:
        return timedelta(minutes=self.minutes(retry_count))


def classify_response(response: DeliveryResponse) -> DeliveryError | None:
    """
    Map a push response onto the delivery error taxonomy.

    Returns:
        None when delivered, otherwise the transient or terminal error
    """
    if response.ok:
        return None

    status = response.status
    if status is None:
        return DeliveryTransientError(response.error or "No response", body=response.body)
    if status in TRANSIENT_STATUSES or status >= 500:
        return DeliveryTransientError(f"Subscriber returned {status}", status, response.body)
    if status in GONE_STATUSES:
        return DeliveryTerminalError(
            f"Subscriber endpoint gone ({status})", status, response.body
        )
    return DeliveryTerminalError(f"Subscriber rejected message ({status})", status, response.body)


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt."""

    message_id: int | None
    status: MessageStatus
    retry_count: int
    attempted: bool = True
    error: str | None = None
    next_attempt: datetime | None = None
    response: dict[str, Any] | None = None

    @property
    def delivered(self) -> bool:
        return self.status == MessageStatus.DELIVERED


@dataclass
class DeliverySummary:
    """Counts for a batch of delivery attempts."""

    attempted: int = 0
    delivered: int = 0
    rescheduled: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def add(self, outcome: DeliveryOutcome) -> None:
        if not outcome.attempted:
            return
        self.attempted += 1
        if outcome.status == MessageStatus.DELIVERED:
            self.delivered += 1
        elif outcome.status == MessageStatus.FAILED:
            self.failed += 1
        else:
            self.rescheduled += 1

    def merge(self, other: "DeliverySummary") -> None:
        self.attempted += other.attempted
        self.delivered += other.delivered
        self.rescheduled += other.rescheduled
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted": self.attempted,
            "delivered": self.delivered,
            "rescheduled": self.rescheduled,
            "failed": self.failed,
            "errors": list(self.errors),
        }


@dataclass
class PullPage:
    """One page of a pull subscription's message log."""

    messages: list[EventMessage]
    cursor: str | None
    has_more: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [message.payload for message in self.messages],
            "cursor": self.cursor,
            "has_more": self.has_more,
        }


def encode_cursor(message_id: int) -> str:
    return base64.urlsafe_b64encode(f"m:{message_id}".encode()).decode().rstrip("=")


def decode_cursor(cursor: str) -> int:
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        text = base64.urlsafe_b64decode(padded.encode()).decode()
        prefix, _, value = text.partition(":")
        if prefix != "m":
            raise ValueError(prefix)
        return int(value)
    except ValueError as e:
        raise ValidationError(f"Invalid cursor: {cursor!r}", code="invalid_cursor") from e


class EventDeliveryEngine:
    """
    Owns every EventMessage state transition.

    Example:
        engine = EventDeliveryEngine(subscriptions, messages, transport, settings.delivery)

        await engine.publish(Event(type="syncledger.contract.created", source="sync/1"))

        # Later, from the scheduler
        summary = await engine.retry_pending()
    """

    def __init__(
        self,
        subscriptions: EventSubscriptionStore,
        messages: EventMessageStore,
        transport: PushTransport | None = None,
        config: DeliveryConfig | None = None,
        clock: Clock = utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.messages = messages
        self.transport = transport
        self.config = config or DeliveryConfig()
        self.backoff = BackoffPolicy.from_config(self.config)
        self.clock = clock
        self.logger = logger or get_logger("delivery")

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(self, event: Event, deliver: bool | None = None) -> list[EventMessage]:
        """
        Queue ``event`` for every matching active subscription.

        Args:
            event: The event to publish
            deliver: Attempt push delivery now (defaults to ``config.inline``)

        Returns:
            The created messages (push and pull)
        """
        payload = event.to_cloudevent()
        created: list[EventMessage] = []

        for subscription in self.subscriptions.list_active():
            if subscription.id is None or not subscription.matches(event):
                continue
            message = self.messages.create(
                EventMessage(
                    subscription_id=subscription.id,
                    event_id=event.id,
                    payload=payload,
                    style=subscription.style,
                )
            )
            created.append(message)

        if created:
            self.logger.debug(
                f"Published {event.type} to {len(created)} subscription(s)",
                extra=context(event_id=event.id, event_type=event.type),
            )

        if deliver is None:
            deliver = self.config.inline
        if deliver and self.transport is not None:
            push = [m for m in created if m.style == SubscriptionStyle.PUSH]
            await self._deliver_many(push)

        return created

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver(self, message: EventMessage) -> DeliveryOutcome:
        """
        Attempt push delivery of one message and record the outcome.

        Raises:
            ConfigurationError: No push transport is configured
        """
        if message.id is None:
            raise ValidationError("Event message has not been stored", code="message_unsaved")
        if message.status != MessageStatus.PENDING or message.style != SubscriptionStyle.PUSH:
            return self._outcome(message, attempted=False)

        subscription = self.subscriptions.get(message.subscription_id)
        if subscription is None or subscription.status == SubscriptionStatus.GONE or not subscription.sink:
            updated = self.mark_failed(
                message.id,
                {"error": "subscription is gone or has no sink"},
                terminal=True,
            )
            return self._outcome(updated, error="subscription unavailable")

        if self.transport is None:
            raise ConfigurationError("No push transport configured", code="transport_missing")

        try:
            response = await asyncio.wait_for(
                self.transport.send(subscription.sink, message.payload),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            response = DeliveryResponse(status=None, error="Delivery timed out")

        error = classify_response(response)
        if error is None:
            updated = self.mark_delivered(message.id, response.to_dict())
            self.logger.debug(
                f"Delivered message {message.uuid}",
                extra=context(message=message.uuid, status=response.status),
            )
            return self._outcome(updated, response=response.to_dict())

        terminal = isinstance(error, DeliveryTerminalError)
        if terminal and error.status in GONE_STATUSES:
            subscription.status = SubscriptionStatus.GONE
            self.subscriptions.update(subscription)
            self.logger.warning(
                f"Subscription {subscription.reference} marked gone ({error.status})",
                extra=context(subscription=subscription.uuid, status=error.status),
            )

        updated = self.mark_failed(message.id, response.to_dict(), terminal=terminal)
        self.logger.info(
            f"Delivery of message {message.uuid} failed: {error.message}",
            extra=context(
                message=message.uuid,
                status=response.status,
                retry_count=updated.retry_count,
                next_attempt=updated.next_attempt,
            ),
        )
        return self._outcome(updated, error=error.message, response=response.to_dict())

    def _outcome(
        self,
        message: EventMessage,
        attempted: bool = True,
        error: str | None = None,
        response: dict[str, Any] | None = None,
    ) -> DeliveryOutcome:
        return DeliveryOutcome(
            message_id=message.id,
            status=message.status,
            retry_count=message.retry_count,
            attempted=attempted,
            error=error,
            next_attempt=message.next_attempt,
            response=response,
        )

    def _require(self, message_id: int) -> EventMessage:
        message = self.messages.get(message_id)
        if message is None:
            raise ConfigurationError(f"Event message not found: {message_id}", code="message_missing")
        return message

    def mark_delivered(self, message_id: int, response: dict[str, Any] | None = None) -> EventMessage:
        message = self._require(message_id)
        message.status = MessageStatus.DELIVERED
        message.last_attempt = self.clock()
        message.next_attempt = None
        message.last_response = response
        return self.messages.save_state(message)

    def mark_failed(
        self,
        message_id: int,
        response: dict[str, Any] | None = None,
        backoff_minutes: float | None = None,
        terminal: bool = False,
    ) -> EventMessage:
        """
        Record a failed attempt.

        Increments ``retry_count``. A terminal failure, or one that exhausts
        ``max_retries``, ends in ``failed``; otherwise the message returns to
        ``pending`` with ``next_attempt`` pushed out by the backoff.
        """
        message = self._require(message_id)
        now = self.clock()

        message.retry_count += 1
        message.last_attempt = now
        message.last_response = response

        if terminal or message.retry_count >= self.config.max_retries:
            message.status = MessageStatus.FAILED
            message.next_attempt = None
        else:
            delay = (
                timedelta(minutes=backoff_minutes)
                if backoff_minutes is not None
                else self.backoff.delay(message.retry_count)
            )
            message.status = MessageStatus.PENDING
            message.next_attempt = now + delay

        return self.messages.save_state(message)

    async def _deliver_many(self, messages: list[EventMessage]) -> DeliverySummary:
        """Deliver concurrently. One failing attempt never stops the others."""
        summary = DeliverySummary()
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def attempt(message: EventMessage) -> None:
            async with semaphore:
                try:
                    summary.add(await self.deliver(message))
                except Exception as e:
                    self.logger.exception(
                        f"Unexpected error delivering message {message.uuid}",
                        extra=context(message=message.uuid),
                    )
                    summary.errors.append(f"{message.uuid}: {e}")

        await asyncio.gather(*(attempt(message) for message in messages))
        return summary

    # =========================================================================
    # Retries
    # =========================================================================

    def find_pending_retries(
        self,
        max_retries: int | None = None,
        limit: int | None = None,
    ) -> list[EventMessage]:
        """Push messages that are pending, under budget and due now."""
        return self.messages.find_pending_retries(
            max_retries if max_retries is not None else self.config.max_retries,
            now=self.clock(),
            limit=limit,
        )

    async def retry_pending(self, limit: int | None = None) -> DeliverySummary:
        """Attempt one page of due retries."""
        batch = self.find_pending_retries(limit=limit or self.config.batch_size)
        return await self._deliver_many(batch)

    async def retry_subscription(self, subscription_id: int) -> DeliverySummary:
        """
        Retry delivery for one subscription now.

        Attempts every retry-eligible pending push message of the
        subscription, ignoring ``next_attempt``.
        """
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise ConfigurationError(
                f"Subscription not found: {subscription_id}", code="subscription_missing"
            )

        batch = self.messages.find_pending_retries(
            self.config.max_retries,
            subscription_id=subscription_id,
            ignore_schedule=True,
        )
        summary = await self._deliver_many(batch)
        self.logger.info(
            f"Retried {summary.attempted} message(s) for {subscription.reference}",
            extra=context(subscription=subscription.uuid, **summary.to_dict()),
        )
        return summary

    # =========================================================================
    # Pull
    # =========================================================================

    def read_pull(
        self,
        subscription_id: int,
        cursor: str | None = None,
        limit: int = 100,
    ) -> PullPage:
        """
        Read messages of a pull subscription after ``cursor``.

        Reading changes nothing; the subscriber keeps the returned cursor
        and passes it back to resume.
        """
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise ConfigurationError(
                f"Subscription not found: {subscription_id}", code="subscription_missing"
            )
        if subscription.style != SubscriptionStyle.PULL:
            raise ValidationError(
                f"Subscription {subscription.reference} is not a pull subscription",
                code="not_pull",
            )
        if limit < 1:
            raise ValidationError("limit must be positive", code="invalid_limit")

        after_id = decode_cursor(cursor) if cursor else 0
        rows = self.messages.find_after(subscription_id, after_id, limit + 1)
        page = rows[:limit]

        next_cursor = cursor
        if page and page[-1].id is not None:
            next_cursor = encode_cursor(page[-1].id)
        return PullPage(messages=page, cursor=next_cursor, has_more=len(rows) > limit)
