"""
Event Stores - repositories for subscriptions and outbound messages.

EventMessage rows are created once by ``publish`` and afterwards mutated
only by the delivery engine through ``save_state``. The retry selection
query is served by the ``(status, style, retry_count, next_attempt)``
index, so delivered and failed rows are never scanned.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from syncledger.connectors.sqlite import (
    Database,
    from_db_json,
    from_db_time,
    to_db_json,
    to_db_time,
)
from syncledger.core.store import Clock
from syncledger.models import (
    EventMessage,
    EventSubscription,
    MessageStatus,
    SubscriptionStatus,
    SubscriptionStyle,
    utcnow,
)


class EventSubscriptionStore:
    """Repository for subscriber registrations."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    @staticmethod
    def _from_row(row: sqlite3.Row) -> EventSubscription:
        return EventSubscription(
            id=row["id"],
            uuid=row["uuid"],
            reference=row["reference"],
            style=SubscriptionStyle(row["style"]),
            sink=row["sink"],
            types=json.loads(row["types"]),
            source=row["source"],
            filters=json.loads(row["filters"]),
            status=SubscriptionStatus(row["status"]),
            created=from_db_time(row["created"]),
            updated=from_db_time(row["updated"]),
        )

    def create(self, subscription: EventSubscription) -> EventSubscription:
        now = self.clock()
        cursor = self.db.execute(
            """
            INSERT INTO event_subscriptions
                (uuid, reference, style, sink, types, source, filters, status, created, updated)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription.uuid,
                subscription.reference,
                subscription.style.value,
                subscription.sink,
                json.dumps(subscription.types),
                subscription.source,
                json.dumps(subscription.filters),
                subscription.status.value,
                to_db_time(now),
                to_db_time(now),
            ),
        )
        subscription.id = cursor.lastrowid
        subscription.created = now
        subscription.updated = now
        return subscription

    def update(self, subscription: EventSubscription) -> EventSubscription:
        now = self.clock()
        self.db.execute(
            """
            UPDATE event_subscriptions SET
                reference = ?, style = ?, sink = ?, types = ?, source = ?,
                filters = ?, status = ?, updated = ?
            WHERE id = ?
            """,
            (
                subscription.reference,
                subscription.style.value,
                subscription.sink,
                json.dumps(subscription.types),
                subscription.source,
                json.dumps(subscription.filters),
                subscription.status.value,
                to_db_time(now),
                subscription.id,
            ),
        )
        subscription.updated = now
        return subscription

    def get(self, subscription_id: int) -> EventSubscription | None:
        row = self.db.query_one("SELECT * FROM event_subscriptions WHERE id = ?", (subscription_id,))
        return self._from_row(row) if row else None

    def find_by_uuid(self, uuid: str) -> EventSubscription | None:
        row = self.db.query_one("SELECT * FROM event_subscriptions WHERE uuid = ?", (uuid,))
        return self._from_row(row) if row else None

    def find_by_reference(self, reference: str) -> list[EventSubscription]:
        rows = self.db.query(
            "SELECT * FROM event_subscriptions WHERE reference = ? ORDER BY id", (reference,)
        )
        return [self._from_row(row) for row in rows]

    def list_active(self) -> list[EventSubscription]:
        rows = self.db.query(
            "SELECT * FROM event_subscriptions WHERE status = ? ORDER BY id",
            (SubscriptionStatus.ACTIVE.value,),
        )
        return [self._from_row(row) for row in rows]

    def list_all(self) -> list[EventSubscription]:
        rows = self.db.query("SELECT * FROM event_subscriptions ORDER BY id")
        return [self._from_row(row) for row in rows]

    def delete(self, subscription_id: int) -> bool:
        """Unsubscribe. Already-queued messages stay until retention clears them."""
        cursor = self.db.execute("DELETE FROM event_subscriptions WHERE id = ?", (subscription_id,))
        return cursor.rowcount > 0


class EventMessageStore:
    """Repository for outbound event messages."""

    def __init__(self, db: Database, retention_days: int = 30, clock: Clock = utcnow) -> None:
        self.db = db
        self.retention_days = retention_days
        self.clock = clock

    @staticmethod
    def _from_row(row: sqlite3.Row) -> EventMessage:
        return EventMessage(
            id=row["id"],
            uuid=row["uuid"],
            event_id=row["event_id"],
            subscription_id=row["subscription_id"],
            style=SubscriptionStyle(row["style"]),
            payload=json.loads(row["payload"]),
            status=MessageStatus(row["status"]),
            retry_count=row["retry_count"],
            last_attempt=from_db_time(row["last_attempt"]),
            next_attempt=from_db_time(row["next_attempt"]),
            last_response=from_db_json(row["last_response"]),
            created=from_db_time(row["created"]),
            updated=from_db_time(row["updated"]),
            expires=from_db_time(row["expires"]),
        )

    def create(self, message: EventMessage) -> EventMessage:
        """Insert a new message, stamping timestamps and a default expiry."""
        now = self.clock()
        message.created = now
        message.updated = now
        if message.expires is None:
            message.expires = now + timedelta(days=self.retention_days)

        cursor = self.db.execute(
            """
            INSERT INTO event_messages
                (uuid, event_id, subscription_id, style, payload, status, retry_count,
                 last_attempt, next_attempt, last_response, created, updated, expires)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.uuid,
                message.event_id,
                message.subscription_id,
                message.style.value,
                json.dumps(message.payload, default=str),
                message.status.value,
                message.retry_count,
                to_db_time(message.last_attempt),
                to_db_time(message.next_attempt),
                to_db_json(message.last_response),
                to_db_time(message.created),
                to_db_time(message.updated),
                to_db_time(message.expires),
            ),
        )
        message.id = cursor.lastrowid
        return message

    def save_state(self, message: EventMessage) -> EventMessage:
        """Persist the delivery-state fields of a message."""
        message.updated = self.clock()
        self.db.execute(
            """
            UPDATE event_messages SET
                status = ?, retry_count = ?, last_attempt = ?, next_attempt = ?,
                last_response = ?, updated = ?
            WHERE id = ?
            """,
            (
                message.status.value,
                message.retry_count,
                to_db_time(message.last_attempt),
                to_db_time(message.next_attempt),
                to_db_json(message.last_response),
                to_db_time(message.updated),
                message.id,
            ),
        )
        return message

    def get(self, message_id: int) -> EventMessage | None:
        row = self.db.query_one("SELECT * FROM event_messages WHERE id = ?", (message_id,))
        return self._from_row(row) if row else None

    def find_pending_retries(
        self,
        max_retries: int,
        now: datetime | None = None,
        limit: int | None = None,
        subscription_id: int | None = None,
        ignore_schedule: bool = False,
    ) -> list[EventMessage]:
        """
        Push messages eligible for a delivery attempt.

        Args:
            max_retries: Messages with ``retry_count >= max_retries`` are excluded
            now: Reference time for ``next_attempt`` (defaults to the clock)
            limit: Page size
            subscription_id: Restrict to one subscription
            ignore_schedule: Skip the ``next_attempt`` check (manual retry)

        Returns:
            Messages ordered by due time, oldest first
        """
        sql = """
            SELECT * FROM event_messages
            WHERE status = ? AND style = ? AND retry_count < ?
        """
        params: list[Any] = [MessageStatus.PENDING.value, SubscriptionStyle.PUSH.value, max_retries]

        if not ignore_schedule:
            sql += " AND (next_attempt IS NULL OR next_attempt <= ?)"
            params.append(to_db_time(now or self.clock()))
        if subscription_id is not None:
            sql += " AND subscription_id = ?"
            params.append(subscription_id)

        sql += " ORDER BY COALESCE(next_attempt, created), id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        return [self._from_row(row) for row in self.db.query(sql, params)]

    def find_after(
        self,
        subscription_id: int,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[EventMessage]:
        """Messages of one subscription created after ``after_id``, in creation order."""
        rows = self.db.query(
            """
            SELECT * FROM event_messages
            WHERE subscription_id = ? AND id > ?
            ORDER BY id LIMIT ?
            """,
            (subscription_id, after_id, limit),
        )
        return [self._from_row(row) for row in rows]

    def count(self, status: MessageStatus | None = None) -> int:
        if status is None:
            return self.db.scalar("SELECT COUNT(*) FROM event_messages")
        return self.db.scalar(
            "SELECT COUNT(*) FROM event_messages WHERE status = ?", (status.value,)
        )

    def delete_expired(self, now: datetime | None = None) -> int:
        cursor = self.db.execute(
            "DELETE FROM event_messages WHERE expires < ?",
            (to_db_time(now or self.clock()),),
        )
        return cursor.rowcount

    def clear(self) -> int:
        """Delete every message (explicit retention clearing)."""
        cursor = self.db.execute("DELETE FROM event_messages")
        return cursor.rowcount
