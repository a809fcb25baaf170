"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..entitlements.repository import managed_connection
from ..entitlements.scenarios import CheckoutScenario
from .models import (
    BillingWebhookEvent,
    ConfirmationStatus,
    PaymentConfirmation,
    PaymentIntent,
    PaymentIntentStatus,
)


def _row_to_payment_intent(row: dict) -> PaymentIntent:
    return PaymentIntent(
        intent_id=row["intent_id"],
        customer_id=str(row["customer_id"]),
        is_guest=bool(row["is_guest"]),
        scenario=CheckoutScenario(row["scenario"]),
        plan_id=row.get("plan_id"),
        boost_pack_id=row.get("boost_pack_id"),
        promo_code=row.get("promo_code"),
        original_total=int(row["original_total"]),
        discount=int(row["discount"]),
        final_total=int(row["final_total"]),
        currency=row["currency"],
        status=PaymentIntentStatus(row["status"]),
        provider_intent_id=row.get("provider_intent_id"),
        client_secret=row.get("client_secret"),
        return_to_draw_id=row.get("return_to_draw_id"),
        failure_reason=row.get("failure_reason"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_confirmation(row: dict) -> PaymentConfirmation:
    return PaymentConfirmation(
        idempotency_key=row["idempotency_key"],
        intent_id=row["intent_id"],
        status=ConfirmationStatus(row["status"]),
        created_at=row["created_at"],
    )


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def save_payment_intent(self, intent: PaymentIntent) -> PaymentIntent:
        """Insert or update a payment intent record."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payment_intents (
                    intent_id,
                    customer_id,
                    is_guest,
                    scenario,
                    plan_id,
                    boost_pack_id,
                    promo_code,
                    original_total,
                    discount,
                    final_total,
                    currency,
                    status,
                    provider_intent_id,
                    client_secret,
                    return_to_draw_id,
                    failure_reason,
                    metadata,
                    created_at,
                    updated_at
                )
                VALUES (%(intent_id)s, %(customer_id)s, %(is_guest)s, %(scenario)s, %(plan_id)s,
                        %(boost_pack_id)s, %(promo_code)s, %(original_total)s, %(discount)s,
                        %(final_total)s, %(currency)s, %(status)s, %(provider_intent_id)s,
                        %(client_secret)s, %(return_to_draw_id)s, %(failure_reason)s,
                        %(metadata)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (intent_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    provider_intent_id = EXCLUDED.provider_intent_id,
                    client_secret = EXCLUDED.client_secret,
                    failure_reason = EXCLUDED.failure_reason,
                    metadata = EXCLUDED.metadata,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "intent_id": intent.intent_id,
                    "customer_id": intent.customer_id,
                    "is_guest": intent.is_guest,
                    "scenario": intent.scenario.value,
                    "plan_id": intent.plan_id,
                    "boost_pack_id": intent.boost_pack_id,
                    "promo_code": intent.promo_code,
                    "original_total": intent.original_total,
                    "discount": intent.discount,
                    "final_total": intent.final_total,
                    "currency": intent.currency,
                    "status": intent.status.value,
                    "provider_intent_id": intent.provider_intent_id,
                    "client_secret": intent.client_secret,
                    "return_to_draw_id": intent.return_to_draw_id,
                    "failure_reason": intent.failure_reason,
                    "metadata": psycopg2.extras.Json(intent.metadata),
                    "created_at": intent.created_at,
                    "updated_at": intent.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment intent")
            return _row_to_payment_intent(row)

    def get_payment_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payment_intents
                WHERE intent_id = %s
                LIMIT 1
                """,
                (intent_id,),
            )
            row = cursor.fetchone()
            return _row_to_payment_intent(row) if row else None

    def claim_confirmation(self, idempotency_key: str, intent_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payment_confirmations (idempotency_key, intent_id, status, created_at)
                VALUES (%s, %s, %s, NOW())
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                (idempotency_key, intent_id, ConfirmationStatus.PROCESSING.value),
            )
            return cursor.rowcount > 0

    def get_confirmation(self, idempotency_key: str) -> Optional[PaymentConfirmation]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payment_confirmations
                WHERE idempotency_key = %s
                LIMIT 1
                """,
                (idempotency_key,),
            )
            row = cursor.fetchone()
            return _row_to_confirmation(row) if row else None

    def complete_confirmation(self, idempotency_key: str) -> Optional[PaymentConfirmation]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_payment_confirmations
                SET status = %s
                WHERE idempotency_key = %s
                RETURNING *
                """,
                (ConfirmationStatus.COMPLETED.value, idempotency_key),
            )
            row = cursor.fetchone()
            return _row_to_confirmation(row) if row else None

    def release_confirmation(self, idempotency_key: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM billing_payment_confirmations
                WHERE idempotency_key = %s AND status = %s
                """,
                (idempotency_key, ConfirmationStatus.PROCESSING.value),
            )

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    event_id,
                    event_type,
                    payload,
                    received_at,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.event_type.value,
                    psycopg2.extras.Json(event.payload),
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def forget_webhook_event(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM billing_webhook_events WHERE event_id = %s", (event_id,))
