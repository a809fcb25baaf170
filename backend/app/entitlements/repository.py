"""PostgreSQL persistence for memberships, credits, draws and promo codes."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional, Sequence, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .errors import ConcurrentChangeError, ConflictError
from .models import (
    CreditClass,
    CreditLedgerEntry,
    DiscountType,
    Draw,
    DrawEntry,
    DrawState,
    EntrySource,
    LedgerReason,
    Membership,
    MembershipStatus,
    PromoCode,
    RenewalRecord,
    RenewalStatus,
    UserAccount,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_user(row: dict) -> UserAccount:
    return UserAccount(
        user_id=str(row["user_id"]),
        membership_credits=int(row["membership_credits"]),
        boost_credits=int(row["boost_credits"]),
        is_locked=bool(row["is_locked"]),
    )


def _row_to_membership(row: dict) -> Membership:
    return Membership(
        user_id=str(row["user_id"]),
        plan_id=row["plan_id"],
        status=MembershipStatus(row["status"]),
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        is_paused=bool(row["is_paused"]),
        paused_at=row.get("paused_at"),
        pause_expires_at=row.get("pause_expires_at"),
        pending_upgrade_plan_id=row.get("pending_upgrade_plan_id"),
        pending_downgrade_plan_id=row.get("pending_downgrade_plan_id"),
        is_processing_change=bool(row["is_processing_change"]),
        grand_prize_entries=int(row.get("grand_prize_entries") or 0),
        grace_period_expires_at=row.get("grace_period_expires_at"),
        canceled_at=row.get("canceled_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_ledger_entry(row: dict) -> CreditLedgerEntry:
    return CreditLedgerEntry(
        entry_id=row["entry_id"],
        user_id=str(row["user_id"]),
        credit_class=CreditClass(row["credit_class"]),
        amount=int(row["amount"]),
        reason=LedgerReason(row["reason"]),
        balance_after=int(row["balance_after"]),
        period_end=row.get("period_end"),
        reference_id=row.get("reference_id"),
        created_at=row["created_at"],
    )


def _row_to_draw(row: dict) -> Draw:
    return Draw(
        draw_id=row["draw_id"],
        title=row.get("title") or "",
        cost_per_entry=int(row["cost_per_entry"]),
        cap=int(row["cap"]),
        entrants=int(row["entrants"]),
        requires_membership=bool(row["requires_membership"]),
        closed_at=row["closed_at"],
        state=DrawState(row["state"]),
    )


def _row_to_draw_entry(row: dict) -> DrawEntry:
    return DrawEntry(
        entry_id=row["entry_id"],
        user_id=str(row["user_id"]),
        draw_id=row["draw_id"],
        credits_spent=int(row["credits_spent"]),
        source=EntrySource(row["source"]),
        order_no=row["order_no"],
        idempotency_key=row.get("idempotency_key"),
        is_refunded=bool(row["is_refunded"]),
        invalidated_at=row.get("invalidated_at"),
        created_at=row["created_at"],
    )


def _row_to_renewal(row: dict) -> RenewalRecord:
    return RenewalRecord(
        renewal_id=row["renewal_id"],
        user_id=str(row["user_id"]),
        plan_id=row["plan_id"],
        status=RenewalStatus(row["status"]),
        amount=int(row["amount"]),
        currency=row["currency"],
        credits_granted=int(row["credits_granted"]),
        grand_prize_entries_granted=int(row["grand_prize_entries_granted"]),
        period_start=row.get("period_start"),
        period_end=row.get("period_end"),
        failure_reason=row.get("failure_reason"),
        created_at=row["created_at"],
    )


def _row_to_promo_code(row: dict) -> PromoCode:
    return PromoCode(
        code=row["code"],
        discount_type=DiscountType(row["discount_type"]),
        discount_value=int(row["discount_value"]),
        valid_from=row.get("valid_from"),
        valid_until=row.get("valid_until"),
        min_order_amount=int(row.get("min_order_amount") or 0),
        max_discount_amount=row.get("max_discount_amount"),
        max_uses=row.get("max_uses"),
        used_count=int(row.get("used_count") or 0),
        is_active=bool(row["is_active"]),
    )


class PostgresEntitlementRepository:
    """Concrete repository persisting entitlement models in PostgreSQL.

    ``transaction()`` pins one connection to the calling thread; every
    statement issued inside it joins that connection and commits or rolls
    back with it. Outside a transaction each call commits on its own.

    Expected constraints: ``entitlement_memberships.user_id`` is unique, and
    ``draw_entries`` carries a partial unique index on ``(user_id, draw_id)``
    ``WHERE NOT is_refunded AND invalidated_at IS NULL`` plus a unique ``(user_id, idempotency_key)``.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn
        self._local = threading.local()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        if getattr(self._local, "connection", None) is not None:
            yield
            return
        with managed_connection(self._conn) as (connection, _managed):
            self._local.connection = connection
            try:
                yield
            finally:
                self._local.connection = None

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        pinned = getattr(self._local, "connection", None)
        if pinned is not None:
            cursor = pinned.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()
            return

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

    # Users -----------------------------------------------------------------
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT user_id, membership_credits, boost_credits, is_locked
                FROM entitlement_accounts
                WHERE user_id = %s
                FOR UPDATE
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def save_user(self, account: UserAccount) -> UserAccount:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO entitlement_accounts (user_id, membership_credits, boost_credits, is_locked)
                VALUES (%(user_id)s, %(membership_credits)s, %(boost_credits)s, %(is_locked)s)
                ON CONFLICT (user_id) DO UPDATE SET
                    membership_credits = EXCLUDED.membership_credits,
                    boost_credits = EXCLUDED.boost_credits,
                    is_locked = EXCLUDED.is_locked
                RETURNING *
                """,
                account.model_dump(),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist entitlement account")
            return _row_to_user(row)

    # Memberships -----------------------------------------------------------
    def get_membership(self, user_id: str) -> Optional[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM entitlement_memberships
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_membership(row) if row else None

    def save_membership(self, membership: Membership) -> Membership:
        params = membership.model_dump()
        params["status"] = membership.status.value
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO entitlement_memberships (
                    user_id,
                    plan_id,
                    status,
                    cancel_at_period_end,
                    current_period_start,
                    current_period_end,
                    is_paused,
                    paused_at,
                    pause_expires_at,
                    pending_upgrade_plan_id,
                    pending_downgrade_plan_id,
                    is_processing_change,
                    grand_prize_entries,
                    grace_period_expires_at,
                    canceled_at,
                    created_at,
                    updated_at
                )
                VALUES (%(user_id)s, %(plan_id)s, %(status)s, %(cancel_at_period_end)s,
                        %(current_period_start)s, %(current_period_end)s, %(is_paused)s,
                        %(paused_at)s, %(pause_expires_at)s, %(pending_upgrade_plan_id)s,
                        %(pending_downgrade_plan_id)s, %(is_processing_change)s,
                        %(grand_prize_entries)s, %(grace_period_expires_at)s, %(canceled_at)s,
                        %(created_at)s, %(updated_at)s)
                ON CONFLICT (user_id) DO UPDATE SET
                    plan_id = EXCLUDED.plan_id,
                    status = EXCLUDED.status,
                    cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                    current_period_start = EXCLUDED.current_period_start,
                    current_period_end = EXCLUDED.current_period_end,
                    is_paused = EXCLUDED.is_paused,
                    paused_at = EXCLUDED.paused_at,
                    pause_expires_at = EXCLUDED.pause_expires_at,
                    pending_upgrade_plan_id = EXCLUDED.pending_upgrade_plan_id,
                    pending_downgrade_plan_id = EXCLUDED.pending_downgrade_plan_id,
                    is_processing_change = EXCLUDED.is_processing_change,
                    grand_prize_entries = EXCLUDED.grand_prize_entries,
                    grace_period_expires_at = EXCLUDED.grace_period_expires_at,
                    canceled_at = EXCLUDED.canceled_at,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist membership")
            return _row_to_membership(row)

    def claim_membership_lock(self, user_id: str) -> Membership:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE entitlement_memberships
                SET is_processing_change = TRUE, updated_at = NOW()
                WHERE user_id = %s AND is_processing_change = FALSE
                RETURNING *
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            if row:
                return _row_to_membership(row)
            cursor.execute("SELECT 1 FROM entitlement_memberships WHERE user_id = %s", (user_id,))
            if cursor.fetchone() is None:
                raise LookupError(f"No membership for user {user_id}")
            raise ConcurrentChangeError("Another membership change is already in progress.")

    def release_membership_lock(self, user_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE entitlement_memberships
                SET is_processing_change = FALSE, updated_at = NOW()
                WHERE user_id = %s
                """,
                (user_id,),
            )

    def list_expired_pauses(self, now: datetime) -> Sequence[Membership]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM entitlement_memberships
                WHERE is_paused AND pause_expires_at <= %s
                ORDER BY pause_expires_at
                """,
                (now,),
            )
            return [_row_to_membership(row) for row in cursor.fetchall() or []]

    # Ledger ----------------------------------------------------------------
    def append_ledger_entry(self, entry: CreditLedgerEntry) -> CreditLedgerEntry:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO credit_ledger_entries (
                    entry_id, user_id, credit_class, amount, reason,
                    balance_after, period_end, reference_id, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.entry_id,
                    entry.user_id,
                    entry.credit_class.value,
                    entry.amount,
                    entry.reason.value,
                    entry.balance_after,
                    entry.period_end,
                    entry.reference_id,
                    entry.created_at,
                ),
            )
            return entry

    def list_ledger_entries(self, user_id: str, *, limit: int = 50) -> Sequence[CreditLedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM credit_ledger_entries
                WHERE user_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            return [_row_to_ledger_entry(row) for row in cursor.fetchall() or []]

    # Draws -----------------------------------------------------------------
    def get_draw(self, draw_id: str) -> Optional[Draw]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM draws WHERE draw_id = %s FOR UPDATE", (draw_id,))
            row = cursor.fetchone()
            return _row_to_draw(row) if row else None

    def save_draw(self, draw: Draw) -> Draw:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO draws (draw_id, title, cost_per_entry, cap, entrants, requires_membership, closed_at, state)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (draw_id) DO UPDATE SET
                    title = EXCLUDED.title,
                    cost_per_entry = EXCLUDED.cost_per_entry,
                    cap = EXCLUDED.cap,
                    entrants = EXCLUDED.entrants,
                    requires_membership = EXCLUDED.requires_membership,
                    closed_at = EXCLUDED.closed_at,
                    state = EXCLUDED.state
                RETURNING *
                """,
                (
                    draw.draw_id,
                    draw.title,
                    draw.cost_per_entry,
                    draw.cap,
                    draw.entrants,
                    draw.requires_membership,
                    draw.closed_at,
                    draw.state.value,
                ),
            )
            return _row_to_draw(cursor.fetchone())

    def increment_draw_entrants(self, draw_id: str) -> Draw:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE draws
                SET entrants = entrants + 1,
                    state = CASE
                        WHEN cap <> -1 AND entrants + 1 >= cap AND state = %s THEN %s
                        ELSE state
                    END
                WHERE draw_id = %s
                RETURNING *
                """,
                (DrawState.OPEN.value, DrawState.SOLD_OUT.value, draw_id),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"Draw not found: {draw_id}")
            return _row_to_draw(row)

    def find_active_entry(self, user_id: str, draw_id: str) -> Optional[DrawEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM draw_entries
                WHERE user_id = %s AND draw_id = %s AND NOT is_refunded AND invalidated_at IS NULL
                LIMIT 1
                """,
                (user_id, draw_id),
            )
            row = cursor.fetchone()
            return _row_to_draw_entry(row) if row else None

    def find_entry_by_idempotency_key(self, user_id: str, idempotency_key: str) -> Optional[DrawEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM draw_entries
                WHERE user_id = %s AND idempotency_key = %s
                LIMIT 1
                """,
                (user_id, idempotency_key),
            )
            row = cursor.fetchone()
            return _row_to_draw_entry(row) if row else None

    def insert_draw_entry(self, entry: DrawEntry) -> DrawEntry:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO draw_entries (
                        entry_id, user_id, draw_id, credits_spent, source, order_no,
                        idempotency_key, is_refunded, invalidated_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        entry.entry_id,
                        entry.user_id,
                        entry.draw_id,
                        entry.credits_spent,
                        entry.source.value,
                        entry.order_no,
                        entry.idempotency_key,
                        entry.is_refunded,
                        entry.invalidated_at,
                        entry.created_at,
                    ),
                )
                return _row_to_draw_entry(cursor.fetchone())
        except psycopg2.errors.UniqueViolation as exc:
            raise ConflictError("You have already entered this draw.", detail={"draw_id": entry.draw_id}) from exc

    def invalidate_draw_entries(self, user_id: str, invalidated_at: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                WITH invalidated AS (
                    UPDATE draw_entries
                    SET invalidated_at = %s
                    WHERE user_id = %s AND NOT is_refunded AND invalidated_at IS NULL
                    RETURNING draw_id
                ), counts AS (
                    SELECT draw_id, COUNT(*) AS removed FROM invalidated GROUP BY draw_id
                )
                UPDATE draws
                SET entrants = GREATEST(draws.entrants - counts.removed, 0)
                FROM counts
                WHERE draws.draw_id = counts.draw_id
                RETURNING counts.removed
                """,
                (invalidated_at, user_id),
            )
            return sum(int(row["removed"]) for row in cursor.fetchall() or [])

    def list_draw_entries(self, user_id: str) -> Sequence[DrawEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM draw_entries WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            )
            return [_row_to_draw_entry(row) for row in cursor.fetchall() or []]

    # Renewals --------------------------------------------------------------
    def append_renewal(self, record: RenewalRecord) -> RenewalRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO membership_renewals (
                    renewal_id, user_id, plan_id, status, amount, currency, credits_granted,
                    grand_prize_entries_granted, period_start, period_end, failure_reason, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.renewal_id,
                    record.user_id,
                    record.plan_id,
                    record.status.value,
                    record.amount,
                    record.currency,
                    record.credits_granted,
                    record.grand_prize_entries_granted,
                    record.period_start,
                    record.period_end,
                    record.failure_reason,
                    record.created_at,
                ),
            )
            return record

    def list_renewals(self, user_id: str, *, offset: int = 0, limit: int = 20) -> Tuple[Sequence[RenewalRecord], int]:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) AS total FROM membership_renewals WHERE user_id = %s", (user_id,))
            total = int(cursor.fetchone()["total"])
            cursor.execute(
                """
                SELECT *
                FROM membership_renewals
                WHERE user_id = %s
                ORDER BY created_at DESC
                OFFSET %s
                LIMIT %s
                """,
                (user_id, offset, limit),
            )
            return [_row_to_renewal(row) for row in cursor.fetchall() or []], total

    # Promo codes -----------------------------------------------------------
    def get_promo_code(self, code: str) -> Optional[PromoCode]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM promo_codes WHERE code = %s LIMIT 1", (code,))
            row = cursor.fetchone()
            return _row_to_promo_code(row) if row else None

    def save_promo_code(self, promo_code: PromoCode) -> PromoCode:
        params = promo_code.model_dump()
        params["discount_type"] = promo_code.discount_type.value
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO promo_codes (
                    code, discount_type, discount_value, valid_from, valid_until, min_order_amount,
                    max_discount_amount, max_uses, used_count, is_active
                )
                VALUES (%(code)s, %(discount_type)s, %(discount_value)s, %(valid_from)s, %(valid_until)s,
                        %(min_order_amount)s, %(max_discount_amount)s, %(max_uses)s, %(used_count)s,
                        %(is_active)s)
                ON CONFLICT (code) DO UPDATE SET
                    discount_type = EXCLUDED.discount_type,
                    discount_value = EXCLUDED.discount_value,
                    valid_from = EXCLUDED.valid_from,
                    valid_until = EXCLUDED.valid_until,
                    min_order_amount = EXCLUDED.min_order_amount,
                    max_discount_amount = EXCLUDED.max_discount_amount,
                    max_uses = EXCLUDED.max_uses,
                    used_count = EXCLUDED.used_count,
                    is_active = EXCLUDED.is_active
                RETURNING *
                """,
                params,
            )
            return _row_to_promo_code(cursor.fetchone())

    def increment_promo_usage(self, code: str) -> Optional[PromoCode]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE promo_codes
                SET used_count = used_count + 1
                WHERE code = %s
                RETURNING *
                """,
                (code,),
            )
            row = cursor.fetchone()
            return _row_to_promo_code(row) if row else None


__all__ = ["PostgresEntitlementRepository", "managed_connection"]
