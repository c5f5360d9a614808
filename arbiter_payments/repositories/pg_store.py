from __future__ import annotations

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from arbiter_payments.db.client import Database
from arbiter_payments.domain.errors import (
    DuplicateGatewayReference,
    DuplicateIdempotencyKey,
    DuplicatePendingPayment,
    DuplicateRefund,
    DuplicateWebhook,
    PaymentError,
    StaleTransaction,
    TransactionStoreError,
)
from arbiter_payments.domain.models import RefundRecord, Transaction, WebhookEvent
from arbiter_payments.domain.statuses import RefundStatus, TransactionStatus

from .base import ACTIVE_STATUSES, TransactionStore

logger = logging.getLogger(__name__)

TRANSACTION_COLUMNS = (
    "id, order_id, gateway, amount, currency, status, idempotency_key, "
    "gateway_transaction_id, payment_url, client_secret, customer_email, description, "
    "status_reason, metadata, version, created_at, updated_at, paid_at"
)
REFUND_COLUMNS = "id, transaction_id, amount, status, refund_id, reason, created_at"
WEBHOOK_COLUMNS = (
    "id, gateway, event_type, gateway_transaction_id, raw_payload, signature_header, "
    "processed, error, received_at"
)

_ACTIVE = tuple(status.value for status in ACTIVE_STATUSES)

# unique constraint name fragment -> domain error
UNIQUE_CONSTRAINTS = (
    ("idempotency", DuplicateIdempotencyKey),
    ("active_order", DuplicatePendingPayment),
    ("gateway_ref", DuplicateGatewayReference),
    ("refund_id", DuplicateRefund),
    ("webhook_event_processed", DuplicateWebhook),
)


class PgTransactionStore(TransactionStore):
    """PostgreSQL-backed store using raw psycopg2 (see ``db/schema.sql``)."""

    def __init__(self, db: Database) -> None:
        self.db = db

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    yield cur
        except PaymentError:
            raise
        except pg_errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or str(exc)
            for fragment, error in UNIQUE_CONSTRAINTS:
                if fragment in constraint:
                    raise error() from exc
            raise TransactionStoreError(str(exc).strip()) from exc
        except psycopg2.Error as exc:
            logger.error("transaction store error", extra={"error": str(exc).strip()})
            raise TransactionStoreError() from exc

    @staticmethod
    def _hydrate_transaction(row: Any) -> Transaction:
        (
            tid,
            order_id,
            gateway,
            amount,
            currency,
            status,
            idempotency_key,
            gateway_transaction_id,
            payment_url,
            client_secret,
            customer_email,
            description,
            status_reason,
            metadata,
            version,
            created_at,
            updated_at,
            paid_at,
        ) = row
        return Transaction(
            id=int(tid),
            order_id=int(order_id),
            gateway=str(gateway),
            amount=Decimal(amount),
            currency=str(currency).strip(),
            status=TransactionStatus(str(status)),
            idempotency_key=str(idempotency_key),
            gateway_transaction_id=gateway_transaction_id,
            payment_url=payment_url,
            client_secret=client_secret,
            customer_email=customer_email,
            description=description,
            status_reason=status_reason,
            metadata=dict(metadata or {}),
            version=int(version),
            created_at=created_at,
            updated_at=updated_at,
            paid_at=paid_at,
        )

    @staticmethod
    def _hydrate_refund(row: Any) -> RefundRecord:
        rid, transaction_id, amount, status, refund_id, reason, created_at = row
        return RefundRecord(
            id=int(rid),
            transaction_id=int(transaction_id),
            amount=Decimal(amount),
            status=RefundStatus(str(status)),
            refund_id=refund_id,
            reason=reason,
            created_at=created_at,
        )

    @staticmethod
    def _hydrate_webhook(row: Any) -> WebhookEvent:
        (
            eid,
            gateway,
            event_type,
            gateway_transaction_id,
            raw_payload,
            signature_header,
            processed,
            error,
            received_at,
        ) = row
        return WebhookEvent(
            id=int(eid),
            gateway=str(gateway),
            event_type=event_type,
            gateway_transaction_id=gateway_transaction_id,
            raw_payload=raw_payload,
            signature_header=signature_header,
            processed=bool(processed),
            error=error,
            received_at=received_at,
        )

    def _fetch_transaction(self, where: str, params: tuple) -> Optional[Transaction]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {TRANSACTION_COLUMNS} FROM payment_transaction WHERE {where} "
                "ORDER BY id DESC LIMIT 1",
                params,
            )
            row = cur.fetchone()
        return self._hydrate_transaction(row) if row else None

    # Transactions

    def create_transaction(self, transaction: Transaction) -> Transaction:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO payment_transaction (
                    order_id, gateway, amount, currency, status, idempotency_key,
                    gateway_transaction_id, payment_url, client_secret, customer_email,
                    description, status_reason, metadata, version, created_at, updated_at, paid_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1, NOW(), NOW(), %s)
                RETURNING {TRANSACTION_COLUMNS}
                """,
                (
                    transaction.order_id,
                    transaction.gateway,
                    transaction.amount,
                    transaction.currency,
                    transaction.status.value,
                    transaction.idempotency_key,
                    transaction.gateway_transaction_id,
                    transaction.payment_url,
                    transaction.client_secret,
                    transaction.customer_email,
                    transaction.description,
                    transaction.status_reason,
                    Json(transaction.metadata or {}),
                    transaction.paid_at,
                ),
            )
            row = cur.fetchone()
        return self._hydrate_transaction(row)

    def get(self, transaction_id: int) -> Optional[Transaction]:
        return self._fetch_transaction("id = %s", (transaction_id,))

    def get_by_gateway_reference(
        self, gateway: str, gateway_transaction_id: str
    ) -> Optional[Transaction]:
        return self._fetch_transaction(
            "gateway = %s AND gateway_transaction_id = %s", (gateway, gateway_transaction_id)
        )

    def get_by_idempotency_key(self, key: str) -> Optional[Transaction]:
        return self._fetch_transaction("idempotency_key = %s", (key,))

    def find_open_for_order(self, order_id: int) -> Optional[Transaction]:
        return self._fetch_transaction("order_id = %s AND status IN %s", (order_id, _ACTIVE))

    def count_for_order(self, order_id: int) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM payment_transaction WHERE order_id = %s", (order_id,))
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def update_transaction(
        self, transaction: Transaction, expected_status: TransactionStatus
    ) -> Transaction:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE payment_transaction
                   SET status = %s,
                       gateway_transaction_id = %s,
                       payment_url = %s,
                       client_secret = %s,
                       status_reason = %s,
                       metadata = %s,
                       paid_at = %s,
                       version = version + 1,
                       updated_at = NOW()
                 WHERE id = %s AND status = %s AND version = %s
                RETURNING {TRANSACTION_COLUMNS}
                """,
                (
                    transaction.status.value,
                    transaction.gateway_transaction_id,
                    transaction.payment_url,
                    transaction.client_secret,
                    transaction.status_reason,
                    Json(transaction.metadata or {}),
                    transaction.paid_at,
                    transaction.id,
                    expected_status.value,
                    transaction.version,
                ),
            )
            row = cur.fetchone()
        if row is None:
            raise StaleTransaction(transaction_id=transaction.id)
        return self._hydrate_transaction(row)

    # Refunds

    def add_refund(self, refund: RefundRecord) -> RefundRecord:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO payment_refund (transaction_id, amount, status, refund_id, reason, created_at)
                VALUES (%s, %s, %s, %s, %s, NOW())
                RETURNING {REFUND_COLUMNS}
                """,
                (
                    refund.transaction_id,
                    refund.amount,
                    refund.status.value,
                    refund.refund_id,
                    refund.reason,
                ),
            )
            row = cur.fetchone()
        return self._hydrate_refund(row)

    def update_refund_status(
        self, transaction_id: int, refund_id: str, status: RefundStatus
    ) -> Optional[RefundRecord]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                UPDATE payment_refund SET status = %s
                 WHERE transaction_id = %s AND refund_id = %s
                RETURNING {REFUND_COLUMNS}
                """,
                (status.value, transaction_id, refund_id),
            )
            row = cur.fetchone()
        return self._hydrate_refund(row) if row else None

    def list_refunds(self, transaction_id: int) -> list[RefundRecord]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {REFUND_COLUMNS} FROM payment_refund WHERE transaction_id = %s ORDER BY id",
                (transaction_id,),
            )
            rows = cur.fetchall()
        return [self._hydrate_refund(row) for row in rows]

    def refunded_total(self, transaction_id: int) -> Decimal:
        with self._cursor() as cur:
            cur.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM payment_refund "
                "WHERE transaction_id = %s AND status IN %s",
                (transaction_id, (RefundStatus.PENDING.value, RefundStatus.SUCCEEDED.value)),
            )
            row = cur.fetchone()
        return Decimal(row[0]) if row else Decimal("0")

    # Webhook events

    def record_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO payment_webhook_event (
                    gateway, event_type, gateway_transaction_id, raw_payload,
                    signature_header, processed, error, received_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
                RETURNING {WEBHOOK_COLUMNS}
                """,
                (
                    event.gateway,
                    event.event_type,
                    event.gateway_transaction_id,
                    event.raw_payload,
                    event.signature_header,
                    event.processed,
                    event.error,
                ),
            )
            row = cur.fetchone()
        return self._hydrate_webhook(row)

    def find_processed_webhook(
        self, gateway: str, gateway_transaction_id: str, event_type: str
    ) -> Optional[WebhookEvent]:
        with self._cursor() as cur:
            cur.execute(
                f"""
                SELECT {WEBHOOK_COLUMNS} FROM payment_webhook_event
                 WHERE processed AND gateway = %s AND gateway_transaction_id = %s AND event_type = %s
                 ORDER BY id LIMIT 1
                """,
                (gateway, gateway_transaction_id, event_type),
            )
            row = cur.fetchone()
        return self._hydrate_webhook(row) if row else None

    def mark_webhook_processed(self, event_id: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE payment_webhook_event SET processed = TRUE, error = NULL WHERE id = %s",
                (event_id,),
            )

    def update_webhook_event(self, event: WebhookEvent) -> None:
        if event.id is None:
            return
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE payment_webhook_event
                   SET event_type = %s, gateway_transaction_id = %s, processed = %s, error = %s
                 WHERE id = %s
                """,
                (
                    event.event_type,
                    event.gateway_transaction_id,
                    event.processed,
                    event.error,
                    event.id,
                ),
            )

    def list_webhook_events(self, gateway: str | None = None) -> list[WebhookEvent]:
        query = f"SELECT {WEBHOOK_COLUMNS} FROM payment_webhook_event"
        params: tuple = ()
        if gateway:
            query += " WHERE gateway = %s"
            params = (gateway,)
        with self._cursor() as cur:
            cur.execute(query + " ORDER BY id", params)
            rows = cur.fetchall()
        return [self._hydrate_webhook(row) for row in rows]

    def status_counts(self) -> Dict[str, int]:
        with self._cursor() as cur:
            cur.execute("SELECT status, COUNT(*) FROM payment_transaction GROUP BY status")
            rows = cur.fetchall()
        return {str(status): int(count) for status, count in rows}
