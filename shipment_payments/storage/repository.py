"""
Repository pattern for data access.

Handles database operations and data persistence logic for the payment
ledger, the versioned tariff and the (read-only) shipment status history.
"""

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    PaymentRecord,
    PaymentTransitionEntry,
    PricingConfigHistoryEntry,
    PricingConfigVersion,
    ShipmentStatusEntry,
)
from ..core.errors import ValidationError
from ..core.payment_state import PaymentState
from ..core.pricing_config import PricingConfig, apply_patch, changed_fields

logger = logging.getLogger(__name__)


class VersionConflictError(Exception):
    """Raised when a payment record was modified by another writer."""
    def __init__(self, shipment_id: str, expected_version: int):
        super().__init__(
            f"Version conflict for payment {shipment_id}: expected version "
            f"{expected_version} but the record was modified by another process"
        )
        self.shipment_id = shipment_id
        self.expected_version = expected_version


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


PAYMENT_COLUMNS = (
    "shipment_id, total_amount, deposit_amount, final_amount, currency, state, "
    "deposit_intent_id, deposit_status, final_intent_id, final_status, "
    "payment_method_ref, deposit_refunded, final_refunded, version, last_event_id, "
    "last_event_created, quote_breakdown, refund_deadline, created_at, updated_at"
)


def _row_to_record(row: tuple) -> PaymentRecord:
    return PaymentRecord(
        shipment_id=row[0],
        total_amount=row[1],
        deposit_amount=row[2],
        final_amount=row[3],
        currency=row[4],
        state=PaymentState(row[5]),
        deposit_intent_id=row[6],
        deposit_status=row[7],
        final_intent_id=row[8],
        final_status=row[9],
        payment_method_ref=row[10],
        deposit_refunded=row[11],
        final_refunded=row[12],
        version=row[13],
        last_event_id=row[14],
        last_event_created=row[15],
        quote_breakdown=json.loads(row[16]) if row[16] else {},
        refund_deadline=_parse_ts(row[17]),
        created_at=_parse_ts(row[18]),
        updated_at=_parse_ts(row[19]),
    )


def _record_values(record: PaymentRecord) -> tuple:
    return (
        record.shipment_id,
        record.total_amount,
        record.deposit_amount,
        record.final_amount,
        record.currency,
        record.state.value,
        record.deposit_intent_id,
        record.deposit_status,
        record.final_intent_id,
        record.final_status,
        record.payment_method_ref,
        record.deposit_refunded,
        record.final_refunded,
        record.version,
        record.last_event_id,
        record.last_event_created,
        json.dumps(record.quote_breakdown, sort_keys=True),
        _format_ts(record.refund_deadline),
        _format_ts(record.created_at),
        _format_ts(record.updated_at),
    )


def _insert_transitions(conn: sqlite3.Connection, transitions: List[PaymentTransitionEntry]) -> None:
    for entry in transitions:
        conn.execute("""
            INSERT INTO payment_transition
            (shipment_id, from_state, to_state, event, source, gateway_event_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.shipment_id,
            entry.from_state.value,
            entry.to_state.value,
            entry.event,
            entry.source,
            entry.gateway_event_id,
            entry.timestamp.isoformat(),
        ))


class PaymentRepository:
    """Repository for the per-shipment payment ledger.

    Every update is a check-and-set on the ``version`` column so that the
    synchronous API path and the webhook path never overwrite each other.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def get(self, shipment_id: str) -> Optional[PaymentRecord]:
        """Fetch the payment record for a shipment, or None."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {PAYMENT_COLUMNS} FROM payment_record WHERE shipment_id = ?",
                (shipment_id,)
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def find_by_intent(self, intent_id: str) -> Optional[PaymentRecord]:
        """Fetch the record owning a deposit or final payment intent."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {PAYMENT_COLUMNS} FROM payment_record "
                "WHERE deposit_intent_id = ? OR final_intent_id = ?",
                (intent_id, intent_id)
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None
        finally:
            conn.close()

    def insert(
        self,
        record: PaymentRecord,
        transitions: Optional[List[PaymentTransitionEntry]] = None
    ) -> PaymentRecord:
        """Insert a new record; if one already exists for the shipment, return it.

        Insert and audit rows are written in one transaction.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    f"INSERT INTO payment_record ({PAYMENT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _record_values(record)
                )
            except sqlite3.IntegrityError:
                conn.rollback()
                logger.info("Payment record already exists shipment_id=%s", record.shipment_id)
                existing = self.get(record.shipment_id)
                if existing is None:
                    raise
                return existing
            _insert_transitions(conn, transitions or [])
            conn.commit()
            return record
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def compare_and_set(
        self,
        record: PaymentRecord,
        expected_version: int,
        transitions: Optional[List[PaymentTransitionEntry]] = None
    ) -> PaymentRecord:
        """Write ``record`` only if the stored version is still ``expected_version``.

        Returns:
            The stored record with its incremented version

        Raises:
            VersionConflictError: If another writer got there first
        """
        stored = replace(record, version=expected_version + 1, updated_at=utcnow())
        values = _record_values(stored)
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                UPDATE payment_record SET
                    total_amount = ?, deposit_amount = ?, final_amount = ?, currency = ?,
                    state = ?, deposit_intent_id = ?, deposit_status = ?,
                    final_intent_id = ?, final_status = ?, payment_method_ref = ?,
                    deposit_refunded = ?, final_refunded = ?, version = ?, last_event_id = ?,
                    last_event_created = ?, quote_breakdown = ?, refund_deadline = ?,
                    created_at = ?, updated_at = ?
                WHERE shipment_id = ? AND version = ?
            """, values[1:] + (stored.shipment_id, expected_version))

            if cursor.rowcount == 0:
                conn.rollback()
                logger.warning(
                    "Optimistic lock conflict shipment_id=%s expected_version=%d",
                    record.shipment_id, expected_version
                )
                raise VersionConflictError(record.shipment_id, expected_version)

            _insert_transitions(conn, transitions or [])
            conn.commit()
            logger.debug(
                "Versioned update shipment_id=%s v%d -> v%d state=%s",
                stored.shipment_id, expected_version, stored.version, stored.state.value
            )
            return stored
        except VersionConflictError:
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_transitions(self, shipment_id: str) -> List[PaymentTransitionEntry]:
        """Audit trail for a shipment, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT shipment_id, from_state, to_state, event, source, timestamp, gateway_event_id
                FROM payment_transition WHERE shipment_id = ? ORDER BY id ASC
            """, (shipment_id,))
            return [
                PaymentTransitionEntry(
                    shipment_id=row[0],
                    from_state=PaymentState(row[1]),
                    to_state=PaymentState(row[2]),
                    event=row[3],
                    source=row[4],
                    timestamp=datetime.fromisoformat(row[5]),
                    gateway_event_id=row[6],
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


class PricingConfigRepository:
    """Versioned tariff store.

    Exactly one version is active. Updates never edit a stored version: they
    deactivate it, insert its successor and append a history entry, all in
    one transaction.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_active_pricing_config(self) -> PricingConfigVersion:
        """Get the active tariff version.

        Raises:
            LookupError: If no version is active (schema not initialized)
        """
        conn = get_connection(self.db_path)
        try:
            return self._fetch_active(conn)
        finally:
            conn.close()

    def update_pricing_config(
        self,
        patch: Dict[str, Any],
        reason: str,
        actor: Optional[str] = None
    ) -> PricingConfigVersion:
        """Apply a patch to the active tariff, producing a new active version.

        Args:
            patch: Field name -> new value (YAML/JSON primitives)
            reason: Why the tariff changed (required for audit)
            actor: Who made the change

        Raises:
            ValidationError: If the patch is invalid or changes nothing
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for pricing config changes")

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            current = self._fetch_active(conn)
            updated = apply_patch(current.config, patch)
            new_values = changed_fields(current.config, updated)
            if not new_values:
                raise ValidationError("Pricing config patch does not change any value")

            old_data = current.config.to_dict()
            old_values = {name: old_data[name] for name in new_values}
            now = utcnow()
            new_version = current.version + 1

            conn.execute("UPDATE pricing_config SET is_active = 0 WHERE version = ?", (current.version,))
            conn.execute("""
                INSERT INTO pricing_config (version, config_json, is_active, created_at, created_by)
                VALUES (?, ?, 1, ?, ?)
            """, (new_version, json.dumps(updated.to_dict(), sort_keys=True), now.isoformat(), actor))
            conn.execute("""
                INSERT INTO pricing_config_history
                (config_version, old_values, new_values, reason, actor, changed_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                new_version,
                json.dumps(old_values, sort_keys=True),
                json.dumps(new_values, sort_keys=True),
                reason,
                actor,
                now.isoformat(),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(
            "Pricing config updated version=%d actor=%s fields=%s reason=%s",
            new_version, actor, sorted(new_values), reason
        )
        return PricingConfigVersion(
            version=new_version, config=updated, is_active=True, created_at=now, created_by=actor
        )

    def get_config_history(self, limit: int = 50) -> List[PricingConfigHistoryEntry]:
        """Tariff change log, newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT config_version, old_values, new_values, reason, actor, changed_at
                FROM pricing_config_history ORDER BY id DESC LIMIT ?
            """, (limit,))
            return [
                PricingConfigHistoryEntry(
                    config_version=row[0],
                    old_values=json.loads(row[1]),
                    new_values=json.loads(row[2]),
                    reason=row[3],
                    actor=row[4],
                    changed_at=datetime.fromisoformat(row[5]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    @staticmethod
    def _fetch_active(conn: sqlite3.Connection) -> PricingConfigVersion:
        cursor = conn.execute("""
            SELECT version, config_json, is_active, created_at, created_by
            FROM pricing_config WHERE is_active = 1
        """)
        row = cursor.fetchone()
        if row is None:
            raise LookupError("No active pricing config; run `shipment-payments init` first")
        return PricingConfigVersion(
            version=row[0],
            config=PricingConfig.from_dict(json.loads(row[1])),
            is_active=bool(row[2]),
            created_at=datetime.fromisoformat(row[3]),
            created_by=row[4],
        )


class ShipmentStatusRepository:
    """Read-only view of the shipment lifecycle service's status history."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_status_history(self, shipment_id: str) -> List[ShipmentStatusEntry]:
        """Status changes for a shipment, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT shipment_id, status, changed_at FROM shipment_status_history
                WHERE shipment_id = ? ORDER BY changed_at ASC, id ASC
            """, (shipment_id,))
            return [
                ShipmentStatusEntry(row[0], row[1], datetime.fromisoformat(row[2]))
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def get_status(self, shipment_id: str) -> Optional[str]:
        """Current status of a shipment, or None if unknown."""
        history = self.get_status_history(shipment_id)
        return history[-1].status if history else None


def initialize_schema(db_path: str = DEFAULT_DB_PATH, seed_config: Optional[PricingConfig] = None) -> None:
    """Create all tables if they don't exist and seed the first tariff version.

    ``payment_transition`` and ``pricing_config_history`` are append-only
    ledgers: no UPDATE or DELETE is ever issued against them.

    Args:
        db_path: Path to SQLite database file
        seed_config: Tariff to activate when no version exists yet (defaults
            to the built-in tariff)
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS pricing_config (
                version INTEGER PRIMARY KEY,
                config_json TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                created_by TEXT
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_pricing_config_single_active
                ON pricing_config (is_active) WHERE is_active = 1;

            CREATE TABLE IF NOT EXISTS pricing_config_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                config_version INTEGER NOT NULL REFERENCES pricing_config (version),
                old_values TEXT NOT NULL,
                new_values TEXT NOT NULL,
                reason TEXT NOT NULL,
                actor TEXT,
                changed_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS payment_record (
                shipment_id TEXT PRIMARY KEY,
                total_amount INTEGER NOT NULL,
                deposit_amount INTEGER NOT NULL,
                final_amount INTEGER NOT NULL,
                currency TEXT NOT NULL,
                state TEXT NOT NULL,
                deposit_intent_id TEXT,
                deposit_status TEXT,
                final_intent_id TEXT,
                final_status TEXT,
                payment_method_ref TEXT,
                deposit_refunded INTEGER NOT NULL DEFAULT 0,
                final_refunded INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                last_event_id TEXT,
                last_event_created INTEGER,
                quote_breakdown TEXT,
                refund_deadline TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK (deposit_amount + final_amount = total_amount)
            );

            CREATE TABLE IF NOT EXISTS payment_transition (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                shipment_id TEXT NOT NULL REFERENCES payment_record (shipment_id),
                from_state TEXT NOT NULL,
                to_state TEXT NOT NULL,
                event TEXT NOT NULL,
                source TEXT NOT NULL,
                gateway_event_id TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS shipment_status_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                shipment_id TEXT NOT NULL,
                status TEXT NOT NULL,
                changed_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_shipment_status_shipment
                ON shipment_status_history (shipment_id);
        """)

        cursor = conn.execute("SELECT COUNT(*) FROM pricing_config")
        if cursor.fetchone()[0] == 0:
            config = seed_config or PricingConfig()
            now = utcnow().isoformat()
            conn.execute("""
                INSERT INTO pricing_config (version, config_json, is_active, created_at, created_by)
                VALUES (1, ?, 1, ?, 'system')
            """, (json.dumps(config.to_dict(), sort_keys=True), now))
            conn.execute("""
                INSERT INTO pricing_config_history
                (config_version, old_values, new_values, reason, actor, changed_at)
                VALUES (1, '{}', ?, 'initial configuration', 'system', ?)
            """, (json.dumps(config.to_dict(), sort_keys=True), now))
            logger.info("Seeded initial pricing config db=%s", db_path)
        conn.commit()
    finally:
        conn.close()
