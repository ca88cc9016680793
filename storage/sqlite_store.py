"""
storage/sqlite_store.py
SQLite persistence for lots, permits, reservations and the billing ledger.

Also serves as the lot directory (get_rate_profile) and the permit directory
(has_active_permit) the lifecycle service consumes.

Every state-changing write goes through a versioned UPDATE inside the same
transaction as its ledger insert: either both land or neither does.
"""
import json
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from config.settings import settings
from domain.errors import ConflictError, ValidationError
from domain.models import (
    BillingEntry,
    BillingKind,
    ExtensionRecord,
    LedgerTotals,
    Permit,
    RateModel,
    RateProfile,
    RawSnapshot,
    Reservation,
    ReservationStatus,
    money,
)
from monitoring import LEDGER_ENTRIES, get_logger

log = get_logger(__name__)

DB_PATH = Path(settings.sqlite_db_path)


SCHEMA = """
-- ─────────────────────────────────────────────────────────────────
-- lots: pricing facts per parking lot
-- ─────────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS lots (
    id               TEXT PRIMARY KEY,
    name             TEXT NOT NULL,
    rate_model       TEXT NOT NULL,        -- Hourly | Semester
    hourly_rate      REAL DEFAULT 0,
    semester_rate    REAL DEFAULT 0,
    is_metered       INTEGER DEFAULT 0,
    is_ev            INTEGER DEFAULT 0,
    ev_charging_rate REAL
);

-- ─────────────────────────────────────────────────────────────────
-- permits: a user holds an active permit iff status = 'active' and
-- now falls within [start_date, end_date]
-- ─────────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS permits (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    start_date  TEXT NOT NULL,
    end_date    TEXT NOT NULL,
    status      TEXT NOT NULL DEFAULT 'active'   -- active | expired | pending
);
CREATE INDEX IF NOT EXISTS idx_permits_user ON permits (user_id, status);

-- ─────────────────────────────────────────────────────────────────
-- reservations: version is bumped by every state-changing write
-- ─────────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS reservations (
    id                TEXT PRIMARY KEY,
    lot_id            TEXT NOT NULL,
    user_id           TEXT NOT NULL,
    start_time        TEXT NOT NULL,
    end_time          TEXT NOT NULL,
    status            TEXT NOT NULL,
    original_amount   REAL NOT NULL DEFAULT 0,
    current_amount    REAL NOT NULL DEFAULT 0 CHECK (current_amount >= 0),
    is_free           INTEGER NOT NULL DEFAULT 0,
    free_reason       TEXT,
    rate_profile      TEXT NOT NULL,          -- JSON snapshot at creation
    version           INTEGER NOT NULL DEFAULT 0,
    claimed_at        TEXT,                   -- set while a money-moving operation is in flight
    pending_reference TEXT,                   -- money moved but the ledger write failed; never expires
    payment_reference TEXT,
    created_at        TEXT,
    cancelled_at      TEXT,
    cancel_reason     TEXT,
    CHECK (end_time > start_time)
);
CREATE INDEX IF NOT EXISTS idx_reservations_user ON reservations (user_id);
CREATE INDEX IF NOT EXISTS idx_reservations_open ON reservations (status, end_time);

-- ─────────────────────────────────────────────────────────────────
-- billing_entries: append-only ledger
-- ─────────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS billing_entries (
    id                TEXT PRIMARY KEY,
    reservation_id    TEXT NOT NULL REFERENCES reservations (id),
    kind              TEXT NOT NULL,          -- charge | refund
    stored_amount     REAL NOT NULL CHECK (stored_amount >= 0),
    raw_snapshot      TEXT NOT NULL,          -- RawSnapshot JSON
    date              TEXT NOT NULL,
    payment_reference TEXT
);
CREATE INDEX IF NOT EXISTS idx_billing_reservation ON billing_entries (reservation_id);
CREATE UNIQUE INDEX IF NOT EXISTS uq_one_refund_per_reservation
    ON billing_entries (reservation_id) WHERE kind = 'refund';

-- ─────────────────────────────────────────────────────────────────
-- extension_history
-- ─────────────────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS extension_history (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    reservation_id    TEXT NOT NULL REFERENCES reservations (id),
    requested_at      TEXT NOT NULL,
    additional_hours  REAL NOT NULL,
    previous_end_time TEXT NOT NULL,
    new_end_time      TEXT NOT NULL,
    fee               REAL NOT NULL,
    reason            TEXT NOT NULL,
    payment_reference TEXT
);
"""


def _ts(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat(timespec="microseconds") if dt else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStore:
    """
    Read/write interface to the parking database.
    Used by:
      - ReservationService (write): reservations, ledger, extension history
      - BillingReconciler callers (read): billing history
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path) if db_path else DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()
        log.info("SQLite store ready", path=str(self.db_path))

    # ── Schema ────────────────────────────────────────────────────────────────

    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ── Lots (lot directory) ──────────────────────────────────────────────────

    def upsert_lot(self, lot: dict) -> None:
        sql = """INSERT OR REPLACE INTO lots
                 (id, name, rate_model, hourly_rate, semester_rate, is_metered, is_ev, ev_charging_rate)
                 VALUES (:id, :name, :rate_model, :hourly_rate, :semester_rate, :is_metered, :is_ev, :ev_charging_rate)"""
        row = {
            "hourly_rate": 0.0, "semester_rate": 0.0, "is_metered": False,
            "is_ev": False, "ev_charging_rate": None, **lot,
        }
        with self._conn() as conn:
            conn.execute(sql, row)

    def get_lot(self, lot_id: str) -> Optional[dict[str, Any]]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM lots WHERE id = ?", (lot_id,)).fetchone()
            return dict(row) if row else None

    def get_rate_profile(self, lot_id: str) -> RateProfile:
        lot = self.get_lot(lot_id)
        if lot is None:
            raise ValidationError(f"Unknown lot '{lot_id}'")
        return RateProfile.from_lot(lot)

    # ── Permits (permit directory) ────────────────────────────────────────────

    def insert_permit(self, permit: Permit) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO permits (id, user_id, start_date, end_date, status) VALUES (?, ?, ?, ?, ?)",
                (permit.id, permit.user_id, _ts(permit.start_date), _ts(permit.end_date), permit.status),
            )

    def has_active_permit(self, user_id: str, at: datetime) -> bool:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM permits WHERE user_id = ?", (user_id,)
            ).fetchall()
        return any(self._row_to_permit(r).is_active_at(at) for r in rows)

    def expire_permits(self, now: datetime) -> int:
        """Mark active permits whose end date has passed as expired."""
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE permits SET status = 'expired' WHERE status = 'active' AND end_date < ?",
                (_ts(now),),
            )
            return cur.rowcount

    # ── Reservations ──────────────────────────────────────────────────────────

    def insert_reservation(self, res: Reservation) -> None:
        sql = """INSERT INTO reservations
                 (id, lot_id, user_id, start_time, end_time, status, original_amount, current_amount,
                  is_free, free_reason, rate_profile, version, payment_reference, created_at)
                 VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"""
        with self._conn() as conn:
            conn.execute(sql, (
                res.id, res.lot_id, res.user_id, _ts(res.start_time), _ts(res.end_time),
                res.status.value, res.original_amount, res.current_amount,
                int(res.is_free_reservation), res.free_reason,
                self._profile_json(res.rate_profile), res.version,
                res.payment_reference, _ts(res.created_at),
            ))

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM reservations WHERE id = ?", (reservation_id,)
            ).fetchone()
            return self._row_to_reservation(row) if row else None

    def expired_open_reservations(self, now: datetime) -> list[Reservation]:
        """Reservations not yet marked terminal whose end time has passed."""
        with self._conn() as conn:
            rows = conn.execute("""
                SELECT * FROM reservations
                WHERE status IN ('pending', 'upcoming')
                  AND end_time <= ?
                  AND claimed_at IS NULL
                ORDER BY end_time
            """, (_ts(now),)).fetchall()
            return [self._row_to_reservation(r) for r in rows]

    # ── Versioned writes ──────────────────────────────────────────────────────

    def claim(self, reservation_id: str, expected_version: int, now: datetime) -> int:
        """
        Bump the version and mark the row as in flight before any money moves.
        A request that read a stale version, or finds a live claim held by
        another request, loses here with ConflictError. Claims older than
        ``settings.claim_ttl_seconds`` are treated as abandoned, unless the
        row is ledger-pending: those stay locked until resolve_ledger_pending.
        """
        cutoff = now - timedelta(seconds=settings.claim_ttl_seconds)
        with self._conn() as conn:
            cur = conn.execute("""
                UPDATE reservations SET version = version + 1, claimed_at = ?
                WHERE id = ? AND version = ?
                  AND pending_reference IS NULL
                  AND (claimed_at IS NULL OR claimed_at < ?)
            """, (_ts(now), reservation_id, expected_version, _ts(cutoff)))
            if cur.rowcount != 1:
                row = conn.execute(
                    "SELECT pending_reference FROM reservations WHERE id = ?", (reservation_id,)
                ).fetchone()
                if row is not None and row["pending_reference"]:
                    raise ConflictError(
                        f"Reservation {reservation_id} is awaiting ledger reconciliation "
                        f"for payment {row['pending_reference']}"
                    )
                raise ConflictError(
                    f"Reservation {reservation_id} is being modified by another request"
                )
        return expected_version + 1

    def mark_ledger_pending(self, reservation_id: str, expected_version: int, reference: str) -> None:
        """Record a gateway reference whose ledger write failed. Keeps the claim."""
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE reservations SET pending_reference = ? WHERE id = ? AND version = ?",
                (reference, reservation_id, expected_version),
            )
            if cur.rowcount != 1:
                raise ConflictError(
                    f"Reservation {reservation_id} changed before ledger-pending could be recorded"
                )

    def resolve_ledger_pending(self, reservation_id: str) -> Optional[str]:
        """
        Clear the ledger-pending marker and its claim once the payment has been
        reconciled by hand. Returns the reference that was pending.
        """
        with self._conn() as conn:
            row = conn.execute(
                "SELECT version, pending_reference FROM reservations WHERE id = ?", (reservation_id,)
            ).fetchone()
            if row is None or not row["pending_reference"]:
                return None
            self._bump(conn, reservation_id, row["version"], pending_reference=None)
            return row["pending_reference"]

    def release(self, reservation_id: str, expected_version: int) -> None:
        """Drop a claim without changing anything else (payment declined)."""
        with self._conn() as conn:
            self._bump(conn, reservation_id, expected_version)

    def commit_confirmation(
        self, reservation_id: str, expected_version: int,
        payment_reference: Optional[str], entry: BillingEntry,
    ) -> None:
        with self._conn() as conn:
            self._bump(
                conn, reservation_id, expected_version,
                status=ReservationStatus.UPCOMING.value,
                payment_reference=payment_reference,
            )
            self._insert_entry(conn, entry)

    def commit_extension(
        self, reservation_id: str, expected_version: int,
        new_end_time: datetime, current_amount: float,
        record: ExtensionRecord, entry: Optional[BillingEntry],
    ) -> None:
        with self._conn() as conn:
            self._bump(
                conn, reservation_id, expected_version,
                end_time=_ts(new_end_time),
                current_amount=money(current_amount),
            )
            conn.execute("""
                INSERT INTO extension_history
                (reservation_id, requested_at, additional_hours, previous_end_time,
                 new_end_time, fee, reason, payment_reference)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.reservation_id, _ts(record.requested_at), record.additional_hours,
                _ts(record.previous_end_time), _ts(record.new_end_time),
                record.fee, record.reason, record.payment_reference,
            ))
            if entry is not None:
                self._insert_entry(conn, entry)

    def commit_cancellation(
        self, reservation_id: str, expected_version: int,
        cancelled_at: datetime, cancel_reason: str, entry: BillingEntry,
    ) -> None:
        with self._conn() as conn:
            self._bump(
                conn, reservation_id, expected_version,
                status=ReservationStatus.CANCELLED.value,
                cancelled_at=_ts(cancelled_at),
                cancel_reason=cancel_reason,
            )
            self._insert_entry(conn, entry)

    def mark_completed(self, reservation_id: str, expected_version: int) -> None:
        with self._conn() as conn:
            self._bump(
                conn, reservation_id, expected_version,
                status=ReservationStatus.COMPLETED.value,
            )

    # ── Ledger reads ──────────────────────────────────────────────────────────

    def ledger_for(self, reservation_id: str) -> LedgerTotals:
        entries = self.billing_entries(reservation_id=reservation_id)
        totals = LedgerTotals(entries=entries)
        for e in entries:
            if e.kind == BillingKind.CHARGE:
                totals.charged += e.stored_amount
            else:
                totals.refunded += e.stored_amount
        totals.charged  = money(totals.charged)
        totals.refunded = money(totals.refunded)
        return totals

    def billing_entries(
        self, reservation_id: Optional[str] = None, user_id: Optional[str] = None,
    ) -> list[BillingEntry]:
        sql = "SELECT b.* FROM billing_entries b JOIN reservations r ON r.id = b.reservation_id"
        clauses, params = [], []
        if reservation_id is not None:
            clauses.append("b.reservation_id = ?")
            params.append(reservation_id)
        if user_id is not None:
            clauses.append("r.user_id = ?")
            params.append(user_id)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY b.date, b.rowid"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_entry(r) for r in rows]

    def extension_history(self, reservation_id: str) -> list[ExtensionRecord]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM extension_history WHERE reservation_id = ? ORDER BY id",
                (reservation_id,),
            ).fetchall()
        return [
            ExtensionRecord(
                reservation_id=r["reservation_id"],
                requested_at=_dt(r["requested_at"]),
                additional_hours=r["additional_hours"],
                previous_end_time=_dt(r["previous_end_time"]),
                new_end_time=_dt(r["new_end_time"]),
                fee=r["fee"],
                reason=r["reason"],
                payment_reference=r["payment_reference"],
            )
            for r in rows
        ]

    def stats(self) -> dict:
        """Return row counts per table."""
        tables = ["lots", "permits", "reservations", "billing_entries", "extension_history"]
        result = {}
        with self._conn() as conn:
            for t in tables:
                result[t] = conn.execute(f"SELECT COUNT(*) as n FROM {t}").fetchone()["n"]
        return result

    # ── Private ───────────────────────────────────────────────────────────────

    @staticmethod
    def _bump(conn: sqlite3.Connection, reservation_id: str, expected_version: int, **fields) -> None:
        assignments = "".join(f", {col} = :{col}" for col in fields)
        cur = conn.execute(
            f"UPDATE reservations SET version = version + 1, claimed_at = NULL{assignments} "
            "WHERE id = :id AND version = :expected",
            {**fields, "id": reservation_id, "expected": expected_version},
        )
        if cur.rowcount != 1:
            raise ConflictError(
                f"Reservation {reservation_id} was modified concurrently "
                f"(expected version {expected_version})"
            )

    @staticmethod
    def _insert_entry(conn: sqlite3.Connection, entry: BillingEntry) -> None:
        if entry.kind == BillingKind.REFUND:
            row = conn.execute("""
                SELECT
                  COALESCE(SUM(CASE WHEN kind = 'charge' THEN stored_amount END), 0) AS charged,
                  COALESCE(SUM(CASE WHEN kind = 'refund' THEN stored_amount END), 0) AS refunded
                FROM billing_entries WHERE reservation_id = ?
            """, (entry.reservation_id,)).fetchone()
            if row["refunded"] + entry.stored_amount > row["charged"] + 0.005:
                raise ValidationError(
                    f"Refund {entry.stored_amount:.2f} exceeds charges "
                    f"{row['charged'] - row['refunded']:.2f} for {entry.reservation_id}"
                )
        try:
            conn.execute("""
                INSERT INTO billing_entries
                (id, reservation_id, kind, stored_amount, raw_snapshot, date, payment_reference)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id, entry.reservation_id, entry.kind.value, money(entry.stored_amount),
                entry.raw_snapshot.model_dump_json(), _ts(entry.date), entry.payment_reference,
            ))
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Ledger write rejected for {entry.reservation_id}: {exc}") from exc
        LEDGER_ENTRIES.labels(kind=entry.kind.value).inc()

    @staticmethod
    def _profile_json(profile: RateProfile) -> str:
        data = asdict(profile)
        data["rate_model"] = profile.rate_model.value
        return json.dumps(data)

    @staticmethod
    def _row_to_reservation(row: sqlite3.Row) -> Reservation:
        profile = json.loads(row["rate_profile"])
        profile["rate_model"] = RateModel.parse(profile["rate_model"])
        return Reservation(
            id=row["id"],
            lot_id=row["lot_id"],
            user_id=row["user_id"],
            start_time=_dt(row["start_time"]),
            end_time=_dt(row["end_time"]),
            rate_profile=RateProfile(**profile),
            status=ReservationStatus(row["status"]),
            original_amount=row["original_amount"],
            current_amount=row["current_amount"],
            is_free_reservation=bool(row["is_free"]),
            free_reason=row["free_reason"],
            version=row["version"],
            payment_reference=row["payment_reference"],
            created_at=_dt(row["created_at"]),
            cancelled_at=_dt(row["cancelled_at"]),
            cancel_reason=row["cancel_reason"],
            pending_reference=row["pending_reference"],
        )

    @staticmethod
    def _row_to_permit(row: sqlite3.Row) -> Permit:
        return Permit(
            id=row["id"],
            user_id=row["user_id"],
            start_date=_dt(row["start_date"]),
            end_date=_dt(row["end_date"]),
            status=row["status"],
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> BillingEntry:
        return BillingEntry(
            id=row["id"],
            reservation_id=row["reservation_id"],
            kind=BillingKind(row["kind"]),
            stored_amount=row["stored_amount"],
            raw_snapshot=RawSnapshot.model_validate_json(row["raw_snapshot"]),
            date=_dt(row["date"]),
            payment_reference=row["payment_reference"],
        )
