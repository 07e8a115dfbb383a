"""
Cache Store Module
==================
SQLite cache of Tally vouchers, their line items, master data and sync
bookkeeping.

WRITE RULES:
-----------
- Every logical unit of work (one voucher upsert, one mark-deleted batch,
  one line-item replacement) runs inside transaction(): committed as a
  whole or rolled back as a whole.
- Reads take the same lock, so nobody sees a half-applied unit.
- A voucher row only moves forward: an upsert whose change_sequence is not
  above the stored one is a no-op.
- A row is active, soft-deleted or converted, never two at once (enforced
  by the UPDATE filters and by a CHECK constraint).
- payment_status, amount_received, dispatch_status and audit_status are
  written by the dashboard only; sync never touches them.

TABLES:
------
vouchers, line_items, sync_cursor, sync_state, full_sync_progress,
stock_items, parties, pending_vouchers
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from ..models.master import Party, StockItem
from ..models.results import UpsertOutcome
from ..models.voucher import LineItem, LocalStatusUpdate, Voucher, VoucherDraft, VoucherIdentity
from ..utils.constants import AuditReason, PendingStatus
from ..utils.helpers import get_current_timestamp
from ..utils.logger import logger


SCHEMA = """
CREATE TABLE IF NOT EXISTS vouchers (
    global_id TEXT PRIMARY KEY,
    remote_id TEXT NOT NULL DEFAULT '',
    change_sequence INTEGER NOT NULL DEFAULT 0,
    kind TEXT NOT NULL DEFAULT '',
    number TEXT NOT NULL DEFAULT '',
    voucher_date TEXT NOT NULL DEFAULT '',
    counterparty_name TEXT NOT NULL DEFAULT '',
    amount REAL NOT NULL DEFAULT 0,
    note TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT '',
    last_modified_at TEXT NOT NULL DEFAULT '',
    entry_time TEXT NOT NULL DEFAULT '',
    udf_payment_total REAL NOT NULL DEFAULT 0,
    pay_cash REAL NOT NULL DEFAULT 0,
    pay_qr REAL NOT NULL DEFAULT 0,
    pay_cheque REAL NOT NULL DEFAULT 0,
    pay_discount REAL NOT NULL DEFAULT 0,
    pay_esewa REAL NOT NULL DEFAULT 0,
    pay_bank_deposit REAL NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    delete_reason TEXT,
    deleted_at TEXT,
    is_converted INTEGER NOT NULL DEFAULT 0,
    converted_to_kind TEXT,
    converted_to_global_id TEXT,
    converted_at TEXT,
    audit_flag INTEGER NOT NULL DEFAULT 0,
    audit_reason TEXT,
    payment_status TEXT NOT NULL DEFAULT 'pending',
    amount_received REAL NOT NULL DEFAULT 0,
    dispatch_status TEXT NOT NULL DEFAULT 'pending',
    audit_status TEXT,
    synced_at TEXT,
    updated_at TEXT,
    CHECK (NOT (is_deleted = 1 AND is_converted = 1))
);
CREATE INDEX IF NOT EXISTS idx_vouchers_party_date ON vouchers(counterparty_name, voucher_date);
CREATE INDEX IF NOT EXISTS idx_vouchers_kind ON vouchers(kind);

CREATE TABLE IF NOT EXISTS line_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    global_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    item_name TEXT NOT NULL,
    quantity REAL NOT NULL DEFAULT 0,
    unit TEXT NOT NULL DEFAULT '',
    rate REAL NOT NULL DEFAULT 0,
    amount REAL NOT NULL DEFAULT 0,
    godown TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_line_items_voucher ON line_items(global_id);

CREATE TABLE IF NOT EXISTS sync_cursor (
    entity TEXT PRIMARY KEY,
    last_seen_sequence INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    status TEXT NOT NULL DEFAULT 'idle',
    last_error TEXT,
    last_sync_at TEXT,
    last_run_summary TEXT
);

CREATE TABLE IF NOT EXISTS full_sync_progress (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    status TEXT NOT NULL,
    start_date TEXT,
    end_date TEXT,
    batch_days INTEGER,
    current_batch_date TEXT,
    batches_completed INTEGER DEFAULT 0,
    total_batches INTEGER DEFAULT 0,
    total_synced INTEGER DEFAULT 0,
    max_sequence INTEGER DEFAULT 0,
    min_failed_sequence INTEGER,
    last_error TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS stock_items (
    name TEXT PRIMARY KEY,
    parent TEXT NOT NULL DEFAULT '',
    base_units TEXT NOT NULL DEFAULT '',
    opening_balance REAL NOT NULL DEFAULT 0,
    closing_balance REAL NOT NULL DEFAULT 0,
    closing_value REAL NOT NULL DEFAULT 0,
    closing_rate REAL NOT NULL DEFAULT 0,
    hsn_code TEXT NOT NULL DEFAULT '',
    gst_rate REAL NOT NULL DEFAULT 0,
    standard_cost REAL NOT NULL DEFAULT 0,
    selling_price REAL NOT NULL DEFAULT 0,
    change_sequence INTEGER NOT NULL DEFAULT 0,
    synced_at TEXT
);

CREATE TABLE IF NOT EXISTS parties (
    name TEXT PRIMARY KEY,
    parent TEXT NOT NULL DEFAULT '',
    group_type TEXT NOT NULL DEFAULT 'debtor',
    balance REAL NOT NULL DEFAULT 0,
    address TEXT NOT NULL DEFAULT '',
    state TEXT NOT NULL DEFAULT '',
    gstin TEXT NOT NULL DEFAULT '',
    change_sequence INTEGER NOT NULL DEFAULT 0,
    synced_at TEXT
);

CREATE TABLE IF NOT EXISTS pending_vouchers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    remote_id TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
"""

# Synced columns written by upsert_voucher, in insert order
SYNCED_COLUMNS = [
    "global_id", "remote_id", "change_sequence", "kind", "number", "voucher_date",
    "counterparty_name", "amount", "note", "created_at", "last_modified_at", "entry_time",
    "udf_payment_total", "pay_cash", "pay_qr", "pay_cheque", "pay_discount", "pay_esewa",
    "pay_bank_deposit", "audit_flag", "audit_reason", "synced_at", "updated_at",
]

FULL_SYNC_FIELDS = [
    "status", "start_date", "end_date", "batch_days", "current_batch_date", "batches_completed",
    "total_batches", "total_synced", "max_sequence", "min_failed_sequence", "last_error", "started_at",
    "completed_at",
]


class CacheStore:
    """aiosqlite-backed cache with idempotent write semantics"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection and make sure the schema exists"""
        if self._connection is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self.db_path, timeout=30.0)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA busy_timeout=30000")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.executescript(SCHEMA)
            await self._connection.commit()
            logger.info(f"Connected to SQLite database: {self.db_path}")

        return self._connection

    async def connect(self) -> None:
        async with self._lock:
            await self._get_connection()

    async def disconnect(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def transaction(self):
        """One unit of work: commit on success, roll back on any exception"""
        async with self._lock:
            conn = await self._get_connection()
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def _fetch_all(self, query: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        async with self._lock:
            conn = await self._get_connection()
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _fetch_one(self, query: str, params: Tuple = ()) -> Optional[Dict[str, Any]]:
        rows = await self._fetch_all(query, params)
        return rows[0] if rows else None

    async def ping(self) -> bool:
        row = await self._fetch_one("SELECT 1 AS ok")
        return bool(row and row["ok"] == 1)

    # ============== Vouchers ==============

    @staticmethod
    def _row_to_voucher(row: Dict[str, Any], line_items: Optional[List[LineItem]] = None) -> Voucher:
        return Voucher(
            global_id=row["global_id"],
            remote_id=row["remote_id"],
            change_sequence=row["change_sequence"],
            kind=row["kind"],
            number=row["number"],
            date=row["voucher_date"],
            counterparty_name=row["counterparty_name"],
            amount=row["amount"],
            note=row["note"],
            created_at=row["created_at"],
            last_modified_at=row["last_modified_at"],
            entry_time=row["entry_time"],
            udf_payment_total=row["udf_payment_total"],
            pay_cash=row["pay_cash"],
            pay_qr=row["pay_qr"],
            pay_cheque=row["pay_cheque"],
            pay_discount=row["pay_discount"],
            pay_esewa=row["pay_esewa"],
            pay_bank_deposit=row["pay_bank_deposit"],
            is_deleted=bool(row["is_deleted"]),
            delete_reason=row["delete_reason"],
            is_converted=bool(row["is_converted"]),
            converted_to_kind=row["converted_to_kind"],
            audit_flag=bool(row["audit_flag"]),
            audit_reason=row["audit_reason"],
            line_items=line_items or [],
        )

    @staticmethod
    def _audit_reasons(voucher: Voucher, existing: Optional[Dict[str, Any]]) -> Tuple[bool, Optional[str]]:
        """Work out audit_flag/audit_reason for an incoming revision

        udf_change:   the payment UDF total changed and no longer matches the amount
        audited_edit: a voucher staff had marked audited was edited in Tally
        post_dated:   the voucher date is in the future
        """
        udf_total = voucher.udf_payment_total
        udf_matches = udf_total > 0 and abs(udf_total - abs(voucher.amount)) < 1
        old_udf = existing["udf_payment_total"] if existing else 0
        udf_changed = old_udf > 0 and udf_total > 0 and udf_total != old_udf

        reasons = []
        if udf_changed and not udf_matches:
            reasons.append(AuditReason.UDF_CHANGE)
        if existing and existing["audit_status"] == "audited":
            reasons.append(AuditReason.AUDITED_EDIT)
        if voucher.date and voucher.date > date.today().isoformat():
            reasons.append(AuditReason.POST_DATED)

        kept = []
        if existing and existing["audit_reason"]:
            kept = [
                r for r in existing["audit_reason"].split(",")
                if r and not (r == AuditReason.UDF_CHANGE and udf_matches)
            ]
        merged = list(dict.fromkeys(kept + reasons))

        if reasons:
            flag = True
        else:
            flag = bool(existing["audit_flag"]) if existing else False
        return flag, ",".join(merged) or None

    async def upsert_voucher(self, voucher: Voucher) -> UpsertOutcome:
        """Insert a new voucher or apply a newer revision of a known one

        A revision whose change_sequence is not above the stored one is
        ignored, so repeating an upsert changes nothing. A newer revision
        of a soft-deleted or converted row brings it back to active, since
        Tally has just shown that it exists.
        """
        now = get_current_timestamp()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT change_sequence, udf_payment_total, audit_status, audit_reason, audit_flag "
                "FROM vouchers WHERE global_id = ?",
                (voucher.global_id,),
            )
            existing = await cursor.fetchone()
            if existing is not None and voucher.change_sequence <= existing["change_sequence"]:
                return UpsertOutcome.UNCHANGED

            audit_flag, audit_reason = self._audit_reasons(voucher, dict(existing) if existing else None)
            values = (
                voucher.global_id, voucher.remote_id, voucher.change_sequence, voucher.kind,
                voucher.number, voucher.date, voucher.counterparty_name, voucher.amount,
                voucher.note, voucher.created_at or voucher.date, voucher.last_modified_at,
                voucher.entry_time, voucher.udf_payment_total, voucher.pay_cash, voucher.pay_qr,
                voucher.pay_cheque, voucher.pay_discount, voucher.pay_esewa, voucher.pay_bank_deposit,
                int(audit_flag), audit_reason, now, now,
            )
            updates = ", ".join(
                f"{column} = excluded.{column}"
                for column in SYNCED_COLUMNS
                if column not in ("global_id", "created_at")
            )
            await conn.execute(
                f"INSERT INTO vouchers ({', '.join(SYNCED_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in SYNCED_COLUMNS)}) "
                f"ON CONFLICT(global_id) DO UPDATE SET {updates}, "
                "is_deleted = 0, delete_reason = NULL, deleted_at = NULL, "
                "is_converted = 0, converted_to_kind = NULL, converted_to_global_id = NULL, converted_at = NULL "
                "WHERE excluded.change_sequence > vouchers.change_sequence",
                values,
            )
            if voucher.line_items:
                await self._replace_line_items(conn, voucher.global_id, voucher.line_items)

        return UpsertOutcome.INSERTED if existing is None else UpsertOutcome.UPDATED

    async def get_voucher_by_global_id(self, global_id: str) -> Optional[Voucher]:
        row = await self._fetch_one("SELECT * FROM vouchers WHERE global_id = ?", (global_id,))
        if row is None:
            return None
        return self._row_to_voucher(row, await self.get_line_items(global_id))

    async def get_local_status(self, global_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            "SELECT payment_status, amount_received, dispatch_status, audit_status "
            "FROM vouchers WHERE global_id = ?",
            (global_id,),
        )

    async def get_voucher_count(self, include_inactive: bool = False) -> int:
        query = "SELECT COUNT(*) AS n FROM vouchers"
        if not include_inactive:
            query += " WHERE is_deleted = 0 AND is_converted = 0"
        row = await self._fetch_one(query)
        return row["n"] if row else 0

    async def list_identities_for_reconciliation(self, kinds: Optional[List[str]] = None) -> List[VoucherIdentity]:
        """Active vouchers only; soft-deleted and converted rows are settled"""
        query = "SELECT global_id, remote_id, kind, number FROM vouchers WHERE is_deleted = 0 AND is_converted = 0"
        params: Tuple = ()
        if kinds:
            query += f" AND kind IN ({', '.join('?' for _ in kinds)})"
            params = tuple(kinds)
        rows = await self._fetch_all(query, params)
        return [VoucherIdentity(**row) for row in rows]

    async def list_conversion_candidates(
        self,
        counterparty_name: str,
        since_date: str,
        kinds: Optional[List[str]] = None,
        exclude_global_ids: Iterable[str] = (),
    ) -> List[Voucher]:
        """Active vouchers of the same party dated on or after ``since_date``"""
        query = (
            "SELECT * FROM vouchers WHERE is_deleted = 0 AND is_converted = 0 "
            "AND counterparty_name = ? AND voucher_date >= ?"
        )
        params: List[Any] = [counterparty_name, since_date]
        if kinds:
            query += f" AND kind IN ({', '.join('?' for _ in kinds)})"
            params.extend(kinds)
        excluded = list(exclude_global_ids)
        if excluded:
            query += f" AND global_id NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)
        query += " ORDER BY voucher_date, change_sequence"
        rows = await self._fetch_all(query, tuple(params))
        return [self._row_to_voucher(row) for row in rows]

    async def update_voucher_kind(self, global_id: str, kind: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE vouchers SET kind = ?, updated_at = ? WHERE global_id = ? AND kind != ?",
                (kind, get_current_timestamp(), global_id, kind),
            )
            return cursor.rowcount > 0

    async def mark_deleted(self, global_ids: List[str], reason: str) -> Dict[str, int]:
        """Soft-delete a batch of active vouchers in one transaction

        Returns {deleted, skipped, errors}. Rows that are already deleted
        or converted are skipped. If the batch fails it is rolled back and
        every id is counted under errors.
        """
        if not global_ids:
            return {"deleted": 0, "skipped": 0, "errors": 0}
        now = get_current_timestamp()
        deleted = 0
        try:
            async with self.transaction() as conn:
                for global_id in global_ids:
                    cursor = await conn.execute(
                        "UPDATE vouchers SET is_deleted = 1, delete_reason = ?, deleted_at = ?, updated_at = ? "
                        "WHERE global_id = ? AND is_deleted = 0 AND is_converted = 0",
                        (reason, now, now, global_id),
                    )
                    deleted += cursor.rowcount
        except aiosqlite.Error as e:
            logger.error(f"mark_deleted rolled back for {len(global_ids)} voucher(s): {e}")
            return {"deleted": 0, "skipped": 0, "errors": len(global_ids)}
        return {"deleted": deleted, "skipped": len(global_ids) - deleted, "errors": 0}

    async def mark_converted(self, global_id: str, new_kind: str, target_global_id: Optional[str] = None) -> bool:
        """Flag an active voucher as converted; returns False if it was not active"""
        now = get_current_timestamp()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE vouchers SET is_converted = 1, converted_to_kind = ?, converted_to_global_id = ?, "
                "converted_at = ?, updated_at = ? "
                "WHERE global_id = ? AND is_deleted = 0 AND is_converted = 0",
                (new_kind, target_global_id, now, now, global_id),
            )
            return cursor.rowcount > 0

    async def purge_deleted(self, global_ids: Optional[List[str]] = None) -> int:
        """Hard-delete rows that are already soft-deleted, with their line items"""
        condition = "is_deleted = 1"
        params: Tuple = ()
        if global_ids is not None:
            if not global_ids:
                return 0
            condition += f" AND global_id IN ({', '.join('?' for _ in global_ids)})"
            params = tuple(global_ids)
        async with self.transaction() as conn:
            await conn.execute(
                f"DELETE FROM line_items WHERE global_id IN (SELECT global_id FROM vouchers WHERE {condition})",
                params,
            )
            cursor = await conn.execute(f"DELETE FROM vouchers WHERE {condition}", params)
            purged = cursor.rowcount
        logger.info(f"Purged {purged} soft-deleted voucher(s)")
        return purged

    async def update_local_status(self, global_id: str, update: LocalStatusUpdate) -> bool:
        fields = update.model_dump(exclude_none=True)
        if not fields:
            return False
        assignments = ", ".join(f"{name} = ?" for name in fields)
        async with self.transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE vouchers SET {assignments}, updated_at = ? WHERE global_id = ?",
                (*fields.values(), get_current_timestamp(), global_id),
            )
            return cursor.rowcount > 0

    # ============== Line items ==============

    @staticmethod
    async def _replace_line_items(conn: aiosqlite.Connection, global_id: str, items: List[LineItem]) -> None:
        await conn.execute("DELETE FROM line_items WHERE global_id = ?", (global_id,))
        await conn.executemany(
            "INSERT INTO line_items (global_id, position, item_name, quantity, unit, rate, amount, godown) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (global_id, position, item.item_name, item.quantity, item.unit, item.rate, item.amount, item.godown)
                for position, item in enumerate(items)
            ],
        )

    async def replace_line_items(self, global_id: str, items: List[LineItem]) -> int:
        """Drop every cached line item of the voucher and store ``items`` instead"""
        async with self.transaction() as conn:
            await self._replace_line_items(conn, global_id, items)
        return len(items)

    async def get_line_items(self, global_id: str) -> List[LineItem]:
        rows = await self._fetch_all(
            "SELECT item_name, quantity, unit, rate, amount, godown FROM line_items "
            "WHERE global_id = ? ORDER BY position",
            (global_id,),
        )
        return [LineItem(**row) for row in rows]

    # ============== Cursors ==============

    async def get_cursor(self, entity: str) -> int:
        row = await self._fetch_one("SELECT last_seen_sequence FROM sync_cursor WHERE entity = ?", (entity,))
        return row["last_seen_sequence"] if row else 0

    async def set_cursor(self, entity: str, value: int) -> int:
        """Move the cursor forward to ``value``; a smaller value leaves it where it is"""
        async with self.transaction() as conn:
            await conn.execute(
                "INSERT INTO sync_cursor (entity, last_seen_sequence, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(entity) DO UPDATE SET "
                "last_seen_sequence = MAX(sync_cursor.last_seen_sequence, excluded.last_seen_sequence), "
                "updated_at = excluded.updated_at",
                (entity, int(value), get_current_timestamp()),
            )
            cursor = await conn.execute("SELECT last_seen_sequence FROM sync_cursor WHERE entity = ?", (entity,))
            row = await cursor.fetchone()
        return row["last_seen_sequence"]

    # ============== Master data ==============

    async def upsert_stock_items(self, items: List[StockItem]) -> int:
        if not items:
            return 0
        now = get_current_timestamp()
        columns = list(StockItem.model_fields) + ["synced_at"]
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "name")
        async with self.transaction() as conn:
            await conn.executemany(
                f"INSERT INTO stock_items ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(name) DO UPDATE SET {updates}",
                [tuple(item.model_dump().values()) + (now,) for item in items],
            )
        return len(items)

    async def upsert_parties(self, parties: List[Party]) -> int:
        if not parties:
            return 0
        now = get_current_timestamp()
        columns = list(Party.model_fields) + ["synced_at"]
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "name")
        async with self.transaction() as conn:
            await conn.executemany(
                f"INSERT INTO parties ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
                f"ON CONFLICT(name) DO UPDATE SET {updates}",
                [tuple(party.model_dump().values()) + (now,) for party in parties],
            )
        return len(parties)

    async def get_table_counts(self) -> Dict[str, int]:
        counts = {}
        for table in ("vouchers", "line_items", "stock_items", "parties", "pending_vouchers"):
            row = await self._fetch_one(f"SELECT COUNT(*) AS n FROM {table}")
            counts[table] = row["n"] if row else 0
        return counts

    # ============== Pending vouchers ==============

    async def queue_pending_voucher(self, draft: VoucherDraft, error: str) -> int:
        """Keep a voucher that could not be pushed so master sync can retry it"""
        now = get_current_timestamp()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "INSERT INTO pending_vouchers (payload, status, last_error, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (draft.model_dump_json(), PendingStatus.PENDING, error, now, now),
            )
            return cursor.lastrowid

    async def list_pending_vouchers(self, status: str = PendingStatus.PENDING) -> List[Dict[str, Any]]:
        rows = await self._fetch_all(
            "SELECT * FROM pending_vouchers WHERE status = ? ORDER BY id", (status,)
        )
        for row in rows:
            row["draft"] = VoucherDraft.model_validate_json(row.pop("payload"))
        return rows

    async def update_pending_voucher(
        self, pending_id: int, status: str, remote_id: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        async with self.transaction() as conn:
            await conn.execute(
                "UPDATE pending_vouchers SET status = ?, remote_id = COALESCE(?, remote_id), "
                "last_error = ?, attempts = attempts + 1, updated_at = ? WHERE id = ?",
                (status, remote_id, error, get_current_timestamp(), pending_id),
            )

    # ============== Sync state ==============

    async def get_sync_state(self) -> Dict[str, Any]:
        row = await self._fetch_one("SELECT status, last_error, last_sync_at, last_run_summary FROM sync_state WHERE id = 1")
        if row is None:
            return {"status": "idle", "last_error": None, "last_sync_at": None, "last_run_summary": None}
        if row["last_run_summary"]:
            row["last_run_summary"] = json.loads(row["last_run_summary"])
        return row

    async def save_sync_state(
        self,
        status: str,
        last_error: Optional[str] = None,
        last_sync_at: Optional[str] = None,
        last_run_summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Persist the run state; last_sync_at and the summary are kept when not given"""
        summary = json.dumps(last_run_summary, default=str) if last_run_summary is not None else None
        async with self.transaction() as conn:
            await conn.execute(
                "INSERT INTO sync_state (id, status, last_error, last_sync_at, last_run_summary) "
                "VALUES (1, ?, ?, ?, ?) ON CONFLICT(id) DO UPDATE SET "
                "status = excluded.status, last_error = excluded.last_error, "
                "last_sync_at = COALESCE(excluded.last_sync_at, sync_state.last_sync_at), "
                "last_run_summary = COALESCE(excluded.last_run_summary, sync_state.last_run_summary)",
                (status, last_error, last_sync_at, summary),
            )

    async def get_full_sync_progress(self) -> Optional[Dict[str, Any]]:
        return await self._fetch_one(
            f"SELECT {', '.join(FULL_SYNC_FIELDS)} FROM full_sync_progress WHERE id = 1"
        )

    async def save_full_sync_progress(self, progress: Dict[str, Any]) -> None:
        values = [progress.get(field) for field in FULL_SYNC_FIELDS]
        async with self.transaction() as conn:
            await conn.execute(
                f"INSERT OR REPLACE INTO full_sync_progress (id, {', '.join(FULL_SYNC_FIELDS)}) "
                f"VALUES (1, {', '.join('?' for _ in FULL_SYNC_FIELDS)})",
                values,
            )
