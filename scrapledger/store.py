"""SQLite-backed ledger store.

The store is the system of record for items, bills, bill lines, weight
settings, the sync queue and bill edit history. It owns one connection
guarded by a re-entrant lock: every public operation runs as a single
transaction under that lock, so bill numbering, the header insert and
the line inserts commit together or not at all.
"""

import json
import logging
import re
import sqlite3
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from .errors import (
    ConfigurationError,
    LedgerError,
    NotFoundError,
    PersistenceError,
    ReferentialIntegrityError,
    ValidationError,
)
from .history import snapshot_bill
from .models import (
    DEFAULT_CUSTOMER_NAME,
    MODE_L,
    MODE_NORMAL,
    UNIT_COUNT,
    UNIT_TYPES,
    UNIT_WEIGHT,
    Bill,
    BillHeader,
    BillLine,
    BillListing,
    BottleType,
    CountLine,
    Item,
    LineInput,
    WeightLine,
    to_decimal,
)
from .numbering import DEFAULT_TAG, bill_prefix, next_bill_number
from .weight import (
    DEFAULT_REDUCTION_FACTOR,
    check_reduction_factor,
    compute_count_line,
    compute_weight_line,
    round2,
    sum_entries,
)

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

REDUCTION_SETTING_KEY = "l_mode_reduction_per_kg"
REDUCTION_SETTING_DESCRIPTION = "Weight reduced per 1kg in L mode (e.g., 0.1 = 100g reduction)"

DEFAULT_BOTTLE_WEIGHT = Decimal('0.3')

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
# Every column besides the first-generation keys must stay valid for
# ``ALTER TABLE ... ADD COLUMN`` so old databases can be migrated in place.

ITEM_COLUMN_DEFINITIONS: dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "name": "TEXT UNIQUE NOT NULL",
    "unit_type": "TEXT DEFAULT 'weight'",
    "last_price_per_kg": "REAL DEFAULT 0",
    "last_price_per_unit": "REAL DEFAULT 0",
    "sync_uuid": "TEXT",
    "item_code": "TEXT",
    "created_at": "TEXT",
}

BILL_COLUMN_DEFINITIONS: dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "bill_number": "TEXT UNIQUE NOT NULL",
    "customer_name": f"TEXT DEFAULT '{DEFAULT_CUSTOMER_NAME}'",
    "customer_phone": "TEXT DEFAULT ''",
    "total_amount": "REAL NOT NULL DEFAULT 0",
    "date": "TEXT",
    "is_synced": "INTEGER NOT NULL DEFAULT 0",
    "sync_attempts": "INTEGER NOT NULL DEFAULT 0",
    "last_sync_attempt": "TEXT",
    "sync_uuid": "TEXT",
    "revision": "INTEGER NOT NULL DEFAULT 0",
}

BILL_ITEM_COLUMN_DEFINITIONS: dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "bill_id": "INTEGER NOT NULL",
    "item_id": "INTEGER NOT NULL",
    "original_weight": "REAL DEFAULT 0",
    "l_weight": "REAL DEFAULT 0",
    "quantity": "INTEGER DEFAULT 1",
    "final_weight": "REAL NOT NULL DEFAULT 0",
    "weight_mode": "TEXT DEFAULT 'normal'",
    "price_per_kg": "REAL DEFAULT 0",
    "price_per_unit": "REAL DEFAULT 0",
    "amount": "REAL NOT NULL DEFAULT 0",
    "reduced_weight": "REAL DEFAULT 0",
    "reduction_factor": "REAL DEFAULT 0",
}

BOTTLE_TYPE_COLUMN_DEFINITIONS: dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "name": "TEXT UNIQUE NOT NULL",
    "display_name": "TEXT NOT NULL",
    "standard_weight": "REAL DEFAULT 0",
    "price_per_unit": "REAL DEFAULT 0",
    "created_at": "TEXT",
}

WEIGHT_SETTING_COLUMN_DEFINITIONS: dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "setting_key": "TEXT UNIQUE NOT NULL",
    "setting_value": "REAL DEFAULT 0",
    "description": "TEXT",
    "updated_at": "TEXT",
}

SYNC_QUEUE_COLUMN_DEFINITIONS: dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "bill_id": "INTEGER NOT NULL",
    "operation": "TEXT NOT NULL",
    "data": "TEXT NOT NULL",
    "created_at": "TEXT",
}

EDIT_HISTORY_COLUMN_DEFINITIONS: dict[str, str] = {
    "id": "INTEGER PRIMARY KEY AUTOINCREMENT",
    "bill_id": "INTEGER NOT NULL",
    "previous_data": "TEXT",
    "new_data": "TEXT",
    "created_at": "TEXT",
}

TABLES: list[tuple[str, dict[str, str], tuple[str, ...]]] = [
    ("items", ITEM_COLUMN_DEFINITIONS, ()),
    ("bills", BILL_COLUMN_DEFINITIONS, ()),
    ("bill_items", BILL_ITEM_COLUMN_DEFINITIONS, (
        "FOREIGN KEY (bill_id) REFERENCES bills(id) ON DELETE CASCADE",
        "FOREIGN KEY (item_id) REFERENCES items(id)",
    )),
    ("bottle_types", BOTTLE_TYPE_COLUMN_DEFINITIONS, ()),
    ("weight_settings", WEIGHT_SETTING_COLUMN_DEFINITIONS, ()),
    ("sync_queue", SYNC_QUEUE_COLUMN_DEFINITIONS, (
        "FOREIGN KEY (bill_id) REFERENCES bills(id) ON DELETE CASCADE",
    )),
    ("bill_edit_history", EDIT_HISTORY_COLUMN_DEFINITIONS, (
        "FOREIGN KEY (bill_id) REFERENCES bills(id) ON DELETE CASCADE",
    )),
]

INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_bills_is_synced ON bills(is_synced)",
    "CREATE INDEX IF NOT EXISTS idx_bills_date ON bills(date)",
    "CREATE INDEX IF NOT EXISTS idx_bill_items_bill_id ON bill_items(bill_id)",
    "CREATE INDEX IF NOT EXISTS idx_bill_items_item_id ON bill_items(item_id)",
    "CREATE INDEX IF NOT EXISTS idx_sync_queue_bill_id ON sync_queue(bill_id)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_items_sync_uuid ON items(sync_uuid)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_bills_sync_uuid ON bills(sync_uuid)",
)


def generate_item_code(name: str, item_id: Optional[int] = None) -> str:
    """Short item code: first 8 upper-case alphanumerics plus the id."""
    base = re.sub(r"[^A-Z0-9]", "", name.upper())[:8]
    if item_id:
        return f"{base}{item_id}"[:10]
    return base[:10]


def normalize_bottle_name(name: str) -> str:
    return re.sub(r"\s+", "_", (name or "").strip().lower())


def parse_amount(value, label: str) -> Decimal:
    """Non-negative finite Decimal from caller input.

    Raises:
        ValidationError: If the value is not a number or is negative.
    """
    try:
        amount = to_decimal(value)
    except (ArithmeticError, ValueError) as e:
        raise ValidationError(f"{label} must be a number, got {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"{label} must be a number, got {value!r}")
    if amount < 0:
        raise ValidationError(f"{label} must not be negative")
    return amount


def _create_table_sql(table: str, columns: dict[str, str], constraints: tuple[str, ...]) -> str:
    parts = [f"{column} {definition}" for column, definition in columns.items()]
    parts.extend(constraints)
    body = ",\n        ".join(parts)
    return f"CREATE TABLE IF NOT EXISTS {table} (\n        {body}\n    )"


class LedgerStore:
    """Durable access to the local ledger.

    Lifecycle is ``open -> migrate -> ready -> close``. Construct one
    store per database and pass it to every component that needs it.

    Args:
        path: SQLite file path, or ":memory:".
        clock: Returns the current local time; injectable for tests.
        bill_tag: Fixed tag at the start of every bill number.
    """

    def __init__(
        self,
        path: Union[str, Path] = MEMORY_PATH,
        clock: Optional[Callable[[], datetime]] = None,
        bill_tag: str = DEFAULT_TAG,
    ):
        self.path = str(path)
        self.bill_tag = bill_tag
        self._clock = clock or datetime.now
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._ready = threading.Event()
        self._ready_callbacks: list[Callable[["LedgerStore"], None]] = []
        self._callbacks_lock = threading.Lock()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def open(self) -> "LedgerStore":
        """Connect, migrate the schema and mark the store ready.

        Raises:
            PersistenceError: If the database cannot be opened or migrated.
        """
        with self._lock:
            if self._conn is not None:
                return self
            try:
                if self.path != MEMORY_PATH:
                    Path(self.path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.path, isolation_level=None, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
            except (sqlite3.Error, OSError) as e:
                raise PersistenceError(f"Failed to open ledger at {self.path}", e) from e

            self._conn = conn
            try:
                self.migrate()
            except PersistenceError:
                self._conn = None
                conn.close()
                raise

        logger.info(f"Ledger store ready at {self.path}")
        self._mark_ready()
        return self

    def open_async(self) -> Future:
        """Open the store on a background thread.

        Returns:
            A Future resolving to the store once it is ready, or to the
            PersistenceError that stopped it.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ledger-open")
        try:
            return executor.submit(self.open)
        finally:
            executor.shutdown(wait=False)

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    def add_ready_callback(self, callback: Callable[["LedgerStore"], None]) -> None:
        """Call ``callback(store)`` once the store is ready.

        Late subscribers are called immediately.
        """
        with self._callbacks_lock:
            if not self._ready.is_set():
                self._ready_callbacks.append(callback)
                return
        callback(self)

    def _mark_ready(self) -> None:
        with self._callbacks_lock:
            self._ready.set()
            callbacks, self._ready_callbacks = self._ready_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Ledger ready callback failed")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self._ready.clear()

    def __enter__(self) -> "LedgerStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -----------------------------------------------------------------------
    # Connection helpers
    # -----------------------------------------------------------------------

    def _require(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError("Ledger store is not open")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block as one write transaction under the writer lock.

        Ledger errors raised inside the block roll back and propagate
        unchanged; SQLite failures roll back and surface as
        PersistenceError.
        """
        with self._lock:
            conn = self._require()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise PersistenceError("Failed to start transaction", e) from e
            try:
                yield conn
                conn.execute("COMMIT")
            except LedgerError:
                conn.execute("ROLLBACK")
                raise
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise PersistenceError("Ledger write failed", e) from e
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._require()
            try:
                yield conn
            except sqlite3.Error as e:
                raise PersistenceError("Ledger read failed", e) from e

    def _now(self) -> str:
        return self._clock().isoformat(timespec="seconds")

    def today(self) -> date:
        """Current local day according to the store's clock."""
        return self._clock().date()

    # -----------------------------------------------------------------------
    # Schema migration
    # -----------------------------------------------------------------------

    def migrate(self) -> list[str]:
        """Create missing tables and add missing columns.

        Only additive changes are made, so this is safe to run on every
        start-up.

        Returns:
            ``table.column`` names that were added to existing tables.
        """
        added: list[str] = []
        with self.transaction() as conn:
            for table, columns, constraints in TABLES:
                conn.execute(_create_table_sql(table, columns, constraints))
                existing = {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}
                for column, definition in columns.items():
                    if column not in existing:
                        logger.info(f"Adding {column} column to {table} table")
                        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
                        added.append(f"{table}.{column}")

            self._backfill(conn)
            for statement in INDEXES:
                conn.execute(statement)

            conn.execute(
                "INSERT OR IGNORE INTO weight_settings "
                "(setting_key, setting_value, description, updated_at) VALUES (?, ?, ?, ?)",
                (REDUCTION_SETTING_KEY, float(DEFAULT_REDUCTION_FACTOR),
                 REDUCTION_SETTING_DESCRIPTION, self._now()),
            )
        return added

    def _backfill(self, conn: sqlite3.Connection) -> None:
        rows = conn.execute("SELECT id, name FROM items WHERE item_code IS NULL").fetchall()
        for row in rows:
            conn.execute("UPDATE items SET item_code = ? WHERE id = ?",
                         (generate_item_code(row["name"], row["id"]), row["id"]))

        for table in ("items", "bills"):
            rows = conn.execute(f"SELECT id FROM {table} WHERE sync_uuid IS NULL").fetchall()
            for row in rows:
                conn.execute(f"UPDATE {table} SET sync_uuid = ? WHERE id = ?",
                             (str(uuid.uuid4()), row["id"]))
            if rows:
                logger.info(f"Populated sync_uuid for {len(rows)} existing {table}")

    def reset(self) -> None:
        """Drop every ledger table and recreate the empty schema."""
        with self.transaction() as conn:
            for table, _, _ in reversed(TABLES):
                conn.execute(f"DROP TABLE IF EXISTS {table}")
        logger.info("Ledger reset")
        self.migrate()

    # -----------------------------------------------------------------------
    # Weight settings
    # -----------------------------------------------------------------------

    def _reduction_factor(self, conn: sqlite3.Connection) -> Decimal:
        row = conn.execute(
            "SELECT setting_value FROM weight_settings WHERE setting_key = ?",
            (REDUCTION_SETTING_KEY,),
        ).fetchone()
        if row is None or row["setting_value"] is None:
            return DEFAULT_REDUCTION_FACTOR
        return to_decimal(row["setting_value"])

    def get_weight_reduction(self) -> Decimal:
        """Current L-mode reduction factor, 0.1 when unset."""
        with self._reading() as conn:
            return self._reduction_factor(conn)

    def set_weight_reduction(self, reduction) -> Decimal:
        """Store a new L-mode reduction factor.

        Raises:
            ConfigurationError: If the factor is outside [0, 1).
        """
        try:
            factor = check_reduction_factor(reduction)
        except (ArithmeticError, ValueError) as e:
            raise ConfigurationError(f"Invalid reduction factor: {reduction}") from e
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO weight_settings (setting_key, setting_value, description, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(setting_key) DO UPDATE SET "
                "setting_value = excluded.setting_value, updated_at = excluded.updated_at",
                (REDUCTION_SETTING_KEY, float(factor), REDUCTION_SETTING_DESCRIPTION, self._now()),
            )
        logger.info(f"L-mode reduction factor set to {factor}")
        return factor

    # -----------------------------------------------------------------------
    # Items
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> Item:
        return Item(
            id=row["id"],
            name=row["name"],
            unit_type=row["unit_type"] or UNIT_WEIGHT,
            last_price_per_kg=row["last_price_per_kg"],
            last_price_per_unit=row["last_price_per_unit"],
            item_code=row["item_code"],
            sync_uuid=row["sync_uuid"],
            created_at=row["created_at"],
        )

    def _fetch_item(self, conn: sqlite3.Connection, item_id: int) -> Optional[Item]:
        row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(row) if row else None

    @staticmethod
    def _is_referenced(conn: sqlite3.Connection, item_id: int) -> bool:
        row = conn.execute(
            "SELECT COUNT(*) AS count FROM bill_items WHERE item_id = ?", (item_id,)
        ).fetchone()
        return row["count"] > 0

    def get_item(self, item_id: int) -> Optional[Item]:
        with self._reading() as conn:
            return self._fetch_item(conn, item_id)

    def get_item_by_name(self, name: str) -> Optional[Item]:
        with self._reading() as conn:
            row = conn.execute("SELECT * FROM items WHERE name = ?", (name,)).fetchone()
            return self._row_to_item(row) if row else None

    def get_all_items(self) -> list[Item]:
        with self._reading() as conn:
            rows = conn.execute("SELECT * FROM items ORDER BY name ASC").fetchall()
            return [self._row_to_item(row) for row in rows]

    def add_item(self, name: str, price=0, unit_type: str = UNIT_WEIGHT) -> Item:
        """Create an item with its initial price.

        Raises:
            ValidationError: On an empty or duplicate name, an unknown
                unit type or a negative price.
        """
        safe_name = (name or "").strip()
        if not safe_name:
            raise ValidationError("Item name cannot be empty")
        if unit_type not in UNIT_TYPES:
            raise ValidationError(f"Unknown unit type: {unit_type}")
        price = parse_amount(price, "Item price")

        price_column = "last_price_per_unit" if unit_type == UNIT_COUNT else "last_price_per_kg"
        with self.transaction() as conn:
            if conn.execute("SELECT id FROM items WHERE name = ?", (safe_name,)).fetchone():
                raise ValidationError("Item with this name already exists")
            cursor = conn.execute(
                f"INSERT INTO items (name, unit_type, {price_column}, sync_uuid, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (safe_name, unit_type, float(price), str(uuid.uuid4()), self._now()),
            )
            item_id = cursor.lastrowid
            conn.execute("UPDATE items SET item_code = ? WHERE id = ?",
                         (generate_item_code(safe_name, item_id), item_id))
            return self._fetch_item(conn, item_id)

    def update_item_price(self, item_id: int, price, unit_type: Optional[str] = None) -> None:
        """Overwrite an item's cached price for its unit type."""
        price = parse_amount(price, "Item price")
        with self.transaction() as conn:
            item = self._fetch_item(conn, item_id)
            if item is None:
                raise NotFoundError(f"Item {item_id} not found")
            unit_type = unit_type or item.unit_type
            column = "last_price_per_unit" if unit_type == UNIT_COUNT else "last_price_per_kg"
            conn.execute(f"UPDATE items SET {column} = ? WHERE id = ?", (float(price), item_id))

    def update_item(
        self,
        item_id: int,
        name: Optional[str] = None,
        unit_type: Optional[str] = None,
        last_price_per_kg=None,
        last_price_per_unit=None,
    ) -> Item:
        """Edit item fields; only the given fields change.

        Raises:
            NotFoundError: If the item does not exist.
            ValidationError: On invalid values or a duplicate name.
            ReferentialIntegrityError: When changing the unit type of an
                item that bill lines already reference.
        """
        updates: dict[str, object] = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Item name cannot be empty")
            updates["name"] = name
        if unit_type is not None:
            if unit_type not in UNIT_TYPES:
                raise ValidationError(f"Unknown unit type: {unit_type}")
            updates["unit_type"] = unit_type
        for column, value in (("last_price_per_kg", last_price_per_kg),
                              ("last_price_per_unit", last_price_per_unit)):
            if value is not None:
                updates[column] = float(parse_amount(value, "Item price"))

        with self.transaction() as conn:
            item = self._fetch_item(conn, item_id)
            if item is None:
                raise NotFoundError(f"Item {item_id} not found")
            if not updates:
                return item
            if "name" in updates and updates["name"] != item.name:
                clash = conn.execute("SELECT id FROM items WHERE name = ? AND id != ?",
                                     (updates["name"], item_id)).fetchone()
                if clash:
                    raise ValidationError("Item with this name already exists")
            if ("unit_type" in updates and updates["unit_type"] != item.unit_type
                    and self._is_referenced(conn, item_id)):
                raise ReferentialIntegrityError(
                    "Cannot change unit type. Item is used in existing bills."
                )
            assignments = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(f"UPDATE items SET {assignments} WHERE id = ?",
                         (*updates.values(), item_id))
            return self._fetch_item(conn, item_id)

    def delete_item(self, item_id: int) -> None:
        """Delete an item no bill line references.

        Raises:
            ReferentialIntegrityError: If any bill line references it.
        """
        with self.transaction() as conn:
            if self._is_referenced(conn, item_id):
                raise ReferentialIntegrityError(
                    "Cannot delete item. It is used in existing bills."
                )
            conn.execute("DELETE FROM items WHERE id = ?", (item_id,))

    def delete_items(self, item_ids: list[int]) -> None:
        """Delete several items; nothing is deleted if any is referenced."""
        with self.transaction() as conn:
            for item_id in item_ids:
                if self._is_referenced(conn, item_id):
                    raise ReferentialIntegrityError(
                        f"Cannot delete item with ID {item_id}. It is used in existing bills."
                    )
            conn.executemany("DELETE FROM items WHERE id = ?", [(i,) for i in item_ids])

    # -----------------------------------------------------------------------
    # Bottle types
    # -----------------------------------------------------------------------

    @staticmethod
    def _row_to_bottle(row: sqlite3.Row) -> BottleType:
        return BottleType(
            id=row["id"],
            name=row["name"],
            display_name=row["display_name"],
            standard_weight=row["standard_weight"],
            price_per_unit=row["price_per_unit"],
            created_at=row["created_at"],
        )

    def get_bottle_types(self) -> list[BottleType]:
        with self._reading() as conn:
            rows = conn.execute("SELECT * FROM bottle_types ORDER BY name").fetchall()
            return [self._row_to_bottle(row) for row in rows]

    def add_bottle_type(self, name: str, display_name: str, price=0,
                        weight=DEFAULT_BOTTLE_WEIGHT) -> BottleType:
        """Add or update a bottle type and its matching count item."""
        safe_name = normalize_bottle_name(name)
        safe_display = (display_name or "").strip()
        if not safe_name or not safe_display:
            raise ValidationError("Bottle name and display name are required")
        price = parse_amount(price, "Bottle price")
        weight = parse_amount(weight, "Bottle weight")

        with self.transaction() as conn:
            now = self._now()
            conn.execute(
                "INSERT INTO bottle_types (name, display_name, standard_weight, price_per_unit, created_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET display_name = excluded.display_name, "
                "standard_weight = excluded.standard_weight, price_per_unit = excluded.price_per_unit",
                (safe_name, safe_display, float(weight), float(price), now),
            )
            item = conn.execute("SELECT * FROM items WHERE name = ?", (safe_name,)).fetchone()
            if item is None:
                cursor = conn.execute(
                    "INSERT INTO items (name, unit_type, last_price_per_unit, sync_uuid, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (safe_name, UNIT_COUNT, float(price), str(uuid.uuid4()), now),
                )
                conn.execute("UPDATE items SET item_code = ? WHERE id = ?",
                             (generate_item_code(safe_display, cursor.lastrowid), cursor.lastrowid))
            elif item["unit_type"] != UNIT_COUNT:
                raise ValidationError(f"A weight item named {safe_name} already exists")
            else:
                conn.execute("UPDATE items SET last_price_per_unit = ? WHERE id = ?",
                             (float(price), item["id"]))
            row = conn.execute("SELECT * FROM bottle_types WHERE name = ?", (safe_name,)).fetchone()
            return self._row_to_bottle(row)

    def delete_bottle_type(self, bottle_id: int) -> None:
        """Delete a bottle type together with its count item."""
        with self.transaction() as conn:
            bottle = conn.execute("SELECT name FROM bottle_types WHERE id = ?", (bottle_id,)).fetchone()
            if bottle is None:
                raise NotFoundError(f"Bottle type {bottle_id} not found")
            item = conn.execute("SELECT id FROM items WHERE name = ?", (bottle["name"],)).fetchone()
            if item is not None:
                if self._is_referenced(conn, item["id"]):
                    raise ReferentialIntegrityError(
                        "Cannot delete bottle type. It is used in existing bills."
                    )
                conn.execute("DELETE FROM items WHERE id = ?", (item["id"],))
            conn.execute("DELETE FROM bottle_types WHERE id = ?", (bottle_id,))

    # -----------------------------------------------------------------------
    # Bills
    # -----------------------------------------------------------------------

    def _resolve_line(self, conn: sqlite3.Connection, line: LineInput, factor: Decimal) -> BillLine:
        item = self._fetch_item(conn, line.item_id)
        if item is None:
            raise ValidationError(f"Unknown item id {line.item_id}")

        if item.unit_type == UNIT_COUNT:
            if not isinstance(line, CountLine):
                raise ValidationError(f"{item.name} is billed by count; enter a quantity")
            amount = compute_count_line(line.quantity, line.price_per_unit)
            return BillLine(
                item_id=item.id,
                item_name=item.name,
                unit_type=UNIT_COUNT,
                amount=amount,
                weight_mode=MODE_NORMAL,
                quantity=line.quantity,
                price_per_unit=line.price_per_unit,
            )

        if not isinstance(line, WeightLine):
            raise ValidationError(f"{item.name} is billed by weight; enter a weight")
        weight, mode = sum_entries(line.entries)
        if weight <= 0:
            raise ValidationError(f"Please enter weight for {item.name}")
        result = compute_weight_line(weight, mode, factor, line.price_per_kg)
        return BillLine(
            item_id=item.id,
            item_name=item.name,
            unit_type=UNIT_WEIGHT,
            amount=result.amount,
            original_weight=result.original_weight,
            l_weight=result.l_weight,
            reduced_weight=result.reduced_weight,
            final_weight=result.final_weight,
            weight_mode=mode,
            quantity=1,
            price_per_kg=line.price_per_kg,
            reduction_factor=factor if mode == MODE_L else Decimal('0'),
        )

    def _insert_lines(self, conn: sqlite3.Connection, bill_id: int, lines: list[LineInput]) -> Decimal:
        if not lines:
            raise ValidationError("A bill needs at least one line")
        factor = self._reduction_factor(conn)
        total = Decimal('0')
        for line in lines:
            resolved = self._resolve_line(conn, line, factor)
            conn.execute(
                "INSERT INTO bill_items (bill_id, item_id, original_weight, l_weight, final_weight, "
                "weight_mode, price_per_kg, price_per_unit, amount, reduced_weight, quantity, "
                "reduction_factor) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    bill_id,
                    resolved.item_id,
                    float(resolved.original_weight),
                    float(resolved.l_weight),
                    float(resolved.final_weight),
                    resolved.weight_mode,
                    float(resolved.price_per_kg),
                    float(resolved.price_per_unit),
                    float(resolved.amount),
                    float(resolved.reduced_weight),
                    resolved.quantity,
                    float(resolved.reduction_factor),
                ),
            )
            if resolved.unit_type == UNIT_COUNT:
                conn.execute("UPDATE items SET last_price_per_unit = ? WHERE id = ?",
                             (float(resolved.price_per_unit), resolved.item_id))
            else:
                conn.execute("UPDATE items SET last_price_per_kg = ? WHERE id = ?",
                             (float(resolved.price_per_kg), resolved.item_id))
            total += resolved.amount
        return round2(total)

    def _enqueue(self, conn: sqlite3.Connection, bill_id: int, operation: str) -> None:
        bill = self._load_bill(conn, bill_id)
        conn.execute(
            "INSERT INTO sync_queue (bill_id, operation, data, created_at) VALUES (?, ?, ?, ?)",
            (bill_id, operation, json.dumps(snapshot_bill(bill)), self._now()),
        )

    def save_bill(self, header: BillHeader, lines: list[LineInput]) -> int:
        """Persist a new bill and its lines atomically.

        The bill number is generated when the header has none. Line
        amounts and the total are derived here; caller totals are never
        trusted.

        Returns:
            The new bill id.

        Raises:
            ValidationError: On invalid or empty lines.
            PersistenceError: If the write fails; nothing is committed.
        """
        with self.transaction() as conn:
            moment = self._clock()
            bill_number = header.bill_number or next_bill_number(
                conn, bill_prefix(moment, self.bill_tag)
            )
            cursor = conn.execute(
                "INSERT INTO bills (bill_number, customer_name, customer_phone, total_amount, "
                "date, sync_uuid) VALUES (?, ?, ?, ?, ?, ?)",
                (bill_number, header.customer_name, header.customer_phone, 0,
                 moment.isoformat(timespec="seconds"), str(uuid.uuid4())),
            )
            bill_id = cursor.lastrowid
            total = self._insert_lines(conn, bill_id, lines)
            conn.execute("UPDATE bills SET total_amount = ? WHERE id = ?", (float(total), bill_id))
            self._enqueue(conn, bill_id, "create")

        logger.info(f"Saved bill {bill_number} (id={bill_id}, total={total})")
        return bill_id

    def update_bill(self, bill_id: int, header: BillHeader, lines: list[LineInput]) -> Bill:
        """Replace a bill's lines and header, recomputing its total.

        Any edit marks the bill unsynced again and records a before/after
        snapshot in the edit history.

        Raises:
            NotFoundError: If the bill does not exist.
            ValidationError: On invalid or empty lines.
            PersistenceError: If the write fails; nothing is committed.
        """
        with self.transaction() as conn:
            previous = self._load_bill(conn, bill_id)
            if previous is None:
                raise NotFoundError(f"Bill {bill_id} not found")

            conn.execute("DELETE FROM bill_items WHERE bill_id = ?", (bill_id,))
            total = self._insert_lines(conn, bill_id, lines)
            conn.execute(
                "UPDATE bills SET bill_number = ?, customer_name = ?, customer_phone = ?, "
                "total_amount = ?, is_synced = 0, sync_attempts = 0, revision = revision + 1 WHERE id = ?",
                (header.bill_number or previous.bill_number, header.customer_name,
                 header.customer_phone, float(total), bill_id),
            )
            updated = self._load_bill(conn, bill_id)
            conn.execute(
                "INSERT INTO bill_edit_history (bill_id, previous_data, new_data, created_at) "
                "VALUES (?, ?, ?, ?)",
                (bill_id, json.dumps(snapshot_bill(previous)),
                 json.dumps(snapshot_bill(updated)), self._now()),
            )
            self._enqueue(conn, bill_id, "update")

        logger.info(f"Updated bill {updated.bill_number} (id={bill_id}, total={total})")
        return updated

    def delete_bill(self, bill_id: int) -> bool:
        """Delete a bill; its lines, queue entries and history cascade."""
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM bills WHERE id = ?", (bill_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted bill id={bill_id}")
        return deleted

    @staticmethod
    def _row_to_line(row: sqlite3.Row) -> BillLine:
        return BillLine(
            id=row["id"],
            bill_id=row["bill_id"],
            item_id=row["item_id"],
            item_name=row["item_name"],
            unit_type=row["unit_type"] or UNIT_WEIGHT,
            amount=row["amount"],
            original_weight=row["original_weight"],
            l_weight=row["l_weight"],
            reduced_weight=row["reduced_weight"],
            final_weight=row["final_weight"],
            weight_mode=row["weight_mode"] or MODE_NORMAL,
            quantity=row["quantity"],
            price_per_kg=row["price_per_kg"],
            price_per_unit=row["price_per_unit"],
            reduction_factor=row["reduction_factor"],
        )

    @staticmethod
    def _row_to_bill(row: sqlite3.Row, lines: list[BillLine]) -> Bill:
        return Bill(
            id=row["id"],
            bill_number=row["bill_number"],
            customer_name=row["customer_name"] or DEFAULT_CUSTOMER_NAME,
            customer_phone=row["customer_phone"] or "",
            total_amount=row["total_amount"],
            date=row["date"],
            is_synced=row["is_synced"],
            sync_attempts=row["sync_attempts"],
            last_sync_attempt=row["last_sync_attempt"],
            sync_uuid=row["sync_uuid"],
            revision=row["revision"],
            lines=lines,
        )

    def _load_lines(self, conn: sqlite3.Connection, bill_id: int) -> list[BillLine]:
        rows = conn.execute(
            "SELECT bi.*, i.name AS item_name, i.unit_type AS unit_type "
            "FROM bill_items bi JOIN items i ON bi.item_id = i.id "
            "WHERE bi.bill_id = ? ORDER BY bi.id",
            (bill_id,),
        ).fetchall()
        return [self._row_to_line(row) for row in rows]

    def _load_bill(self, conn: sqlite3.Connection, bill_id: int) -> Optional[Bill]:
        row = conn.execute("SELECT * FROM bills WHERE id = ?", (bill_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_bill(row, self._load_lines(conn, bill_id))

    def get_bill(self, bill_id: int) -> Optional[Bill]:
        """Bill with its lines exactly as stored."""
        with self._reading() as conn:
            return self._load_bill(conn, bill_id)

    def get_bill_details(self, bill_id: int) -> Optional[Bill]:
        """Bill with lines prepared for display.

        L-mode lines report the gross weight as final weight and an
        amount recomputed from the L weight, so the amount always
        matches the weight the customer was billed on.
        """
        bill = self.get_bill(bill_id)
        if bill is None:
            return None
        for line in bill.lines:
            if line.weight_mode == MODE_L:
                line.final_weight = line.original_weight
                line.amount = round2(line.l_weight * line.price_per_kg)
        return bill

    def get_all_bills(self) -> list[BillListing]:
        """All bills, newest first, with a one-line item summary."""
        with self._reading() as conn:
            rows = conn.execute(
                """
                SELECT
                  b.*,
                  GROUP_CONCAT(
                    CASE
                      WHEN i.unit_type = 'count' THEN i.name || ' (' || bi.quantity || ' nos)'
                      ELSE i.name || ' (' || CASE WHEN bi.weight_mode = 'L'
                        THEN bi.l_weight ELSE bi.final_weight END || ' kg)'
                    END, ', '
                  ) AS items_list,
                  COUNT(bi.id) AS item_count
                FROM bills b
                LEFT JOIN bill_items bi ON b.id = bi.bill_id
                LEFT JOIN items i ON bi.item_id = i.id
                GROUP BY b.id
                ORDER BY b.date DESC, b.id DESC
                """
            ).fetchall()
        return [
            BillListing(
                id=row["id"],
                bill_number=row["bill_number"],
                customer_name=row["customer_name"] or DEFAULT_CUSTOMER_NAME,
                customer_phone=row["customer_phone"] or "",
                total_amount=row["total_amount"],
                date=row["date"],
                is_synced=row["is_synced"],
                sync_attempts=row["sync_attempts"],
                items_list=row["items_list"] or "",
                item_count=row["item_count"],
            )
            for row in rows
        ]

    def get_bill_edit_history(self, bill_id: int) -> list[dict]:
        """Stored edit snapshots for a bill, newest first."""
        with self._reading() as conn:
            rows = conn.execute(
                "SELECT id, bill_id, previous_data, new_data, created_at "
                "FROM bill_edit_history WHERE bill_id = ? ORDER BY id DESC",
                (bill_id,),
            ).fetchall()
            return [dict(row) for row in rows]

    # -----------------------------------------------------------------------
    # Sync bookkeeping
    # -----------------------------------------------------------------------

    def _load_bills(self, conn: sqlite3.Connection, where: str, params: tuple) -> list[Bill]:
        rows = conn.execute(
            f"SELECT * FROM bills WHERE {where} ORDER BY date ASC, id ASC", params
        ).fetchall()
        return [self._row_to_bill(row, self._load_lines(conn, row["id"])) for row in rows]

    def get_unsynced_bills(self) -> list[Bill]:
        """Unsynced bills with their lines, oldest first."""
        with self._reading() as conn:
            return self._load_bills(conn, "is_synced = 0", ())

    def get_retry_eligible_bills(self, max_retries: int) -> list[Bill]:
        """Unsynced bills that have failed fewer than ``max_retries`` times."""
        with self._reading() as conn:
            return self._load_bills(conn, "is_synced = 0 AND sync_attempts < ?", (max_retries,))

    @staticmethod
    def _revision_clause(revision: Optional[int]) -> tuple[str, tuple]:
        if revision is None:
            return "", ()
        return " AND revision = ?", (revision,)

    def mark_synced(self, bill_id: int, revision: Optional[int] = None) -> bool:
        """Record a successful upload of the bill.

        When ``revision`` is given, the bill is only marked synced if it
        has not been edited since that revision was read; an edited bill
        stays pending so its new version is uploaded too.

        Returns:
            True if the bill was marked synced.
        """
        clause, params = self._revision_clause(revision)
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE bills SET is_synced = 1, sync_attempts = 0, last_sync_attempt = ? "
                f"WHERE id = ?{clause}",
                (self._now(), bill_id, *params),
            )
            if cursor.rowcount == 0:
                logger.info(f"Bill id={bill_id} changed during upload; left pending")
                return False
            conn.execute("DELETE FROM sync_queue WHERE bill_id = ?", (bill_id,))
        return True

    def mark_sync_failed(self, bill_id: int, revision: Optional[int] = None) -> bool:
        """Count a failed upload; edits made since ``revision`` keep their fresh count."""
        clause, params = self._revision_clause(revision)
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE bills SET sync_attempts = sync_attempts + 1, last_sync_attempt = ? "
                f"WHERE id = ? AND is_synced = 0{clause}",
                (self._now(), bill_id, *params),
            )
            return cursor.rowcount > 0

    def reset_sync_attempts(self, bill_id: int) -> None:
        """Make a bill that exhausted its retries eligible again."""
        with self.transaction() as conn:
            conn.execute("UPDATE bills SET sync_attempts = 0 WHERE id = ?", (bill_id,))

    def clear_sync_data(self) -> int:
        """Mark every bill unsynced and empty the sync queue.

        Returns:
            Number of bills reset.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE bills SET is_synced = 0, sync_attempts = 0, last_sync_attempt = NULL"
            )
            conn.execute("DELETE FROM sync_queue")
            count = cursor.rowcount
        logger.info(f"Cleared sync state for {count} bill(s)")
        return count

    def sync_counts(self, max_retries: int) -> dict:
        """Pending bills, queued operations and bills out of retries."""
        with self._reading() as conn:
            unsynced = conn.execute(
                "SELECT COUNT(*) AS count FROM bills WHERE is_synced = 0"
            ).fetchone()["count"]
            exhausted = conn.execute(
                "SELECT COUNT(*) AS count FROM bills WHERE is_synced = 0 AND sync_attempts >= ?",
                (max_retries,),
            ).fetchone()["count"]
            queued = conn.execute("SELECT COUNT(*) AS count FROM sync_queue").fetchone()["count"]
        return {
            'unsynced_bills': unsynced,
            'retry_exhausted_bills': exhausted,
            'queue_items': queued,
        }
