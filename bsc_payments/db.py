"""
BSC Payments - SQLite Database Layer
Schema creation and CRUD for payment orders, their audit events and scanner state.
"""

import os
import json
import sqlite3
from datetime import datetime, timezone
from contextlib import contextmanager

from . import config

# ============================================================
# Database Path
# ============================================================

DB_PATH = config.DB_PATH


class StaleOrderError(Exception):
    """Optimistic update lost: the order changed since it was read."""


def utcnow():
    return datetime.now(timezone.utc).isoformat()


# ============================================================
# Schema
# ============================================================

SCHEMA_SQL = """
-- Payment orders
CREATE TABLE IF NOT EXISTS payment_orders (
    order_id TEXT PRIMARY KEY,
    token TEXT NOT NULL,
    token_contract TEXT NOT NULL,
    treasury TEXT NOT NULL,
    amount_wei TEXT NOT NULL,
    from_address TEXT NOT NULL DEFAULT '',
    kind TEXT NOT NULL DEFAULT 'TIP',
    status TEXT NOT NULL DEFAULT 'pending',
    tx_hash TEXT NOT NULL DEFAULT '',
    tx_block_number INTEGER,
    seen_confirmations INTEGER NOT NULL DEFAULT 0,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_orders_status_updated ON payment_orders(status, updated_at);
CREATE INDEX IF NOT EXISTS idx_orders_token ON payment_orders(token);
CREATE INDEX IF NOT EXISTS idx_orders_created ON payment_orders(created_at);
-- One transaction pays at most one order
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_tx_hash ON payment_orders(tx_hash) WHERE tx_hash != '';

-- Audit trail
CREATE TABLE IF NOT EXISTS order_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id TEXT NOT NULL,
    event TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT,
    detail_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_order ON order_events(order_id);

-- Scanner state (last seen block height, last cycle summary)
CREATE TABLE IF NOT EXISTS scan_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


# ============================================================
# Connection Management
# ============================================================

def _ensure_data_dir():
    directory = os.path.dirname(DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)


def get_connection():
    """Get a SQLite connection with WAL mode."""
    _ensure_data_dir()
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def get_db():
    """Context manager for database connections with auto-commit."""
    conn = get_connection()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db():
    """Initialize database schema."""
    with get_db() as conn:
        conn.executescript(SCHEMA_SQL)


# ============================================================
# Order CRUD
# ============================================================

_ORDER_COLUMNS = {
    "status", "tx_hash", "tx_block_number", "seen_confirmations",
    "metadata_json", "from_address",
}

ACTIVE_STATUSES = ("pending", "processing")
TERMINAL_STATUSES = ("paid", "failed", "cancelled")


def insert_order(order):
    """Insert an order dict (as built by orders.create_order)."""
    with get_db() as conn:
        conn.execute("""
            INSERT INTO payment_orders
            (order_id, token, token_contract, treasury, amount_wei, from_address,
             kind, status, tx_hash, tx_block_number, seen_confirmations,
             metadata_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            order["order_id"],
            order["token"],
            order["token_contract"],
            order["treasury"],
            order["amount_wei"],
            order.get("from_address") or "",
            order.get("kind", "TIP"),
            order.get("status", "pending"),
            order.get("tx_hash") or "",
            order.get("tx_block_number"),
            order.get("seen_confirmations", 0),
            json.dumps(order.get("metadata", {})),
            order["created_at"],
            order["updated_at"],
        ))


def get_order(order_id):
    """Get a single order by id, or None."""
    with get_db() as conn:
        row = conn.execute("SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)).fetchone()
        return _order_row_to_dict(row)


def get_order_by_tx_hash(tx_hash):
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM payment_orders WHERE tx_hash = ?", ((tx_hash or "").lower(),)
        ).fetchone()
        return _order_row_to_dict(row)


def bound_tx_hashes(exclude_order_id=None):
    """Set of tx hashes already bound to an order (optionally ignoring one order)."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT order_id, tx_hash FROM payment_orders WHERE tx_hash != ''"
        ).fetchall()
        return {r["tx_hash"] for r in rows if r["order_id"] != exclude_order_id}


def list_orders(status=None, token=None, kind=None, limit=50, offset=0):
    """List orders, newest first, with optional filters."""
    with get_db() as conn:
        query = "SELECT * FROM payment_orders WHERE 1=1"
        params = []

        if status:
            query += " AND status = ?"
            params.append(status)
        if token:
            query += " AND token = ?"
            params.append(token.upper())
        if kind:
            query += " AND kind = ?"
            params.append(kind.upper())

        query += " ORDER BY created_at DESC"
        if limit:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        rows = conn.execute(query, params).fetchall()
        return [_order_row_to_dict(r) for r in rows]


def count_orders_by_status():
    with get_db() as conn:
        rows = conn.execute(
            "SELECT status, COUNT(*) AS n FROM payment_orders GROUP BY status"
        ).fetchall()
        return {r["status"]: r["n"] for r in rows}


def orders_due_for_scan(limit):
    """Active orders, least recently updated first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM payment_orders WHERE status IN (?, ?) ORDER BY updated_at ASC LIMIT ?",
            (*ACTIVE_STATUSES, limit)
        ).fetchall()
        return [_order_row_to_dict(r) for r in rows]


def update_order(order_id, updates, expected_updated_at=None, event=None):
    """
    Update order fields and bump updated_at.

    updates may contain "metadata" (a dict, stored as JSON) or any column in
    _ORDER_COLUMNS. With expected_updated_at the write only applies if the row
    still carries that timestamp; otherwise StaleOrderError is raised.
    event: optional (name, from_status, to_status, detail) appended to the audit trail
    in the same transaction. Returns the updated order.
    """
    set_clauses = []
    params = []
    for col, val in updates.items():
        if col == "metadata":
            col, val = "metadata_json", json.dumps(val, default=str)
        if col not in _ORDER_COLUMNS:
            raise ValueError(f"Invalid order column: {col}")
        set_clauses.append(f"{col} = ?")
        params.append(val)

    now = utcnow()
    set_clauses.append("updated_at = ?")
    params.append(now)

    query = f"UPDATE payment_orders SET {', '.join(set_clauses)} WHERE order_id = ?"
    params.append(order_id)
    if expected_updated_at is not None:
        query += " AND updated_at = ?"
        params.append(expected_updated_at)

    with get_db() as conn:
        cur = conn.execute(query, params)
        if cur.rowcount == 0:
            exists = conn.execute(
                "SELECT 1 FROM payment_orders WHERE order_id = ?", (order_id,)
            ).fetchone()
            if exists:
                raise StaleOrderError(f"Order {order_id} was modified concurrently")
            raise KeyError(order_id)
        if event:
            _insert_event(conn, order_id, *event, created_at=now)
        row = conn.execute("SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)).fetchone()
        return _order_row_to_dict(row)


def _order_row_to_dict(row):
    """Convert an order row to dict, parsing metadata JSON."""
    if row is None:
        return None
    d = dict(row)
    try:
        d["metadata"] = json.loads(d.pop("metadata_json", "{}"))
    except (json.JSONDecodeError, TypeError):
        d["metadata"] = {}
    return d


# ============================================================
# Audit Events
# ============================================================

def _insert_event(conn, order_id, event, from_status=None, to_status=None, detail=None, created_at=None):
    conn.execute("""
        INSERT INTO order_events (order_id, event, from_status, to_status, detail_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (order_id, event, from_status, to_status, json.dumps(detail or {}, default=str),
          created_at or utcnow()))


def add_event(order_id, event, from_status=None, to_status=None, detail=None):
    """Append an audit event for an order."""
    with get_db() as conn:
        _insert_event(conn, order_id, event, from_status, to_status, detail)


def get_events(order_id):
    """Audit events for an order, oldest first."""
    with get_db() as conn:
        rows = conn.execute(
            "SELECT * FROM order_events WHERE order_id = ? ORDER BY id ASC", (order_id,)
        ).fetchall()
        events = []
        for r in rows:
            d = dict(r)
            d.pop("id", None)
            try:
                d["detail"] = json.loads(d.pop("detail_json", "{}"))
            except (json.JSONDecodeError, TypeError):
                d["detail"] = {}
            events.append(d)
        return events


# ============================================================
# Scan State
# ============================================================

def get_scan_state(key, default=None):
    with get_db() as conn:
        row = conn.execute("SELECT value FROM scan_state WHERE key = ?", (key,)).fetchone()
        if not row:
            return default
        try:
            return json.loads(row[0])
        except (json.JSONDecodeError, TypeError):
            return default


def set_scan_state(key, value):
    with get_db() as conn:
        conn.execute("""
            INSERT INTO scan_state (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
        """, (key, json.dumps(value, default=str), utcnow()))


# ============================================================
# Init on import
# ============================================================

init_db()
