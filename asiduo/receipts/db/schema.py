"""Database schema definitions and connection helpers."""

from __future__ import annotations

import sqlite3
from pathlib import Path

_SCHEMA_VERSION = 1

_DDL = """
CREATE TABLE IF NOT EXISTS merchants (
    slug TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    doc TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now'))
);

CREATE TABLE IF NOT EXISTS tax_index (
    tax_id TEXT PRIMARY KEY,
    merchant_slug TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now'))
);

CREATE TABLE IF NOT EXISTS customers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT 'Cliente',
    created_at TEXT NOT NULL,
    last_active TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS customer_summaries (
    customer_id TEXT NOT NULL,
    merchant_slug TEXT NOT NULL,
    purchase_count INTEGER NOT NULL DEFAULT 0,
    total_spent TEXT NOT NULL DEFAULT '0.00',
    first_visit TEXT,
    last_visit TEXT,
    PRIMARY KEY (customer_id, merchant_slug)
);

CREATE TABLE IF NOT EXISTS merchant_customers (
    merchant_slug TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT 'Cliente',
    purchase_count INTEGER NOT NULL DEFAULT 0,
    total_spent TEXT NOT NULL DEFAULT '0.00',
    first_visit TEXT,
    last_visit TEXT,
    PRIMARY KEY (merchant_slug, customer_id)
);

CREATE TABLE IF NOT EXISTS purchases (
    merchant_slug TEXT NOT NULL,
    id TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    entity_id TEXT NOT NULL DEFAULT '',
    amount TEXT NOT NULL,
    tax_id TEXT,
    invoice_number TEXT,
    work_item_id TEXT,
    created_at TEXT NOT NULL,
    doc TEXT NOT NULL,
    PRIMARY KEY (merchant_slug, id)
);

CREATE INDEX IF NOT EXISTS idx_purchases_invoice
    ON purchases(merchant_slug, tax_id, invoice_number);
CREATE INDEX IF NOT EXISTS idx_purchases_customer
    ON purchases(merchant_slug, customer_id, created_at);

CREATE TABLE IF NOT EXISTS purchase_audit (
    purchase_id TEXT NOT NULL,
    merchant_slug TEXT NOT NULL,
    customer_id TEXT NOT NULL,
    doc TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    PRIMARY KEY (merchant_slug, purchase_id)
);

CREATE TABLE IF NOT EXISTS purchase_outbox (
    purchase_id TEXT NOT NULL,
    merchant_slug TEXT NOT NULL,
    job TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')),
    PRIMARY KEY (merchant_slug, purchase_id, job)
);

CREATE INDEX IF NOT EXISTS idx_outbox_status ON purchase_outbox(status);

CREATE TABLE IF NOT EXISTS loyalty_programs (
    id TEXT PRIMARY KEY,
    merchant_slug TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    doc TEXT NOT NULL,
    total_participants INTEGER NOT NULL DEFAULT 0,
    rewards_redeemed INTEGER NOT NULL DEFAULT 0,
    total_revenue TEXT NOT NULL DEFAULT '0.00'
);

CREATE INDEX IF NOT EXISTS idx_programs_merchant ON loyalty_programs(merchant_slug);

CREATE TABLE IF NOT EXISTS program_progress (
    customer_id TEXT NOT NULL,
    merchant_slug TEXT NOT NULL,
    program_id TEXT NOT NULL,
    doc TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S+00:00', 'now')),
    PRIMARY KEY (customer_id, merchant_slug, program_id)
);

CREATE TABLE IF NOT EXISTS loyalty_processed_tickets (
    customer_id TEXT NOT NULL,
    purchase_id TEXT NOT NULL,
    merchant_slug TEXT NOT NULL,
    results TEXT NOT NULL DEFAULT '[]',
    processed_at TEXT NOT NULL,
    PRIMARY KEY (customer_id, purchase_id)
);

CREATE TABLE IF NOT EXISTS work_items (
    id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    next_attempt_at TEXT,
    result TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_work_items_due ON work_items(status, next_attempt_at);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);
"""


def ensure_schema(db_path: str | Path) -> sqlite3.Connection:
    """Open (or create) the database and ensure the schema is up to date.

    Args:
        db_path: Path to the SQLite database file, or ``":memory:"``.

    Returns:
        An open sqlite3.Connection with the schema applied.
    """
    if str(db_path) == ":memory:":
        target = ":memory:"
    else:
        path = Path(db_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        target = str(path)

    # Stores are shared between the event loop and worker threads.
    conn = sqlite3.connect(target, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")

    try:
        row = conn.execute("SELECT version FROM schema_version").fetchone()
        current_version = row["version"] if row else 0
    except sqlite3.OperationalError:
        current_version = 0

    if current_version < _SCHEMA_VERSION:
        conn.executescript(_DDL)
        conn.execute("DELETE FROM schema_version")
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        conn.commit()

    return conn


class SQLiteStore:
    """Lazily opened connection shared by the SQLite store classes."""

    def __init__(self, db_path: str | Path = "~/.config/asiduo/receipts.db") -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = ensure_schema(self._db_path)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
