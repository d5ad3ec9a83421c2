"""
Reconciliation Service — table definitions

The storefront owns these tables; this service only reads and
conditionally updates them. The DDL is kept portable (PostgreSQL and
SQLite) so the same statements back local runs and the test suite.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

TABLES = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                       TEXT PRIMARY KEY,
        email                    TEXT NOT NULL,
        status                   TEXT NOT NULL DEFAULT 'pending',
        payment_status           TEXT NOT NULL DEFAULT 'unpaid',
        total                    NUMERIC(10, 2) NOT NULL DEFAULT 0,
        stripe_payment_intent_id TEXT,
        payment_failure_reason   TEXT,
        shipping_address         TEXT,
        tracking_code            TEXT,
        tracking_url             TEXT,
        carrier                  TEXT,
        paid_at                  TIMESTAMP,
        refunded_at              TIMESTAMP,
        shipped_at               TIMESTAMP,
        delivered_at             TIMESTAMP,
        created_at               TIMESTAMP NOT NULL,
        updated_at               TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id           TEXT PRIMARY KEY,
        order_id     TEXT NOT NULL REFERENCES orders (id),
        variant_id   TEXT NOT NULL,
        product_name TEXT NOT NULL DEFAULT '',
        quantity     INTEGER NOT NULL,
        unit_price   NUMERIC(10, 2) NOT NULL DEFAULT 0,
        is_presale   BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        id                     TEXT PRIMARY KEY,
        product_name           TEXT NOT NULL DEFAULT '',
        stock_quantity         INTEGER NOT NULL DEFAULT 0,
        presale_stock_quantity INTEGER NOT NULL DEFAULT 0,
        updated_at             TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS returns (
        id                             TEXT PRIMARY KEY,
        order_id                       TEXT NOT NULL REFERENCES orders (id),
        status                         TEXT NOT NULL DEFAULT 'return_requested',
        return_items                   TEXT NOT NULL DEFAULT '[]',
        return_label_payment_intent_id TEXT,
        return_label_payment_status    TEXT,
        return_label_paid_at           TIMESTAMP,
        return_label_url               TEXT,
        return_tracking_code           TEXT,
        return_tracking_url            TEXT,
        label_parcel_id                TEXT,
        label_generation_started_at    TIMESTAMP,
        label_generated_at             TIMESTAMP,
        refunded_at                    TIMESTAMP,
        created_at                     TIMESTAMP NOT NULL,
        updated_at                     TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS site_settings (
        key        TEXT PRIMARY KEY,
        value      TEXT,
        updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        delivery_id    TEXT PRIMARY KEY,
        event_id       TEXT,
        event_type     TEXT,
        source         TEXT NOT NULL,
        aggregate_type TEXT,
        aggregate_id   TEXT,
        outcome        TEXT NOT NULL,
        detail         TEXT,
        created_at     TIMESTAMP NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_log (
        id          TEXT PRIMARY KEY,
        order_id    TEXT,
        return_id   TEXT,
        email_type  TEXT NOT NULL,
        recipient   TEXT NOT NULL,
        status      TEXT NOT NULL,
        provider_id TEXT,
        error       TEXT,
        created_at  TIMESTAMP NOT NULL
    )
    """,
)

INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_orders_payment_intent ON orders (stripe_payment_intent_id)",
    "CREATE INDEX IF NOT EXISTS ix_orders_email ON orders (email, payment_status)",
    "CREATE INDEX IF NOT EXISTS ix_order_items_order ON order_items (order_id)",
    "CREATE INDEX IF NOT EXISTS ix_returns_label_intent ON returns (return_label_payment_intent_id)",
    "CREATE INDEX IF NOT EXISTS ix_returns_parcel ON returns (label_parcel_id)",
    "CREATE INDEX IF NOT EXISTS ix_webhook_events_aggregate ON webhook_events (aggregate_id)",
)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table and index if missing."""
    async with engine.begin() as conn:
        for ddl in TABLES + INDEXES:
            await conn.execute(text(ddl))
