"""
Catalog Store - clients, products and orders in SQLite.

Architecture:
- load_snapshot(): full client list + products with nested variants, read
  once per analysis run
- save_order(card): order row + item rows in a single transaction
- every sqlite3 failure surfaces as StoreError, never retried here
"""

import sqlite3
import time
import uuid
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from magic_order.error_handler import StoreError
from magic_order.models import (
    CatalogClient,
    CatalogProduct,
    CatalogSnapshot,
    CatalogVariant,
    DraftOrderCard,
)


logger = logging.getLogger(__name__)


class CatalogStore(ABC):
    """Read the catalog, persist completed draft cards"""

    @abstractmethod
    def load_snapshot(self) -> CatalogSnapshot:
        ...

    @abstractmethod
    def save_order(self, card: DraftOrderCard) -> str:
        """Persist the card as an order plus line items and return the order id."""


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS clients (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        phone TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        price REAL NOT NULL DEFAULT 0,
        description TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_variants (
        id TEXT PRIMARY KEY,
        product_id TEXT NOT NULL REFERENCES products(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        price REAL NOT NULL DEFAULT 0,
        position INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        client_id TEXT NOT NULL REFERENCES clients(id),
        client_name TEXT NOT NULL,
        total REAL NOT NULL,
        amount_paid REAL NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
        product_id TEXT NOT NULL REFERENCES products(id),
        variant_id TEXT REFERENCES product_variants(id),
        quantity REAL NOT NULL,
        price REAL NOT NULL,
        total REAL NOT NULL,
        position INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_variants_product ON product_variants(product_id)",
    "CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)",
)


def _new_id() -> str:
    return str(uuid.uuid4())


class SqliteCatalogStore(CatalogStore):
    """SQLite-backed catalog and order store"""

    def __init__(self, db_path: str = "data/catalog.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self):
        """Initialize SQLite database schema"""
        try:
            with self._connect() as conn:
                for statement in SCHEMA:
                    conn.execute(statement)
        except sqlite3.Error as e:
            raise StoreError(f"Could not initialize catalog database: {e}") from e

    # ============================================
    # READ
    # ============================================

    def load_snapshot(self) -> CatalogSnapshot:
        try:
            with self._connect() as conn:
                client_rows = conn.execute(
                    "SELECT id, name, phone FROM clients ORDER BY name"
                ).fetchall()
                product_rows = conn.execute(
                    "SELECT id, name, price, description FROM products ORDER BY name"
                ).fetchall()
                variant_rows = conn.execute(
                    "SELECT id, product_id, name, price FROM product_variants ORDER BY product_id, position"
                ).fetchall()
        except sqlite3.Error as e:
            logger.error(f"[STORE] Failed to load catalog: {e}")
            raise StoreError(f"Could not load catalog: {e}") from e

        variants: Dict[str, List[CatalogVariant]] = {}
        for variant_id, product_id, name, price in variant_rows:
            variants.setdefault(product_id, []).append(
                CatalogVariant(id=variant_id, name=name, price=price)
            )

        snapshot = CatalogSnapshot(
            clients=[CatalogClient(id=cid, name=name, phone=phone) for cid, name, phone in client_rows],
            products=[
                CatalogProduct(
                    id=pid, name=name, price=price, description=description,
                    variants=variants.get(pid, []),
                )
                for pid, name, price, description in product_rows
            ],
        )
        logger.debug(
            f"[STORE] Loaded {len(snapshot.clients)} clients, {len(snapshot.products)} products"
        )
        return snapshot

    # ============================================
    # WRITE
    # ============================================

    def seed(self, snapshot: CatalogSnapshot) -> None:
        """Insert or replace catalog rows (development and tests)."""
        try:
            with self._connect() as conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO clients (id, name, phone) VALUES (?, ?, ?)",
                    [(c.id, c.name, c.phone) for c in snapshot.clients],
                )
                conn.executemany(
                    "INSERT OR REPLACE INTO products (id, name, price, description) VALUES (?, ?, ?, ?)",
                    [(p.id, p.name, p.price, p.description) for p in snapshot.products],
                )
                conn.executemany(
                    "INSERT OR REPLACE INTO product_variants (id, product_id, name, price, position) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [
                        (v.id, p.id, v.name, v.price, position)
                        for p in snapshot.products
                        for position, v in enumerate(p.variants)
                    ],
                )
        except sqlite3.Error as e:
            raise StoreError(f"Could not seed catalog: {e}") from e

        logger.info(f"[STORE] Seeded {len(snapshot.clients)} clients, {len(snapshot.products)} products")

    def _item_prices(self, conn: sqlite3.Connection, card: DraftOrderCard) -> List[Tuple[float, float]]:
        prices = []
        for item in card.items:
            row = conn.execute("SELECT price FROM products WHERE id = ?", (item.product.id,)).fetchone()
            if row is None:
                raise StoreError(f"Unknown product {item.product.id!r}")
            price = row[0]
            if item.variant is not None and item.variant.id is not None:
                vrow = conn.execute(
                    "SELECT price FROM product_variants WHERE id = ? AND product_id = ?",
                    (item.variant.id, item.product.id),
                ).fetchone()
                if vrow is None:
                    raise StoreError(f"Unknown variant {item.variant.id!r}")
                if vrow[0]:
                    price = vrow[0]
            prices.append((price, round(price * item.quantity, 2)))
        return prices

    def save_order(self, card: DraftOrderCard) -> str:
        """Write the order and its items atomically; roll back on any failure."""
        if card.client.id is None:
            raise StoreError("Cannot save an order without a client id")

        order_id = _new_id()
        conn = self._connect()
        try:
            with conn:
                prices = self._item_prices(conn, card)
                total = round(sum(line_total for _, line_total in prices), 2)
                conn.execute(
                    "INSERT INTO orders (id, client_id, client_name, total, amount_paid, status, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        order_id, card.client.id, card.client.name, total,
                        total if card.is_paid else 0.0,
                        "paid" if card.is_paid else "pending",
                        time.time(),
                    ),
                )
                conn.executemany(
                    "INSERT INTO order_items (id, order_id, product_id, variant_id, quantity, price, total, position) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            _new_id(), order_id, item.product.id,
                            item.variant.id if item.variant is not None else None,
                            item.quantity, price, line_total, position,
                        )
                        for position, (item, (price, line_total)) in enumerate(zip(card.items, prices))
                    ],
                )
        except sqlite3.Error as e:
            logger.error(f"[STORE] Failed to save order for {card.client.name}: {e}")
            raise StoreError(f"Could not save order: {e}", details={"client_id": card.client.id}) from e
        finally:
            conn.close()

        logger.info(f"[STORE] Saved order {order_id} ({len(card.items)} items)")
        return order_id

    def get_order(self, order_id: str) -> Optional[dict]:
        """Order row plus items, or None"""
        try:
            with self._connect() as conn:
                conn.row_factory = sqlite3.Row
                order = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
                if order is None:
                    return None
                items = conn.execute(
                    "SELECT * FROM order_items WHERE order_id = ? ORDER BY position", (order_id,)
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not read order {order_id}: {e}") from e
        return {**dict(order), "items": [dict(row) for row in items]}
