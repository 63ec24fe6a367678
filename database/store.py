"""Index store: the persisted mirror of token metadata and marketplace orders.

Every write is keyed on a natural key (``token_id`` for metadata,
``order_hash`` for orders) and is either an upsert or a conditional update,
so overlapping sync passes and repeated callbacks converge on the same rows
without cross-row locking.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from .exceptions import RecordNotFoundError
from .models import (
    MetadataSchema,
    OrderRecord,
    OrderStatus,
    TokenRecord,
    normalize_address,
    normalize_hash
)

logger = logging.getLogger(__name__)

ORDER_COLUMNS = (
    'id', 'order_hash', 'token_id', 'price', 'nft_contract', 'marketplace_contract',
    'seller_address', 'buyer_address', 'signed_order', 'on_chain', 'status', 'image',
    'created_at', 'updated_at'
)


def _numeric(value: Optional[int]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _order_from_row(row) -> OrderRecord:
    return OrderRecord(**{column: row[column] for column in ORDER_COLUMNS})


def check_order(record: OrderRecord) -> None:
    """Reject records that break the order invariants before they are written."""
    if not record.order_hash:
        raise ValueError("order_hash is required")
    if not record.seller_address:
        raise ValueError("seller_address is required")
    if record.status not in {status.value for status in OrderStatus}:
        raise ValueError(f"Unknown order status: {record.status}")
    if record.on_chain and record.status != OrderStatus.FULFILLED.value:
        raise ValueError("on_chain orders must be fulfilled")
    if record.price is not None and record.price < 0:
        raise ValueError("price must not be negative")


class IndexStore:
    """Operations the rest of the system needs from the index."""

    async def upsert_metadata(self, record: TokenRecord) -> TokenRecord:
        """Insert or refresh the metadata row for ``record.token_id``."""
        raise NotImplementedError

    async def get_metadata(self, token_id: int) -> Optional[TokenRecord]:
        raise NotImplementedError

    async def read_metadata_page(self, offset: int = 0, limit: int = 100) -> List[TokenRecord]:
        """Metadata rows ordered by token id."""
        raise NotImplementedError

    async def upsert_order(self, record: OrderRecord) -> OrderRecord:
        """Insert an order or refresh its listing fields while it is still active.

        Status, settlement flag and buyer of an existing order are never
        overwritten here; those only move through the transition methods.
        """
        raise NotImplementedError

    async def get_order(self, order_hash: str) -> Optional[OrderRecord]:
        raise NotImplementedError

    async def read_orders(self, limit: int = 500, status: Optional[str] = None) -> List[OrderRecord]:
        """Orders, most recently created first, optionally filtered by status."""
        raise NotImplementedError

    async def transition_order_to_fulfilled(
        self, order_hash: str, buyer_address: str
    ) -> Tuple[OrderRecord, bool]:
        """Move an active, unsettled order to fulfilled/on-chain.

        Returns:
            The stored order and whether this call changed it. Applying the
            transition to an order that already left ``active`` is a no-op.

        Raises:
            RecordNotFoundError: If no order has this hash
        """
        raise NotImplementedError

    async def transition_order_to_cancelled(self, order_hash: str) -> Tuple[OrderRecord, bool]:
        """Move an active, unsettled order to cancelled (same contract as above)."""
        raise NotImplementedError

    async def get_cursor(self, name: str) -> Optional[int]:
        raise NotImplementedError

    async def set_cursor(self, name: str, block: int) -> None:
        """Advance a named block cursor. Cursors never move backwards."""
        raise NotImplementedError


class PostgresIndexStore(IndexStore):
    """Index store backed by an asyncpg pool (PostgreSQL or CockroachDB)."""

    def __init__(self, pool, metadata_schema: Optional[MetadataSchema] = None):
        """Initialize the store.

        Args:
            pool: asyncpg connection pool
            metadata_schema: Table/column mapping of the metadata mirror
        """
        self.pool = pool
        self.metadata_schema = metadata_schema or MetadataSchema()

    # Metadata

    async def upsert_metadata(self, record: TokenRecord) -> TokenRecord:
        schema = self.metadata_schema
        synced_at = record.last_synced_at or datetime.now(timezone.utc)

        columns = [column for _, column in schema.columns()]
        placeholders = ', '.join(f'${i}' for i in range(1, len(columns) + 1))
        updates = ', '.join(
            f'{column} = EXCLUDED.{column}' for column in columns if column != schema.token_id
        )

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''
                INSERT INTO {schema.table} ({', '.join(columns)})
                VALUES ({placeholders})
                ON CONFLICT ({schema.token_id}) DO UPDATE SET {updates}
                RETURNING {', '.join(columns)}
                ''',
                Decimal(record.token_id),
                record.nft_contract,
                record.owner_address,
                record.name,
                record.image_uri,
                synced_at
            )
        return schema.to_record(row)

    async def get_metadata(self, token_id: int) -> Optional[TokenRecord]:
        schema = self.metadata_schema
        columns = ', '.join(column for _, column in schema.columns())
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'SELECT {columns} FROM {schema.table} WHERE {schema.token_id} = $1',
                Decimal(token_id)
            )
        return schema.to_record(row) if row else None

    async def read_metadata_page(self, offset: int = 0, limit: int = 100) -> List[TokenRecord]:
        schema = self.metadata_schema
        columns = ', '.join(column for _, column in schema.columns())
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f'''
                SELECT {columns} FROM {schema.table}
                ORDER BY {schema.token_id} ASC
                OFFSET $1 LIMIT $2
                ''',
                offset,
                limit
            )
        return [schema.to_record(row) for row in rows]

    # Orders

    async def upsert_order(self, record: OrderRecord) -> OrderRecord:
        check_order(record)
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f'''
                    INSERT INTO orders (
                        order_hash, token_id, price, nft_contract, marketplace_contract,
                        seller_address, buyer_address, signed_order, on_chain, status, image
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    ON CONFLICT (order_hash) DO UPDATE SET
                        token_id = EXCLUDED.token_id,
                        price = EXCLUDED.price,
                        nft_contract = EXCLUDED.nft_contract,
                        marketplace_contract = EXCLUDED.marketplace_contract,
                        seller_address = EXCLUDED.seller_address,
                        signed_order = EXCLUDED.signed_order,
                        image = COALESCE(EXCLUDED.image, orders.image),
                        updated_at = now()
                    WHERE orders.status = 'active' AND orders.on_chain = false
                    RETURNING {', '.join(ORDER_COLUMNS)}
                    ''',
                    record.order_hash,
                    _numeric(record.token_id),
                    _numeric(record.price),
                    record.nft_contract,
                    record.marketplace_contract,
                    record.seller_address,
                    record.buyer_address,
                    record.signed_order,
                    record.on_chain,
                    record.status,
                    record.image
                )
                if row is None:
                    # Conflict with an order that already left 'active': keep it as is
                    logger.info(f"Order {record.order_hash} is settled, listing refresh skipped")
                    row = await conn.fetchrow(
                        f'SELECT {", ".join(ORDER_COLUMNS)} FROM orders WHERE order_hash = $1',
                        record.order_hash
                    )
        return _order_from_row(row)

    async def get_order(self, order_hash: str) -> Optional[OrderRecord]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'SELECT {", ".join(ORDER_COLUMNS)} FROM orders WHERE order_hash = $1',
                normalize_hash(order_hash)
            )
        return _order_from_row(row) if row else None

    async def read_orders(self, limit: int = 500, status: Optional[str] = None) -> List[OrderRecord]:
        async with self.pool.acquire() as conn:
            if status:
                rows = await conn.fetch(
                    f'''
                    SELECT {", ".join(ORDER_COLUMNS)} FROM orders
                    WHERE status = $1
                    ORDER BY created_at DESC
                    LIMIT $2
                    ''',
                    status,
                    limit
                )
            else:
                rows = await conn.fetch(
                    f'''
                    SELECT {", ".join(ORDER_COLUMNS)} FROM orders
                    ORDER BY created_at DESC
                    LIMIT $1
                    ''',
                    limit
                )
        return [_order_from_row(row) for row in rows]

    async def _transition(
        self,
        order_hash: str,
        status: OrderStatus,
        on_chain: bool,
        buyer_address: Optional[str] = None
    ) -> Tuple[OrderRecord, bool]:
        order_hash = normalize_hash(order_hash)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f'''
                UPDATE orders
                SET
                    status = $2,
                    on_chain = $3,
                    buyer_address = COALESCE($4, buyer_address),
                    updated_at = now()
                WHERE order_hash = $1
                AND status = 'active'
                AND on_chain = false
                RETURNING {", ".join(ORDER_COLUMNS)}
                ''',
                order_hash,
                status.value,
                on_chain,
                normalize_address(buyer_address)
            )
            if row is not None:
                return _order_from_row(row), True

            row = await conn.fetchrow(
                f'SELECT {", ".join(ORDER_COLUMNS)} FROM orders WHERE order_hash = $1',
                order_hash
            )
        if row is None:
            raise RecordNotFoundError('orders', 'order_hash', order_hash)
        return _order_from_row(row), False

    async def transition_order_to_fulfilled(
        self, order_hash: str, buyer_address: str
    ) -> Tuple[OrderRecord, bool]:
        return await self._transition(order_hash, OrderStatus.FULFILLED, True, buyer_address)

    async def transition_order_to_cancelled(self, order_hash: str) -> Tuple[OrderRecord, bool]:
        return await self._transition(order_hash, OrderStatus.CANCELLED, False)

    # Cursors

    async def get_cursor(self, name: str) -> Optional[int]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval(
                'SELECT last_block FROM sync_state WHERE name = $1',
                name
            )

    async def set_cursor(self, name: str, block: int) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                '''
                INSERT INTO sync_state (name, last_block) VALUES ($1, $2)
                ON CONFLICT (name) DO UPDATE SET
                    last_block = GREATEST(sync_state.last_block, EXCLUDED.last_block),
                    updated_at = now()
                ''',
                name,
                block
            )
