"""In-process index store.

Same contract as ``PostgresIndexStore``, kept in dictionaries behind an
``asyncio.Lock``. Selected with ``db_url = memory://`` for local runs and used
by the test-suite.
"""
import asyncio
import itertools
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from .exceptions import RecordNotFoundError
from .models import OrderRecord, OrderStatus, TokenRecord, normalize_address, normalize_hash
from .store import IndexStore, check_order

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryIndexStore(IndexStore):
    """Index store held in memory."""

    def __init__(self):
        self._metadata: Dict[int, TokenRecord] = {}
        self._orders: Dict[str, OrderRecord] = {}
        self._order_seq: Dict[str, int] = {}
        self._cursors: Dict[str, int] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    # Metadata

    async def upsert_metadata(self, record: TokenRecord) -> TokenRecord:
        stored = replace(record, last_synced_at=record.last_synced_at or _now())
        async with self._lock:
            self._metadata[stored.token_id] = stored
        return replace(stored)

    async def get_metadata(self, token_id: int) -> Optional[TokenRecord]:
        record = self._metadata.get(int(token_id))
        return replace(record) if record else None

    async def read_metadata_page(self, offset: int = 0, limit: int = 100) -> List[TokenRecord]:
        token_ids = sorted(self._metadata)[offset:offset + limit]
        return [replace(self._metadata[token_id]) for token_id in token_ids]

    # Orders

    async def upsert_order(self, record: OrderRecord) -> OrderRecord:
        check_order(record)
        async with self._lock:
            existing = self._orders.get(record.order_hash)
            now = _now()
            if existing is None:
                stored = replace(record, id=record.id or uuid4(), created_at=now, updated_at=now)
                self._order_seq[record.order_hash] = next(self._seq)
            elif existing.is_active:
                stored = replace(
                    existing,
                    token_id=record.token_id,
                    price=record.price,
                    nft_contract=record.nft_contract,
                    marketplace_contract=record.marketplace_contract,
                    seller_address=record.seller_address,
                    signed_order=record.signed_order,
                    image=record.image or existing.image,
                    updated_at=now
                )
            else:
                logger.info(f"Order {record.order_hash} is settled, listing refresh skipped")
                stored = existing
            self._orders[record.order_hash] = stored
        return replace(stored)

    async def get_order(self, order_hash: str) -> Optional[OrderRecord]:
        record = self._orders.get(normalize_hash(order_hash))
        return replace(record) if record else None

    async def read_orders(self, limit: int = 500, status: Optional[str] = None) -> List[OrderRecord]:
        hashes = sorted(self._orders, key=lambda h: self._order_seq[h], reverse=True)
        records = [self._orders[h] for h in hashes]
        if status:
            records = [record for record in records if record.status == status]
        return [replace(record) for record in records[:limit]]

    async def _transition(
        self,
        order_hash: str,
        status: OrderStatus,
        on_chain: bool,
        buyer_address: Optional[str] = None
    ) -> Tuple[OrderRecord, bool]:
        order_hash = normalize_hash(order_hash)
        async with self._lock:
            existing = self._orders.get(order_hash)
            if existing is None:
                raise RecordNotFoundError('orders', 'order_hash', order_hash)
            if not existing.is_active:
                return replace(existing), False
            stored = replace(
                existing,
                status=status.value,
                on_chain=on_chain,
                buyer_address=normalize_address(buyer_address) or existing.buyer_address,
                updated_at=_now()
            )
            self._orders[order_hash] = stored
        return replace(stored), True

    async def transition_order_to_fulfilled(
        self, order_hash: str, buyer_address: str
    ) -> Tuple[OrderRecord, bool]:
        return await self._transition(order_hash, OrderStatus.FULFILLED, True, buyer_address)

    async def transition_order_to_cancelled(self, order_hash: str) -> Tuple[OrderRecord, bool]:
        return await self._transition(order_hash, OrderStatus.CANCELLED, False)

    # Cursors

    async def get_cursor(self, name: str) -> Optional[int]:
        return self._cursors.get(name)

    async def set_cursor(self, name: str, block: int) -> None:
        async with self._lock:
            self._cursors[name] = max(block, self._cursors.get(name, block))
