"""Marketplace backends: where the order lifecycle records listings and sales."""
import asyncio
import logging
from typing import Any, Dict, Optional

import backoff
import requests

from database import IndexStore, OrderRecord, RecordNotFoundError
from database.models import serialize_signed_order

logger = logging.getLogger(__name__)


def _client_error(e: requests.RequestException) -> bool:
    """4xx responses are rejections, retrying them cannot succeed."""
    response = getattr(e, 'response', None)
    return response is not None and 400 <= response.status_code < 500


def order_from_api(data: Dict[str, Any]) -> OrderRecord:
    """Rebuild an ``OrderRecord`` from its camelCase API representation."""
    return OrderRecord(
        order_hash=data['orderHash'],
        seller_address=data['sellerAddress'],
        signed_order=serialize_signed_order(data.get('signedOrder') or {}),
        token_id=data.get('tokenId'),
        price=data.get('price'),
        buyer_address=data.get('buyerAddress'),
        on_chain=bool(data.get('onChain')),
        status=data.get('status', 'active'),
        nft_contract=data.get('nftContract'),
        marketplace_contract=data.get('marketplaceContract'),
        image=data.get('image')
    )


class MarketplaceBackend:
    """Operations the order lifecycle needs from the index."""

    async def record_order(self, record: OrderRecord) -> OrderRecord:
        raise NotImplementedError

    async def record_fulfillment(self, order_hash: str, buyer_address: str) -> OrderRecord:
        raise NotImplementedError


class LocalBackend(MarketplaceBackend):
    """Writes straight to an index store in the same process."""

    def __init__(self, store: IndexStore):
        self.store = store

    async def record_order(self, record: OrderRecord) -> OrderRecord:
        return await self.store.upsert_order(record)

    async def record_fulfillment(self, order_hash: str, buyer_address: str) -> OrderRecord:
        record, changed = await self.store.transition_order_to_fulfilled(order_hash, buyer_address)
        if not changed:
            logger.info(f"Order {order_hash} already {record.status}, fulfillment not reapplied")
        return record


class HttpBackend(MarketplaceBackend):
    """Talks to the marketplace API (``/api/order`` and ``/api/buy``)."""

    def __init__(self, base_url: str, timeout: int = 30, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    @backoff.on_exception(backoff.expo, requests.RequestException, max_tries=3, giveup=_client_error)
    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        if response.status_code == 404:
            raise RecordNotFoundError('orders', 'order_hash', payload.get('orderHash'))
        response.raise_for_status()
        return response.json()

    async def record_order(self, record: OrderRecord) -> OrderRecord:
        body = await asyncio.to_thread(self._post, '/api/order', {
            'tokenId': record.token_id,
            'price': str(record.price) if record.price is not None else None,
            'sellerAddress': record.seller_address,
            'signedOrder': record.signed_order_payload(),
            'orderHash': record.order_hash,
            'nftContract': record.nft_contract,
            'marketplaceContract': record.marketplace_contract,
            'image': record.image
        })
        return order_from_api(body['order'])

    async def record_fulfillment(self, order_hash: str, buyer_address: str) -> OrderRecord:
        body = await asyncio.to_thread(self._post, '/api/buy', {
            'orderHash': order_hash,
            'buyerAddress': buyer_address
        })
        return order_from_api(body['order'])
