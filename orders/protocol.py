"""Order-protocol adapter.

Signing and fulfillment are delegated to an order-protocol implementation
(Seaport). The core only builds order components and hands them over.
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional, Protocol, Tuple

import requests

from .exceptions import MissingPayloadError, SettlementError, SigningError

logger = logging.getLogger(__name__)

ITEM_TYPE_ERC721 = 2
SECONDS_PER_DAY = 86400

# Field names older clients used for the signed order
LEGACY_ORDER_FIELDS = ('signedOrder', 'signed_order', 'seaportOrder', 'seaportorder', 'seaport_order')
LEGACY_ORDER_JSON_FIELDS = ('seaportOrderJSON', 'seaportorderjson', 'signedOrderJSON')
ORDER_HASH_FIELDS = ('orderHash', 'order_hash', 'orderhash')


class OrderProtocol(Protocol):
    async def create_order(self, components: Dict[str, Any], account: str) -> Dict[str, Any]:
        """Sign a listing built from ``components`` for ``account``."""
        ...

    async def fulfill_order(self, order: Dict[str, Any], account: str) -> Dict[str, Any]:
        """Fulfill a signed order from ``account`` and return the settlement receipt."""
        ...


def build_order_components(
    nft_contract: str,
    token_id: int,
    price: int,
    seller_address: str,
    expiry_days: int = 30,
    now: Optional[int] = None
) -> Dict[str, Any]:
    """Listing components: the token offered, the price paid to the seller."""
    now = int(time.time()) if now is None else now
    return {
        'offer': [{
            'itemType': ITEM_TYPE_ERC721,
            'token': nft_contract,
            'identifier': str(token_id)
        }],
        'consideration': [{
            'amount': str(price),
            'recipient': seller_address
        }],
        'endTime': str(now + expiry_days * SECONDS_PER_DAY)
    }


def unwrap_signed_result(result: Any) -> Tuple[Dict[str, Any], str]:
    """Split a signing result into ``(signed_order, order_hash)``.

    The result is either the signed order or ``{"order": <signed order>}``;
    the hash may sit on either level.

    Raises:
        SigningError: If there is no order or no order hash
    """
    if not isinstance(result, dict):
        raise SigningError(f"Unexpected signing result: {type(result).__name__}")

    order = result.get('order') if isinstance(result.get('order'), dict) else result
    order_hash = None
    for source in (order, result):
        for key in ORDER_HASH_FIELDS:
            if source.get(key):
                order_hash = source[key]
                break
        if order_hash:
            break

    if not order_hash:
        raise SigningError("Signed order has no order hash")
    return order, order_hash


def extract_signed_order(data: Dict[str, Any]) -> Dict[str, Any]:
    """Get the signed order out of a record in any of its historical shapes.

    Raises:
        MissingPayloadError: If no shape carries a signed order
    """
    for key in LEGACY_ORDER_FIELDS + LEGACY_ORDER_JSON_FIELDS:
        value = data.get(key)
        if isinstance(value, dict) and value:
            return value
        if isinstance(value, str) and value.strip():
            try:
                parsed = json.loads(value)
            except ValueError as e:
                raise MissingPayloadError(f"{key} is not valid JSON: {e}") from e
            if isinstance(parsed, dict):
                return parsed

    raise MissingPayloadError("Order has no signed order payload")


def extract_order_hash(data: Dict[str, Any]) -> Optional[str]:
    for key in ORDER_HASH_FIELDS:
        if data.get(key):
            return data[key]
    return None


class SignerServiceProtocol:
    """``OrderProtocol`` backed by an order-signing service over HTTP.

    The service holds the accounts and the protocol SDK; it exposes
    ``POST /orders`` (create and sign) and ``POST /orders/fulfill``.
    """

    def __init__(self, base_url: str, timeout: int = 60, session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("Signer service URL not configured (signer_url)")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            try:
                body = response.json()
            except ValueError:
                body = None
            reason = body.get('error') if isinstance(body, dict) else None
            logger.warning(f"Signer service {path} returned HTTP {response.status_code}")
            raise RuntimeError(f"HTTP {response.status_code}: {reason or response.text}")
        result = response.json()
        if not isinstance(result, dict):
            raise ValueError(f"Signer service {path} returned {type(result).__name__}, expected an object")
        return result

    async def create_order(self, components: Dict[str, Any], account: str) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(
                self._post, '/orders', {'components': components, 'account': account}
            )
        except (requests.RequestException, RuntimeError, ValueError) as e:
            raise SigningError(f"Signer service rejected order: {e}") from e

    async def fulfill_order(self, order: Dict[str, Any], account: str) -> Dict[str, Any]:
        try:
            return await asyncio.to_thread(
                self._post, '/orders/fulfill', {'order': order, 'account': account}
            )
        except (requests.RequestException, RuntimeError, ValueError) as e:
            raise SettlementError(f"Fulfillment failed: {e}") from e
