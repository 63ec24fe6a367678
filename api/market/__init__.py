"""Marketplace endpoints: token index, order index, listing and sale callbacks."""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from database import IndexStore, OrderRecord, RecordNotFoundError, get_store
from database.models import serialize_signed_order
from orders import MissingPayloadError, extract_signed_order

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/api",
    tags=["Market"]
)

class OrderStatusFilter(str, Enum):
    """Order status filter for the order index."""
    active = 'active'
    fulfilled = 'fulfilled'
    cancelled = 'cancelled'
    all = 'all'

class CreateOrderRequest(BaseModel):
    """Request model for recording a signed listing.

    ``signedOrder`` is the canonical field; the ``seaport*`` fields are the
    names earlier clients sent the same payload under.
    """
    tokenId: Optional[int] = None
    price: Optional[Union[int, str]] = None
    sellerAddress: Optional[str] = None
    orderHash: Optional[str] = None
    signedOrder: Optional[Any] = None
    seaportOrder: Optional[Any] = None
    seaportorder: Optional[Any] = None
    seaport_order: Optional[Any] = None
    seaportOrderJSON: Optional[str] = None
    nftContract: Optional[str] = None
    marketplaceContract: Optional[str] = None
    image: Optional[str] = None

class BuyRequest(BaseModel):
    """Request model for the fulfillment callback."""
    orderHash: Optional[str] = None
    buyerAddress: Optional[str] = None

def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

def _parse_price(price: Optional[Union[int, str]]) -> Optional[int]:
    if price is None or price == '':
        return None
    try:
        value = int(str(price).strip())
    except ValueError:
        raise _bad_request(f"price must be an integer amount in smallest units: {price!r}")
    if value < 0:
        raise _bad_request("price must not be negative")
    return value

def _signed_order_payload(request: CreateOrderRequest) -> Union[str, Dict[str, Any]]:
    """Canonical signed order, translated from legacy field names if needed."""
    if isinstance(request.signedOrder, (str, dict)) and request.signedOrder:
        return request.signedOrder
    return extract_signed_order(request.model_dump(exclude_none=True))

@router.get("/nfts")
async def get_nfts(
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    store: IndexStore = Depends(get_store)
) -> Dict[str, Any]:
    """Get indexed tokens ordered by token id.

    Args:
        offset: Number of tokens to skip
        limit: Maximum number of tokens to return

    Returns:
        Dict with the tokens under ``nfts``
    """
    try:
        records = await store.read_metadata_page(offset, limit)
        return {'success': True, 'nfts': [record.to_api() for record in records]}
    except Exception as e:
        logger.error(f"Error reading metadata: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

@router.get("/orders")
async def get_orders(
    limit: int = Query(500, ge=1, le=1000),
    status_filter: OrderStatusFilter = Query(OrderStatusFilter.active, alias='status'),
    store: IndexStore = Depends(get_store)
) -> Dict[str, Any]:
    """Get orders, most recently created first.

    Args:
        limit: Maximum number of orders to return
        status: Order status to return, or 'all'

    Returns:
        Dict with the orders under ``orders``
    """
    try:
        wanted = None if status_filter == OrderStatusFilter.all else status_filter.value
        records = await store.read_orders(limit=limit, status=wanted)
        return {'success': True, 'orders': [record.to_api() for record in records]}
    except Exception as e:
        logger.error(f"Error reading orders: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

@router.post("/order")
async def create_order(
    request: CreateOrderRequest,
    store: IndexStore = Depends(get_store)
) -> Dict[str, Any]:
    """Record a signed listing as an active order.

    Re-posting an order hash refreshes the listing while it is still active
    and never creates a second row.
    """
    if not request.sellerAddress or not request.orderHash:
        raise _bad_request("Missing required fields: sellerAddress and orderHash")

    try:
        payload = _signed_order_payload(request)
        record = OrderRecord.new_listing(
            order_hash=request.orderHash,
            seller_address=request.sellerAddress,
            signed_order=payload,
            token_id=request.tokenId,
            price=_parse_price(request.price),
            nft_contract=request.nftContract,
            marketplace_contract=request.marketplaceContract,
            image=request.image
        )
    except MissingPayloadError:
        raise _bad_request("Missing required field: signedOrder")
    except ValueError as e:
        raise _bad_request(f"Invalid order: {e}")

    try:
        stored = await store.upsert_order(record)
    except ValueError as e:
        raise _bad_request(str(e))
    except Exception as e:
        logger.error(f"Error saving order {record.order_hash}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

    logger.info(f"Recorded order {stored.order_hash} for token {stored.token_id}")
    return {'success': True, 'order': stored.to_api()}

@router.post("/buy")
async def record_buy(
    request: BuyRequest,
    store: IndexStore = Depends(get_store)
) -> Dict[str, Any]:
    """Record that an order was fulfilled on-chain.

    Applying the callback to an order that already left ``active`` changes
    nothing and still succeeds.
    """
    if not request.orderHash or not request.buyerAddress:
        raise _bad_request("Missing required fields: orderHash and buyerAddress")

    try:
        record, changed = await store.transition_order_to_fulfilled(
            request.orderHash, request.buyerAddress
        )
    except RecordNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order {request.orderHash} not found"
        )
    except Exception as e:
        logger.error(f"Error recording buy of {request.orderHash}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )

    if changed:
        logger.info(f"Order {record.order_hash} fulfilled by {record.buyer_address}")
    else:
        logger.info(f"Order {record.order_hash} already {record.status}, callback ignored")
    return {'success': True, 'order': record.to_api()}
