"""Orders module for managing marketplace listings and sales.

This module handles the order lifecycle:
- Listing: ownership check, operator approval, signing, persistence
- Buying: on-chain fulfillment followed by the index update
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from web3 import Web3

from database import OrderRecord, OrderStatus
from rpc import ChainReader, RPCError, TokenNotMinted
from .exceptions import (
    OrderError,
    InvalidPriceError,
    NotOwnerError,
    MissingPayloadError,
    ApprovalError,
    SigningError,
    PersistenceError,
    SettlementError
)
from .protocol import (
    OrderProtocol,
    SignerServiceProtocol,
    build_order_components,
    extract_order_hash,
    extract_signed_order,
    unwrap_signed_result
)
from .approvals import ContractApprovalGateway
from .backend import MarketplaceBackend, LocalBackend, HttpBackend

logger = logging.getLogger(__name__)

# Native currency decimals (wei)
PRICE_DECIMALS = 18

def to_smallest_unit(amount: Union[str, int, Decimal], decimals: int = PRICE_DECIMALS) -> int:
    """Convert a display amount ("0.15") into smallest units (150000000000000000).

    Raises:
        InvalidPriceError: If the amount is not a positive number representable in ``decimals``
    """
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise InvalidPriceError(f"Invalid price: {amount!r}")

    if not value.is_finite() or value <= 0:
        raise InvalidPriceError(f"Price must be positive: {amount}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidPriceError(f"Price {amount} has more than {decimals} decimals")
    return int(scaled)

def _check_price(price: Any) -> int:
    if isinstance(price, bool):
        raise InvalidPriceError(f"Invalid price: {price!r}")
    if isinstance(price, str) and price.strip().isdigit():
        price = int(price.strip())
    if not isinstance(price, int):
        raise InvalidPriceError(f"Price must be an integer amount in smallest units, got {price!r}")
    if price <= 0:
        raise InvalidPriceError(f"Price must be positive: {price}")
    return price

@dataclass
class BuyResult:
    """Outcome of a purchase.

    ``indexed`` is False when the sale settled on-chain but the index could
    not be updated; the settlement sweep heals such orders.
    """
    order_hash: str
    buyer_address: str
    receipt: Dict[str, Any]
    indexed: bool
    order: Optional[OrderRecord] = None

class OrderManager:
    """Drives listings and purchases through ledger, order protocol and index."""

    def __init__(
        self,
        reader: ChainReader,
        protocol: OrderProtocol,
        approvals: ContractApprovalGateway,
        backend: MarketplaceBackend,
        nft_contract: str,
        marketplace_contract: str,
        expiry_days: int = 30
    ) -> None:
        """Initialize order manager.

        Args:
            reader: Chain reader used for the ownership check
            protocol: Order protocol signing and fulfilling orders
            approvals: Operator approval gateway
            backend: Where listings and sales are recorded
            nft_contract: ERC-721 contract of the listed tokens
            marketplace_contract: Marketplace (Seaport) contract address
            expiry_days: Listing lifetime
        """
        self.reader = reader
        self.protocol = protocol
        self.approvals = approvals
        self.backend = backend
        self.nft_contract = nft_contract
        self.marketplace_contract = marketplace_contract
        self.expiry_days = expiry_days

    async def verify_owner(self, token_id: int, seller_address: str) -> str:
        """Check that ``seller_address`` currently owns ``token_id``.

        Raises:
            NotOwnerError: If the token is owned by someone else or does not exist
            OrderError: If ownership could not be read
        """
        try:
            owner = await self.reader.owner_of(token_id)
        except TokenNotMinted:
            raise NotOwnerError(token_id, seller_address)
        except RPCError as e:
            raise OrderError(f"Could not verify owner of token {token_id}: {e}") from e

        if owner.lower() != seller_address.lower():
            raise NotOwnerError(token_id, seller_address, owner)
        return owner

    async def list_token(
        self,
        token_id: int,
        price: int,
        seller_address: str,
        image: Optional[str] = None
    ) -> OrderRecord:
        """List a token for sale.

        Steps run strictly in order: ownership check, approval, signing,
        persistence. A failure at any step leaves nothing recorded.

        Args:
            token_id: Token to list
            price: Price in smallest units
            seller_address: Listing account
            image: Optional image shown with the order

        Returns:
            The stored active order

        Raises:
            InvalidPriceError, NotOwnerError, ApprovalError, SigningError, PersistenceError
        """
        price = _check_price(price)
        if not seller_address:
            raise OrderError("Seller address is required")

        await self.verify_owner(token_id, seller_address)

        try:
            if await self.approvals.ensure_approved(seller_address):
                logger.info(f"Approved {self.marketplace_contract} for {seller_address}")
        except ApprovalError:
            raise
        except Exception as e:
            raise ApprovalError(f"Approval failed for {seller_address}: {e}") from e

        components = build_order_components(
            self.nft_contract, token_id, price, seller_address, self.expiry_days
        )
        try:
            result = await self.protocol.create_order(components, seller_address)
        except SigningError:
            raise
        except Exception as e:
            raise SigningError(f"Signing failed for token {token_id}: {e}") from e
        signed_order, order_hash = unwrap_signed_result(result)

        record = OrderRecord.new_listing(
            order_hash=order_hash,
            seller_address=seller_address,
            signed_order=signed_order,
            token_id=token_id,
            price=price,
            nft_contract=self.nft_contract,
            marketplace_contract=self.marketplace_contract,
            image=image
        )
        try:
            stored = await self.backend.record_order(record)
        except Exception as e:
            raise PersistenceError(f"Order {record.order_hash} signed but not recorded: {e}") from e

        logger.info(f"Listed token {token_id} at {price} by {record.seller_address}: {record.order_hash}")
        return stored

    async def buy(self, order: Union[OrderRecord, Dict[str, Any]], buyer_address: str) -> BuyResult:
        """Fulfill an indexed order and record the sale.

        Args:
            order: Indexed order, or a raw record in any historical shape
            buyer_address: Purchasing account

        Returns:
            BuyResult

        Raises:
            MissingPayloadError: If the order has no signed payload or hash
            SettlementError: If fulfillment failed; the order stays active
        """
        if isinstance(order, OrderRecord):
            if order.status != OrderStatus.ACTIVE.value or order.on_chain:
                raise SettlementError(f"Order {order.order_hash} is {order.status}")
            if not order.signed_order:
                raise MissingPayloadError(f"Order {order.order_hash} has no signed order")
            order_hash = order.order_hash
            signed_order = order.signed_order_payload()
        else:
            order_hash = extract_order_hash(order)
            status = order.get('status') or OrderStatus.ACTIVE.value
            if status != OrderStatus.ACTIVE.value or order.get('onChain', order.get('on_chain')):
                raise SettlementError(f"Order {order_hash} is {status}")
            signed_order = extract_signed_order(order)
            if not order_hash:
                raise MissingPayloadError("Order has no order hash")

        if not buyer_address:
            raise SettlementError("Buyer address is required")

        try:
            receipt = await self.protocol.fulfill_order(signed_order, buyer_address)
        except SettlementError:
            raise
        except Exception as e:
            raise SettlementError(f"Fulfillment of {order_hash} failed: {e}") from e

        logger.info(f"Order {order_hash} fulfilled on-chain by {buyer_address}")

        try:
            stored = await self.backend.record_fulfillment(order_hash, buyer_address)
        except Exception as e:
            # Settled but not indexed: the settlement sweep picks this order up
            logger.error(f"Order {order_hash} settled on-chain but index update failed: {e}")
            return BuyResult(order_hash, buyer_address.lower(), receipt, indexed=False)

        return BuyResult(order_hash, buyer_address.lower(), receipt, indexed=True, order=stored)

def create_order_manager(
    settings: Dict[str, Any],
    reader: ChainReader,
    backend: Optional[MarketplaceBackend] = None,
    protocol: Optional[OrderProtocol] = None,
    approvals: Optional[ContractApprovalGateway] = None
) -> OrderManager:
    """Create an order manager wired from settings.

    Defaults: the signer service at ``signer_url``, the HTTP marketplace
    backend at ``backend_url`` and approvals sent through the first RPC
    endpoint.
    """
    if approvals is None:
        w3 = Web3(Web3.HTTPProvider(settings['rpc_endpoints'][0]))
        approvals = ContractApprovalGateway(
            w3, settings['nft_contract_address'], settings['marketplace_contract_address']
        )
    return OrderManager(
        reader,
        protocol or SignerServiceProtocol(settings['signer_url']),
        approvals,
        backend or HttpBackend(settings['backend_url']),
        settings['nft_contract_address'],
        settings['marketplace_contract_address'],
        expiry_days=settings['order_expiry_days']
    )

__all__ = [
    'OrderManager',
    'BuyResult',
    'create_order_manager',
    'to_smallest_unit',
    'OrderProtocol',
    'SignerServiceProtocol',
    'build_order_components',
    'extract_signed_order',
    'extract_order_hash',
    'unwrap_signed_result',
    'ContractApprovalGateway',
    'MarketplaceBackend',
    'LocalBackend',
    'HttpBackend',
    'OrderError',
    'InvalidPriceError',
    'NotOwnerError',
    'MissingPayloadError',
    'ApprovalError',
    'SigningError',
    'PersistenceError',
    'SettlementError'
]
