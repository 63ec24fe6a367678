"""Tests for the order lifecycle manager."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from database import MemoryIndexStore
from orders import (
    ApprovalError,
    ContractApprovalGateway,
    HttpBackend,
    InvalidPriceError,
    LocalBackend,
    MissingPayloadError,
    NotOwnerError,
    OrderManager,
    PersistenceError,
    SettlementError,
    SigningError,
    build_order_components,
    extract_signed_order,
    to_smallest_unit,
    unwrap_signed_result
)
from rpc import ChainReader, EndpointPool
from tests.conftest import BUYER, MARKETPLACE, NFT_CONTRACT, SELLER, order_hash

PRICE = 150000000000000000

class FakeProtocol:
    """Order protocol returning canned signatures and receipts."""

    def __init__(self, wrap: bool = False):
        self.wrap = wrap
        self.created = []
        self.fulfilled = []
        self.fulfill_error = None

    async def create_order(self, components, account):
        self.created.append((components, account))
        order = {
            'parameters': {**components, 'offerer': account},
            'signature': '0x' + 'ab' * 65,
            'orderHash': order_hash(len(self.created))
        }
        return {'order': order} if self.wrap else order

    async def fulfill_order(self, order, account):
        if self.fulfill_error:
            raise self.fulfill_error
        self.fulfilled.append((order, account))
        return {'transactionHash': '0x' + 'cd' * 32, 'status': 1}

@pytest.fixture
def memory_store():
    return MemoryIndexStore()

@pytest.fixture
def approvals():
    gateway = MagicMock()
    gateway.ensure_approved = AsyncMock(return_value=False)
    return gateway

@pytest.fixture
def protocol():
    return FakeProtocol()

@pytest.fixture
def manager(chain, memory_store, approvals, protocol):
    chain.mint(7, SELLER)
    reader = ChainReader(EndpointPool(["https://rpc-a.example"]), NFT_CONTRACT, binder=chain.binder)
    return OrderManager(
        reader, protocol, approvals, LocalBackend(memory_store), NFT_CONTRACT, MARKETPLACE
    )

def test_to_smallest_unit():
    """Test converting display prices to wei."""
    assert to_smallest_unit("0.15") == PRICE
    assert to_smallest_unit(1) == 10 ** 18
    assert to_smallest_unit("2.5", decimals=6) == 2500000
    for bad in ("0", "-1", "abc", "0.0000000000000000001"):
        with pytest.raises(InvalidPriceError):
            to_smallest_unit(bad)

def test_build_order_components():
    """Test the offer/consideration layout handed to the protocol."""
    components = build_order_components(NFT_CONTRACT, 7, PRICE, SELLER, expiry_days=30, now=1000)

    assert components == {
        'offer': [{'itemType': 2, 'token': NFT_CONTRACT, 'identifier': '7'}],
        'consideration': [{'amount': str(PRICE), 'recipient': SELLER}],
        'endTime': str(1000 + 30 * 86400)
    }

def test_unwrap_signed_result():
    """Test both signing result shapes and the missing-hash rejection."""
    order = {'parameters': {}, 'signature': '0x01'}
    assert unwrap_signed_result({'order': order, 'orderHash': '0x12'}) == (order, '0x12')
    assert unwrap_signed_result({**order, 'orderHash': '0x34'})[1] == '0x34'
    with pytest.raises(SigningError):
        unwrap_signed_result(order)

def test_extract_signed_order_legacy_shapes():
    """Test translating historical record shapes to the signed order."""
    order = {'parameters': {'offerer': SELLER}, 'signature': '0x01'}
    for record in (
        {'signedOrder': order},
        {'seaportOrder': order},
        {'seaportorder': order},
        {'seaport_order': order},
        {'seaportOrderJSON': json.dumps(order)},
    ):
        assert extract_signed_order(record) == order

    with pytest.raises(MissingPayloadError):
        extract_signed_order({'orderHash': '0x12'})

@pytest.mark.asyncio
async def test_list_token(manager, memory_store, protocol, approvals):
    """Test listing token 7 at 0.15 creates one active order."""
    record = await manager.list_token(7, PRICE, SELLER)

    assert record.status == 'active'
    assert record.on_chain is False
    assert record.price == PRICE
    assert record.token_id == 7
    assert record.order_hash == order_hash(1)
    approvals.ensure_approved.assert_awaited_once_with(SELLER)
    components, account = protocol.created[0]
    assert account == SELLER
    assert components['consideration'][0]['amount'] == str(PRICE)

    stored = await memory_store.get_order(order_hash(1))
    assert stored.signed_order_payload()['orderHash'] == order_hash(1)

@pytest.mark.asyncio
async def test_list_token_wrapped_result(manager, memory_store, protocol):
    """Test a signing result wrapped as {"order": ...}."""
    protocol.wrap = True

    record = await manager.list_token(7, PRICE, SELLER)

    assert record.order_hash == order_hash(1)
    assert 'order' not in record.signed_order_payload()

@pytest.mark.asyncio
async def test_relisting_creates_independent_orders(manager, memory_store):
    """Test that two listings of one token with distinct hashes are both active."""
    await manager.list_token(7, PRICE, SELLER)
    await manager.list_token(7, 2 * PRICE, SELLER)

    orders = await memory_store.read_orders(status='active')
    assert len(orders) == 2
    assert {o.token_id for o in orders} == {7}

@pytest.mark.asyncio
async def test_list_by_non_owner(manager, memory_store, protocol, approvals):
    """Test that a non-owner is rejected before approval, signing or persistence."""
    with pytest.raises(NotOwnerError):
        await manager.list_token(7, PRICE, BUYER)

    approvals.ensure_approved.assert_not_awaited()
    assert protocol.created == []
    assert await memory_store.read_orders(status=None) == []

@pytest.mark.asyncio
async def test_list_unminted_token(manager, memory_store):
    """Test that an unminted token cannot be listed."""
    with pytest.raises(NotOwnerError):
        await manager.list_token(99, PRICE, SELLER)

@pytest.mark.asyncio
@pytest.mark.parametrize("price", [0, -5, "0.15", 1.5, True])
async def test_list_invalid_price(manager, protocol, price):
    """Test that prices must be positive integers in smallest units."""
    with pytest.raises(InvalidPriceError):
        await manager.list_token(7, price, SELLER)
    assert protocol.created == []

@pytest.mark.asyncio
async def test_approval_failure_aborts(manager, memory_store, protocol, approvals):
    """Test that a failed approval leaves nothing signed or stored."""
    approvals.ensure_approved.side_effect = ApprovalError("reverted")

    with pytest.raises(ApprovalError):
        await manager.list_token(7, PRICE, SELLER)

    assert protocol.created == []
    assert await memory_store.read_orders() == []

@pytest.mark.asyncio
async def test_signing_failure_aborts(manager, memory_store, protocol):
    """Test that a signer failure leaves no active order."""
    protocol.create_order = AsyncMock(side_effect=RuntimeError("user rejected"))

    with pytest.raises(SigningError):
        await manager.list_token(7, PRICE, SELLER)

    assert await memory_store.read_orders() == []

@pytest.mark.asyncio
async def test_persistence_failure(manager):
    """Test that a backend failure surfaces as PersistenceError."""
    manager.backend = MagicMock()
    manager.backend.record_order = AsyncMock(side_effect=ConnectionError("backend down"))

    with pytest.raises(PersistenceError):
        await manager.list_token(7, PRICE, SELLER)

@pytest.mark.asyncio
async def test_buy(manager, memory_store, protocol):
    """Test that a buy settles and transitions exactly that order."""
    listed = await manager.list_token(7, PRICE, SELLER)
    other = await manager.list_token(7, PRICE, SELLER)

    result = await manager.buy(listed, BUYER)

    assert result.indexed is True
    assert result.buyer_address == BUYER.lower()
    assert result.receipt['status'] == 1
    assert protocol.fulfilled[0] == (listed.signed_order_payload(), BUYER)
    stored = await memory_store.get_order(listed.order_hash)
    assert (stored.status, stored.on_chain, stored.buyer_address) == ('fulfilled', True, BUYER.lower())
    untouched = await memory_store.get_order(other.order_hash)
    assert untouched.status == 'active'

@pytest.mark.asyncio
async def test_buy_legacy_record(manager, memory_store, protocol):
    """Test buying from a record in a historical shape."""
    listed = await manager.list_token(7, PRICE, SELLER)
    legacy = {'orderhash': listed.order_hash, 'seaportorder': listed.signed_order}

    result = await manager.buy(legacy, BUYER)

    assert result.indexed is True
    assert protocol.fulfilled[0][0] == listed.signed_order_payload()

@pytest.mark.asyncio
async def test_buy_settlement_failure_leaves_order_active(manager, memory_store, protocol):
    """Test that a rejected fulfillment is reported and the index untouched."""
    listed = await manager.list_token(7, PRICE, SELLER)
    protocol.fulfill_error = RuntimeError("transaction reverted")

    with pytest.raises(SettlementError):
        await manager.buy(listed, BUYER)

    stored = await memory_store.get_order(listed.order_hash)
    assert stored.status == 'active'
    assert stored.on_chain is False

@pytest.mark.asyncio
async def test_buy_fulfilled_order_rejected(manager, protocol):
    """Test that an already fulfilled order is not sent for settlement again."""
    listed = await manager.list_token(7, PRICE, SELLER)
    await manager.buy(listed, BUYER)
    fulfilled = await manager.backend.store.get_order(listed.order_hash)

    with pytest.raises(SettlementError):
        await manager.buy(fulfilled, BUYER)
    assert len(protocol.fulfilled) == 1

@pytest.mark.asyncio
async def test_buy_fulfilled_legacy_record_rejected(manager, protocol):
    """Test that a settled record in a historical shape is not sent for settlement."""
    listed = await manager.list_token(7, PRICE, SELLER)
    legacy = {'orderhash': listed.order_hash, 'seaportorder': listed.signed_order}

    with pytest.raises(SettlementError):
        await manager.buy(dict(legacy, status='fulfilled'), BUYER)
    with pytest.raises(SettlementError):
        await manager.buy(dict(legacy, onChain=True), BUYER)
    assert protocol.fulfilled == []

@pytest.mark.asyncio
async def test_buy_missing_payload(manager):
    """Test that a record without a signed order is rejected."""
    with pytest.raises(MissingPayloadError):
        await manager.buy({'orderHash': order_hash(1)}, BUYER)

@pytest.mark.asyncio
async def test_buy_notification_failure_reports_unindexed(manager, memory_store):
    """Test that a lost notification after settlement is reported, not raised."""
    listed = await manager.list_token(7, PRICE, SELLER)
    manager.backend = MagicMock()
    manager.backend.record_fulfillment = AsyncMock(side_effect=ConnectionError("backend down"))

    result = await manager.buy(listed, BUYER)

    assert result.indexed is False
    stored = await memory_store.get_order(listed.order_hash)
    assert stored.status == 'active'

@pytest.mark.asyncio
async def test_approval_gateway_approves_once():
    """Test that approval is checked and sent at most once per seller."""
    w3 = MagicMock()
    contract = w3.eth.contract.return_value
    contract.functions.isApprovedForAll.return_value.call.return_value = False
    contract.functions.setApprovalForAll.return_value.transact.return_value = b'\x01' * 32
    w3.eth.wait_for_transaction_receipt.return_value = {'status': 1}
    gateway = ContractApprovalGateway(w3, NFT_CONTRACT, MARKETPLACE)

    assert await gateway.ensure_approved(SELLER) is True
    assert await gateway.ensure_approved(SELLER.lower()) is False

    contract.functions.setApprovalForAll.assert_called_once()
    contract.functions.isApprovedForAll.assert_called_once()

@pytest.mark.asyncio
async def test_approval_gateway_reverted():
    """Test that a reverted approval raises ApprovalError."""
    w3 = MagicMock()
    contract = w3.eth.contract.return_value
    contract.functions.isApprovedForAll.return_value.call.return_value = False
    contract.functions.setApprovalForAll.return_value.transact.return_value = b'\x01' * 32
    w3.eth.wait_for_transaction_receipt.return_value = {'status': 0}
    gateway = ContractApprovalGateway(w3, NFT_CONTRACT, MARKETPLACE)

    with pytest.raises(ApprovalError):
        await gateway.ensure_approved(SELLER)

@pytest.mark.asyncio
async def test_http_backend_posts_callback():
    """Test the HTTP backend's fulfillment notification."""
    session = MagicMock()
    session.post.return_value.status_code = 200
    session.post.return_value.json.return_value = {
        'success': True,
        'order': {
            'orderHash': order_hash(1),
            'sellerAddress': SELLER,
            'signedOrder': {'signature': '0x01'},
            'tokenId': 7,
            'price': str(PRICE),
            'buyerAddress': BUYER.lower(),
            'onChain': True,
            'status': 'fulfilled'
        }
    }
    backend = HttpBackend("http://backend.example/", session=session)

    record = await backend.record_fulfillment(order_hash(1), BUYER)

    session.post.assert_called_once_with(
        "http://backend.example/api/buy",
        json={'orderHash': order_hash(1), 'buyerAddress': BUYER},
        timeout=30
    )
    assert record.status == 'fulfilled'
    assert record.price == PRICE

@pytest.mark.asyncio
async def test_http_backend_does_not_retry_client_errors():
    """Test that a 400 from the backend is not retried."""
    session = MagicMock()
    error_response = MagicMock(status_code=400)
    session.post.return_value.status_code = 400
    session.post.return_value.raise_for_status.side_effect = requests.HTTPError(response=error_response)
    backend = HttpBackend("http://backend.example", session=session)

    with pytest.raises(requests.HTTPError):
        await backend.record_fulfillment(order_hash(1), BUYER)
    assert session.post.call_count == 1
