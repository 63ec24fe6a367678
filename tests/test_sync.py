"""Tests for the token sync driver."""

import asyncio
import base64
import json
from unittest.mock import patch

import pytest

from database import MemoryIndexStore
from metadata import MetadataResolver
from monitor import EnumerationError, TokenSyncDriver
from rpc import AllEndpointsFailed, ChainReader, EndpointPool, TransportFailure
from tests.conftest import BUYER, NFT_CONTRACT, SELLER

def inline_uri(token_id: int) -> str:
    document = {"name": f"Golden Bear {token_id}", "image": f"ipfs://QmImg/{token_id}.png"}
    return "data:application/json;base64," + base64.b64encode(json.dumps(document).encode()).decode()

def make_driver(chain, store, **kwargs):
    reader = ChainReader(EndpointPool(["https://rpc-a.example", "https://rpc-b.example"]), NFT_CONTRACT, binder=chain.binder)
    return TokenSyncDriver(reader, MetadataResolver(), store, **kwargs)

@pytest.fixture
def memory_store():
    return MemoryIndexStore()

@pytest.mark.asyncio
async def test_sync_writes_every_minted_token(chain, memory_store):
    """Test a full pass over the Transfer history."""
    for token_id in range(5):
        chain.mint(token_id, SELLER, inline_uri(token_id), block=token_id + 1)

    report = await make_driver(chain, memory_store).sync()

    assert (report.total, report.written, report.skipped, report.failed) == (5, 5, 0, 0)
    record = await memory_store.get_metadata(3)
    assert record.name == "Golden Bear 3"
    assert record.image_uri == "https://ipfs.io/ipfs/QmImg/3.png"
    assert record.owner_address == SELLER.lower()
    assert record.nft_contract == NFT_CONTRACT.lower()

@pytest.mark.asyncio
async def test_unminted_token_is_skipped(chain, memory_store):
    """Test that token 42 (unminted) is skipped while its batch completes."""
    for token_id in range(40, 45):
        chain.mint(token_id, SELLER, inline_uri(token_id))
    del chain.owners[42]  # burned: still in the Transfer history

    report = await make_driver(chain, memory_store, batch_size=5).sync()

    assert report.skipped == 1
    assert report.written == 4
    assert report.failed == 0
    assert await memory_store.get_metadata(42) is None
    assert await memory_store.get_metadata(43) is not None

@pytest.mark.asyncio
async def test_reconcile_is_idempotent(chain, memory_store):
    """Test that reconciling an unchanged token N times yields the same record."""
    chain.mint(7, SELLER, inline_uri(7))
    driver = make_driver(chain, memory_store)

    records = [await driver.reconcile_token(7) for _ in range(3)]

    assert records[0] == records[1] == records[2]
    assert len(await memory_store.read_metadata_page(0, 10)) == 1

@pytest.mark.asyncio
async def test_reconcile_picks_up_new_owner(chain, memory_store):
    """Test that a resale is mirrored on the next pass."""
    chain.mint(7, SELLER, inline_uri(7))
    driver = make_driver(chain, memory_store)
    await driver.reconcile_token(7)

    chain.owners[7] = BUYER
    record = await driver.reconcile_token(7)

    assert record.owner_address == BUYER.lower()

@pytest.mark.asyncio
async def test_per_token_failures_are_isolated(chain, memory_store):
    """Test that a token failing on every endpoint does not stop the run."""
    for token_id in range(4):
        chain.mint(token_id, SELLER, inline_uri(token_id))
    driver = make_driver(chain, memory_store, batch_size=2)
    original = driver.reader.read_token

    async def flaky_read(token_id):
        if token_id == 1:
            raise AllEndpointsFailed('ownerOf/tokenURI', [TransportFailure("timeout", endpoint="https://rpc-a.example")])
        return await original(token_id)

    with patch.object(driver.reader, 'read_token', side_effect=flaky_read):
        report = await driver.sync()

    assert report.failed == 1
    assert report.failed_ids == [1]
    assert report.written == 3
    assert await memory_store.get_metadata(1) is None

@pytest.mark.asyncio
async def test_unreachable_metadata_still_written(chain, memory_store):
    """Test that a token with a broken URI gets the fallback descriptor."""
    chain.mint(9, SELLER, "data:application/json;base64,!!!")

    await make_driver(chain, memory_store).sync()

    record = await memory_store.get_metadata(9)
    assert record.name == "Bear #9"

@pytest.mark.asyncio
async def test_enumeration_failure_is_fatal(chain, memory_store):
    """Test that failing to enumerate the population aborts the run."""
    chain.down = {"https://rpc-a.example", "https://rpc-b.example"}

    with pytest.raises(EnumerationError):
        await make_driver(chain, memory_store).sync()

@pytest.mark.asyncio
async def test_supply_enumeration(chain, memory_store):
    """Test enumerating the contiguous range from totalSupply."""
    for token_id in (1, 2, 3):
        chain.mint(token_id, SELLER, inline_uri(token_id))

    driver = make_driver(chain, memory_store, enumeration='supply', first_token_id=1)
    assert await driver.enumerate_tokens() == [1, 2, 3]

    report = await driver.sync()
    assert report.written == 3

@pytest.mark.asyncio
async def test_batches_bound_concurrency(chain, memory_store):
    """Test that no more than batch_size tokens are in flight at once."""
    for token_id in range(10):
        chain.mint(token_id, SELLER, inline_uri(token_id))
    driver = make_driver(chain, memory_store, batch_size=3)
    original = driver.reader.read_token
    in_flight = 0
    peak = 0

    async def slow_read(token_id):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        try:
            return await original(token_id)
        finally:
            in_flight -= 1

    with patch.object(driver.reader, 'read_token', side_effect=slow_read):
        report = await driver.sync()

    assert report.written == 10
    assert peak == 3

def test_rejects_bad_configuration(chain, memory_store):
    """Test constructor validation."""
    with pytest.raises(ValueError):
        make_driver(chain, memory_store, batch_size=0)
    with pytest.raises(ValueError):
        make_driver(chain, memory_store, enumeration='random')

@pytest.mark.asyncio
async def test_concurrent_batch_fails_over_to_live_endpoint(chain, memory_store):
    """Test that every token of a concurrent batch reaches the one endpoint still up."""
    endpoints = ["https://rpc-a.example", "https://rpc-b.example", "https://rpc-c.example"]
    for token_id in range(6):
        chain.mint(token_id, SELLER, inline_uri(token_id))
    reader = ChainReader(EndpointPool(endpoints), NFT_CONTRACT, binder=chain.binder)
    driver = TokenSyncDriver(reader, MetadataResolver(), memory_store, batch_size=6)
    original = driver.enumerate_tokens

    async def enumerate_then_fail():
        token_ids = await original()
        chain.down = set(endpoints[:2])
        return token_ids

    with patch.object(driver, 'enumerate_tokens', side_effect=enumerate_then_fail):
        report = await driver.sync()

    assert (report.written, report.failed) == (6, 0)
    assert reader.endpoint == endpoints[2]
