"""Shared fixtures: an in-memory ledger standing in for the JSON-RPC endpoints."""

import os
from typing import Dict, List, Optional, Set

import asyncpg
import pytest
import pytest_asyncio
from web3.exceptions import ContractLogicError

from database import MemoryIndexStore, PostgresIndexStore
from database.lib.schema_manager import SchemaManager
from rpc import TRANSFER_TOPIC, ORDER_FULFILLED_TOPIC, ORDER_CANCELLED_TOPIC

NFT_CONTRACT = "0x1111111111111111111111111111111111111111"
MARKETPLACE = "0x0000000000000068F116a894984e2DB1123eB395"
SELLER = "0xAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAaAa"
BUYER = "0xBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBbBb"

def word(value: int) -> bytes:
    return value.to_bytes(32, 'big')

def address_word(address: str) -> bytes:
    return bytes(12) + bytes.fromhex(address[2:])

def topic_bytes(topic: str) -> bytes:
    return bytes.fromhex(topic[2:])

def order_hash(n: int) -> str:
    return '0x' + word(n).hex()

class FakeChain:
    """A token contract and marketplace living in dictionaries.

    Endpoints listed in ``down`` fail every call with a transport error.
    """

    def __init__(self):
        self.owners: Dict[int, str] = {}
        self.uris: Dict[int, str] = {}
        self.supply: Optional[int] = None
        self.head = 100
        self.logs: List[dict] = []
        self.down: Set[str] = set()
        self.max_log_range: Optional[int] = None
        self.calls: List[tuple] = []

    def mint(self, token_id: int, owner: str, uri: str = '', block: int = 1):
        self.owners[token_id] = owner
        self.uris[token_id] = uri
        self.logs.append({
            'address': NFT_CONTRACT,
            'topics': [
                topic_bytes(TRANSFER_TOPIC),
                bytes(32),
                address_word(owner),
                word(token_id)
            ],
            'data': b'',
            'blockNumber': block,
            'logIndex': len(self.logs)
        })

    def fulfil(self, hash_value: str, recipient: str, block: int):
        self.logs.append({
            'address': MARKETPLACE,
            'topics': [topic_bytes(ORDER_FULFILLED_TOPIC), address_word(SELLER), bytes(32)],
            'data': bytes.fromhex(hash_value[2:]) + address_word(recipient) + word(128) + word(160),
            'blockNumber': block,
            'logIndex': len(self.logs)
        })

    def cancel(self, hash_value: str, block: int):
        self.logs.append({
            'address': MARKETPLACE,
            'topics': [topic_bytes(ORDER_CANCELLED_TOPIC), address_word(SELLER), bytes(32)],
            'data': bytes.fromhex(hash_value[2:]),
            'blockNumber': block,
            'logIndex': len(self.logs)
        })

    def binder(self, endpoint: str, address: str, timeout: int = 10):
        return FakeContract(self, endpoint, address)

class FakeCall:
    def __init__(self, fn):
        self.fn = fn

    def call(self):
        return self.fn()

class FakeFunctions:
    def __init__(self, contract):
        self.contract = contract

    def ownerOf(self, token_id):
        return FakeCall(lambda: self.contract.read('ownerOf', token_id))

    def tokenURI(self, token_id):
        return FakeCall(lambda: self.contract.read('tokenURI', token_id))

    def totalSupply(self):
        return FakeCall(lambda: self.contract.read('totalSupply'))

class FakeEth:
    def __init__(self, contract):
        self.contract = contract

    @property
    def block_number(self):
        self.contract.check('eth_blockNumber')
        return self.contract.chain.head

    def get_logs(self, params):
        chain = self.contract.chain
        self.contract.check('eth_getLogs', params['fromBlock'], params['toBlock'])
        span = params['toBlock'] - params['fromBlock'] + 1
        if chain.max_log_range and span > chain.max_log_range:
            raise ValueError({'code': -32005, 'message': 'query returned more than 10000 results'})

        wanted = params['topics'][0]
        wanted = {t.lower() for t in wanted} if isinstance(wanted, list) else {wanted.lower()}
        return [
            log for log in chain.logs
            if params['fromBlock'] <= log['blockNumber'] <= params['toBlock']
            and log['address'].lower() == params['address'].lower()
            and '0x' + log['topics'][0].hex() in wanted
        ]

class FakeW3:
    def __init__(self, contract):
        self.eth = FakeEth(contract)

class FakeContract:
    def __init__(self, chain: FakeChain, endpoint: str, address: str):
        self.chain = chain
        self.endpoint = endpoint
        self.address = address
        self.functions = FakeFunctions(self)
        self.w3 = FakeW3(self)

    def check(self, method, *args):
        self.chain.calls.append((self.endpoint, method) + args)
        if self.endpoint in self.chain.down:
            raise ConnectionError(f"{self.endpoint} unreachable")

    def read(self, method, *args):
        self.check(method, *args)
        if method == 'totalSupply':
            if self.chain.supply is None:
                return len(self.chain.owners)
            return self.chain.supply
        token_id = args[0]
        if token_id not in self.chain.owners:
            raise ContractLogicError("execution reverted: ERC721NonexistentToken")
        if method == 'ownerOf':
            return self.chain.owners[token_id]
        return self.chain.uris[token_id]

@pytest.fixture
def chain():
    """Fake ledger with no tokens."""
    return FakeChain()

@pytest_asyncio.fixture(params=['memory', 'postgres'])
async def store(request):
    """Index store; the PostgreSQL variant needs TEST_DB_URL."""
    if request.param == 'memory':
        yield MemoryIndexStore()
        return

    db_url = os.environ.get('TEST_DB_URL')
    if not db_url:
        pytest.skip("TEST_DB_URL not set")

    pool = await asyncpg.create_pool(db_url)
    await SchemaManager(pool).initialize()
    async with pool.acquire() as conn:
        await conn.execute('TRUNCATE metadata, orders, sync_state')
    yield PostgresIndexStore(pool)
    await pool.close()
