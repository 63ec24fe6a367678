"""RPC module for reading the token and marketplace contracts.

Reads go through an ``EndpointPool``: a logical read is attempted against the
reader's current endpoint and, on any transport or contract-call error, the
next endpoint is taken from the pool and the contract binding is rebuilt,
up to one attempt per endpoint.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from web3 import Web3
from web3.exceptions import ContractLogicError

from .abi import ERC721_ABI, ORDER_CANCELLED_TOPIC, ORDER_FULFILLED_TOPIC, TRANSFER_TOPIC

logger = logging.getLogger(__name__)

# Revert reasons for a token that was never minted (or was burned)
NONEXISTENT_TOKEN_MARKERS = (
    'erc721nonexistenttoken',
    'ownerqueryfornonexistenttoken',
    'uriqueryfornonexistenttoken',
    'invalid token id',
    'nonexistent token',
    'owner query for nonexistent token'
)

# Provider messages for an eth_getLogs range that must be split
LOG_RANGE_MARKERS = (
    'query returned more than',
    'response size exceeded',
    'too many results',
    'block range',
    'range too large',
    'limited to'
)


class RPCError(Exception):
    """Base exception for ledger read errors"""
    def __init__(self, message: str, method: Optional[str] = None, endpoint: Optional[str] = None):
        self.method = method
        self.endpoint = endpoint
        super().__init__(message)


class TransportFailure(RPCError):
    """Raised when one attempt against one endpoint fails"""
    pass


class AllEndpointsFailed(RPCError):
    """Raised when a read failed on every endpoint of the pool"""
    def __init__(self, method: str, errors: List[TransportFailure]):
        self.errors = errors
        detail = '; '.join(f"{e.endpoint}: {e}" for e in errors)
        super().__init__(f"{method} failed on all {len(errors)} endpoints ({detail})", method)


class LogRangeTooLarge(RPCError):
    """Raised when a provider refuses an eth_getLogs block range as too large"""
    pass


class TokenNotMinted(Exception):
    """The ledger reports that a token does not exist.

    Not an ``RPCError``: an unminted token is an expected outcome that
    callers skip, it is never retried.
    """
    def __init__(self, token_id: int):
        self.token_id = token_id
        super().__init__(f"Token {token_id} does not exist")


@dataclass(frozen=True)
class MarketplaceEvent:
    """An order settlement observed on the marketplace contract."""
    kind: str  # 'fulfilled' or 'cancelled'
    order_hash: str
    recipient: Optional[str]
    block_number: int
    log_index: int = 0


def is_nonexistent_token_error(error: BaseException) -> bool:
    """Check whether an error is the ledger saying "no such token"."""
    if isinstance(error, ContractLogicError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in NONEXISTENT_TOKEN_MARKERS)


def is_log_range_error(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in LOG_RANGE_MARKERS)


def bind_contract(endpoint: str, address: str, timeout: int = 10, abi: Optional[list] = None):
    """Build a fresh web3 connection and contract binding for one endpoint.

    Args:
        endpoint: HTTP(S) JSON-RPC URL
        address: Contract address (any case)
        timeout: Request timeout in seconds
        abi: Contract ABI, ERC-721 by default

    Returns:
        web3 contract object; its connection is ``contract.w3``
    """
    w3 = Web3(Web3.HTTPProvider(endpoint, request_kwargs={'timeout': timeout}))
    return w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi or ERC721_ABI)


def _topic_int(topic: Any) -> int:
    if isinstance(topic, str):
        return int(topic, 16)
    return int.from_bytes(bytes(topic), 'big')


def _data_bytes(data: Any) -> bytes:
    if isinstance(data, str):
        return bytes.fromhex(data[2:] if data.startswith('0x') else data)
    return bytes(data)


def _topic_hex(topic: Any) -> str:
    return Web3.to_hex(topic).lower() if not isinstance(topic, str) else topic.lower()


def decode_marketplace_log(log: Any) -> Optional[MarketplaceEvent]:
    """Decode a Seaport OrderFulfilled/OrderCancelled log.

    The order hash is the first (non-indexed) data word of both events;
    OrderFulfilled carries the recipient in the second word.
    """
    topics = log['topics']
    if not topics:
        return None
    topic0 = _topic_hex(topics[0])
    data = _data_bytes(log['data'])
    if len(data) < 32:
        return None
    order_hash = '0x' + data[:32].hex()

    if topic0 == ORDER_FULFILLED_TOPIC:
        recipient = '0x' + data[44:64].hex() if len(data) >= 64 else None
        kind = 'fulfilled'
    elif topic0 == ORDER_CANCELLED_TOPIC:
        recipient = None
        kind = 'cancelled'
    else:
        return None

    return MarketplaceEvent(
        kind=kind,
        order_hash=order_hash,
        recipient=recipient,
        block_number=int(log['blockNumber']),
        log_index=int(log.get('logIndex', 0) or 0)
    )


class EndpointPool:
    """Ordered ring of ledger read endpoints.

    ``next()`` never blocks and never fails. Failed endpoints are rotated
    past, not removed, so a transient outage heals on the next lap.
    """

    def __init__(self, endpoints: Sequence[str]):
        self.endpoints = [endpoint.strip() for endpoint in endpoints if endpoint and endpoint.strip()]
        if not self.endpoints:
            raise ValueError("EndpointPool needs at least one endpoint")
        self._index = 0

    def __len__(self) -> int:
        return len(self.endpoints)

    def next(self) -> str:
        endpoint = self.endpoints[self._index]
        self._index = (self._index + 1) % len(self.endpoints)
        return endpoint

    def ring(self, start: str) -> List[str]:
        """Every endpoint once, beginning at ``start``.

        Computed per call; the round-robin cursor is left untouched.
        """
        index = self.endpoints.index(start) if start in self.endpoints else self._index
        return self.endpoints[index:] + self.endpoints[:index]


class ChainReader:
    """Read-only view over the token contract, with endpoint failover."""

    def __init__(
        self,
        pool: EndpointPool,
        contract_address: str,
        binder: Callable[..., Any] = bind_contract,
        timeout: int = 10
    ):
        """Initialize the reader.

        Args:
            pool: Endpoint pool owned by this reader
            contract_address: ERC-721 contract address
            binder: ``(endpoint, address, timeout) -> contract`` factory,
                    called fresh for every attempt
            timeout: Per-request timeout in seconds
        """
        self.pool = pool
        self.contract_address = contract_address
        self.binder = binder
        self.timeout = timeout
        self._endpoint = pool.next()

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def _call(
        self,
        method: str,
        fn: Callable[[Any], Any],
        address: Optional[str] = None,
        token_id: Optional[int] = None,
        log_query: bool = False
    ) -> Any:
        """Run ``fn(contract)`` with one attempt per endpoint.

        Raises:
            TokenNotMinted: If ``token_id`` is given and the ledger says it does not exist
            LogRangeTooLarge: If ``log_query`` and the provider refuses the block range
            AllEndpointsFailed: If every endpoint failed
        """
        errors: List[TransportFailure] = []
        ring = self.pool.ring(self._endpoint)

        for attempt, endpoint in enumerate(ring):
            try:
                contract = self.binder(endpoint, address or self.contract_address, self.timeout)
                result = await asyncio.to_thread(fn, contract)
                self._endpoint = endpoint
                return result
            except Exception as e:
                if token_id is not None and is_nonexistent_token_error(e):
                    raise TokenNotMinted(token_id) from e
                if log_query and is_log_range_error(e):
                    raise LogRangeTooLarge(str(e), method, endpoint) from e

                logger.warning(f"{method} failed on {endpoint} (attempt {attempt + 1}/{len(ring)}): {e}")
                errors.append(TransportFailure(str(e), method, endpoint))

        logger.error(f"{method} failed on all endpoints")
        raise AllEndpointsFailed(method, errors)

    async def owner_of(self, token_id: int) -> str:
        owner = await self._call(
            'ownerOf',
            lambda c: c.functions.ownerOf(int(token_id)).call(),
            token_id=token_id
        )
        return owner.lower()

    async def token_uri(self, token_id: int) -> str:
        return await self._call(
            'tokenURI',
            lambda c: c.functions.tokenURI(int(token_id)).call(),
            token_id=token_id
        )

    async def read_token(self, token_id: int) -> Tuple[str, str]:
        """Read ``(owner_address, token_uri)`` for a token.

        Raises:
            TokenNotMinted: If the token does not exist
            AllEndpointsFailed: If every endpoint failed
        """
        def read(contract):
            owner = contract.functions.ownerOf(int(token_id)).call()
            uri = contract.functions.tokenURI(int(token_id)).call()
            return owner, uri

        owner, uri = await self._call('ownerOf/tokenURI', read, token_id=token_id)
        return owner.lower(), uri

    async def total_supply(self) -> int:
        return int(await self._call('totalSupply', lambda c: c.functions.totalSupply().call()))

    async def block_number(self) -> int:
        return int(await self._call('eth_blockNumber', lambda c: c.w3.eth.block_number))

    async def _get_logs(self, method: str, params: dict, address: Optional[str] = None) -> list:
        return await self._call(
            method, lambda c: c.w3.eth.get_logs(params), address=address, log_query=True
        )

    async def _chunked_logs(
        self,
        method: str,
        address: str,
        topics: list,
        from_block: int,
        to_block: int,
        chunk_size: int,
        on_chunk: Optional[Callable[[list, int], Any]] = None
    ) -> list:
        """Fetch logs in block chunks, halving the chunk when a provider refuses it.

        ``on_chunk(logs, chunk_end)`` is awaited after each chunk when given.
        """
        collected = []
        current = from_block
        size = max(int(chunk_size), 1)
        checksum = Web3.to_checksum_address(address)

        while current <= to_block:
            chunk_end = min(current + size - 1, to_block)
            try:
                logs = await self._get_logs(
                    method,
                    {
                        'fromBlock': current,
                        'toBlock': chunk_end,
                        'address': checksum,
                        'topics': topics
                    },
                    address=address
                )
            except LogRangeTooLarge:
                if size <= 1:
                    raise
                size = max(size // 2, 1)
                logger.warning(f"{method} range {current}-{chunk_end} too large, reducing chunk to {size} blocks")
                continue

            logs = sorted(logs, key=lambda log: (log['blockNumber'], log.get('logIndex', 0)))
            if on_chunk is not None:
                await on_chunk(logs, chunk_end)
            else:
                collected.extend(logs)
            current = chunk_end + 1

        return collected

    async def transfer_token_ids(self, from_block: int, to_block: int, chunk_size: int = 5000) -> List[int]:
        """Distinct token ids seen in Transfer events, ascending."""
        logs = await self._chunked_logs(
            'eth_getLogs(Transfer)',
            self.contract_address,
            [TRANSFER_TOPIC],
            from_block,
            to_block,
            chunk_size
        )
        token_ids = {_topic_int(log['topics'][3]) for log in logs if len(log['topics']) > 3}
        return sorted(token_ids)

    async def marketplace_events(
        self,
        address: str,
        from_block: int,
        to_block: int,
        chunk_size: int = 5000,
        on_chunk: Optional[Callable[[List[MarketplaceEvent], int], Any]] = None
    ) -> List[MarketplaceEvent]:
        """Fulfilled/cancelled orders on the marketplace contract in a block range.

        With ``on_chunk`` the decoded events are handed over chunk by chunk
        (together with the chunk's last block) and nothing is returned.
        """
        async def decode_chunk(logs, chunk_end):
            events = [event for event in map(decode_marketplace_log, logs) if event]
            await on_chunk(events, chunk_end)

        logs = await self._chunked_logs(
            'eth_getLogs(Seaport)',
            address,
            [[ORDER_FULFILLED_TOPIC, ORDER_CANCELLED_TOPIC]],
            from_block,
            to_block,
            chunk_size,
            on_chunk=decode_chunk if on_chunk else None
        )
        return [event for event in map(decode_marketplace_log, logs) if event]


__all__ = [
    'EndpointPool',
    'ChainReader',
    'MarketplaceEvent',
    'bind_contract',
    'decode_marketplace_log',
    'is_nonexistent_token_error',
    'RPCError',
    'TransportFailure',
    'AllEndpointsFailed',
    'LogRangeTooLarge',
    'TokenNotMinted',
    'ERC721_ABI',
    'TRANSFER_TOPIC',
    'ORDER_FULFILLED_TOPIC',
    'ORDER_CANCELLED_TOPIC'
]
