"""Monitor module for mirroring the token collection into the index.

This module provides:
- Token population enumeration (Transfer history or total supply)
- Batched, bounded-concurrency reconciliation of each token
- Settlement sweeps healing orders that settled on-chain (see ``settlement``)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rpc import ChainReader, EndpointPool, RPCError, TokenNotMinted
from metadata import MetadataResolver
from database import IndexStore, TokenRecord

# Configure logging
logger = logging.getLogger(__name__)

WRITTEN = 'written'
SKIPPED = 'skipped'
FAILED = 'failed'


class EnumerationError(Exception):
    """Raised when the token population cannot be determined at all"""
    pass


@dataclass
class SyncReport:
    """Outcome of one full sync pass."""
    total: int = 0
    written: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: List[int] = field(default_factory=list)


class TokenSyncDriver:
    """Reconcile on-chain ownership and metadata into the index store."""

    def __init__(
        self,
        reader: ChainReader,
        resolver: MetadataResolver,
        store: IndexStore,
        batch_size: int = 20,
        enumeration: str = 'events',
        from_block: int = 0,
        first_token_id: int = 0,
        log_chunk_size: int = 5000,
        nft_contract: Optional[str] = None
    ):
        """Initialize the sync driver.

        Args:
            reader: Chain reader over the token contract
            resolver: Metadata resolver
            store: Index store receiving the metadata rows
            batch_size: Tokens reconciled concurrently; batches run one after another
            enumeration: 'events' (Transfer history) or 'supply' (totalSupply range)
            from_block: First block scanned for Transfer events
            first_token_id: First token id of the supply range
            log_chunk_size: Blocks per eth_getLogs request
            nft_contract: Contract address recorded on each row
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if enumeration not in ('events', 'supply'):
            raise ValueError(f"Unknown enumeration strategy: {enumeration}")

        self.reader = reader
        self.resolver = resolver
        self.store = store
        self.batch_size = batch_size
        self.enumeration = enumeration
        self.from_block = from_block
        self.first_token_id = first_token_id
        self.log_chunk_size = log_chunk_size
        self.nft_contract = nft_contract or reader.contract_address

    async def enumerate_tokens(self) -> List[int]:
        """List every token id to reconcile, ascending.

        Raises:
            EnumerationError: If the ledger cannot be queried for the population
        """
        try:
            if self.enumeration == 'supply':
                supply = await self.reader.total_supply()
                token_ids = list(range(self.first_token_id, self.first_token_id + supply))
            else:
                head = await self.reader.block_number()
                token_ids = await self.reader.transfer_token_ids(
                    self.from_block, head, self.log_chunk_size
                )
        except RPCError as e:
            raise EnumerationError(f"Could not enumerate tokens ({self.enumeration}): {e}") from e

        logger.info(f"Enumerated {len(token_ids)} tokens by {self.enumeration}")
        return token_ids

    async def reconcile_token(self, token_id: int) -> Optional[TokenRecord]:
        """Read, resolve and upsert one token.

        Returns:
            The stored record, or None if the token is not minted

        Raises:
            AllEndpointsFailed: If the ledger could not be read
        """
        try:
            owner, uri = await self.reader.read_token(token_id)
        except TokenNotMinted:
            logger.debug(f"Token {token_id} not minted, skipping")
            return None

        descriptor = await self.resolver.resolve(token_id, uri)
        record = await self.store.upsert_metadata(TokenRecord(
            token_id=token_id,
            owner_address=owner,
            name=descriptor.name,
            image_uri=descriptor.image_uri,
            nft_contract=self.nft_contract
        ))
        logger.debug(f"Synced token {token_id} (owner {owner})")
        return record

    async def _reconcile_isolated(self, token_id: int) -> str:
        try:
            record = await self.reconcile_token(token_id)
        except Exception as e:
            logger.warning(f"Failed to sync token {token_id}: {e}")
            return FAILED
        return WRITTEN if record is not None else SKIPPED

    async def sync(self) -> SyncReport:
        """Reconcile the full token population once.

        Raises:
            EnumerationError: If the token population cannot be determined
        """
        token_ids = await self.enumerate_tokens()
        report = SyncReport(total=len(token_ids))

        for start in range(0, len(token_ids), self.batch_size):
            batch = token_ids[start:start + self.batch_size]
            outcomes = await asyncio.gather(*(self._reconcile_isolated(t) for t in batch))

            for token_id, outcome in zip(batch, outcomes):
                if outcome == WRITTEN:
                    report.written += 1
                elif outcome == SKIPPED:
                    report.skipped += 1
                else:
                    report.failed += 1
                    report.failed_ids.append(token_id)

            logger.info(
                f"Batch {start // self.batch_size + 1}: "
                f"{min(start + self.batch_size, len(token_ids))}/{len(token_ids)} tokens processed"
            )

        logger.info(
            f"Sync complete: {report.written} written, {report.skipped} not minted, "
            f"{report.failed} failed"
        )
        return report


def create_reader(settings: Dict[str, Any]) -> ChainReader:
    """Build a chain reader over the configured endpoints and token contract."""
    return ChainReader(
        EndpointPool(settings['rpc_endpoints']),
        settings['nft_contract_address'],
        timeout=settings['rpc_timeout']
    )


def create_resolver(settings: Dict[str, Any]) -> MetadataResolver:
    return MetadataResolver(
        gateway=settings['ipfs_gateway'],
        placeholder_image=settings['placeholder_image'],
        name_prefix=settings['token_name_prefix'],
        timeout=settings['metadata_timeout']
    )


def create_sync_driver(
    store: IndexStore,
    settings: Dict[str, Any],
    reader: Optional[ChainReader] = None
) -> TokenSyncDriver:
    """Create a sync driver wired from settings.

    Args:
        store: Index store to write to
        settings: Validated settings dictionary
        reader: Optional reader to share with other components

    Returns:
        TokenSyncDriver: A new sync driver
    """
    return TokenSyncDriver(
        reader or create_reader(settings),
        create_resolver(settings),
        store,
        batch_size=settings['sync_batch_size'],
        enumeration=settings['token_enumeration'],
        from_block=settings['from_block'],
        first_token_id=settings['first_token_id'],
        log_chunk_size=settings['log_chunk_size'],
        nft_contract=settings['nft_contract_address']
    )


from .settlement import SettlementReconciler, SweepReport, SETTLEMENT_CURSOR, create_reconciler  # noqa: E402

# Export public interface
__all__ = [
    'TokenSyncDriver',
    'SyncReport',
    'EnumerationError',
    'SettlementReconciler',
    'SweepReport',
    'SETTLEMENT_CURSOR',
    'create_reader',
    'create_resolver',
    'create_sync_driver',
    'create_reconciler'
]
