"""Settlement sweep.

A buy settles on-chain first and notifies the backend second; when the
notification is lost the index keeps showing the order as active. The sweep
closes that gap by replaying the marketplace contract's OrderFulfilled and
OrderCancelled events against the active orders in the index.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from rpc import ChainReader, MarketplaceEvent
from database import IndexStore, OrderStatus

logger = logging.getLogger(__name__)

SETTLEMENT_CURSOR = 'settlement'


@dataclass
class SweepReport:
    from_block: int = 0
    to_block: int = 0
    scanned: int = 0
    fulfilled: int = 0
    cancelled: int = 0


class SettlementReconciler:
    """Heal active orders that were settled or cancelled on-chain."""

    def __init__(
        self,
        reader: ChainReader,
        store: IndexStore,
        marketplace_address: str,
        from_block: int = 0,
        log_chunk_size: int = 5000,
        cursor_name: str = SETTLEMENT_CURSOR
    ):
        self.reader = reader
        self.store = store
        self.marketplace_address = marketplace_address
        self.from_block = from_block
        self.log_chunk_size = log_chunk_size
        self.cursor_name = cursor_name

    async def apply_events(self, events: List[MarketplaceEvent], report: SweepReport) -> None:
        """Apply decoded marketplace events to the orders they name."""
        for event in events:
            report.scanned += 1
            order = await self.store.get_order(event.order_hash)
            if order is None or not order.is_active:
                continue

            if event.kind == 'fulfilled':
                _, changed = await self.store.transition_order_to_fulfilled(
                    event.order_hash, event.recipient
                )
                if changed:
                    report.fulfilled += 1
                    logger.info(
                        f"Healed order {event.order_hash}: fulfilled on-chain at block "
                        f"{event.block_number} by {event.recipient}"
                    )
            elif event.kind == 'cancelled':
                _, changed = await self.store.transition_order_to_cancelled(event.order_hash)
                if changed:
                    report.cancelled += 1
                    logger.info(
                        f"Order {event.order_hash} cancelled on-chain at block {event.block_number}"
                    )

    async def sweep(self) -> SweepReport:
        """Scan from the stored cursor to the chain head once.

        The cursor advances only after a chunk of events has been applied,
        so an interrupted sweep resumes where it stopped.
        """
        cursor = await self.store.get_cursor(self.cursor_name)
        start = cursor + 1 if cursor is not None else self.from_block
        head = await self.reader.block_number()
        report = SweepReport(from_block=start, to_block=head)

        if start > head:
            return report

        if not await self.store.read_orders(limit=1, status=OrderStatus.ACTIVE.value):
            # Nothing can be healed; settlements of later orders happen after later blocks
            await self.store.set_cursor(self.cursor_name, head)
            logger.debug(f"No active orders, settlement cursor moved to {head}")
            return report

        async def on_chunk(events: List[MarketplaceEvent], chunk_end: int) -> None:
            await self.apply_events(events, report)
            await self.store.set_cursor(self.cursor_name, chunk_end)

        await self.reader.marketplace_events(
            self.marketplace_address,
            start,
            head,
            chunk_size=self.log_chunk_size,
            on_chunk=on_chunk
        )

        logger.info(
            f"Settlement sweep {start}-{head}: {report.scanned} events, "
            f"{report.fulfilled} fulfilled, {report.cancelled} cancelled"
        )
        return report

    async def run_forever(self, interval: int) -> None:
        """Sweep every ``interval`` seconds until cancelled."""
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in settlement sweep: {e}")
            await asyncio.sleep(interval)


def create_reconciler(
    store: IndexStore,
    settings: Dict[str, Any],
    reader: Optional[ChainReader] = None
) -> SettlementReconciler:
    from . import create_reader

    return SettlementReconciler(
        reader or create_reader(settings),
        store,
        settings['marketplace_contract_address'],
        from_block=settings['from_block'],
        log_chunk_size=settings['log_chunk_size']
    )
