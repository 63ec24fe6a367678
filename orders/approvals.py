"""Marketplace operator approval.

Before a listing can be filled the marketplace contract must be allowed to
transfer the seller's tokens (``setApprovalForAll``). The approval is a
transaction, so it is sent only when the ledger says it is missing and is
awaited until mined.
"""
import asyncio
import logging
from typing import Dict, Set, Tuple

from web3 import Web3

from rpc import ERC721_ABI
from .exceptions import ApprovalError

logger = logging.getLogger(__name__)


class ContractApprovalGateway:
    """Grants the marketplace operator rights over a seller's tokens, at most once per pair."""

    def __init__(self, w3: Web3, nft_contract: str, operator: str, receipt_timeout: int = 180):
        """Initialize the gateway.

        Args:
            w3: Web3 connection able to send transactions for the sellers
                (unlocked node account or signing middleware)
            nft_contract: ERC-721 contract address
            operator: Marketplace contract to approve
            receipt_timeout: Seconds to wait for the approval to be mined
        """
        self.w3 = w3
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(nft_contract), abi=ERC721_ABI)
        self.operator = Web3.to_checksum_address(operator)
        self.receipt_timeout = receipt_timeout
        self._approved: Set[Tuple[str, str]] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _is_approved(self, owner: str) -> bool:
        return self.contract.functions.isApprovedForAll(owner, self.operator).call()

    def _approve(self, owner: str):
        tx_hash = self.contract.functions.setApprovalForAll(self.operator, True).transact({'from': owner})
        logger.info(f"Sent setApprovalForAll for {owner} -> {self.operator}: {Web3.to_hex(tx_hash)}")
        return self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)

    async def ensure_approved(self, owner_address: str) -> bool:
        """Make sure the marketplace may transfer ``owner_address``'s tokens.

        Returns:
            True if an approval transaction was sent, False if already approved

        Raises:
            ApprovalError: If the check or the approval transaction failed
        """
        owner = Web3.to_checksum_address(owner_address)
        key = (owner.lower(), self.operator.lower())
        if key in self._approved:
            return False

        lock = self._locks.setdefault(key[0], asyncio.Lock())
        async with lock:
            if key in self._approved:
                return False
            try:
                if await asyncio.to_thread(self._is_approved, owner):
                    self._approved.add(key)
                    return False

                receipt = await asyncio.to_thread(self._approve, owner)
            except Exception as e:
                raise ApprovalError(f"Approval of {self.operator} for {owner} failed: {e}") from e

            if receipt.get('status') != 1:
                raise ApprovalError(f"Approval transaction for {owner} reverted")

            self._approved.add(key)
            return True
