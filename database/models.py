"""Record types for the off-chain index.

The index mirrors two things: per-token descriptive data (``metadata``) and
marketplace listing orders (``orders``). Both tables are written by key only,
``token_id`` for metadata and ``order_hash`` for orders.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID


class OrderStatus(str, Enum):
    """Lifecycle states of an indexed order."""
    ACTIVE = 'active'
    FULFILLED = 'fulfilled'
    CANCELLED = 'cancelled'


def normalize_address(address: Optional[str]) -> Optional[str]:
    """Lowercase an account address, passing None through."""
    if address is None:
        return None
    return address.strip().lower()


def normalize_hash(order_hash: Optional[str]) -> Optional[str]:
    """Lowercase a 0x-prefixed digest, adding the prefix when missing."""
    if order_hash is None:
        return None
    value = order_hash.strip().lower()
    if value and not value.startswith('0x'):
        value = '0x' + value
    return value


def serialize_signed_order(payload: Union[str, Dict[str, Any]]) -> str:
    """Serialise a signed order for storage.

    Text payloads are kept verbatim after checking they parse as JSON, so a
    payload stored once is returned byte-for-byte. Mappings are dumped with
    their key order intact.
    """
    if isinstance(payload, str):
        json.loads(payload)
        return payload
    return json.dumps(payload, separators=(',', ':'), ensure_ascii=False)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class TokenRecord:
    """One row of the metadata mirror."""
    token_id: int
    owner_address: str
    name: str
    image_uri: str
    nft_contract: Optional[str] = None
    # Excluded from equality: two passes over an unchanged token compare equal
    last_synced_at: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self):
        self.token_id = int(self.token_id)
        self.owner_address = normalize_address(self.owner_address)
        self.nft_contract = normalize_address(self.nft_contract)

    def to_api(self) -> Dict[str, Any]:
        return {
            'tokenId': self.token_id,
            'nftContract': self.nft_contract,
            'ownerAddress': self.owner_address,
            'name': self.name,
            'image': self.image_uri,
            'lastSyncedAt': _isoformat(self.last_synced_at)
        }


@dataclass
class OrderRecord:
    """One row of the marketplace order index.

    ``signed_order`` holds the serialised payload produced by the order
    protocol; use ``signed_order_payload()`` to get it back as a mapping.
    """
    order_hash: str
    seller_address: str
    signed_order: str
    token_id: Optional[int] = None
    price: Optional[int] = None
    buyer_address: Optional[str] = None
    on_chain: bool = False
    status: str = OrderStatus.ACTIVE.value
    nft_contract: Optional[str] = None
    marketplace_contract: Optional[str] = None
    image: Optional[str] = None
    id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.order_hash = normalize_hash(self.order_hash)
        self.seller_address = normalize_address(self.seller_address)
        self.buyer_address = normalize_address(self.buyer_address)
        self.nft_contract = normalize_address(self.nft_contract)
        self.marketplace_contract = normalize_address(self.marketplace_contract)
        if self.token_id is not None:
            self.token_id = int(self.token_id)
        if self.price is not None:
            self.price = int(self.price)
        if isinstance(self.status, OrderStatus):
            self.status = self.status.value

    @classmethod
    def new_listing(
        cls,
        order_hash: str,
        seller_address: str,
        signed_order: Union[str, Dict[str, Any]],
        token_id: Optional[int] = None,
        price: Optional[int] = None,
        nft_contract: Optional[str] = None,
        marketplace_contract: Optional[str] = None,
        image: Optional[str] = None
    ) -> 'OrderRecord':
        """Build an active, not-yet-settled order."""
        return cls(
            order_hash=order_hash,
            seller_address=seller_address,
            signed_order=serialize_signed_order(signed_order),
            token_id=token_id,
            price=price,
            nft_contract=nft_contract,
            marketplace_contract=marketplace_contract,
            image=image
        )

    @property
    def is_active(self) -> bool:
        return self.status == OrderStatus.ACTIVE.value and not self.on_chain

    def signed_order_payload(self) -> Dict[str, Any]:
        return json.loads(self.signed_order)

    def to_api(self) -> Dict[str, Any]:
        return {
            'id': str(self.id) if self.id else None,
            'orderHash': self.order_hash,
            'tokenId': self.token_id,
            # Decimal string: wei amounts overflow JavaScript numbers
            'price': str(self.price) if self.price is not None else None,
            'nftContract': self.nft_contract,
            'marketplaceContract': self.marketplace_contract,
            'sellerAddress': self.seller_address,
            'buyerAddress': self.buyer_address,
            'signedOrder': self.signed_order_payload(),
            'onChain': self.on_chain,
            'status': self.status,
            'image': self.image,
            'createdAt': _isoformat(self.created_at),
            'updatedAt': _isoformat(self.updated_at)
        }


@dataclass(frozen=True)
class MetadataSchema:
    """Table and column names of the metadata mirror.

    One sync driver serves every deployment; deployments that keep the
    mirror under different names configure them here instead of forking
    the sync code.
    """
    table: str = 'metadata'
    token_id: str = 'token_id'
    nft_contract: str = 'nft_contract'
    owner_address: str = 'owner_address'
    name: str = 'name'
    image_uri: str = 'image_uri'
    last_synced_at: str = 'last_synced_at'

    def __post_init__(self):
        for attr, column in self.columns():
            if not column.isidentifier():
                raise ValueError(f"Invalid column name for {attr}: {column!r}")
        if not self.table.isidentifier():
            raise ValueError(f"Invalid table name: {self.table!r}")

    def columns(self) -> List[Tuple[str, str]]:
        """(record attribute, column name) pairs in insert order."""
        return [
            ('token_id', self.token_id),
            ('nft_contract', self.nft_contract),
            ('owner_address', self.owner_address),
            ('name', self.name),
            ('image_uri', self.image_uri),
            ('last_synced_at', self.last_synced_at)
        ]

    def to_record(self, row) -> TokenRecord:
        return TokenRecord(**{attr: row[column] for attr, column in self.columns()})


__all__ = [
    'OrderStatus',
    'TokenRecord',
    'OrderRecord',
    'MetadataSchema',
    'normalize_address',
    'normalize_hash',
    'serialize_signed_order'
]
