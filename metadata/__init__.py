"""Metadata module for resolving token URIs into display descriptors.

Resolution is total: an unreachable gateway, a malformed document or an empty
URI all produce the fallback descriptor, never an exception.
"""
import asyncio
import base64
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import unquote

import requests

logger = logging.getLogger(__name__)

IPFS_SCHEME = 'ipfs://'
DEFAULT_GATEWAY = 'https://ipfs.io/ipfs/'
DEFAULT_PLACEHOLDER = 'https://ipfs.io/ipfs/QmExampleNFTImage/default.png'
DATA_JSON_PREFIX = 'data:application/json'


class MetadataUnavailable(Exception):
    """Raised inside the resolver when a descriptor cannot be obtained"""
    pass


@dataclass
class TokenDescriptor:
    name: str
    image_uri: str
    fallback: bool = False


def normalize_uri(uri: Optional[str], gateway: str = DEFAULT_GATEWAY) -> Optional[str]:
    """Rewrite content-addressed ``ipfs://`` locators to an HTTP gateway URL.

    ``ipfs://<cid>/path`` and ``ipfs://ipfs/<cid>/path`` both map to
    ``<gateway><cid>/path``; anything else is returned unchanged.
    """
    if not uri:
        return uri
    uri = uri.strip()
    if not uri.lower().startswith(IPFS_SCHEME):
        return uri

    path = uri[len(IPFS_SCHEME):]
    if path.startswith('ipfs/'):
        path = path[len('ipfs/'):]
    if not gateway.endswith('/'):
        gateway += '/'
    return gateway + path


def decode_data_uri(uri: str) -> Dict[str, Any]:
    """Decode an inline ``data:application/json[;base64],...`` document.

    Raises:
        MetadataUnavailable: If the payload cannot be decoded
    """
    header, _, payload = uri.partition(',')
    try:
        if header.endswith(';base64'):
            text = base64.b64decode(payload).decode('utf-8')
        else:
            text = unquote(payload)
        return json.loads(text)
    except (ValueError, UnicodeDecodeError) as e:
        raise MetadataUnavailable(f"Invalid inline metadata: {e}") from e


class MetadataResolver:
    """Turns token URIs into ``TokenDescriptor``s."""

    def __init__(
        self,
        gateway: str = DEFAULT_GATEWAY,
        placeholder_image: str = DEFAULT_PLACEHOLDER,
        name_prefix: str = 'Bear',
        timeout: int = 10,
        session: Optional[requests.Session] = None
    ):
        self.gateway = gateway
        self.placeholder_image = placeholder_image
        self.name_prefix = name_prefix
        self.timeout = timeout
        self.session = session or requests.Session()

    def fallback_name(self, token_id: int) -> str:
        return f"{self.name_prefix} #{token_id}"

    def _fetch(self, url: str) -> Any:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise MetadataUnavailable(f"Fetch failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise MetadataUnavailable(f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise MetadataUnavailable(f"Response is not JSON: {e}") from e

    async def load_document(self, uri: Optional[str]) -> Dict[str, Any]:
        """Fetch and parse the JSON document behind a token URI.

        Raises:
            MetadataUnavailable: On an empty URI or any fetch/parse failure
        """
        if not uri or not uri.strip():
            raise MetadataUnavailable("Empty token URI")

        uri = uri.strip()
        if uri.lower().startswith(DATA_JSON_PREFIX):
            document = decode_data_uri(uri)
        else:
            document = await asyncio.to_thread(self._fetch, normalize_uri(uri, self.gateway))

        if not isinstance(document, dict):
            raise MetadataUnavailable(f"Expected a JSON object, got {type(document).__name__}")
        return document

    async def resolve(self, token_id: int, uri: Optional[str]) -> TokenDescriptor:
        """Resolve a token URI into ``(name, image_uri)``, falling back per field."""
        try:
            document = await self.load_document(uri)
        except MetadataUnavailable as e:
            logger.warning(f"Metadata unavailable for token {token_id} ({uri}): {e}")
            return TokenDescriptor(
                name=self.fallback_name(token_id),
                image_uri=self.placeholder_image,
                fallback=True
            )

        name = document.get('name')
        image = document.get('image') or document.get('image_url')
        if not isinstance(name, str) or not name.strip():
            name = self.fallback_name(token_id)
        if not isinstance(image, str) or not image.strip():
            image = self.placeholder_image

        return TokenDescriptor(name=name, image_uri=normalize_uri(image, self.gateway))


__all__ = [
    'MetadataResolver',
    'TokenDescriptor',
    'MetadataUnavailable',
    'normalize_uri',
    'decode_data_uri'
]
