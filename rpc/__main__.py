"""Command line interface for checking ledger connectivity"""
import asyncio
import sys

from config import get_settings
from . import ChainReader, EndpointPool, AllEndpointsFailed, TokenNotMinted

async def check_rpc(token_id: int = None) -> int:
    """Read chain head, supply and one token through the configured endpoints"""
    settings = get_settings()
    pool = EndpointPool(settings['rpc_endpoints'])
    reader = ChainReader(pool, settings['nft_contract_address'], timeout=settings['rpc_timeout'])

    try:
        print("\nEndpoints:")
        print("-" * 50)
        for endpoint in pool.endpoints:
            print(f"  {endpoint}")

        print("\n1. Chain head:")
        print(f"  Block {await reader.block_number()} (via {reader.endpoint})")

        print("\n2. Total supply:")
        try:
            print(f"  {await reader.total_supply()} tokens")
        except AllEndpointsFailed as e:
            print(f"  Not available: {e}")

        token_id = settings['first_token_id'] if token_id is None else token_id
        print(f"\n3. Token {token_id}:")
        try:
            owner, uri = await reader.read_token(token_id)
            print(f"  Owner: {owner}")
            print(f"  URI:   {uri}")
        except TokenNotMinted:
            print("  Not minted")

    except AllEndpointsFailed as e:
        print(f"\nAll endpoints failed:")
        for error in e.errors:
            print(f"  {error.endpoint}: {error}")
        return 1

    return 0

if __name__ == "__main__":
    token = int(sys.argv[1]) if len(sys.argv) > 1 else None
    sys.exit(asyncio.run(check_rpc(token)))
