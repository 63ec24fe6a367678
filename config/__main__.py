"""Command line interface for checking configuration loading"""
from pathlib import Path

from . import get_settings, SettingsError

EXAMPLE_SETTINGS = """[DEFAULT]
# Database connection URL (use memory:// for a throwaway in-memory index)
db_url = postgresql://root@localhost:26257/defaultdb?sslmode=disable

# Ledger read endpoints, tried in order and rotated on failure
rpc_endpoints = https://rpc.apechain.com/http,
    https://apechain.drpc.org,
    https://33139.rpc.thirdweb.com

# Contracts
nft_contract_address = 0x0000000000000000000000000000000000000000
marketplace_contract_address = 0x0000000000000068F116a894984e2DB1123eB395

# Token sync
token_enumeration = events
from_block = 0
sync_batch_size = 20

# Metadata
ipfs_gateway = https://ipfs.io/ipfs/
token_name_prefix = Bear

# Orders
order_expiry_days = 30
settlement_sweep_interval = 300
"""

def main():
    """Display loaded configuration"""
    # Save example configuration file first so a fresh checkout has something to copy
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)

    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write(EXAMPLE_SETTINGS)
    print(f"Wrote {examples_dir / 'settings.conf.example'}")

    try:
        settings = get_settings()
    except SettingsError as e:
        print(f"\n{e}")
        return

    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings.items():
        print(f"{key}: {value}")

if __name__ == "__main__":
    main()
