"""Command line interface for token sync and settlement sweeps.

Usage:
    python -m monitor sync          # reconcile the whole collection once
    python -m monitor token <id>    # refresh one token
    python -m monitor sweep         # heal orders settled on-chain
"""
import argparse
import asyncio
import logging
import sys

from config import get_settings
from database import init_db, get_store, close as db_close
from . import EnumerationError, create_reader, create_reconciler, create_sync_driver

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='python -m monitor', description=__doc__.split('\n')[0])
    commands = parser.add_subparsers(dest='command', required=True)
    commands.add_parser('sync', help='Reconcile every token into the metadata index')
    token = commands.add_parser('token', help='Reconcile a single token')
    token.add_argument('token_id', type=int)
    commands.add_parser('sweep', help='Apply on-chain fulfilments and cancellations to active orders')
    return parser.parse_args(argv)

async def main(argv=None) -> int:
    """Run one monitor command and return the process exit status."""
    args = parse_args(argv)
    settings = get_settings()

    logger.info("Initializing database...")
    await init_db()
    store = await get_store()
    reader = create_reader(settings)

    try:
        if args.command == 'sync':
            report = await create_sync_driver(store, settings, reader).sync()
            if report.failed_ids:
                logger.warning(f"Tokens that failed: {report.failed_ids}")

        elif args.command == 'token':
            record = await create_sync_driver(store, settings, reader).reconcile_token(args.token_id)
            if record is None:
                logger.info(f"Token {args.token_id} is not minted")
            else:
                logger.info(f"Token {record.token_id}: {record.name} owned by {record.owner_address}")

        elif args.command == 'sweep':
            await create_reconciler(store, settings, reader).sweep()

    except EnumerationError as e:
        logger.error(f"Sync aborted: {e}")
        return 1
    finally:
        logger.info("Closing database connections...")
        await db_close()

    return 0

if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
