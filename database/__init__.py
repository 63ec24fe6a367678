"""Database module for managing the index store connection.

This module handles:
- Database connection pool initialization
- Schema management
- Connection lifecycle
- Selecting the configured index store
"""

import logging
import ssl
from typing import Optional, Dict, Any
import backoff
import asyncpg
from urllib.parse import urlparse, parse_qs

from .lib.schema_manager import SchemaManager
from .exceptions import DatabaseError, DatabaseSchemaError, RecordNotFoundError
from .models import MetadataSchema, OrderRecord, OrderStatus, TokenRecord
from .store import IndexStore, PostgresIndexStore
from .memory import MemoryIndexStore

logger = logging.getLogger(__name__)

MEMORY_URL = 'memory://'

_pool: Optional[asyncpg.Pool] = None
_schema_manager: Optional[SchemaManager] = None
_store: Optional[IndexStore] = None

def _get_ssl_context() -> ssl.SSLContext:
    """Create SSL context for hosted database connections."""
    ssl_context = ssl.create_default_context()
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    return ssl_context

def _get_connection_kwargs(db_url: str) -> Dict[str, Any]:
    """Get connection kwargs from database URL.

    Args:
        db_url: Database connection URL

    Returns:
        Dict of connection parameters
    """
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)

    kwargs: Dict[str, Any] = {
        'server_settings': {
            'statement_timeout': '300000',  # 5 minutes
        }
    }

    sslmode = params.get('sslmode', ['require'])[0]
    kwargs['ssl'] = False if sslmode == 'disable' else _get_ssl_context()

    return kwargs

def _database_name(db_url: str) -> str:
    parsed = urlparse(db_url)
    db_name = parsed.path.strip('/')
    if not db_name:
        params = parse_qs(parsed.query)
        db_name = params.get('database', ['defaultdb'])[0]
    return db_name

def _metadata_schema(metadata_table: Optional[str]) -> MetadataSchema:
    return MetadataSchema(table=metadata_table) if metadata_table else MetadataSchema()

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def create_database_if_not_exists(db_url: str) -> None:
    """Create the database if it doesn't exist.

    Args:
        db_url: Database connection URL

    Raises:
        Exception: If database creation fails after retries
    """
    try:
        db_name = _database_name(db_url)

        # Connect to the default database
        parsed = urlparse(db_url)
        base_url = parsed._replace(path='/defaultdb').geturl()
        logger.info(f"Connecting to defaultdb to create {db_name} if needed")

        conn = await asyncpg.connect(base_url, **_get_connection_kwargs(base_url))

        try:
            exists = await conn.fetchval(
                'SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)',
                db_name
            )

            if not exists:
                await conn.execute(f'CREATE DATABASE "{db_name}"')
                logger.info(f"Created database {db_name}")

        finally:
            await conn.close()

    except Exception as e:
        logger.error(f"Error creating database: {e}")
        raise

@backoff.on_exception(
    backoff.expo,
    (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.CannotConnectNowError, OSError),
    max_tries=5
)
async def init_db(db_url: Optional[str] = None, metadata_table: Optional[str] = None) -> None:
    """Initialize the database connection pool and schema.

    Args:
        db_url: Optional database URL. If not provided, will use settings.
        metadata_table: Optional table name for the metadata mirror. If not
                        provided, will use settings.

    Raises:
        ValueError: If database URL is not provided
        Exception: If initialization fails after retries
    """
    global _pool, _schema_manager, _store

    try:
        if db_url is None or metadata_table is None:
            # Import here so the store can be used without a settings file
            from config import get_settings
            settings = get_settings()
            db_url = db_url or settings.get('db_url')
            metadata_table = metadata_table or settings.get('metadata_table')

        if not db_url:
            raise ValueError("Database URL not provided")

        if db_url.startswith(MEMORY_URL):
            logger.info("Using in-memory index store")
            _store = MemoryIndexStore()
            return

        if _database_name(db_url) != 'defaultdb':
            await create_database_if_not_exists(db_url)

        _pool = await asyncpg.create_pool(
            db_url,
            min_size=2,          # Minimum idle connections
            max_size=20,         # Maximum connections
            max_queries=10000,   # Reset connection after this many queries
            max_inactive_connection_lifetime=300.0,  # 5 minutes
            command_timeout=60.0,  # 1 minute command timeout
            **_get_connection_kwargs(db_url)
        )

        schema = _metadata_schema(metadata_table)
        _schema_manager = SchemaManager(_pool, table_names={'metadata': schema.table})
        await _schema_manager.initialize()

        _store = PostgresIndexStore(_pool, schema)

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

async def get_pool() -> asyncpg.Pool:
    """Get the database connection pool.

    Returns:
        The connection pool

    Raises:
        RuntimeError: If pool hasn't been initialized
    """
    if not _pool:
        await init_db()
    if not _pool:
        raise RuntimeError("Failed to initialize database pool")
    return _pool

async def get_store() -> IndexStore:
    """Get the configured index store, initializing the database on first use."""
    if not _store:
        await init_db()
    if not _store:
        raise RuntimeError("Failed to initialize index store")
    return _store

async def close() -> None:
    """Close the database connection pool."""
    global _pool, _schema_manager, _store

    if _pool:
        await _pool.close()
    _pool = None
    _schema_manager = None
    _store = None

# Export public interface
__all__ = [
    'init_db',
    'get_pool',
    'get_store',
    'close',
    'IndexStore',
    'PostgresIndexStore',
    'MemoryIndexStore',
    'MetadataSchema',
    'TokenRecord',
    'OrderRecord',
    'OrderStatus',
    'DatabaseError',
    'DatabaseSchemaError',
    'RecordNotFoundError'
]
