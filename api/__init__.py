"""REST API module for the marketplace index.

This module provides HTTP endpoints for:
- Listing indexed tokens
- Listing indexed orders
- Recording signed listings and fulfillment callbacks
- System health monitoring

While running, the app sweeps the marketplace contract for settlements the
index missed (see ``monitor.settlement``).
"""

import logging
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import get_settings, SettingsError
from database import get_store
from monitor import create_reconciler

logger = logging.getLogger(__name__)

# Background task for the settlement sweep
async def settlement_sweep_task(interval: int):
    """Background task healing orders settled on-chain but still active in the index."""
    try:
        store = await get_store()
        reconciler = create_reconciler(store, get_settings())
    except Exception as e:
        logger.error(f"Settlement sweep could not start: {e}")
        return
    await reconciler.run_forever(interval)

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("Initializing API...")
    # Don't initialize DB here since it's handled in __main__.py

    sweep_task = None
    try:
        interval = get_settings()['settlement_sweep_interval']
    except SettingsError as e:
        logger.warning(f"Settlement sweep disabled: {e}")
        interval = 0

    if interval > 0:
        sweep_task = asyncio.create_task(settlement_sweep_task(interval))
        logger.info(f"Started settlement sweep task (every {interval} seconds)")

    yield

    # Shutdown
    logger.info("Shutting down API...")
    if sweep_task:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass

# Create FastAPI app
app = FastAPI(
    title="NFT Market Index API",
    description="Token metadata and marketplace order index",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render errors as ``{"success": false, "error": ...}``."""
    return JSONResponse(
        status_code=exc.status_code,
        content={'success': False, 'error': str(exc.detail)}
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = '; '.join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'success': False, 'error': errors}
    )

# Import and include all routers
from .market import router as market_router
from .system import router as system_router

# Include all routers
app.include_router(market_router)
app.include_router(system_router)
