"""System health endpoint."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

# Create router
router = APIRouter(
    prefix="/api",
    tags=["System"]
)

@router.get("/status")
async def get_status() -> Dict[str, Any]:
    """Liveness check."""
    return {'ok': True, 'time': datetime.now(timezone.utc).isoformat()}
