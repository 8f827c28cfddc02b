"""
TLS API endpoints.

Read-only view of the per-hostname credential state:
- cached TLS contexts and in-flight resolutions
- raw credential cache contents
- results of the startup address announcements
"""
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel


router = APIRouter(prefix="/api/tls", tags=["TLS"])


# ============================================================================
# Response Models
# ============================================================================


class AnnouncementStatus(BaseModel):
    """Outcome of one startup announcement."""

    hostname: str
    address: str
    success: bool
    ack: Optional[str] = None
    error: Optional[str] = None


class TLSStatusResponse(BaseModel):
    """Credential and listener status."""

    cached_hostnames: list[str] = []
    in_flight: list[str] = []
    hits: int = 0
    misses: int = 0
    failures: int = 0
    raw_cache_dir: Optional[str] = None
    raw_cached_hostnames: list[str] = []
    announcements: list[AnnouncementStatus] = []
    listener: Optional[dict] = None


# ============================================================================
# Status Endpoint
# ============================================================================


@router.get("/status", response_model=TLSStatusResponse)
async def get_tls_status(request: Request):
    """
    Get current credential status.

    Lists hostnames with a cached TLS context, hostnames being resolved,
    and what the raw credential cache holds.
    """
    state = request.app.state
    context_cache = getattr(state, "context_cache", None)
    if context_cache is None:
        raise HTTPException(status_code=503, detail="TLS listener not initialized")

    stats = context_cache.stats()
    response = TLSStatusResponse(
        cached_hostnames=stats["hostnames"],
        in_flight=stats["in_flight"],
        hits=stats["hits"],
        misses=stats["misses"],
        failures=stats["failures"],
        announcements=[
            AnnouncementStatus(**vars(result))
            for result in getattr(state, "announce_results", [])
        ],
    )

    raw_cache = getattr(state, "raw_cache", None)
    if raw_cache is not None:
        response.raw_cache_dir = str(raw_cache.cache_dir)
        response.raw_cached_hostnames = raw_cache.list_hostnames()

    listener = getattr(state, "listener", None)
    if listener is not None:
        response.listener = listener.get_status()

    return response
