"""
Health router: liveness and version endpoint.
"""
import os

from fastapi import APIRouter

router = APIRouter(tags=["Health"])


@router.get("/api/health")
async def health_check():
    """Health check endpoint returning version information."""
    version = os.environ.get("RELAY_VERSION", "unknown")
    git_commit = os.environ.get("GIT_COMMIT", "unknown")

    return {
        "status": "healthy",
        "service": "sni-credential-relay",
        "version": version,
        "git_commit": git_commit,
    }
