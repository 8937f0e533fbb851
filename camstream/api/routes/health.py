"""Health check endpoint."""

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint.

    Returns simple OK response for load balancers and monitoring.
    """
    return {"status": "ok", "service": "camstream"}
