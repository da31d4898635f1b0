"""Health check endpoints."""

from fastapi import Request

from subsync.api.router import TrailingSlashRouter

router = TrailingSlashRouter()


@router.get("")
async def health_check() -> dict[str, str]:
    """Check if the API is healthy.

    Returns:
    --------
        dict: A dictionary containing the status of the API.
    """
    return {"status": "healthy"}


@router.get("/cache")
async def cache_health_check(request: Request) -> dict[str, str]:
    """Check whether the subscription cache is reachable.

    An unreachable cache is reported but not an error: billing keeps working
    against Stripe directly, only slower.
    """
    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is None:
        return {"status": "disabled"}
    return {"status": "healthy" if await redis_client.test_connection() else "degraded"}
