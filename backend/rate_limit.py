from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from backend.config import RATE_LIMIT_ENABLED


def device_key(request: Request) -> str:
    """Throttle per scanning device; without a fingerprint, per bearer session."""
    fingerprint = request.headers.get("X-Device-Fingerprint", "").strip()
    if fingerprint:
        return f"device:{fingerprint}"
    authorization = request.headers.get("Authorization", "").strip()
    if authorization:
        return f"session:{authorization}"
    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)


async def rate_limit_handler(_request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": f"Too many scans: {exc.detail}", "code": "RATE_LIMITED", "retry": True},
    )
