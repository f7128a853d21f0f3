from typing import Callable, Dict, List
import time
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp


class RateLimiter:
    """Simple in-memory sliding-window rate limiter"""
    def __init__(self):
        self.requests: Dict[str, List[float]] = {}

    def is_rate_limited(self, identifier: str, max_requests: int, window: int = 60) -> bool:
        """
        Check if a request should be rate limited

        Args:
            identifier: Unique identifier for the client (IP address)
            max_requests: Maximum number of requests allowed in the window
            window: Time window in seconds

        Returns:
            bool: True if the request should be rate limited, False otherwise
        """
        current_time = time.monotonic()

        # Drop requests that fell out of the window
        recent = [t for t in self.requests.get(identifier, []) if current_time - t < window]

        if len(recent) >= max_requests:
            self.requests[identifier] = recent
            return True

        recent.append(current_time)
        self.requests[identifier] = recent
        return False


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware for per-client rate limiting of API requests
    """
    default_skip_paths = (
        "/docs",
        "/redoc",
        "/livez",
        "/readyz",
        "/metrics",
    )

    def __init__(
        self,
        app: ASGIApp,
        max_requests: int = 120,
        window: int = 60,
        openapi_url: str = "/openapi.json",
    ):
        super().__init__(app)
        self.rate_limiter = RateLimiter()
        self.max_requests = max_requests
        self.window = window
        self.skip_paths = self.default_skip_paths + (openapi_url,)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith(self.skip_paths):
            return await call_next(request)

        client_identifier = request.client.host if request.client else "anonymous"

        if self.rate_limiter.is_rate_limited(client_identifier, self.max_requests, self.window):
            return Response(
                content='{"error": "Rate limit exceeded"}',
                status_code=429,
                media_type="application/json"
            )

        return await call_next(request)
