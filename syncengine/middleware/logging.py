"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context.
"""
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from syncengine.logging_config import get_logger
from syncengine.metrics import track_request

logger = get_logger()


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: tenant_id, user_id, route, duration_ms, status to every log.
    tenant_id is set on request.state by the auth dependency, so it is read
    after the handler ran.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._bind(request).error(
                "request_failed",
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e)
            )
            raise

        duration = time.time() - start_time
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        track_request(request.method, endpoint, response.status_code, duration)

        self._bind(request).info(
            "request_completed",
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        return response

    @staticmethod
    def _bind(request: Request):
        tenant_id = getattr(request.state, "tenant_id", None)
        user_id = getattr(request.state, "user_id", None)
        return logger.bind(
            tenant_id=str(tenant_id) if tenant_id else None,
            user_id=str(user_id) if user_id else None,
            route=request.url.path,
            method=request.method,
        )
