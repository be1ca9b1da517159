"""
HTTP client shared by platform adapters.

Composes an httpx.AsyncClient with the resilience policy and the optional
outbound rate limiter. Request headers are never logged.
"""
from typing import Any, Optional

import httpx

from syncengine.adapters.resilience import ResiliencePolicy
from syncengine.errors import ErrorKind, Result
from syncengine.logging_config import get_logger
from syncengine.metrics import track_adapter_request
from syncengine.services.rate_limiter import RateLimiter


class PlatformHttpClient:
    """One client per adapter instance; closed when the adapter is released."""

    def __init__(
        self,
        platform: str,
        tenant_id: str,
        base_url: str,
        policy: ResiliencePolicy,
        headers: Optional[dict] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.platform = platform
        self.tenant_id = tenant_id
        self.policy = policy
        self.rate_limiter = rate_limiter
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers or {},
            timeout=timeout,
            transport=transport,
        )
        self.log = get_logger(tenant_id=tenant_id, platform=platform)

    async def request(self, method: str, url: str, **kwargs: Any) -> Result:
        """
        Send a request through the resilience policy.

        Returns:
            Result wrapping the httpx.Response on 2xx, otherwise the classified error
        """
        if self.rate_limiter is not None:
            allowed, retry_after = await self.rate_limiter.is_allowed(self.tenant_id, self.platform)
            if not allowed:
                track_adapter_request(self.platform, "rate_limited")
                return Result.failure(
                    ErrorKind.TRANSIENT,
                    "rate_limited",
                    f"outbound quota exhausted, retry in {retry_after}s",
                )

        async def send() -> httpx.Response:
            return await self._client.request(method, url, **kwargs)

        result = await self.policy.execute(send)
        if result.ok:
            track_adapter_request(self.platform, "success")
            self.log.debug("adapter_request", method=method, path=url, status_code=result.value.status_code)
        else:
            track_adapter_request(self.platform, result.error.kind.value)
            self.log.warning(
                "adapter_request_failed",
                method=method,
                path=url,
                error_kind=result.error.kind.value,
                error_code=result.error.code,
            )
        return result

    async def get(self, url: str, **kwargs: Any) -> Result:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> Result:
        return await self.request("POST", url, **kwargs)

    async def aclose(self):
        await self._client.aclose()


def json_body(result: Result) -> Result:
    """Decode the JSON body of a successful response result."""
    if not result.ok:
        return result
    try:
        return Result.success(result.value.json())
    except ValueError:
        return Result.failure(ErrorKind.PERMANENT, "invalid_json", "remote returned a non-JSON body")
