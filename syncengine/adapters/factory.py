"""
Adapter factory.

Builds a platform adapter for one tenant's credentials, wired to that
tenant's circuit breaker. Adapters are meant to be used as `async with`
blocks and discarded afterwards.
"""
import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from syncengine.adapters.base import BaseAdapter
from syncengine.adapters.delhivery import DelhiveryAdapter
from syncengine.adapters.http import PlatformHttpClient
from syncengine.adapters.resilience import CircuitBreakerRegistry, ResiliencePolicy, breakers
from syncengine.adapters.shopify import ShopifyAdapter
from syncengine.config import Settings, settings
from syncengine.errors import UnsupportedPlatformError
from syncengine.services.credential_store import AdapterCredential
from syncengine.services.rate_limiter import RateLimiter


ADAPTERS: dict[str, type[BaseAdapter]] = {
    ShopifyAdapter.platform_type: ShopifyAdapter,
    DelhiveryAdapter.platform_type: DelhiveryAdapter,
}


def resolve_adapter_class(platform_type: str) -> type[BaseAdapter]:
    adapter_cls = ADAPTERS.get(platform_type)
    if adapter_cls is None:
        raise UnsupportedPlatformError(f"No adapter registered for platform: {platform_type}")
    return adapter_cls


class AdapterFactory:
    """Creates adapters keyed on platform type."""

    def __init__(
        self,
        config: Settings = settings,
        breaker_registry: Optional[CircuitBreakerRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.breakers = breaker_registry or breakers
        self.transport = transport
        if rate_limiter is None and config.ADAPTER_RATE_LIMIT_PER_MINUTE > 0:
            rate_limiter = RateLimiter(config.REDIS_URL, limit=config.ADAPTER_RATE_LIMIT_PER_MINUTE)
        self.rate_limiter = rate_limiter
        self._sleep = sleep

    def create(
        self,
        credential: AdapterCredential,
        tenant_id: str,
        stop_event: Optional[asyncio.Event] = None,
    ) -> BaseAdapter:
        """
        Build an adapter for one tenant integration.

        Raises:
            UnsupportedPlatformError: unknown platform type
            CredentialError: a required credential field is missing
        """
        adapter_cls = resolve_adapter_class(credential.platform_type)
        policy = ResiliencePolicy(
            self.breakers.get(tenant_id, adapter_cls.platform_type),
            max_attempts=self.config.ADAPTER_MAX_ATTEMPTS,
            backoff_base=self.config.ADAPTER_BACKOFF_BASE_SECONDS,
            max_backoff=self.config.ADAPTER_MAX_BACKOFF_SECONDS,
            stop_event=stop_event,
            sleep=self._sleep,
        )
        http = PlatformHttpClient(
            platform=adapter_cls.platform_type,
            tenant_id=tenant_id,
            base_url=adapter_cls.base_url(credential, self.config),
            policy=policy,
            headers=adapter_cls.auth_headers(credential),
            timeout=self.config.PLATFORM_HTTP_TIMEOUT_SECONDS,
            transport=self.transport,
            rate_limiter=self.rate_limiter,
        )
        return adapter_cls(credential, http)

    def for_inbound(self, platform_type: str, webhook_secret: Optional[str], external_ref: str = "") -> BaseAdapter:
        """Adapter used only to verify and parse an inbound webhook; it makes no calls."""
        adapter_cls = resolve_adapter_class(platform_type)
        credential = AdapterCredential(
            platform_type=platform_type,
            external_ref=external_ref,
            webhook_secret=webhook_secret,
        )
        return adapter_cls(credential)
