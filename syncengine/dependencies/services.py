"""
Service providers for the routes.

Overridden in tests through app.dependency_overrides.
"""
from typing import Awaitable, Callable, Optional

import httpx
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from syncengine.database import get_db, get_session_factory
from syncengine.dependencies.auth import TokenPayload, get_current_user
from syncengine.services.inbound_webhooks import InboundWebhookService
from syncengine.services.ndr_service import NdrService
from syncengine.services.webhook_service import WebhookDispatcher

JobEnqueuer = Callable[[str, str], Awaitable[Optional[str]]]


def get_http_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Outbound transport; None means the real network."""
    return None


def get_inbound_service(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_http_transport),
) -> InboundWebhookService:
    return InboundWebhookService(session_factory, transport=transport)


def get_dispatcher(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_http_transport),
) -> WebhookDispatcher:
    return WebhookDispatcher(db, token.tenant_id, transport=transport)


def get_ndr_service(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> NdrService:
    return NdrService(db, token.tenant_id, dispatcher)


def get_job_enqueuer() -> JobEnqueuer:
    from syncengine.worker import enqueue_tenant_job

    return enqueue_tenant_job
