"""
Credential store.

Integration credentials are stored as Fernet tokens of a JSON bundle and only
decrypted inside a tenant context. AdapterCredential never prints its secrets.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Mapping

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncengine.config import settings
from syncengine.errors import ConfigurationError, CredentialError
from syncengine.models.tenant import TenantIntegration


def _get_fernet(key: str | None = None) -> Fernet:
    """Get Fernet instance for encryption/decryption."""
    key = key or settings.CREDENTIALS_ENCRYPTION_KEY
    if not key:
        raise ConfigurationError("CREDENTIALS_ENCRYPTION_KEY not configured")
    try:
        return Fernet(key.encode())
    except ValueError as exc:
        raise ConfigurationError("CREDENTIALS_ENCRYPTION_KEY is not a valid Fernet key") from exc


def encrypt_credentials(values: Mapping[str, Any], key: str | None = None) -> str:
    """Encrypt a credential bundle for storage."""
    return _get_fernet(key).encrypt(json.dumps(dict(values)).encode()).decode()


def decrypt_credentials(token: str, key: str | None = None) -> dict:
    """Decrypt a stored credential bundle."""
    try:
        return json.loads(_get_fernet(key).decrypt(token.encode()).decode())
    except (InvalidToken, ValueError) as exc:
        raise CredentialError("stored credentials could not be decrypted") from exc


@dataclass(frozen=True)
class AdapterCredential:
    """
    Read-only credential bundle handed to an adapter.

    The repr is masked so credentials never reach logs or error reports.
    """
    platform_type: str
    external_ref: str
    values: Mapping[str, Any] = field(default_factory=dict, repr=False)
    webhook_secret: str | None = field(default=None, repr=False)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def require(self, name: str) -> Any:
        value = self.values.get(name)
        if value in (None, ""):
            raise CredentialError(f"{self.platform_type} credential '{name}' is missing")
        return value

    def __repr__(self):
        return f"AdapterCredential(platform_type={self.platform_type!r}, external_ref={self.external_ref!r}, values=***)"

    __str__ = __repr__


class CredentialStore:
    """
    Loads per-tenant credentials.

    SECURITY: All queries MUST include tenant_id filter.
    """

    def __init__(self, db: AsyncSession, tenant_id: str, key: str | None = None):
        self.db = db
        self.tenant_id = tenant_id
        self._key = key

    def for_integration(self, integration: TenantIntegration) -> AdapterCredential:
        """Decrypt the bundle of an integration that belongs to this tenant."""
        if integration.tenant_id != self.tenant_id:
            raise CredentialError("integration belongs to a different tenant")
        return AdapterCredential(
            platform_type=integration.platform_type,
            external_ref=integration.external_ref,
            values=decrypt_credentials(integration.credentials_encrypted, self._key),
            webhook_secret=integration.webhook_secret,
        )

    async def get_credentials(self, platform_type: str) -> AdapterCredential | None:
        """
        Get the credential bundle of the tenant's active integration for a platform.

        Args:
            platform_type: Platform identifier (shopify, delhivery, ...)

        Returns:
            AdapterCredential or None when the tenant has no active integration
        """
        stmt = select(TenantIntegration).where(
            TenantIntegration.tenant_id == self.tenant_id,
            TenantIntegration.platform_type == platform_type,
            TenantIntegration.is_active.is_(True),
        )
        result = await self.db.execute(stmt)
        integration = result.scalars().first()
        if integration is None:
            return None
        return self.for_integration(integration)
