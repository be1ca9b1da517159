"""
Error taxonomy and result values.

Expected remote and business failures travel as Result values.
Only contract violations (bad configuration, programming errors) raise.
"""
import enum
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ConfigurationError(Exception):
    """Malformed or missing configuration. Fatal for the job kind that hit it."""


class UnsupportedPlatformError(ValueError):
    """No adapter is registered for the requested platform type."""


class CredentialError(Exception):
    """Stored credentials for an integration are missing or cannot be decrypted."""


class ErrorKind(str, enum.Enum):
    """Classification of an operation failure."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    INVALID_CREDENTIALS = "invalid_credentials"
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    UNSUPPORTED = "unsupported"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class OperationError:
    kind: ErrorKind
    code: str
    message: str = ""
    status_code: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an operation that can fail for expected reasons."""
    ok: bool
    value: Optional[T] = None
    error: Optional[OperationError] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        code: str,
        message: str = "",
        status_code: Optional[int] = None,
    ) -> "Result":
        return cls(ok=False, error=OperationError(kind, code, message, status_code))

    @classmethod
    def from_error(cls, error: OperationError) -> "Result":
        return cls(ok=False, error=error)


def unsupported(capability: str, platform: str) -> Result:
    """Failure returned by adapters for capabilities the platform does not offer."""
    return Result.failure(
        ErrorKind.UNSUPPORTED,
        "unsupported_capability",
        f"{platform} does not support {capability}",
    )
