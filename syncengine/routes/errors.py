"""Map failure results onto HTTP errors."""
from fastapi import HTTPException, status

from syncengine.errors import ErrorKind, Result

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.BUSINESS_RULE: status.HTTP_409_CONFLICT,
    ErrorKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.UNSUPPORTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INVALID_CREDENTIALS: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CIRCUIT_OPEN: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_for_result(result: Result):
    """Raise the HTTPException matching a failed result; no-op on success."""
    if result.ok:
        return
    raise HTTPException(
        status_code=STATUS_BY_KIND.get(result.error.kind, status.HTTP_502_BAD_GATEWAY),
        detail={"code": result.error.code, "kind": result.error.kind.value, "message": result.error.message},
    )
