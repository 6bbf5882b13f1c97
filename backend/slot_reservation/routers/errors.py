from fastapi import HTTPException, status

from ..domain.errors import (
    DomainError,
    ExpiredError,
    NotAuthorizedError,
    NotFoundError,
    PaymentProcessorError,
    QueueUnavailableError,
    SignatureInvalidError,
    StateConflictError,
)

# first match wins, so subclasses must precede their bases
_STATUS_BY_ERROR: tuple[tuple[type[DomainError], int], ...] = (
    (NotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (ExpiredError, status.HTTP_410_GONE),
    (SignatureInvalidError, status.HTTP_400_BAD_REQUEST),
    (PaymentProcessorError, status.HTTP_502_BAD_GATEWAY),
    (QueueUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: DomainError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=str(exc) or error_cls.__name__)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
