import enum
from http import HTTPStatus
from typing import Any


class ErrorType(enum.Enum):
    AUTHORIZATION_REVOKED = "authorization_revoked"
    CHECKPOINT_EXPIRED = "checkpoint_expired"
    ENTITY_NOT_FOUND = "entity_not_found"
    INVALID_DATA = "invalid_data"
    MALFORMED_PAYLOAD = "malformed_payload"
    NOT_SUPPORTED = "not_supported"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    THIRD_PARTY_REQUEST = "third_party_request"
    UNHANDLED_EXCEPTION = "unhandled_exception"
    UNAUTHORIZED_REQUEST = "unauthorized_request"
    UNSPECIFIED = "unspecified"


class BaseError(Exception):
    extra: dict[str, Any]

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNSPECIFIED,
        status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR,
        **kwargs: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.extra = {}

        for key in ("action", "account", "provider"):
            value = kwargs.get(key)
            if value:
                self.extra[key] = value

    def __str__(self) -> str:
        return f"error: {self.error_type.value}; description: {self.message}"


class AuthError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.UNAUTHORIZED_REQUEST,
        status_code: HTTPStatus = HTTPStatus.UNAUTHORIZED,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class EntityNotFoundError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.ENTITY_NOT_FOUND,
        status_code: HTTPStatus = HTTPStatus.NOT_FOUND,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class InvalidDataError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INVALID_DATA,
        status_code: HTTPStatus = HTTPStatus.BAD_REQUEST,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class MalformedPayloadError(InvalidDataError):
    """A provider payload (webhook body or fetched message) that cannot be interpreted."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.MALFORMED_PAYLOAD,
        status_code: HTTPStatus = HTTPStatus.BAD_REQUEST,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class NotSupportedError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.NOT_SUPPORTED,
        status_code: HTTPStatus = HTTPStatus.BAD_REQUEST,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class ActionError(BaseError):
    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.THIRD_PARTY_REQUEST,
        status_code: HTTPStatus = HTTPStatus.BAD_GATEWAY,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class TransientProviderError(ActionError):
    """Network failure, timeout, rate limit or 5xx from a provider. Retryable on the next trigger."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.PROVIDER_UNAVAILABLE,
        status_code: HTTPStatus = HTTPStatus.SERVICE_UNAVAILABLE,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class SyncTimeoutError(TransientProviderError):
    pass


class CheckpointExpiredError(ActionError):
    """The provider no longer accepts the stored checkpoint; a full fetch is required."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.CHECKPOINT_EXPIRED,
        status_code: HTTPStatus = HTTPStatus.CONFLICT,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class AuthorizationRevokedError(BaseError):
    """Refresh token revoked or missing. Requires re-authorization out of band, retrying will not help."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.AUTHORIZATION_REVOKED,
        status_code: HTTPStatus = HTTPStatus.UNAUTHORIZED,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, error_type, status_code, **kwargs)


class SyncLockLostError(BaseError):
    """The processing lock was reset by maintenance while the pass ran and may now belong to another pass."""
