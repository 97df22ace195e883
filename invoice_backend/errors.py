"""Error taxonomy shared by the contract client and the HTTP layer."""
from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, Optional


class ConfigurationError(RuntimeError):
    """Raised when required environment configuration is missing."""


class APIError(Exception):
    status: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class AddressLoadError(APIError):
    """The deployment address record is missing, unreadable or malformed."""


class ContractInterfaceError(APIError):
    """The bound contract does not match the interface this service expects."""


class NotInitializedError(APIError):
    status = HTTPStatus.SERVICE_UNAVAILABLE


class ValidationError(APIError):
    status = HTTPStatus.BAD_REQUEST


class AuthError(APIError):
    status = HTTPStatus.UNAUTHORIZED


class NotFoundError(APIError):
    status = HTTPStatus.NOT_FOUND


class SubmissionError(APIError):
    """The chain or the RPC provider could not process a call."""

    status = HTTPStatus.BAD_GATEWAY
    retryable = False


class TransactionRejectedError(SubmissionError):
    status = HTTPStatus.CONFLICT


class ProviderUnavailableError(SubmissionError):
    retryable = True


__all__ = [
    "APIError",
    "AddressLoadError",
    "AuthError",
    "ConfigurationError",
    "ContractInterfaceError",
    "NotFoundError",
    "NotInitializedError",
    "ProviderUnavailableError",
    "SubmissionError",
    "TransactionRejectedError",
    "ValidationError",
]
