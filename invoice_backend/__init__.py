"""HTTP gateway for the InvoiceToken contract on Arbitrum."""
from __future__ import annotations

from .addresses import ContractAddressBook, resolve_addresses
from .contract_client import ContractClient
from .errors import (
    AddressLoadError,
    APIError,
    AuthError,
    ContractInterfaceError,
    NotFoundError,
    NotInitializedError,
    ProviderUnavailableError,
    SubmissionError,
    TransactionRejectedError,
    ValidationError,
)

__all__ = [
    "APIError",
    "AddressLoadError",
    "AuthError",
    "ContractAddressBook",
    "ContractClient",
    "ContractInterfaceError",
    "NotFoundError",
    "NotInitializedError",
    "ProviderUnavailableError",
    "SubmissionError",
    "TransactionRejectedError",
    "ValidationError",
    "resolve_addresses",
]
