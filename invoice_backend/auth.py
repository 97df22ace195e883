"""Bearer-token authentication resolving callers to signing wallets."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, Union

from eth_account import Account
from eth_account.signers.local import LocalAccount
from fastapi import Request

from .errors import AuthError, ConfigurationError

LOGGER = logging.getLogger("invoice-backend.auth")


@dataclass(frozen=True)
class CallerIdentity:
    user_id: str
    wallet: LocalAccount

    @property
    def address(self) -> str:
        return self.wallet.address


class Authenticator(Protocol):
    def authenticate(self, token: str) -> CallerIdentity: ...


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class KeyringAuthenticator:
    """Resolves bearer tokens through a keyring of token digests to private keys.

    Keyring entries map the SHA-256 hex digest of a token to
    ``{"userId": ..., "privateKey": ...}``; raw tokens are never stored.
    """

    def __init__(self, entries: Mapping[str, Mapping[str, Any]]) -> None:
        self._entries: Tuple[Tuple[str, Dict[str, Any]], ...] = tuple(
            (digest.strip().lower(), dict(entry)) for digest, entry in entries.items()
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "KeyringAuthenticator":
        try:
            with Path(path).open("r", encoding="utf-8") as handle:
                entries = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"unable to load auth keyring {path}: {exc}") from exc
        if not isinstance(entries, dict):
            raise ConfigurationError("auth keyring must be a JSON object")
        LOGGER.info("Loaded %s keyring entries", len(entries))
        return cls(entries)

    def _lookup(self, digest: str) -> Optional[Dict[str, Any]]:
        match = None
        for candidate, entry in self._entries:
            # Scan every entry so timing does not reveal the matching position.
            if hmac.compare_digest(candidate, digest):
                match = entry
        return match

    def authenticate(self, token: str) -> CallerIdentity:
        if not token:
            raise AuthError("unauthorized")
        entry = self._lookup(token_digest(token))
        if entry is None:
            raise AuthError("unauthorized")
        try:
            wallet = Account.from_key(entry["privateKey"])
        except Exception as exc:
            LOGGER.error("Keyring entry for %s has an unusable signing key: %s", entry.get("userId"), exc)
            raise AuthError("signing key unavailable", status=HTTPStatus.FORBIDDEN)
        return CallerIdentity(user_id=str(entry.get("userId") or wallet.address), wallet=wallet)


class DenyAllAuthenticator:
    """Used when no keyring is configured: every protected route answers 401."""

    def authenticate(self, token: str) -> CallerIdentity:
        raise AuthError("unauthorized")


def bearer_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise AuthError("unauthorized")
    return value.strip()


def require_caller(request: Request) -> CallerIdentity:
    """FastAPI dependency for protected routes; runs before any chain call."""

    authenticator: Authenticator = request.app.state.authenticator
    return authenticator.authenticate(bearer_token(request))


__all__ = [
    "Authenticator",
    "CallerIdentity",
    "DenyAllAuthenticator",
    "KeyringAuthenticator",
    "bearer_token",
    "require_caller",
    "token_digest",
]
