"""Environment driven settings for the invoice backend."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ConfigurationError

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_ABI_PATH = PACKAGE_DIR / "abi" / "InvoiceToken.json"
DEFAULT_ADDRESSES_PATH = Path("deployments") / "arbitrum-sepolia.json"
ARBITRUM_SEPOLIA_CHAIN_ID = 421614

# Gas ceilings per state-changing operation kind.
GAS_LIMITS: Dict[str, int] = {
    "create": 500_000,
    "list": 200_000,
    "buy": 300_000,
    "verify": 200_000,
    "admin": 200_000,
}

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    chain_id: Optional[int] = ARBITRUM_SEPOLIA_CHAIN_ID
    addresses_path: Path = DEFAULT_ADDRESSES_PATH
    abi_path: Path = DEFAULT_ABI_PATH
    gas_limits: Dict[str, int] = field(default_factory=lambda: dict(GAS_LIMITS))
    read_timeout: float = 10.0
    submit_timeout: float = 30.0
    event_poll_interval: float = 15.0
    event_start_block: Optional[int] = None
    readmodel_path: str = "./data/invoices.db"
    auth_keyring_path: Optional[Path] = None
    marketplace_max_limit: int = 100
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        rpc_url = (env.get("ARBITRUM_SEPOLIA_RPC_URL") or env.get("RPC_URL") or "").strip()
        if not rpc_url:
            raise ConfigurationError("ARBITRUM_SEPOLIA_RPC_URL (or RPC_URL) must be set")
        gas_limits = dict(GAS_LIMITS)
        for kind in gas_limits:
            gas_limits[kind] = _env_int(env, f"GAS_LIMIT_{kind.upper()}", gas_limits[kind]) or gas_limits[kind]
        keyring = env.get("AUTH_KEYRING_PATH")
        return cls(
            rpc_url=rpc_url,
            chain_id=_env_int(env, "CHAIN_ID", ARBITRUM_SEPOLIA_CHAIN_ID),
            addresses_path=Path(env.get("CONTRACT_ADDRESSES_PATH") or DEFAULT_ADDRESSES_PATH),
            abi_path=Path(env.get("INVOICE_TOKEN_ABI") or DEFAULT_ABI_PATH),
            gas_limits=gas_limits,
            read_timeout=_env_float(env, "RPC_READ_TIMEOUT", 10.0),
            submit_timeout=_env_float(env, "RPC_SUBMIT_TIMEOUT", 30.0),
            event_poll_interval=_env_float(env, "EVENT_POLL_INTERVAL", 15.0),
            event_start_block=_env_int(env, "EVENT_START_BLOCK", None),
            readmodel_path=env.get("READMODEL_PATH") or "./data/invoices.db",
            auth_keyring_path=Path(keyring) if keyring else None,
            marketplace_max_limit=_env_int(env, "MARKETPLACE_MAX_LIMIT", 100) or 100,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
            host=env.get("HOST") or "0.0.0.0",
            port=_env_int(env, "PORT", 8080) or 8080,
        )

    def gas_limit(self, kind: str) -> int:
        try:
            return self.gas_limits[kind]
        except KeyError as exc:
            raise ConfigurationError(f"No gas ceiling configured for operation {kind!r}") from exc
