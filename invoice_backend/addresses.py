"""Resolve deployed contract addresses from the deployment record."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from eth_utils import is_address, to_checksum_address

from .errors import AddressLoadError

LOGGER = logging.getLogger("invoice-backend.addresses")

REQUIRED_CONTRACT = "invoiceToken"
KNOWN_CONTRACTS = (
    "invoiceToken",
    "creditScoring",
    "unifiedLedger",
    "marketplace",
    "settlement",
    "paymentTracker",
    "riskAssessment",
    "liquidityPool",
    "finternentGateway",
    "fylaroDeployer",
)


class ContractAddressBook(Mapping[str, str]):
    """Immutable contract-name to checksum-address mapping."""

    def __init__(self, addresses: Mapping[str, str], *, network: Optional[str] = None,
                 chain_id: Optional[int] = None) -> None:
        self._addresses: Dict[str, str] = dict(addresses)
        self.network = network
        self.chain_id = chain_id

    def __getitem__(self, name: str) -> str:
        return self._addresses[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._addresses)

    def __len__(self) -> int:
        return len(self._addresses)

    def __repr__(self) -> str:
        return f"ContractAddressBook({self._addresses!r}, network={self.network!r})"

    @property
    def invoice_token(self) -> str:
        return self._addresses[REQUIRED_CONTRACT]


def _contracts_section(document: Any) -> Mapping[str, Any]:
    if not isinstance(document, dict):
        raise AddressLoadError("address record must be a JSON object")
    # Full-ecosystem deployments nest addresses under "contracts".
    nested = document.get("contracts")
    if isinstance(nested, dict):
        return nested
    return document


def parse_addresses(document: Any) -> ContractAddressBook:
    section = _contracts_section(document)
    if not section.get(REQUIRED_CONTRACT):
        raise AddressLoadError(f"address record has no {REQUIRED_CONTRACT} entry")
    addresses: Dict[str, str] = {}
    for name, value in section.items():
        valid = isinstance(value, str) and is_address(value)
        if name not in KNOWN_CONTRACTS and not valid:
            continue
        if not valid:
            raise AddressLoadError(f"invalid address for {name}", {"value": value})
        addresses[name] = to_checksum_address(value)
    chain_id = document.get("chainId") if isinstance(document, dict) else None
    return ContractAddressBook(
        addresses,
        network=document.get("network") if isinstance(document, dict) else None,
        chain_id=int(chain_id) if isinstance(chain_id, int) else None,
    )


def resolve_addresses(path: Union[str, Path]) -> ContractAddressBook:
    candidate = Path(path)
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            document = json.load(handle)
    except FileNotFoundError as exc:
        raise AddressLoadError(f"address record not found: {candidate}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise AddressLoadError(f"unable to read address record {candidate}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise AddressLoadError(f"address record {candidate} is not valid JSON: {exc}") from exc
    book = parse_addresses(document)
    LOGGER.info("Loaded %s contract addresses from %s", len(book), candidate)
    return book


__all__ = ["ContractAddressBook", "KNOWN_CONTRACTS", "parse_addresses", "resolve_addresses"]
