"""web3 adapter around the deployed InvoiceToken contract."""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import aiohttp
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted

from .errors import (
    ContractInterfaceError,
    ProviderUnavailableError,
    SubmissionError,
    TransactionRejectedError,
)

LOGGER = logging.getLogger("invoice-backend.chain")

REQUIRED_FUNCTIONS = (
    "createInvoice",
    "verifyInvoice",
    "listInvoice",
    "buyInvoice",
    "addVerifiedIssuer",
    "updatePlatformFee",
    "updateVerificationFee",
    "invoices",
    "listings",
)
REQUIRED_EVENTS: Dict[str, Sequence[str]] = {
    "InvoiceCreated": ("tokenId", "issuer", "amount"),
    "InvoiceTraded": ("tokenId", "from", "to", "price"),
}

_REJECTION_MARKERS = (
    "execution reverted",
    "insufficient funds",
    "nonce too low",
    "nonce too high",
    "replacement transaction underpriced",
    "already known",
    "intrinsic gas too low",
)


def load_abi(path: Union[str, Path]) -> List[Dict[str, Any]]:
    candidate = Path(path)
    try:
        with candidate.open("r", encoding="utf-8") as handle:
            abi = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise ContractInterfaceError(f"unable to load contract ABI {candidate}: {exc}") from exc
    if not isinstance(abi, list):
        raise ContractInterfaceError(f"contract ABI {candidate} must be a JSON array")
    return abi


def verify_interface(abi: Iterable[Dict[str, Any]]) -> None:
    """Fail unless the ABI exposes every method and event the service calls."""

    functions = set()
    events: Dict[str, List[str]] = {}
    for entry in abi:
        kind = entry.get("type")
        if kind == "function":
            functions.add(entry.get("name"))
        elif kind == "event":
            events[entry.get("name")] = [arg.get("name") for arg in entry.get("inputs", [])]
    missing_functions = [name for name in REQUIRED_FUNCTIONS if name not in functions]
    missing_events = [name for name in REQUIRED_EVENTS if name not in events]
    if missing_functions or missing_events:
        raise ContractInterfaceError(
            "contract interface mismatch",
            {"missingFunctions": missing_functions, "missingEvents": missing_events},
        )
    for name, expected in REQUIRED_EVENTS.items():
        if list(expected) != events[name]:
            raise ContractInterfaceError(
                f"event {name} has unexpected arguments",
                {"expected": list(expected), "actual": events[name]},
            )


def classify_chain_error(exc: BaseException, action: str) -> SubmissionError:
    """Map a provider or contract failure onto the submission taxonomy."""

    if isinstance(exc, SubmissionError):
        return exc
    if isinstance(exc, ContractLogicError):
        return TransactionRejectedError(f"{action} rejected by contract", {"error": str(exc)})
    if isinstance(exc, (asyncio.TimeoutError, TimeExhausted)):
        return ProviderUnavailableError(f"{action} timed out", {"error": str(exc) or "timeout"})
    if isinstance(exc, (aiohttp.ClientError, OSError)):
        return ProviderUnavailableError(f"RPC provider unreachable during {action}", {"error": str(exc)})
    message = str(exc).lower()
    if any(marker in message for marker in _REJECTION_MARKERS):
        return TransactionRejectedError(f"{action} rejected", {"error": str(exc)})
    return SubmissionError(f"{action} failed", {"error": str(exc)})


class InvoiceTokenGateway:
    """One RPC connection plus one contract handle for InvoiceToken."""

    def __init__(self, rpc_url: str, address: str, abi: List[Dict[str, Any]], *,
                 expected_chain_id: Optional[int] = None, web3: Optional[AsyncWeb3] = None) -> None:
        self.web3 = web3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.address = AsyncWeb3.to_checksum_address(address)
        self.contract = self.web3.eth.contract(address=self.address, abi=abi)
        self.expected_chain_id = expected_chain_id
        self.chain_id: Optional[int] = None

    async def connect(self) -> None:
        self.chain_id = await self.web3.eth.chain_id
        if self.expected_chain_id is not None and self.chain_id != self.expected_chain_id:
            raise ContractInterfaceError(
                "connected to unexpected chain",
                {"expected": self.expected_chain_id, "actual": self.chain_id},
            )
        code = await self.web3.eth.get_code(self.address)
        if not code:
            raise ContractInterfaceError("no contract code at InvoiceToken address", {"address": self.address})
        LOGGER.info("Bound InvoiceToken at %s on chain %s", self.address, self.chain_id)

    async def read_invoice(self, token_id: int) -> Sequence[Any]:
        return await self.contract.functions.invoices(token_id).call()

    async def read_listing(self, token_id: int) -> Sequence[Any]:
        return await self.contract.functions.listings(token_id).call()

    async def submit(self, account: LocalAccount, function_name: str, args: Sequence[Any], *,
                     gas: int, value: int = 0) -> str:
        contract_fn = getattr(self.contract.functions, function_name)(*args)
        sender = account.address
        # Simulate first so reverts surface before anything is broadcast.
        await contract_fn.call({"from": sender, "value": value})
        nonce = await self.web3.eth.get_transaction_count(sender, "pending")
        tx_params: Dict[str, Any] = {
            "from": sender,
            "nonce": nonce,
            "value": value,
            "gas": gas,
            "gasPrice": await self.web3.eth.gas_price,
            "chainId": self.chain_id if self.chain_id is not None else await self.web3.eth.chain_id,
        }
        built = await contract_fn.build_transaction(tx_params)
        signed = account.sign_transaction(built)
        tx_hash = await self.web3.eth.send_raw_transaction(signed.raw_transaction)
        return "0x" + HexBytes(tx_hash).hex().removeprefix("0x")

    async def latest_block(self) -> int:
        return await self.web3.eth.block_number

    async def fetch_events(self, event_name: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        event_abi = getattr(self.contract.events, event_name, None)
        if event_abi is None:
            raise ContractInterfaceError(f"event {event_name} missing on InvoiceToken")
        logs = await event_abi().get_logs(from_block=from_block, to_block=to_block)
        return list(logs)

    async def close(self) -> None:
        provider = self.web3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


__all__ = [
    "InvoiceTokenGateway",
    "REQUIRED_EVENTS",
    "REQUIRED_FUNCTIONS",
    "classify_chain_error",
    "load_abi",
    "verify_interface",
]
