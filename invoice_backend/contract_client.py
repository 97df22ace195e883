"""Invoice-domain operations against the InvoiceToken contract."""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

from eth_account.signers.local import LocalAccount
from eth_utils import is_address, to_checksum_address
from web3.exceptions import ContractLogicError

from .addresses import ContractAddressBook, resolve_addresses
from .auth import CallerIdentity
from .chain import InvoiceTokenGateway, classify_chain_error, load_abi, verify_interface
from .config import DEFAULT_LIMIT, DEFAULT_PAGE, Settings
from .errors import APIError, ContractInterfaceError, NotFoundError, NotInitializedError, ValidationError
from .events import DomainEventSink, EventSubscription
from .models import (
    InvoiceCreatedEvent,
    InvoiceRecord,
    InvoiceTradedEvent,
    Listing,
    ListingPage,
    PendingTransaction,
)
from .store import InvoiceStore

LOGGER = logging.getLogger("invoice-backend.contracts")

UINT256_MAX = 2**256 - 1
MAX_PLATFORM_FEE_BPS = 10_000
READ_FANOUT = 16

# ASCII digits only; str.isdigit() also accepts characters int() rejects.
_UINT_PATTERN = re.compile(r"[0-9]+")
_INT_PATTERN = re.compile(r"-?[0-9]+")

T = TypeVar("T")


class ChainGateway(Protocol):
    async def connect(self) -> None: ...

    async def read_invoice(self, token_id: int) -> Sequence[Any]: ...

    async def read_listing(self, token_id: int) -> Sequence[Any]: ...

    async def submit(self, account: LocalAccount, function_name: str, args: Sequence[Any], *,
                     gas: int, value: int = 0) -> str: ...

    async def latest_block(self) -> int: ...

    async def fetch_events(self, event_name: str, from_block: int, to_block: int) -> List[Dict[str, Any]]: ...

    async def close(self) -> None: ...


GatewayFactory = Callable[[Settings, ContractAddressBook, List[Dict[str, Any]]], ChainGateway]


def web3_gateway(settings: Settings, addresses: ContractAddressBook, abi: List[Dict[str, Any]]) -> ChainGateway:
    return InvoiceTokenGateway(settings.rpc_url, addresses.invoice_token, abi, expected_chain_id=settings.chain_id)


def parse_uint(value: Any, name: str, *, positive: bool = False) -> int:
    """Coerce an integer or decimal string into a uint256, raising ValidationError otherwise."""

    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{name} must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _UINT_PATTERN.fullmatch(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{name} must be an integer", {name: str(value)})
    if parsed < 0 or parsed > UINT256_MAX:
        raise ValidationError(f"{name} is out of range", {name: str(value)})
    if positive and parsed == 0:
        raise ValidationError(f"{name} must be greater than zero")
    return parsed


def normalize_pagination(page: Any = None, limit: Any = None, *, max_limit: int = 100) -> Tuple[int, int]:
    """Absent values take the defaults; malformed or non-positive values are rejected.

    A limit above ``max_limit`` is clamped rather than rejected.
    """

    def _coerce(value: Any, name: str, default: int) -> int:
        if value is None or (isinstance(value, str) and not value.strip()):
            return default
        if isinstance(value, bool):
            raise ValidationError(f"{name} must be a positive integer")
        if isinstance(value, int):
            parsed = value
        else:
            text = str(value).strip()
            if not _INT_PATTERN.fullmatch(text):
                raise ValidationError(f"{name} must be a positive integer", {name: text})
            parsed = int(text)
        if parsed < 1:
            raise ValidationError(f"{name} must be a positive integer", {name: str(value)})
        return parsed

    normalized_page = _coerce(page, "page", DEFAULT_PAGE)
    normalized_limit = min(_coerce(limit, "limit", DEFAULT_LIMIT), max_limit)
    return normalized_page, normalized_limit


def parse_address(value: Any, name: str = "address") -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ValidationError(f"{name} must be a valid address", {name: str(value)})
    return to_checksum_address(value)


class ContractClient:
    """Single point of contact with the InvoiceToken contract.

    One instance per process, owning one gateway (RPC connection plus
    contract handle). A missing address record or a mismatched contract
    interface fails initialization for good; a provider that cannot be
    reached is retried by the next operation. Until initialized, every
    operation raises NotInitializedError instead of touching the chain.
    State-changing calls return as soon as the transaction is accepted by
    the provider; confirmation is never awaited here.

    Input checks are limited to well-formedness. Ownership of a token, a
    positive asking price and the current listing state are enforced by the
    contract alone and surface as TransactionRejectedError.
    """

    def __init__(
        self,
        settings: Settings,
        store: InvoiceStore,
        *,
        sink: Optional[DomainEventSink] = None,
        gateway_factory: GatewayFactory = web3_gateway,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sink: DomainEventSink = sink or store
        self._gateway_factory = gateway_factory
        self.gateway: Optional[ChainGateway] = None
        self.addresses: Optional[ContractAddressBook] = None
        self.init_error: Optional[BaseException] = None
        self.subscriptions: Tuple[EventSubscription, ...] = ()
        self._initialized = False
        self._subscriptions_requested = False
        self._init_lock = asyncio.Lock()

    # Lifecycle

    async def initialize(self) -> bool:
        async with self._init_lock:
            if self._initialized:
                return self.gateway is not None
            self._initialized = True
            try:
                addresses = resolve_addresses(self.settings.addresses_path)
                abi = load_abi(self.settings.abi_path)
                verify_interface(abi)
                gateway = self._gateway_factory(self.settings, addresses, abi)
            except Exception as exc:
                return self._init_failed(exc)
            try:
                await asyncio.wait_for(gateway.connect(), self.settings.read_timeout)
            except ContractInterfaceError as exc:
                return self._init_failed(exc)
            except Exception as exc:
                # The provider may recover; the next operation retries.
                self._initialized = False
                await gateway.close()
                return self._init_failed(classify_chain_error(exc, "connect"))
            self.init_error = None
            self.addresses = addresses
            self.gateway = gateway
            self.subscriptions = (
                EventSubscription(
                    source=gateway,
                    event_name="InvoiceCreated",
                    handler=self._handle_invoice_created,
                    interval=self.settings.event_poll_interval,
                    start_block=self.settings.event_start_block,
                    cursor=self.store,
                ),
                EventSubscription(
                    source=gateway,
                    event_name="InvoiceTraded",
                    handler=self._handle_invoice_traded,
                    interval=self.settings.event_poll_interval,
                    start_block=self.settings.event_start_block,
                    cursor=self.store,
                ),
            )
            LOGGER.info("Contract client ready for InvoiceToken %s", addresses.invoice_token)
            if self._subscriptions_requested:
                self._start_subscription_tasks()
            return True

    def _init_failed(self, exc: BaseException) -> bool:
        self.init_error = exc
        LOGGER.error("Failed to initialize contracts: %s: %s", type(exc).__name__, exc)
        return False

    @property
    def ready(self) -> bool:
        return self.gateway is not None

    def start_subscriptions(self) -> None:
        """Start polling now, or as soon as a later initialization succeeds."""

        self._subscriptions_requested = True
        self._start_subscription_tasks()

    def _start_subscription_tasks(self) -> None:
        for subscription in self.subscriptions:
            subscription.start()

    async def close(self) -> None:
        for subscription in self.subscriptions:
            await subscription.stop()
        if self.gateway is not None:
            await self.gateway.close()

    async def _ready(self) -> ChainGateway:
        if self.gateway is None:
            await self.initialize()
        if self.gateway is None:
            cause = self.init_error
            details = {"cause": f"{type(cause).__name__}: {cause}"} if cause else {}
            raise NotInitializedError("contract client is not initialized", details)
        return self.gateway

    def status(self) -> Dict[str, Any]:
        return {
            "initialized": self.ready,
            "error": f"{type(self.init_error).__name__}: {self.init_error}" if self.init_error else None,
            "invoiceToken": self.addresses.invoice_token if self.addresses else None,
            "subscriptions": [subscription.snapshot() for subscription in self.subscriptions],
        }

    # Chain access

    async def _call(self, action: str, call: Awaitable[T], timeout: float) -> T:
        try:
            return await asyncio.wait_for(call, timeout)
        except APIError:
            raise
        except Exception as exc:
            error = classify_chain_error(exc, action)
            LOGGER.warning("%s failed: %s", action, exc)
            raise error from exc

    async def _read_invoice(self, gateway: ChainGateway, token_id: int) -> InvoiceRecord:
        try:
            raw = await self._call("invoices", gateway.read_invoice(token_id), self.settings.read_timeout)
        except APIError as exc:
            if isinstance(exc.__cause__, ContractLogicError):
                raise NotFoundError("invoice not found", {"tokenId": str(token_id)}) from exc
            raise
        return InvoiceRecord.from_chain(token_id, raw)

    async def _read_listing(self, gateway: ChainGateway, token_id: int) -> Listing:
        raw = await self._call("listings", gateway.read_listing(token_id), self.settings.read_timeout)
        return Listing.from_chain(token_id, raw)

    async def _submit(self, kind: str, function_name: str, args: Sequence[Any], caller: CallerIdentity, *,
                      value: int = 0, token_id: Optional[int] = None) -> PendingTransaction:
        gateway = await self._ready()
        gas = self.settings.gas_limit(kind)
        tx_hash = await self._call(
            function_name,
            gateway.submit(caller.wallet, function_name, args, gas=gas, value=value),
            self.settings.submit_timeout,
        )
        LOGGER.info("Submitted %s from %s: %s", function_name, caller.address, tx_hash)
        return PendingTransaction(tx_hash=tx_hash, operation=function_name, token_id=token_id)

    async def _fanout(self, calls: List[Callable[[], Awaitable[T]]]) -> List[T]:
        limiter = asyncio.Semaphore(READ_FANOUT)

        async def _bounded(call: Callable[[], Awaitable[T]]) -> T:
            async with limiter:
                return await call()

        return list(await asyncio.gather(*(_bounded(call) for call in calls)))

    # Operations

    async def create_invoice(self, amount: Any, due_date: Any, metadata: Any,
                             caller: CallerIdentity) -> PendingTransaction:
        amount_value = parse_uint(amount, "amount", positive=True)
        due_date_value = parse_uint(due_date, "dueDate", positive=True)
        if not isinstance(metadata, str):
            raise ValidationError("metadata must be a string")
        return await self._submit("create", "createInvoice", (amount_value, due_date_value, metadata), caller)

    async def list_invoice(self, token_id: Any, price: Any, caller: CallerIdentity) -> PendingTransaction:
        token = parse_uint(token_id, "tokenId")
        price_value = parse_uint(price, "price")
        return await self._submit("list", "listInvoice", (token, price_value), caller, token_id=token)

    async def buy_invoice(self, token_id: Any, caller: CallerIdentity) -> PendingTransaction:
        token = parse_uint(token_id, "tokenId")
        gateway = await self._ready()
        # The listing can change before submission; the contract rejects a stale price.
        listing = await self._read_listing(gateway, token)
        if not listing.active:
            raise NotFoundError("invoice is not listed for sale", {"tokenId": str(token)})
        return await self._submit("buy", "buyInvoice", (token,), caller, value=listing.price, token_id=token)

    async def verify_invoice(self, token_id: Any, caller: CallerIdentity) -> PendingTransaction:
        token = parse_uint(token_id, "tokenId")
        return await self._submit("verify", "verifyInvoice", (token,), caller, token_id=token)

    async def get_invoice_details(self, token_id: Any) -> InvoiceRecord:
        token = parse_uint(token_id, "tokenId")
        gateway = await self._ready()
        record = await self._read_invoice(gateway, token)
        if not record.exists:
            raise NotFoundError("invoice not found", {"tokenId": str(token)})
        return record

    async def get_user_invoices(self, address: Any) -> List[InvoiceRecord]:
        owner = parse_address(address)
        gateway = await self._ready()

        async def _with_listing(token: int) -> Optional[InvoiceRecord]:
            try:
                record = await self._read_invoice(gateway, token)
            except NotFoundError:
                LOGGER.warning("Indexed token %s is not readable on chain; skipping", token)
                return None
            if not record.exists:
                return None
            listing = await self._read_listing(gateway, token)
            if listing.active:
                return replace(record, price=listing.price)
            return record

        token_ids = self.store.token_ids_for_owner(owner)
        records = await self._fanout([lambda token=token: _with_listing(token) for token in token_ids])
        return [record for record in records if record is not None]

    async def get_marketplace_listings(self, page: Any = None, limit: Any = None) -> ListingPage:
        page_value, limit_value = normalize_pagination(page, limit, max_limit=self.settings.marketplace_max_limit)
        gateway = await self._ready()
        token_ids = self.store.token_ids()
        listings = await self._fanout(
            [lambda token=token: self._read_listing(gateway, token) for token in token_ids]
        )
        active = [listing for listing in listings if listing.active]
        start = (page_value - 1) * limit_value
        return ListingPage(
            page=page_value,
            limit=limit_value,
            total=len(active),
            items=active[start:start + limit_value],
        )

    # Operator operations

    async def add_verified_issuer(self, issuer: Any, operator: CallerIdentity) -> PendingTransaction:
        return await self._submit("admin", "addVerifiedIssuer", (parse_address(issuer, "issuer"),), operator)

    async def update_platform_fee(self, fee_bps: Any, operator: CallerIdentity) -> PendingTransaction:
        fee = parse_uint(fee_bps, "platformFee")
        if fee > MAX_PLATFORM_FEE_BPS:
            raise ValidationError("platformFee is expressed in basis points and cannot exceed 10000")
        return await self._submit("admin", "updatePlatformFee", (fee,), operator)

    async def update_verification_fee(self, fee_wei: Any, operator: CallerIdentity) -> PendingTransaction:
        return await self._submit("admin", "updateVerificationFee", (parse_uint(fee_wei, "verificationFee"),), operator)

    # Event dispatch

    async def _handle_invoice_created(self, log: Dict[str, Any]) -> None:
        event = InvoiceCreatedEvent.from_log(log)
        LOGGER.info("InvoiceCreated token=%s issuer=%s amount=%s", event.token_id, event.issuer, event.amount)
        await self.sink.on_invoice_created(event)

    async def _handle_invoice_traded(self, log: Dict[str, Any]) -> None:
        event = InvoiceTradedEvent.from_log(log)
        LOGGER.info(
            "InvoiceTraded token=%s from=%s to=%s price=%s", event.token_id, event.seller, event.buyer, event.price
        )
        await self.sink.on_invoice_traded(event)


__all__ = [
    "ChainGateway",
    "ContractClient",
    "GatewayFactory",
    "normalize_pagination",
    "parse_address",
    "parse_uint",
    "web3_gateway",
]
