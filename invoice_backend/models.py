"""Value types exchanged between the chain gateway, the client and the routes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from hexbytes import HexBytes

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return "0x" + HexBytes(value).hex().removeprefix("0x")


def _field(source: Any, name: str, index: int) -> Any:
    if isinstance(source, Mapping):
        return source[name]
    return source[index]


@dataclass(frozen=True)
class PendingTransaction:
    """A submitted, not yet confirmed, state-changing call."""

    tx_hash: str
    operation: str
    token_id: Optional[int] = None


@dataclass(frozen=True)
class InvoiceRecord:
    token_id: int
    amount: int
    due_date: int
    metadata: str
    issuer: str
    verified: bool
    price: Optional[int] = None

    @classmethod
    def from_chain(cls, token_id: int, raw: Sequence[Any]) -> "InvoiceRecord":
        return cls(
            token_id=token_id,
            amount=int(_field(raw, "amount", 0)),
            due_date=int(_field(raw, "dueDate", 1)),
            metadata=str(_field(raw, "metadata", 2)),
            issuer=str(_field(raw, "issuer", 3)),
            verified=bool(_field(raw, "isVerified", 4)),
        )

    @property
    def exists(self) -> bool:
        return self.issuer.lower() != ZERO_ADDRESS

    def to_dict(self) -> Dict[str, Any]:
        # uint256 values are rendered as strings; they overflow JSON numbers.
        payload: Dict[str, Any] = {
            "tokenId": str(self.token_id),
            "amount": str(self.amount),
            "dueDate": self.due_date,
            "metadata": self.metadata,
            "issuer": self.issuer,
            "isVerified": self.verified,
        }
        if self.price is not None:
            payload["price"] = str(self.price)
        return payload


@dataclass(frozen=True)
class Listing:
    token_id: int
    price: int
    seller: str
    active: bool

    @classmethod
    def from_chain(cls, token_id: int, raw: Sequence[Any]) -> "Listing":
        return cls(
            token_id=token_id,
            price=int(_field(raw, "price", 0)),
            seller=str(_field(raw, "seller", 1)),
            active=bool(_field(raw, "isActive", 2)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenId": str(self.token_id),
            "price": str(self.price),
            "seller": self.seller,
            "isActive": self.active,
        }


@dataclass(frozen=True)
class ListingPage:
    page: int
    limit: int
    total: int
    items: List[Listing] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "items": [item.to_dict() for item in self.items],
        }


@dataclass(frozen=True)
class InvoiceCreatedEvent:
    token_id: int
    issuer: str
    amount: int
    tx_hash: str
    log_index: int
    block_number: int

    @classmethod
    def from_log(cls, log: Mapping[str, Any]) -> "InvoiceCreatedEvent":
        args = log["args"]
        return cls(
            token_id=int(args["tokenId"]),
            issuer=str(args["issuer"]),
            amount=int(args["amount"]),
            tx_hash=_hex(log["transactionHash"]),
            log_index=int(log["logIndex"]),
            block_number=int(log["blockNumber"]),
        )


@dataclass(frozen=True)
class InvoiceTradedEvent:
    token_id: int
    seller: str
    buyer: str
    price: int
    tx_hash: str
    log_index: int
    block_number: int

    @classmethod
    def from_log(cls, log: Mapping[str, Any]) -> "InvoiceTradedEvent":
        args = log["args"]
        return cls(
            token_id=int(args["tokenId"]),
            seller=str(args["from"]),
            buyer=str(args["to"]),
            price=int(args["price"]),
            tx_hash=_hex(log["transactionHash"]),
            log_index=int(log["logIndex"]),
            block_number=int(log["blockNumber"]),
        )


__all__ = [
    "InvoiceCreatedEvent",
    "InvoiceRecord",
    "InvoiceTradedEvent",
    "Listing",
    "ListingPage",
    "PendingTransaction",
    "ZERO_ADDRESS",
]
