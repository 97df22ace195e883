"""REST endpoints delegating to the contract client."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field

from .auth import CallerIdentity, require_caller
from .contract_client import ContractClient
from .models import PendingTransaction

router = APIRouter()


class CreateInvoiceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Any
    due_date: Any = Field(alias="dueDate")
    metadata: Any = ""


class ListInvoiceRequest(BaseModel):
    price: Any


def get_client(request: Request) -> ContractClient:
    return request.app.state.contract_client


def _submitted(tx: PendingTransaction, message: str) -> Dict[str, Any]:
    return {"txHash": tx.tx_hash, "message": message}


@router.get("/invoice/{token_id}")
async def invoice_details(token_id: str, client: ContractClient = Depends(get_client)) -> Dict[str, Any]:
    record = await client.get_invoice_details(token_id)
    return record.to_dict()


@router.post("/invoice")
async def create_invoice(
    body: CreateInvoiceRequest,
    caller: CallerIdentity = Depends(require_caller),
    client: ContractClient = Depends(get_client),
) -> Dict[str, Any]:
    tx = await client.create_invoice(body.amount, body.due_date, body.metadata, caller)
    return _submitted(tx, "Invoice creation transaction submitted")


@router.post("/invoice/{token_id}/list")
async def list_invoice(
    token_id: str,
    body: ListInvoiceRequest,
    caller: CallerIdentity = Depends(require_caller),
    client: ContractClient = Depends(get_client),
) -> Dict[str, Any]:
    tx = await client.list_invoice(token_id, body.price, caller)
    return _submitted(tx, "Invoice listing transaction submitted")


@router.post("/invoice/{token_id}/buy")
async def buy_invoice(
    token_id: str,
    caller: CallerIdentity = Depends(require_caller),
    client: ContractClient = Depends(get_client),
) -> Dict[str, Any]:
    tx = await client.buy_invoice(token_id, caller)
    return _submitted(tx, "Invoice purchase transaction submitted")


@router.post("/invoice/{token_id}/verify")
async def verify_invoice(
    token_id: str,
    caller: CallerIdentity = Depends(require_caller),
    client: ContractClient = Depends(get_client),
) -> Dict[str, Any]:
    tx = await client.verify_invoice(token_id, caller)
    return _submitted(tx, "Invoice verification transaction submitted")


@router.get("/user/invoices")
async def user_invoices(
    caller: CallerIdentity = Depends(require_caller),
    client: ContractClient = Depends(get_client),
) -> List[Dict[str, Any]]:
    records = await client.get_user_invoices(caller.address)
    return [record.to_dict() for record in records]


@router.get("/marketplace/listings")
async def marketplace_listings(
    page: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    client: ContractClient = Depends(get_client),
) -> Dict[str, Any]:
    result = await client.get_marketplace_listings(page, limit)
    return result.to_dict()


__all__ = ["router"]
