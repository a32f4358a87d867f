"""
Money movement endpoints: direct transfers and own history
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .auth import get_current_account
from .schemas import TransferRequest
from .system import WalletSystem, get_wallet_system
from ..accounts import Account


router = APIRouter()


@router.post("/transfers", status_code=status.HTTP_201_CREATED)
async def send_money(
    request: TransferRequest,
    account: Account = Depends(get_current_account),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Send money to another account; requires the caller's PIN"""
    system.identity.verify_pin(account.id, request.pin)
    settlement = system.ledger.send_money(account.id, request.recipient, request.amount)
    return settlement.to_dict()


@router.get("/transactions")
async def get_own_history(
    limit: Optional[int] = Query(None, ge=1, le=100),
    account: Account = Depends(get_current_account),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Entries the caller sent or received, newest first"""
    log = system.transaction_log
    query = log.query(account.mobile_number, limit=limit or log.history_limit)
    transactions = [t.to_public_dict() for t in query]
    return {"transactions": transactions, "count": len(transactions)}
