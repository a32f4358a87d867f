"""
Admin endpoints: account listing, activation, blocking and full history
"""

from typing import Optional

from fastapi import APIRouter, Depends

from .auth import require_admin
from .system import WalletSystem, get_wallet_system
from ..accounts import Account


router = APIRouter()


@router.get("/accounts")
async def list_accounts(
    search: Optional[str] = None,
    admin: Account = Depends(require_admin),
    system: WalletSystem = Depends(get_wallet_system)
):
    """All accounts, optionally filtered by mobile number or email"""
    accounts = system.account_store.list_accounts(search)
    return {
        "accounts": [account.to_public_dict() for account in accounts],
        "count": len(accounts),
    }


@router.patch("/accounts/{email}/activate")
async def activate_account(
    email: str,
    admin: Account = Depends(require_admin),
    system: WalletSystem = Depends(get_wallet_system)
):
    account = system.lifecycle.activate(email, admin_id=admin.id)
    return {"message": "Account activated", "account": account.to_public_dict()}


@router.patch("/accounts/{email}/block")
async def block_account(
    email: str,
    admin: Account = Depends(require_admin),
    system: WalletSystem = Depends(get_wallet_system)
):
    account = system.lifecycle.block(email, admin_id=admin.id)
    return {"message": "Account blocked", "account": account.to_public_dict()}


@router.get("/transactions")
async def list_all_transactions(
    admin: Account = Depends(require_admin),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Full transaction history across all accounts (unbounded)"""
    transactions = [t.to_public_dict() for t in system.transaction_log.query_all()]
    return {"transactions": transactions, "count": len(transactions)}


@router.get("/audit/verify")
async def verify_audit_trail(
    admin: Account = Depends(require_admin),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Recompute the audit hash chain"""
    return system.audit_trail.verify_integrity()
