"""
Agent-mediated cash-in / cash-out endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import require_agent, require_customer
from .schemas import CashRequestCreate, ResolveRequest
from .system import WalletSystem, get_wallet_system
from ..accounts import Account
from ..approvals import Decision, RequestType


router = APIRouter()


@router.post("/cash-requests", status_code=status.HTTP_201_CREATED)
async def create_cash_request(
    request: CashRequestCreate,
    account: Account = Depends(require_customer),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Open a cash request for an agent to approve"""
    system.identity.verify_pin(account.id, request.pin)
    pending = system.approvals.create_request(
        account.id, request.agent, request.amount, RequestType(request.type)
    )
    return {
        "message": "Request sent to agent",
        "request": pending.to_public_dict(),
    }


@router.get("/cash-requests")
async def list_own_cash_requests(
    account: Account = Depends(require_customer),
    system: WalletSystem = Depends(get_wallet_system)
):
    requests = system.approvals.list_requests_for_customer(account.id)
    return {"requests": [r.to_public_dict() for r in requests], "count": len(requests)}


@router.get("/agent/cash-requests")
async def list_pending_for_agent(
    agent: Account = Depends(require_agent),
    system: WalletSystem = Depends(get_wallet_system)
):
    """Pending requests addressed to the calling agent, newest first"""
    requests = system.approvals.list_pending_for_agent(agent.id)
    return {"requests": [r.to_public_dict() for r in requests], "count": len(requests)}


@router.post("/agent/cash-requests/{request_id}/resolve")
async def resolve_cash_request(
    request_id: str,
    request: ResolveRequest,
    agent: Account = Depends(require_agent),
    system: WalletSystem = Depends(get_wallet_system)
):
    resolution = system.approvals.resolve(request_id, agent.id, Decision(request.decision))
    return resolution.to_dict()
