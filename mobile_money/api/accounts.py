"""
Registration, login and own-account endpoints
"""

from fastapi import APIRouter, Depends, status

from .auth import get_current_account
from .schemas import LoginRequest, RegisterRequest
from .system import WalletSystem, get_wallet_system
from ..accounts import Account, AccountRole


router = APIRouter()


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(
    request: RegisterRequest,
    system: WalletSystem = Depends(get_wallet_system)
):
    """Register a pending account; an admin activates it later"""
    account = system.identity.register(
        name=request.name,
        mobile_number=request.mobile_number,
        email=request.email,
        pin=request.pin,
        role=AccountRole(request.role),
    )
    return {
        "message": "User created successfully",
        "account": account.to_public_dict(),
    }


@router.post("/login")
async def login(
    request: LoginRequest,
    system: WalletSystem = Depends(get_wallet_system)
):
    result = system.identity.login(request.identifier, request.pin)
    result["message"] = "Login successful"
    return result


@router.get("/me")
async def get_me(account: Account = Depends(get_current_account)):
    return account.to_public_dict()
