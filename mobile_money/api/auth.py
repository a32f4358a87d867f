"""
Authentication and authorization dependencies
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .system import WalletSystem, get_wallet_system
from ..accounts import Account, AccountRole
from ..errors import AuthenticationError


security = HTTPBearer(auto_error=False)


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: WalletSystem = Depends(get_wallet_system)
) -> Account:
    """Dependency that validates the bearer token and returns its account"""
    if not credentials:
        raise AuthenticationError("Not authenticated")
    return system.identity.authenticate(credentials.credentials)


def require_role(role: AccountRole):
    """Dependency factory; denies unless the caller holds ``role``"""
    def check(account: Account = Depends(get_current_account),
              system: WalletSystem = Depends(get_wallet_system)) -> Account:
        return system.identity.authorize_role(account.id, role)
    return check


require_admin = require_role(AccountRole.ADMIN)
require_agent = require_role(AccountRole.AGENT)
require_customer = require_role(AccountRole.CUSTOMER)
