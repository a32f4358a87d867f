"""
Account Lifecycle Module

Administrative status transitions. Activating a newly registered account
also credits its one-time seed grant, whose size depends on the role and
comes from configuration.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from .accounts import Account, AccountRole, AccountStatus, AccountStore
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action


class AccountLifecycle:
    """Activation and blocking of accounts by an admin"""

    def __init__(
        self,
        account_store: AccountStore,
        audit_trail: Optional[AuditTrail] = None,
        customer_seed: Decimal = Decimal("40"),
        agent_seed: Decimal = Decimal("10000")
    ):
        self.account_store = account_store
        self.audit_trail = audit_trail
        self.customer_seed = Decimal(customer_seed)
        self.agent_seed = Decimal(agent_seed)
        self.logger = get_logger("mobile_money.lifecycle")

    def _audit(self, event_type: AuditEventType, account: Account,
               metadata: Dict[str, Any], admin_id: Optional[str]) -> None:
        """Record an audit event without failing an already-committed transition"""
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(event_type, "account", account.id, metadata, user_id=admin_id)
        except Exception as e:
            self.logger.error(f"Error writing audit event {event_type.value}: {e}")

    def seed_for(self, account: Account) -> Optional[Decimal]:
        """Seed grant due when ``account`` becomes active; only from pending"""
        if account.status != AccountStatus.PENDING:
            return None
        if account.role == AccountRole.CUSTOMER:
            return self.customer_seed
        if account.role == AccountRole.AGENT:
            return self.agent_seed
        return None

    def activate(self, email: str, admin_id: Optional[str] = None) -> Account:
        """
        Set an account active, seeding its balance on first activation.

        Raises:
            NotFoundError: If no account matches
            ConflictError: If the account is already active
        """
        before = self.account_store.require_account(email)
        account = self.account_store.set_status(email, AccountStatus.ACTIVE, self.seed_for)
        seeded = self.seed_for(before)

        log_action(
            self.logger, "info", "Account activated",
            user_id=admin_id, action="activate_account", resource=f"account:{account.id}",
            extra={"role": account.role.value, "balance": str(account.balance)}
        )
        self._audit(
            AuditEventType.ACCOUNT_ACTIVATED, account,
            {"role": account.role, "seed": seeded}, admin_id
        )
        return account

    def block(self, email: str, admin_id: Optional[str] = None) -> Account:
        """
        Block an account; blocked accounts cannot send or receive money.

        Raises:
            NotFoundError: If no account matches
            ConflictError: If the account is already blocked
        """
        account = self.account_store.set_status(email, AccountStatus.BLOCKED)

        log_action(
            self.logger, "info", "Account blocked",
            user_id=admin_id, action="block_account", resource=f"account:{account.id}"
        )
        self._audit(AuditEventType.ACCOUNT_BLOCKED, account, {}, admin_id)
        return account
