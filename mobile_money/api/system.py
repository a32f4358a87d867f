"""
Wallet system container and its request dependency
"""

from typing import Optional

from fastapi import Request

from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..accounts import AccountRole, AccountStatus, AccountStore
from ..transactions import TransactionLog
from ..ledger import LedgerEngine
from ..approvals import ApprovalWorkflow
from ..lifecycle import AccountLifecycle
from ..identity import IdentityService
from ..config import MobileMoneyConfig, get_config
from ..errors import ConflictError
from ..logging_config import get_logger


logger = get_logger("mobile_money.api")


class WalletSystem:
    """All ledger components wired onto one storage handle"""

    def __init__(self, config: Optional[MobileMoneyConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.account_store = AccountStore(self.storage)
        self.transaction_log = TransactionLog(self.storage, history_limit=self.config.history_limit)
        self.ledger = LedgerEngine(self.account_store, self.transaction_log, self.audit_trail)
        self.approvals = ApprovalWorkflow(
            self.storage, self.account_store, self.ledger, self.audit_trail,
            pending_list_limit=self.config.pending_list_limit,
            settle_timeout=self.config.settle_timeout_seconds
        )
        self.lifecycle = AccountLifecycle(
            self.account_store, self.audit_trail,
            customer_seed=self.config.customer_seed_balance,
            agent_seed=self.config.agent_seed_balance
        )
        self.identity = IdentityService(
            self.account_store,
            jwt_secret=self.config.jwt_secret,
            audit_trail=self.audit_trail,
            jwt_algorithm=self.config.jwt_algorithm,
            jwt_expiry_hours=self.config.jwt_expiry_hours,
            pin_min_length=self.config.pin_min_length
        )

    def bootstrap_admin(self) -> None:
        """Create the configured admin account if it does not exist yet"""
        cfg = self.config
        if not (cfg.admin_mobile_number and cfg.admin_email and cfg.admin_pin):
            return
        if self.account_store.get_account(cfg.admin_email):
            return
        try:
            self.identity.register(
                cfg.admin_name, cfg.admin_mobile_number, cfg.admin_email,
                cfg.admin_pin, role=AccountRole.ADMIN
            )
        except ConflictError:
            # Another worker registered it first
            return
        self.account_store.set_status(cfg.admin_email, AccountStatus.ACTIVE)
        logger.info(f"Admin account {cfg.admin_email} created")

    def close(self) -> None:
        self.storage.close()


def get_wallet_system(request: Request) -> WalletSystem:
    return request.app.state.system
