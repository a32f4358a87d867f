"""
Account Store Module

Durable mapping from account identity (mobile number or email) to name,
role, balance and status. Balances only move through the store's atomic
``atomic_adjust_balance`` primitive; status only moves through
``set_status``.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum

from .storage import StorageInterface, StorageRecord, AdjustResult, CasResult
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action


class AccountRole(Enum):
    """Who holds the wallet"""
    CUSTOMER = "customer"
    AGENT = "agent"
    ADMIN = "admin"


class AccountStatus(Enum):
    """Account lifecycle states"""
    PENDING = "pending"    # Registered, awaiting admin activation
    ACTIVE = "active"      # May send and receive money
    BLOCKED = "blocked"    # Rejected as a transfer participant


@dataclass
class Account(StorageRecord):
    """
    Wallet account. ``id`` is the mobile number.
    """
    name: str
    mobile_number: str
    email: str
    role: AccountRole
    balance: Decimal = Decimal("0")
    status: AccountStatus = AccountStatus.PENDING
    pin_hash: Optional[str] = field(default=None, repr=False)
    pin_salt: Optional[str] = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_agent(self) -> bool:
        return self.role == AccountRole.AGENT

    def to_public_dict(self) -> Dict[str, Any]:
        """Account view without credential material"""
        return {
            "name": self.name,
            "mobile_number": self.mobile_number,
            "email": self.email,
            "role": self.role.value,
            "balance": str(self.balance),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            name=data["name"],
            mobile_number=data["mobile_number"],
            email=data["email"],
            role=AccountRole(data["role"]),
            balance=Decimal(data["balance"]),
            status=AccountStatus(data["status"]),
            pin_hash=data.get("pin_hash"),
            pin_salt=data.get("pin_salt"),
        )


class AccountStore:
    """
    Owns account balance and status fields.

    Uniqueness across both identifiers is enforced through an identifier
    index table written with the store's insert-if-absent primitive.
    """

    STATUS_RETRIES = 5

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.accounts_table = "accounts"
        self.identifiers_table = "account_identifiers"
        self.logger = get_logger("mobile_money.accounts")

    def create_account(
        self,
        name: str,
        mobile_number: str,
        email: str,
        role: AccountRole,
        pin_hash: Optional[str] = None,
        pin_salt: Optional[str] = None
    ) -> Account:
        """
        Register a new account in ``pending`` status with zero balance.

        Raises:
            ValidationError: If a required field is missing
            ConflictError: If the mobile number or email is already taken
        """
        mobile_number = (mobile_number or "").strip()
        email = (email or "").strip()
        if not name or not mobile_number or not email:
            raise ValidationError("Name, mobile number and email are required")
        if mobile_number == email:
            raise ValidationError("Mobile number and email must differ")

        now = datetime.now(timezone.utc)
        account = Account(
            id=mobile_number,
            created_at=now,
            updated_at=now,
            name=name,
            mobile_number=mobile_number,
            email=email,
            role=role,
            pin_hash=pin_hash,
            pin_salt=pin_salt,
        )

        # Identifier claims and the account row land together or not at all;
        # backends without transactions rely on the explicit release below
        claimed = []
        try:
            with self.storage.atomic():
                for identifier in (mobile_number, email):
                    entry = {"id": identifier, "account_id": mobile_number}
                    if not self.storage.insert(self.identifiers_table, identifier, entry):
                        raise ConflictError("User already exists!", {"identifier": identifier})
                    claimed.append(identifier)
                if not self.storage.insert(self.accounts_table, account.id, account.to_dict()):
                    raise ConflictError("User already exists!", {"identifier": mobile_number})
        except Exception:
            for taken in claimed:
                self.storage.delete(self.identifiers_table, taken)
            raise

        log_action(
            self.logger, "info", "Account registered",
            action="create_account", resource=f"account:{account.id}",
            extra={"role": role.value, "email": email}
        )
        return account

    def _resolve_id(self, identifier: str) -> Optional[str]:
        entry = self.storage.load(self.identifiers_table, identifier)
        return entry["account_id"] if entry else None

    def get_account(self, identifier: str) -> Optional[Account]:
        """Get account by mobile number or email"""
        if not identifier:
            return None
        account_id = self._resolve_id(identifier)
        if account_id is None:
            return None
        data = self.storage.load(self.accounts_table, account_id)
        return Account.from_dict(data) if data else None

    def require_account(self, identifier: str) -> Account:
        account = self.get_account(identifier)
        if account is None:
            raise NotFoundError("User not found!", {"identifier": identifier})
        return account

    def list_accounts(self, search: Optional[str] = None) -> List[Account]:
        """
        All accounts, or those whose mobile number or email contains
        ``search`` (case-insensitive).
        """
        accounts = [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        if search:
            needle = search.lower()
            accounts = [
                a for a in accounts
                if needle in a.mobile_number.lower() or needle in a.email.lower()
            ]
        return accounts

    def atomic_adjust_balance(self, identifier: str, delta: Decimal,
                              require_non_negative: bool = True,
                              require_status: Optional[AccountStatus] = None) -> AdjustResult:
        """
        Apply ``balance += delta`` as one conditional store operation.

        With ``require_non_negative`` the write only happens if the resulting
        balance is still >= 0; with ``require_status`` only if the account is
        in that status at write time. Returns COMMITTED, PRECONDITION_FAILED
        or NOT_FOUND; never retries.
        """
        account_id = self._resolve_id(identifier)
        if account_id is None:
            return AdjustResult.NOT_FOUND
        floor = Decimal("0") if require_non_negative else None
        expected = {"status": require_status.value} if require_status else None
        return self.storage.adjust_decimal(
            self.accounts_table, account_id, "balance", delta, floor, expected
        )

    def set_status(
        self,
        identifier: str,
        new_status: AccountStatus,
        balance_seed: Union[Decimal, Callable[[Account], Optional[Decimal]], None] = None
    ) -> Account:
        """
        Move an account to ``new_status``, optionally crediting a seed grant
        in the same compare-and-set.

        ``balance_seed`` may be a callable; it is evaluated against the
        account state each attempt, so the grant always matches the status
        being replaced.

        Raises:
            NotFoundError: If the account does not exist
            ConflictError: If the account is already in ``new_status``
        """
        for _ in range(self.STATUS_RETRIES):
            account = self.require_account(identifier)
            if account.status == new_status:
                raise ConflictError(
                    f"Account is already {new_status.value}!",
                    {"identifier": identifier}
                )

            changes = {
                "status": new_status.value,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            seed = balance_seed(account) if callable(balance_seed) else balance_seed
            if seed:
                changes["balance"] = str(account.balance + seed)

            result = self.storage.compare_and_set(
                self.accounts_table, account.id,
                {"status": account.status.value, "balance": str(account.balance)},
                changes
            )
            if result == CasResult.COMMITTED:
                log_action(
                    self.logger, "info", f"Account status changed to {new_status.value}",
                    action="set_status", resource=f"account:{account.id}",
                    extra={
                        "old_status": account.status.value,
                        "new_status": new_status.value,
                        "seed": str(seed) if seed else None,
                    }
                )
                return self.require_account(account.id)
            if result == CasResult.NOT_FOUND:
                raise NotFoundError("User not found!", {"identifier": identifier})

        raise ConflictError("Account changed concurrently, try again", {"identifier": identifier})
