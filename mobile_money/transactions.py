"""
Transaction Log Module

Append-only record of settled money movements. Entries are written once,
at settlement time, and never updated or deleted.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import InfrastructureError, InvalidAmount, ValidationError
from .logging_config import get_logger, log_action


_CONFIGURED_LIMIT = object()


class TransactionType(Enum):
    """Kinds of settled movements"""
    SEND_MONEY = "send-money"
    CASH_IN = "cash-in"
    CASH_OUT = "cash-out"


class TransactionStatus(Enum):
    """Only settled movements are logged"""
    APPROVED = "approved"


def parse_amount(value: Any) -> Decimal:
    """Coerce user input to a positive Decimal or raise InvalidAmount"""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount("Amount must be greater than zero", {"amount": str(value)})
    return amount


@dataclass
class Transaction(StorageRecord):
    """
    Immutable ledger entry. ``id`` is the transaction id, ``created_at``
    the settlement timestamp.
    """
    sender: str
    recipient: str
    amount: Decimal
    transaction_type: TransactionType
    status: TransactionStatus = TransactionStatus.APPROVED
    request_id: Optional[str] = None  # cash request this settles, if any

    def __post_init__(self):
        if self.amount <= 0:
            raise InvalidAmount("Transaction amount must be positive")
        if self.sender == self.recipient:
            raise ValidationError("Sender and recipient must differ")

    @property
    def transaction_id(self) -> str:
        return self.id

    def involves(self, account: str) -> bool:
        return account in (self.sender, self.recipient)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.id,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "type": self.transaction_type.value,
            "status": self.status.value,
            "date": self.created_at.isoformat(),
            "request_id": self.request_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            sender=data["sender"],
            recipient=data["recipient"],
            amount=Decimal(data["amount"]),
            transaction_type=TransactionType(data["transaction_type"]),
            status=TransactionStatus(data["status"]),
            request_id=data.get("request_id"),
        )


class TransactionQuery:
    """
    Lazy, restartable view over the log.

    Each iteration re-reads the store, so iterating twice reflects entries
    appended in between. Results are bounded by ``limit`` when given.
    """

    def __init__(self, log: "TransactionLog", account: Optional[str] = None,
                 limit: Optional[int] = None, newest_first: bool = True,
                 include_received: bool = True):
        self._log = log
        self.account = account
        self.limit = limit
        self.newest_first = newest_first
        self.include_received = include_received

    def _rows(self) -> List[Dict[str, Any]]:
        storage, table = self._log.storage, self._log.table_name
        if self.account is None:
            return storage.load_all(table)
        rows = storage.find(table, {"sender": self.account})
        if self.include_received:
            rows += storage.find(table, {"recipient": self.account})
        return rows

    def __iter__(self) -> Iterator[Transaction]:
        rows = sorted(self._rows(), key=lambda row: row["created_at"])
        if self.newest_first:
            rows.reverse()
        if self.limit is not None:
            rows = rows[:self.limit]
        for row in rows:
            yield Transaction.from_dict(row)

    def to_list(self) -> List[Transaction]:
        return list(self)


class TransactionLog:
    """
    Append-only transaction log. There are deliberately no update or
    delete operations.
    """

    def __init__(self, storage: StorageInterface, history_limit: int = 10):
        self.storage = storage
        self.table_name = "transactions"
        self.history_limit = history_limit
        self.logger = get_logger("mobile_money.transactions")

    def append(
        self,
        sender: str,
        recipient: str,
        amount: Decimal,
        transaction_type: TransactionType,
        request_id: Optional[str] = None
    ) -> Transaction:
        """
        Record a settled movement; the transaction id is generated here.

        Raises:
            InvalidAmount: If amount is not positive
            ValidationError: If sender equals recipient
            InfrastructureError: If the id collides or the store rejects the write
        """
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            sender=sender,
            recipient=recipient,
            amount=amount,
            transaction_type=transaction_type,
            request_id=request_id,
        )

        if not self.storage.insert(self.table_name, transaction.id, transaction.to_dict()):
            raise InfrastructureError(f"Transaction id collision: {transaction.id}")

        log_action(
            self.logger, "info", f"Transaction recorded: {transaction_type.value}",
            action="append_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "sender": sender,
                "recipient": recipient,
                "amount": str(amount),
            }
        )
        return transaction

    def get(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        return Transaction.from_dict(data) if data else None

    def find_by_request(self, request_id: str) -> Optional[Transaction]:
        """The entry settling a cash request, if one was recorded"""
        rows = self.storage.find(self.table_name, {"request_id": request_id})
        return Transaction.from_dict(rows[0]) if rows else None

    def query(self, account: str, limit: Any = _CONFIGURED_LIMIT,
              newest_first: bool = True, include_received: bool = True) -> TransactionQuery:
        """
        History for one account.

        ``limit`` defaults to the configured per-account cap; pass None for
        an unbounded view.
        """
        if limit is _CONFIGURED_LIMIT:
            limit = self.history_limit
        return TransactionQuery(self, account, limit, newest_first, include_received)

    def query_all(self, newest_first: bool = True) -> TransactionQuery:
        """Full history across every account (admin view, unbounded)"""
        return TransactionQuery(self, None, None, newest_first)

    def count(self) -> int:
        return self.storage.count(self.table_name)
