"""
Ledger Engine Module

The single authority for moving money between two accounts. A settlement
debits the sender, credits the recipient and then appends one transaction
log entry, in that order:

* the debit is a conditional store update, so concurrent debits can never
  overdraw an account
* if the credit cannot be applied the debit is reversed (compensation) and
  the failure is reported; money is never left in flight
* the log records already-true state; if appending fails after both balance
  updates committed the transfer still counts as settled and the caller is
  told so through ``Settlement.logging_failed``
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .accounts import Account, AccountStore, AccountRole, AccountStatus
from .transactions import Transaction, TransactionLog, TransactionType, parse_amount
from .storage import AdjustResult
from .audit import AuditTrail, AuditEventType
from .errors import (
    InfrastructureError, InsufficientBalance, PartialFailure, RecipientInactive,
    RecipientNotAgent, RecipientNotFound, SenderInactive, SenderNotFound,
    ValidationError,
)
from .logging_config import get_logger, log_action


@dataclass
class Settlement:
    """Result of a settled transfer"""
    sender: str
    recipient: str
    amount: Decimal
    transaction_type: TransactionType
    transaction: Optional[Transaction] = None
    logging_failed: bool = False
    warning: Optional[str] = None

    @property
    def transaction_id(self) -> Optional[str]:
        return self.transaction.id if self.transaction else None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "message": "Transaction successful",
            "transaction_id": self.transaction_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "type": self.transaction_type.value,
        }
        if self.logging_failed:
            result["warning"] = self.warning
        return result


class LedgerEngine:
    """
    Performs the two-sided balance mutation plus log entry for direct
    transfers and settled cash operations.
    """

    def __init__(
        self,
        account_store: AccountStore,
        transaction_log: TransactionLog,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.account_store = account_store
        self.transaction_log = transaction_log
        self.audit_trail = audit_trail
        self.logger = get_logger("mobile_money.ledger")

    def _audit(self, event_type: AuditEventType, entity_id: str, metadata: Dict[str, Any]) -> None:
        """Record an audit event without failing an already-settled operation"""
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(event_type, "transfer", entity_id, metadata)
        except Exception as e:
            self.logger.error(f"Error writing audit event {event_type.value}: {e}")

    def _check_sender(self, identifier: str) -> Account:
        sender = self.account_store.get_account(identifier)
        if sender is None:
            raise SenderNotFound("Sender not found!", {"sender": identifier})
        if not sender.is_active:
            raise SenderInactive(
                f"Sender account is {sender.status.value}!", {"sender": sender.mobile_number}
            )
        return sender

    def _check_recipient(self, identifier: str, transaction_type: TransactionType) -> Account:
        recipient = self.account_store.get_account(identifier)
        if recipient is None:
            raise RecipientNotFound("Recipient not found!", {"recipient": identifier})
        if not recipient.is_active:
            raise RecipientInactive(
                f"Recipient account is {recipient.status.value}!",
                {"recipient": recipient.mobile_number}
            )
        if transaction_type == TransactionType.CASH_OUT and recipient.role != AccountRole.AGENT:
            raise RecipientNotAgent(
                "Receiver is not an agent! Please provide a valid agent number!",
                {"recipient": recipient.mobile_number}
            )
        return recipient

    def settle_transfer(
        self,
        sender_id: str,
        recipient_id: str,
        amount: Any,
        transaction_type: TransactionType,
        request_id: Optional[str] = None
    ) -> Settlement:
        """
        Move ``amount`` from sender to recipient and record it. ``request_id``
        links the log entry to the cash request being settled.

        Preconditions are checked in order: amount, sender, recipient,
        balance. Each failure raises a distinct error and has no side effect.

        Raises:
            InvalidAmount, SenderNotFound, SenderInactive, RecipientNotFound,
            RecipientInactive, RecipientNotAgent, InsufficientBalance,
            ValidationError (self-transfer), InfrastructureError,
            PartialFailure (compensation itself failed)
        """
        amount = parse_amount(amount)
        sender = self._check_sender(sender_id)
        recipient = self._check_recipient(recipient_id, transaction_type)
        if sender.id == recipient.id:
            raise ValidationError("Cannot transfer to the same account")
        if sender.balance < amount:
            raise InsufficientBalance(
                "Insufficient balance!",
                {"balance": str(sender.balance), "amount": str(amount)}
            )

        self._debit(sender, amount)
        self._credit_or_compensate(sender, recipient, amount, transaction_type)

        settlement = Settlement(
            sender=sender.mobile_number,
            recipient=recipient.mobile_number,
            amount=amount,
            transaction_type=transaction_type,
        )
        try:
            settlement.transaction = self.transaction_log.append(
                sender.mobile_number, recipient.mobile_number, amount, transaction_type,
                request_id=request_id
            )
        except Exception as e:
            # Balances already moved; retrying the transfer would move money twice
            settlement.logging_failed = True
            settlement.warning = f"Transfer settled but could not be recorded: {e}"
            log_action(
                self.logger, "error", "Settled transfer could not be logged",
                action="settle_transfer", resource=f"account:{sender.mobile_number}",
                extra={
                    "recipient": recipient.mobile_number,
                    "amount": str(amount),
                    "type": transaction_type.value,
                    "error": str(e),
                }
            )
            self._audit(AuditEventType.TRANSFER_LOG_FAILED, sender.mobile_number, {
                "recipient": recipient.mobile_number,
                "amount": amount,
                "type": transaction_type,
            })
            return settlement

        log_action(
            self.logger, "info", f"Transfer settled: {transaction_type.value}",
            user_id=sender.mobile_number, action="settle_transfer",
            resource=f"transaction:{settlement.transaction_id}",
            extra={"recipient": recipient.mobile_number, "amount": str(amount)}
        )
        self._audit(AuditEventType.TRANSFER_SETTLED, settlement.transaction_id, {
            "sender": sender.mobile_number,
            "recipient": recipient.mobile_number,
            "amount": amount,
            "type": transaction_type,
        })
        return settlement

    def _debit(self, sender: Account, amount: Decimal) -> None:
        result = self.account_store.atomic_adjust_balance(
            sender.id, -amount, require_non_negative=True, require_status=AccountStatus.ACTIVE
        )
        if result == AdjustResult.COMMITTED:
            return
        if result == AdjustResult.NOT_FOUND:
            raise SenderNotFound("Sender not found!", {"sender": sender.mobile_number})

        # The guard covers both balance and status; re-read to report the right one
        current = self.account_store.get_account(sender.id)
        if current is None:
            raise SenderNotFound("Sender not found!", {"sender": sender.mobile_number})
        if not current.is_active:
            raise SenderInactive(
                f"Sender account is {current.status.value}!", {"sender": sender.mobile_number}
            )
        raise InsufficientBalance(
            "Insufficient balance!",
            {"balance": str(current.balance), "amount": str(amount)}
        )

    def _credit_or_compensate(self, sender: Account, recipient: Account,
                              amount: Decimal, transaction_type: TransactionType) -> None:
        try:
            result = self.account_store.atomic_adjust_balance(
                recipient.id, amount, require_non_negative=False,
                require_status=AccountStatus.ACTIVE
            )
        except InfrastructureError as e:
            self._compensate(sender, recipient, amount, transaction_type, str(e))
            raise

        if result == AdjustResult.COMMITTED:
            return

        reason = "recipient vanished" if result == AdjustResult.NOT_FOUND else "recipient no longer active"
        self._compensate(sender, recipient, amount, transaction_type, reason)
        if result == AdjustResult.NOT_FOUND:
            raise RecipientNotFound("Recipient not found!", {"recipient": recipient.mobile_number})
        raise RecipientInactive("Recipient account is not active!", {"recipient": recipient.mobile_number})

    def _compensate(self, sender: Account, recipient: Account, amount: Decimal,
                    transaction_type: TransactionType, reason: str) -> None:
        """Reverse the sender debit after a failed credit"""
        try:
            result = self.account_store.atomic_adjust_balance(
                sender.id, amount, require_non_negative=False
            )
        except InfrastructureError as e:
            result = None
            reason = f"{reason}; refund failed: {e}"

        details = {
            "sender": sender.mobile_number,
            "recipient": recipient.mobile_number,
            "amount": str(amount),
            "type": transaction_type.value,
            "reason": reason,
        }
        if result != AdjustResult.COMMITTED:
            log_action(
                self.logger, "critical", "Compensation failed, sender debit not reversed",
                action="compensate_transfer", resource=f"account:{sender.mobile_number}",
                extra=details
            )
            raise PartialFailure("Transfer failed and the sender debit could not be reversed", details)

        log_action(
            self.logger, "error", "Transfer compensated after failed credit",
            action="compensate_transfer", resource=f"account:{sender.mobile_number}",
            extra=details
        )
        self._audit(AuditEventType.TRANSFER_COMPENSATED, sender.mobile_number, details)

    # Convenience wrappers

    def send_money(self, sender_id: str, recipient_id: str, amount: Any) -> Settlement:
        return self.settle_transfer(sender_id, recipient_id, amount, TransactionType.SEND_MONEY)

    def cash_out(self, customer_id: str, agent_id: str, amount: Any) -> Settlement:
        """Customer pays the agent, who hands over physical cash"""
        return self.settle_transfer(customer_id, agent_id, amount, TransactionType.CASH_OUT)

    def cash_in(self, agent_id: str, customer_id: str, amount: Any) -> Settlement:
        """Agent pays the customer, who handed over physical cash"""
        return self.settle_transfer(agent_id, customer_id, amount, TransactionType.CASH_IN)
