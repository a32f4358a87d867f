"""
Approval Workflow Module

Agent-mediated cash operations run as a two-phase protocol: a customer
creates a pending request, and the targeted agent later approves (which
settles through the Ledger Engine) or rejects it. Requests carry an
explicit id, and only the agent a request was addressed to may resolve it.

Status moves pending -> approved or pending -> rejected, once. Approval
first claims the request by setting its ``settling`` flag with a
compare-and-set, so two racing approvals can never both settle. The
settlement log entry carries the request id; a resolver that finds a
request still claimed uses it to finish the approval, or releases a claim
older than ``settle_timeout`` when no entry exists.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, CasResult
from .accounts import Account, AccountRole, AccountStore
from .transactions import Transaction, TransactionType, parse_amount
from .ledger import LedgerEngine, Settlement
from .audit import AuditTrail, AuditEventType
from .errors import (
    AgentNotFound, AlreadyResolved, AuthorizationError, ConflictError,
    InfrastructureError, InsufficientBalance, NotFoundError, RequestNotFound,
    SenderInactive, ValidationError,
)
from .logging_config import get_logger, log_action


# Attempts at the final pending -> approved write once money has moved
MARK_APPROVED_ATTEMPTS = 3


class RequestType(Enum):
    CASH_IN = "cash-in"
    CASH_OUT = "cash-out"

    @property
    def transaction_type(self) -> TransactionType:
        return TransactionType(self.value)


class RequestStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class PendingRequest(StorageRecord):
    """
    Agent-mediated cash operation. ``customer`` and ``agent`` are mobile
    numbers; ``settling`` is set while an approval holds the request, and
    ``settling_since`` records when that claim was taken.
    """
    customer: str
    agent: str
    amount: Decimal
    request_type: RequestType
    status: RequestStatus = RequestStatus.PENDING
    settling: bool = False
    settling_since: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    transaction_id: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    @property
    def payer(self) -> str:
        """Account whose balance funds the settlement"""
        return self.agent if self.request_type == RequestType.CASH_IN else self.customer

    @property
    def payee(self) -> str:
        return self.customer if self.request_type == RequestType.CASH_IN else self.agent

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.id,
            "customer": self.customer,
            "agent": self.agent,
            "amount": str(self.amount),
            "type": self.request_type.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": self.resolved_by,
            "transaction_id": self.transaction_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingRequest":
        resolved_at = data.get("resolved_at")
        settling_since = data.get("settling_since")
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            customer=data["customer"],
            agent=data["agent"],
            amount=Decimal(data["amount"]),
            request_type=RequestType(data["request_type"]),
            status=RequestStatus(data["status"]),
            settling=bool(data.get("settling", False)),
            settling_since=datetime.fromisoformat(settling_since) if settling_since else None,
            resolved_at=datetime.fromisoformat(resolved_at) if resolved_at else None,
            resolved_by=data.get("resolved_by"),
            transaction_id=data.get("transaction_id"),
        )


@dataclass
class Resolution:
    """Outcome of resolving a request"""
    request: PendingRequest
    settlement: Optional[Settlement] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {"request": self.request.to_public_dict()}
        if self.settlement:
            result["settlement"] = self.settlement.to_dict()
        return result


class ApprovalWorkflow:
    """
    Pending-request state machine for agent cash-in and cash-out.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        ledger: LedgerEngine,
        audit_trail: Optional[AuditTrail] = None,
        pending_list_limit: int = 20,
        settle_timeout: int = 30
    ):
        self.storage = storage
        self.account_store = account_store
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.pending_list_limit = pending_list_limit
        self.settle_timeout = timedelta(seconds=settle_timeout)
        self.table_name = "pending_requests"
        self.logger = get_logger("mobile_money.approvals")

    def _audit(self, event_type: AuditEventType, request: PendingRequest,
               user_id: Optional[str]) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type, "cash_request", request.id,
                {
                    "customer": request.customer,
                    "agent": request.agent,
                    "amount": request.amount,
                    "type": request.request_type,
                    "transaction_id": request.transaction_id,
                },
                user_id=user_id
            )
        except Exception as e:
            self.logger.error(f"Error writing audit event {event_type.value}: {e}")

    def create_request(
        self,
        customer_id: str,
        agent_id: str,
        amount: Any,
        request_type: RequestType
    ) -> PendingRequest:
        """
        Open a pending cash request from a customer to an agent.

        Cash-out checks the customer's balance up front as an early
        rejection only; it is checked again when the agent approves.

        Raises:
            InvalidAmount: If amount is not positive
            NotFoundError, SenderInactive: If the customer is unknown or inactive
            AuthorizationError: If the initiator is not a customer account
            AgentNotFound: If ``agent_id`` is not an active agent account
            InsufficientBalance: For cash-out beyond the customer's balance
        """
        amount = parse_amount(amount)

        customer = self.account_store.get_account(customer_id)
        if customer is None:
            raise NotFoundError("User not found!", {"identifier": customer_id})
        if customer.role != AccountRole.CUSTOMER:
            raise AuthorizationError(
                "Only customers can open cash requests",
                {"identifier": customer.mobile_number, "role": customer.role.value}
            )
        if not customer.is_active:
            raise SenderInactive(
                f"Account is {customer.status.value}!", {"customer": customer.mobile_number}
            )

        agent = self.account_store.get_account(agent_id)
        if agent is None or not agent.is_agent or not agent.is_active:
            raise AgentNotFound(
                "Agent not found! Please provide a valid agent number!", {"agent": agent_id}
            )
        if agent.id == customer.id:
            raise ValidationError("Cannot request cash from your own account")

        if request_type == RequestType.CASH_OUT and customer.balance < amount:
            raise InsufficientBalance(
                "Insufficient balance!",
                {"balance": str(customer.balance), "amount": str(amount)}
            )

        now = datetime.now(timezone.utc)
        request = PendingRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer=customer.mobile_number,
            agent=agent.mobile_number,
            amount=amount,
            request_type=request_type,
        )
        self.storage.insert(self.table_name, request.id, request.to_dict())

        log_action(
            self.logger, "info", f"Cash request created: {request_type.value}",
            user_id=customer.mobile_number, action="create_request",
            resource=f"cash_request:{request.id}",
            extra={"agent": agent.mobile_number, "amount": str(amount)}
        )
        self._audit(AuditEventType.CASH_REQUEST_CREATED, request, customer.mobile_number)
        return request

    def get_request(self, request_id: str) -> Optional[PendingRequest]:
        data = self.storage.load(self.table_name, request_id)
        return PendingRequest.from_dict(data) if data else None

    def _require_request(self, request_id: str) -> PendingRequest:
        request = self.get_request(request_id)
        if request is None:
            raise RequestNotFound("Request not found!", {"request_id": request_id})
        return request

    def _mobile_number(self, identifier: str) -> str:
        account: Optional[Account] = self.account_store.get_account(identifier)
        return account.mobile_number if account else identifier

    def list_pending_for_agent(self, agent_id: str, limit: Optional[int] = None) -> List[PendingRequest]:
        """Pending requests addressed to an agent, newest first and bounded"""
        rows = self.storage.find(self.table_name, {
            "agent": self._mobile_number(agent_id),
            "status": RequestStatus.PENDING.value,
        })
        rows.sort(key=lambda row: row["created_at"])
        rows.reverse()
        if limit is None:
            limit = self.pending_list_limit
        return [PendingRequest.from_dict(row) for row in rows[:limit]]

    def list_requests_for_customer(self, customer_id: str) -> List[PendingRequest]:
        """Every request a customer has opened, newest first"""
        rows = self.storage.find(self.table_name, {"customer": self._mobile_number(customer_id)})
        rows.sort(key=lambda row: row["created_at"])
        rows.reverse()
        return [PendingRequest.from_dict(row) for row in rows]

    def _claim_failed(self, request_id: str) -> ConflictError:
        """Explain why a compare-and-set on a pending request lost"""
        current = self._require_request(request_id)
        if not current.is_pending:
            return AlreadyResolved(
                f"Request is already {current.status.value}!", {"request_id": request_id}
            )
        return ConflictError("Request is being settled, try again", {"request_id": request_id})


    def resolve(self, request_id: str, agent_id: str, decision: Decision) -> Resolution:
        """
        Approve or reject a pending request as its target agent.

        On approval the payer balance is re-validated and the transfer is
        settled through the Ledger Engine; if that fails the request stays
        pending and the failure propagates. A request left claimed by an
        approval that settled but never finished is completed here, so
        repeating an approval returns the original settlement.

        Raises:
            RequestNotFound: If no request has this id
            AuthorizationError: If ``agent_id`` is not the request's agent
            AlreadyResolved: If the request is approved or rejected already
            ConflictError: If another approval currently holds the request
        """
        request = self._require_request(request_id)
        agent_number = self._mobile_number(agent_id)
        if request.agent != agent_number:
            log_action(
                self.logger, "warning", "Agent tried to resolve another agent's request",
                user_id=agent_number, action="resolve_request",
                resource=f"cash_request:{request.id}"
            )
            raise AuthorizationError(
                "You are not the agent for this request", {"request_id": request.id}
            )
        if not request.is_pending:
            raise AlreadyResolved(
                f"Request is already {request.status.value}!", {"request_id": request.id}
            )

        if request.settling:
            recovered = self._recover_claim(request, agent_number)
            if recovered is not None:
                if decision == Decision.APPROVE:
                    return recovered
                raise AlreadyResolved(
                    f"Request is already {recovered.request.status.value}!",
                    {"request_id": request.id}
                )

        if decision == Decision.REJECT:
            return self._reject(request, agent_number)
        return self._approve(request, agent_number)

    def _recover_claim(self, request: PendingRequest, agent_number: str) -> Optional[Resolution]:
        """
        Deal with a request whose ``settling`` claim is still set.

        If the log holds the entry for this request the money has moved, so
        the approval is completed and returned. Otherwise a claim older than
        ``settle_timeout`` is released and None is returned; a fresh claim
        belongs to an approval still in progress.
        """
        transaction = self.ledger.transaction_log.find_by_request(request.id)
        if transaction is not None:
            approved, marked = self._mark_approved(request, agent_number, transaction.id)
            if marked:
                log_action(
                    self.logger, "warning", "Completed approval of an already settled request",
                    user_id=agent_number, action="approve_request",
                    resource=f"cash_request:{request.id}",
                    extra={"transaction_id": transaction.id}
                )
                self._audit(AuditEventType.CASH_REQUEST_APPROVED, approved, agent_number)
            return Resolution(request=approved, settlement=self._settlement_from(transaction))

        claimed_at = request.settling_since
        if claimed_at is not None and datetime.now(timezone.utc) - claimed_at < self.settle_timeout:
            raise ConflictError("Request is being settled, try again", {"request_id": request.id})

        result = self.storage.compare_and_set(
            self.table_name, request.id,
            {
                "status": RequestStatus.PENDING.value,
                "settling": True,
                "settling_since": claimed_at.isoformat() if claimed_at else None,
            },
            {"settling": False, "settling_since": None}
        )
        if result == CasResult.NOT_FOUND:
            raise RequestNotFound("Request not found!", {"request_id": request.id})
        if result == CasResult.MISMATCH:
            raise self._claim_failed(request.id)

        log_action(
            self.logger, "warning", "Released stale settlement claim",
            user_id=agent_number, action="resolve_request",
            resource=f"cash_request:{request.id}",
            extra={"claimed_at": claimed_at.isoformat() if claimed_at else None}
        )
        return None

    @staticmethod
    def _settlement_from(transaction: Transaction) -> Settlement:
        return Settlement(
            sender=transaction.sender,
            recipient=transaction.recipient,
            amount=transaction.amount,
            transaction_type=transaction.transaction_type,
            transaction=transaction,
        )

    def _reject(self, request: PendingRequest, agent_number: str) -> Resolution:
        now = datetime.now(timezone.utc).isoformat()
        result = self.storage.compare_and_set(
            self.table_name, request.id,
            {"status": RequestStatus.PENDING.value, "settling": False},
            {
                "status": RequestStatus.REJECTED.value,
                "resolved_at": now,
                "resolved_by": agent_number,
                "updated_at": now,
            }
        )
        if result == CasResult.NOT_FOUND:
            raise RequestNotFound("Request not found!", {"request_id": request.id})
        if result == CasResult.MISMATCH:
            raise self._claim_failed(request.id)

        rejected = self._require_request(request.id)
        log_action(
            self.logger, "info", "Cash request rejected",
            user_id=agent_number, action="reject_request",
            resource=f"cash_request:{request.id}"
        )
        self._audit(AuditEventType.CASH_REQUEST_REJECTED, rejected, agent_number)
        return Resolution(request=rejected)

    def _approve(self, request: PendingRequest, agent_number: str) -> Resolution:
        claim = self.storage.compare_and_set(
            self.table_name, request.id,
            {"status": RequestStatus.PENDING.value, "settling": False},
            {"settling": True, "settling_since": datetime.now(timezone.utc).isoformat()}
        )
        if claim == CasResult.NOT_FOUND:
            raise RequestNotFound("Request not found!", {"request_id": request.id})
        if claim == CasResult.MISMATCH:
            raise self._claim_failed(request.id)

        try:
            payer = self.account_store.get_account(request.payer)
            if payer is not None and payer.balance < request.amount:
                raise InsufficientBalance(
                    "Insufficient balance!",
                    {"balance": str(payer.balance), "amount": str(request.amount)}
                )
            settlement = self.ledger.settle_transfer(
                request.payer, request.payee, request.amount,
                request.request_type.transaction_type,
                request_id=request.id
            )
        except Exception as e:
            self.storage.compare_and_set(
                self.table_name, request.id,
                {"settling": True}, {"settling": False, "settling_since": None}
            )
            log_action(
                self.logger, "warning", f"Cash request approval failed: {e}",
                user_id=agent_number, action="approve_request",
                resource=f"cash_request:{request.id}",
                extra={"error": type(e).__name__}
            )
            raise

        approved, marked = self._mark_approved(request, agent_number, settlement.transaction_id)
        log_action(
            self.logger, "info", "Cash request approved",
            user_id=agent_number, action="approve_request",
            resource=f"cash_request:{request.id}",
            extra={"transaction_id": settlement.transaction_id, "amount": str(request.amount)}
        )
        if marked:
            self._audit(AuditEventType.CASH_REQUEST_APPROVED, approved, agent_number)
        return Resolution(request=approved, settlement=settlement)

    def _mark_approved(self, request: PendingRequest, agent_number: str,
                       transaction_id: Optional[str]) -> Tuple[PendingRequest, bool]:
        """
        Move a claimed, settled request to approved. Returns the stored
        request and whether this call made the change.

        The money has already moved, so store errors are retried. If every
        attempt fails the error propagates with the claim still set, and the
        next resolver completes the approval from the log entry.
        """
        now = datetime.now(timezone.utc).isoformat()
        changes = {
            "status": RequestStatus.APPROVED.value,
            "settling": False,
            "settling_since": None,
            "resolved_at": now,
            "resolved_by": agent_number,
            "transaction_id": transaction_id,
            "updated_at": now,
        }
        for attempt in range(1, MARK_APPROVED_ATTEMPTS + 1):
            try:
                result = self.storage.compare_and_set(
                    self.table_name, request.id,
                    {"status": RequestStatus.PENDING.value, "settling": True},
                    changes
                )
                break
            except InfrastructureError as e:
                log_action(
                    self.logger, "error", f"Could not mark settled request approved: {e}",
                    user_id=agent_number, action="approve_request",
                    resource=f"cash_request:{request.id}",
                    extra={"transaction_id": transaction_id, "attempt": attempt}
                )
                if attempt == MARK_APPROVED_ATTEMPTS:
                    raise

        current = self._require_request(request.id)
        if result != CasResult.COMMITTED and current.status != RequestStatus.APPROVED:
            log_action(
                self.logger, "critical", "Settled request could not be marked approved",
                user_id=agent_number, action="approve_request",
                resource=f"cash_request:{request.id}",
                extra={"transaction_id": transaction_id, "status": current.status.value}
            )
        return current, result == CasResult.COMMITTED
