"""
Error Taxonomy Module

Every failure the ledger can report is a MobileMoneyError subclass with a
stable ``code``. The API layer maps the categories to HTTP status codes.
"""

from typing import Any, Dict, Optional


class MobileMoneyError(Exception):
    """Base class for all ledger errors"""
    code = "error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"detail": self.message, "code": self.code}
        if self.details:
            result["details"] = self.details
        return result


# Malformed or missing input
class ValidationError(MobileMoneyError):
    code = "validation_error"


class InvalidAmount(ValidationError):
    code = "invalid_amount"


# Identity
class AuthenticationError(MobileMoneyError):
    code = "unauthenticated"


class InvalidCredentials(AuthenticationError):
    code = "invalid_credentials"


class AuthorizationError(MobileMoneyError):
    code = "forbidden"


# Missing records
class NotFoundError(MobileMoneyError):
    code = "not_found"


class SenderNotFound(NotFoundError):
    code = "sender_not_found"


class RecipientNotFound(NotFoundError):
    code = "recipient_not_found"


class RequestNotFound(NotFoundError):
    code = "request_not_found"


# State already satisfies the request
class ConflictError(MobileMoneyError):
    code = "conflict"


class AlreadyResolved(ConflictError):
    code = "already_resolved"


# Business rules, surfaced verbatim and never retried
class BusinessRuleError(MobileMoneyError):
    code = "business_rule"


class InsufficientBalance(BusinessRuleError):
    code = "insufficient_balance"


class InvalidPin(BusinessRuleError):
    code = "invalid_pin"


class SenderInactive(BusinessRuleError):
    code = "sender_inactive"


class RecipientInactive(BusinessRuleError):
    code = "recipient_inactive"


class RecipientNotAgent(BusinessRuleError):
    code = "recipient_not_agent"


class AgentNotFound(BusinessRuleError):
    code = "agent_not_found"


class PartialFailure(MobileMoneyError):
    """A multi-step mutation failed midway and could not be compensated"""
    code = "partial_failure"


class InfrastructureError(MobileMoneyError):
    """The durable store is unavailable or returned an unexpected error"""
    code = "infrastructure_error"
