"""
Identity & Access Module

Registration, PIN verification, JWT issuance and role checks. PIN
material is hashed with scrypt and a per-account salt and is never
exposed outside this module.
"""

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from .accounts import Account, AccountRole, AccountStore
from .audit import AuditTrail, AuditEventType
from .errors import (
    AuthenticationError, AuthorizationError, InvalidCredentials, InvalidPin,
    ValidationError,
)
from .logging_config import get_logger, log_action


class IdentityService:
    """
    Issues and verifies bearer tokens for wallet accounts.

    Every role check is an explicit decision: it returns the account when
    authorized and raises AuthorizationError otherwise.
    """

    def __init__(
        self,
        account_store: AccountStore,
        jwt_secret: str,
        audit_trail: Optional[AuditTrail] = None,
        jwt_algorithm: str = "HS256",
        jwt_expiry_hours: int = 24,
        pin_min_length: int = 4
    ):
        self.account_store = account_store
        self.audit_trail = audit_trail
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.jwt_expiry_hours = jwt_expiry_hours
        self.pin_min_length = pin_min_length
        self.logger = get_logger("mobile_money.identity")

    def _audit(self, event_type: AuditEventType, entity_id: str,
               metadata: Dict[str, Any], user_id: Optional[str] = None) -> None:
        """Record an audit event without failing an already-committed change"""
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(event_type, "account", entity_id, metadata, user_id=user_id)
        except Exception as e:
            self.logger.error(f"Error writing audit event {event_type.value}: {e}")

    @staticmethod
    def _generate_salt() -> str:
        return secrets.token_hex(16)

    @staticmethod
    def _hash_pin(pin: str, salt: str) -> str:
        return hashlib.scrypt(pin.encode(), salt=salt.encode(), n=16384, r=8, p=1).hex()

    def _check_pin(self, account: Account, pin: str) -> bool:
        if not account.pin_hash or not account.pin_salt or pin is None:
            return False
        return hmac.compare_digest(account.pin_hash, self._hash_pin(str(pin), account.pin_salt))

    def register(self, name: str, mobile_number: str, email: str, pin: str,
                 role: AccountRole = AccountRole.CUSTOMER) -> Account:
        """
        Create a pending account with a hashed PIN.

        Raises:
            ValidationError: If the PIN is too short or not numeric
            ConflictError: If the mobile number or email is taken
        """
        pin = str(pin or "")
        if len(pin) < self.pin_min_length or not pin.isdigit():
            raise ValidationError(
                f"PIN must be at least {self.pin_min_length} digits",
                {"min_length": self.pin_min_length}
            )

        salt = self._generate_salt()
        account = self.account_store.create_account(
            name=name,
            mobile_number=mobile_number,
            email=email,
            role=role,
            pin_hash=self._hash_pin(pin, salt),
            pin_salt=salt,
        )
        self._audit(AuditEventType.ACCOUNT_REGISTERED, account.id, {"role": role, "email": account.email})
        return account

    def login(self, identifier: str, pin: str) -> Dict[str, Any]:
        """
        Exchange identifier and PIN for a signed token.

        Unknown identifiers and wrong PINs fail identically.
        """
        account = self.account_store.get_account(identifier)
        if account is None or not self._check_pin(account, pin):
            log_action(
                self.logger, "warning", "Login failed",
                action="login_failed", resource="auth", extra={"identifier": identifier}
            )
            self._audit(AuditEventType.LOGIN_FAILED, account.id if account else identifier, {})
            raise InvalidCredentials("Invalid credentials!")

        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(hours=self.jwt_expiry_hours)
        payload = {
            "sub": account.id,
            "mobile_number": account.mobile_number,
            "email": account.email,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

        log_action(
            self.logger, "info", "User authenticated successfully",
            user_id=account.id, action="login", resource="auth"
        )
        self._audit(AuditEventType.LOGIN_SUCCESS, account.id, {}, user_id=account.id)
        return {
            "access_token": token,
            "token_type": "bearer",
            "expires_at": expires_at.isoformat(),
        }

    def authenticate(self, token: str) -> Account:
        """Resolve a bearer token to its account"""
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token")

        subject = payload.get("sub")
        account = self.account_store.get_account(subject) if subject else None
        if account is None:
            raise AuthenticationError("Invalid token")
        return account

    def authorize_role(self, identifier: str, role: AccountRole) -> Account:
        account = self.account_store.get_account(identifier)
        if account is None or account.role != role:
            log_action(
                self.logger, "warning", "Role check denied",
                user_id=identifier, action="authorize_role", resource=f"role:{role.value}"
            )
            raise AuthorizationError(f"{role.value.capitalize()} access required")
        return account

    def verify_pin(self, identifier: str, pin: str) -> Account:
        """Confirm a PIN for a money-moving request; raises InvalidPin"""
        account = self.account_store.require_account(identifier)
        if not self._check_pin(account, pin):
            raise InvalidPin("Invalid PIN!")
        return account
