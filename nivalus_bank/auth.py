"""
Authentication gate

Turns credentials into signed tokens and tokens back into an explicit
``Caller`` value that the rest of the core receives as an argument.
A token is only honoured while its ``jti`` matches the account's current
auth token, so logging out (or logging in elsewhere) revokes it.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from .accounts import Account, AccountRole, AccountStatus, AccountStore
from .errors import (
    AccountInactiveError, AccountNotFoundError, ForbiddenError,
    InvalidCredentialsError, UnauthenticatedError
)
from .logging_config import get_logger, log_action
from .security import generate_token_id


@dataclass(frozen=True)
class Caller:
    """Identity and capabilities of whoever issued a request"""
    account_id: int
    role: AccountRole
    status: AccountStatus = AccountStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    @classmethod
    def from_account(cls, account: Account) -> 'Caller':
        return cls(account_id=account.id, role=account.role, status=account.status)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    account: Account
    expires_at: datetime


def require_active(caller: Caller) -> Caller:
    if caller.status != AccountStatus.ACTIVE:
        raise AccountInactiveError()
    return caller


def require_admin(caller: Caller) -> Caller:
    if not caller.is_admin:
        raise ForbiddenError()
    return caller


class AuthenticationGate:
    """Issues, resolves and revokes bearer tokens"""

    def __init__(self, account_store: AccountStore, jwt_secret: str,
                 jwt_algorithm: str = "HS256", token_ttl: timedelta = timedelta(hours=24)):
        self.account_store = account_store
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.token_ttl = token_ttl
        self.logger = get_logger("nivalus.auth")

    def authenticate(self, username: str, password: str) -> IssuedToken:
        """
        Check credentials and issue a token.

        Raises:
            InvalidCredentialsError: unknown username or wrong password
            AccountInactiveError: credentials are right but the account is
                inactive or deleted
        """
        try:
            account = self.account_store.find_by_username(username)
        except AccountNotFoundError:
            self._log_failure(username, "user_not_found")
            raise InvalidCredentialsError()

        if not self.account_store.verify_password(account, password):
            self._log_failure(username, "invalid_password")
            raise InvalidCredentialsError()

        if not account.is_active:
            self._log_failure(username, "account_not_active")
            raise AccountInactiveError("Account is inactive or deleted")

        now = datetime.now(timezone.utc)
        expires_at = now + self.token_ttl
        token_id = generate_token_id()
        token = jwt.encode(
            {
                "sub": str(account.id),
                "role": account.role.value,
                "jti": token_id,
                "iat": now,
                "exp": expires_at,
            },
            self.jwt_secret,
            algorithm=self.jwt_algorithm
        )
        account = self.account_store.record_login(account.id, token_id)

        log_action(
            self.logger, "info", "User authenticated successfully",
            user_id=account.id, action="login", resource="auth"
        )
        return IssuedToken(token=token, account=account, expires_at=expires_at)

    def resolve_caller(self, token: Optional[str]) -> Caller:
        """Validate a bearer token and return the caller it identifies"""
        if not token:
            raise UnauthenticatedError()
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
            account_id = int(payload["sub"])
            token_id = payload["jti"]
        except jwt.ExpiredSignatureError:
            raise UnauthenticatedError("Token expired")
        except (jwt.InvalidTokenError, KeyError, ValueError):
            raise UnauthenticatedError("Unauthorized. Invalid or expired token.")

        try:
            account = self.account_store.get_account(account_id)
        except AccountNotFoundError:
            raise UnauthenticatedError("Unauthorized. Invalid or expired token.")

        if account.auth_token != token_id:
            raise UnauthenticatedError("Unauthorized. Invalid or expired token.")

        return Caller.from_account(account)

    def logout(self, caller: Caller) -> None:
        """Revoke the caller's current token"""
        self.account_store.clear_auth_token(caller.account_id)
        log_action(
            self.logger, "info", "User logged out",
            user_id=caller.account_id, action="logout", resource="auth"
        )

    def _log_failure(self, username: str, reason: str) -> None:
        log_action(
            self.logger, "warning", "Authentication failed",
            action="login_failed", resource="auth",
            extra={"username": username, "reason": reason}
        )
