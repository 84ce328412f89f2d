"""
Account Management Module

Holds customer and admin accounts: identity, hashed secrets, balance and
lifecycle status. Usernames and emails are unique case-insensitively across
every account ever created, deleted ones included. Accounts are never
physically removed; deletion is a status.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union
from enum import Enum
import re

from .errors import (
    AccountNotFoundError, DuplicateEmailError, DuplicateUsernameError,
    InvalidAmountError, InvalidFieldError
)
from .logging_config import get_logger, log_action
from .money import ZERO, AmountLike, to_amount
from .security import hash_secret, verify_secret
from .storage import StorageInterface, StorageRecord


USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 100
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PIN_PATTERN = re.compile(r"^\d{4}$")


class AccountRole(Enum):
    """Account roles"""
    USER = "user"
    ADMIN = "admin"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"      # Can log in and transact
    INACTIVE = "inactive"  # Suspended by an admin
    DELETED = "deleted"    # Soft-deleted, kept for transaction history


@dataclass
class Account(StorageRecord):
    """Bank account holder with balance and credentials"""
    username: str
    email: str
    password_hash: str
    pin_hash: str
    balance: Decimal = ZERO
    role: AccountRole = AccountRole.USER
    status: AccountStatus = AccountStatus.ACTIVE
    last_login: Optional[datetime] = None
    avatar: Optional[str] = None
    auth_token: Optional[str] = None
    token_issued_at: Optional[datetime] = None

    def __post_init__(self):
        if self.balance < ZERO:
            raise InvalidAmountError("Balance cannot be negative")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    def to_public_dict(self) -> Dict[str, Any]:
        """Account fields safe to return to clients (no secrets)"""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "balance": str(self.balance),
            "role": self.role.value,
            "status": self.status.value,
            "avatar": self.avatar,
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "created_at": self.created_at.isoformat(),
        }


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class AccountStore:
    """
    Reads and writes account records.

    Every write to an account document happens with that account's row
    locked, so whole-document saves never overwrite a concurrent change.
    """

    def __init__(self, storage: StorageInterface, password_min_length: int = 8):
        self.storage = storage
        self.password_min_length = password_min_length
        self.accounts_table = "accounts"
        self.handles_table = "account_handles"
        self.logger = get_logger("nivalus.accounts")

    # Lookups

    def get_account(self, account_id: int) -> Account:
        """Get account by ID"""
        data = self.storage.load(self.accounts_table, account_id)
        if not data:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return self._account_from_dict(data)

    def find_by_username(self, username: str) -> Account:
        """Case-insensitive username lookup"""
        return self._find_by_handle(self._username_key(username), "username", username)

    def find_by_email(self, email: str) -> Account:
        """Case-insensitive email lookup"""
        return self._find_by_handle(self._email_key(email), "email", email)

    def list_accounts(self, include_deleted: bool = False) -> List[Account]:
        """All accounts ordered by id; deleted ones only on request"""
        accounts = [self._account_from_dict(data)
                    for data in self.storage.load_all(self.accounts_table)]
        if not include_deleted:
            accounts = [a for a in accounts if a.status != AccountStatus.DELETED]
        accounts.sort(key=lambda a: a.id)
        return accounts

    # Creation

    def create_account(
        self,
        username: str,
        email: str,
        password: str,
        pin: str,
        balance: AmountLike = ZERO,
        role: Union[AccountRole, str] = AccountRole.USER,
        status: Union[AccountStatus, str] = AccountStatus.ACTIVE
    ) -> Account:
        """
        Create a new account

        Args:
            username: Login name, 3-50 characters, unique ignoring case
            email: Contact email, unique ignoring case
            password: Clear-text password (hashed before storage)
            pin: Four digit transfer PIN (hashed before storage)
            balance: Opening balance, defaults to 0.00
            role: user or admin
            status: Initial lifecycle status

        Returns:
            Created Account object

        Raises:
            InvalidFieldError: a field fails validation
            DuplicateUsernameError / DuplicateEmailError: handle already taken
        """
        self._validate_new_account(username, email, password, pin)
        try:
            role = AccountRole(role)
            status = AccountStatus(status)
        except ValueError as e:
            raise InvalidFieldError(str(e))
        opening_balance = to_amount(balance)
        if opening_balance < ZERO:
            raise InvalidAmountError("Balance cannot be negative")

        username_key = self._username_key(username)
        email_key = self._email_key(email)
        password_hash = hash_secret(password)
        pin_hash = hash_secret(pin)

        with self.storage.atomic():
            self.storage.lock_rows(self.handles_table, [username_key, email_key])
            if self.storage.exists(self.handles_table, username_key):
                raise DuplicateUsernameError()
            if self.storage.exists(self.handles_table, email_key):
                raise DuplicateEmailError()

            now = datetime.now(timezone.utc)
            account = Account(
                id=self.storage.next_id(self.accounts_table),
                created_at=now,
                updated_at=now,
                username=username,
                email=email,
                password_hash=password_hash,
                pin_hash=pin_hash,
                balance=opening_balance,
                role=role,
                status=status
            )
            self._save_account(account)
            self.storage.save(self.handles_table, username_key, {"account_id": account.id})
            self.storage.save(self.handles_table, email_key, {"account_id": account.id})

        log_action(
            self.logger, "info", "Account created",
            user_id=account.id, action="account_created", resource="account",
            extra={"username": username, "role": role.value}
        )
        return account

    # Mutations

    def lock_accounts(self, account_ids: List[int]) -> None:
        """Lock account rows (ascending id) for the current unit of work"""
        self.storage.lock_rows(self.accounts_table, account_ids)

    def update_balance(self, account_id: int, new_balance: AmountLike) -> Account:
        """Replace the stored balance; negative balances are rejected"""
        amount = to_amount(new_balance)
        if amount < ZERO:
            raise InvalidAmountError("Balance cannot be negative")

        def apply(account: Account) -> None:
            account.balance = amount

        return self._update(account_id, apply)

    def update_status(self, account_id: int, status: Union[AccountStatus, str]) -> Account:
        """Change lifecycle status (admin action)"""
        try:
            new_status = AccountStatus(status)
        except ValueError:
            raise InvalidFieldError("Invalid status")

        old_status = {}

        def apply(account: Account) -> None:
            old_status["value"] = account.status.value
            account.status = new_status

        account = self._update(account_id, apply)
        log_action(
            self.logger, "info", "Account status changed",
            user_id=account_id, action="status_changed", resource="account",
            extra={"old_status": old_status["value"], "new_status": new_status.value}
        )
        return account

    def update_avatar(self, account_id: int, avatar: str) -> Account:
        """Replace the avatar blob/URI"""
        def apply(account: Account) -> None:
            account.avatar = avatar

        return self._update(account_id, apply)

    def record_login(self, account_id: int, token_id: str) -> Account:
        """Store the issued token id and login time"""
        def apply(account: Account) -> None:
            now = datetime.now(timezone.utc)
            account.last_login = now
            account.auth_token = token_id
            account.token_issued_at = now

        return self._update(account_id, apply)

    def clear_auth_token(self, account_id: int) -> Account:
        """Revoke the current token"""
        def apply(account: Account) -> None:
            account.auth_token = None

        return self._update(account_id, apply)

    def save_account(self, account: Account) -> None:
        """Persist an account the caller has already locked"""
        account.updated_at = datetime.now(timezone.utc)
        self._save_account(account)

    # Secrets

    @staticmethod
    def verify_password(account: Account, password: str) -> bool:
        return verify_secret(password, account.password_hash)

    @staticmethod
    def verify_pin(account: Account, pin: str) -> bool:
        return verify_secret(pin, account.pin_hash)

    # Internals

    def _update(self, account_id: int, mutate: Callable[[Account], None]) -> Account:
        with self.storage.atomic():
            self.lock_accounts([account_id])
            account = self.get_account(account_id)
            mutate(account)
            self.save_account(account)
        return account

    def _validate_new_account(self, username: str, email: str, password: str, pin: str) -> None:
        if not username or not USERNAME_MIN_LENGTH <= len(username) <= USERNAME_MAX_LENGTH:
            raise InvalidFieldError(
                f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
            )
        if not email or len(email) > EMAIL_MAX_LENGTH or not EMAIL_PATTERN.match(email):
            raise InvalidFieldError("Invalid email address")
        if not password or len(password) < self.password_min_length:
            raise InvalidFieldError(
                f"Password must be at least {self.password_min_length} characters"
            )
        if not pin or not PIN_PATTERN.match(pin):
            raise InvalidFieldError("PIN must be exactly 4 digits")

    def _find_by_handle(self, key: str, field_name: str, value: str) -> Account:
        handle = self.storage.load(self.handles_table, key)
        if not handle:
            raise AccountNotFoundError(f"No account with {field_name} {value!r}")
        return self.get_account(handle["account_id"])

    @staticmethod
    def _username_key(username: str) -> str:
        return f"username:{username.lower()}"

    @staticmethod
    def _email_key(email: str) -> str:
        return f"email:{email.lower()}"

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.id, account.to_dict())

    def _account_from_dict(self, data: Dict[str, Any]) -> Account:
        """Convert dictionary to Account"""
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            username=data['username'],
            email=data['email'],
            password_hash=data['password_hash'],
            pin_hash=data['pin_hash'],
            balance=Decimal(data['balance']),
            role=AccountRole(data['role']),
            status=AccountStatus(data['status']),
            last_login=_parse_datetime(data.get('last_login')),
            avatar=data.get('avatar'),
            auth_token=data.get('auth_token'),
            token_issued_at=_parse_datetime(data.get('token_issued_at'))
        )
