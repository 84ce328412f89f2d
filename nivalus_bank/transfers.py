"""
Transfer Orchestrator

The only multi-step mutation in the system: debit the sender, credit a local
recipient when there is one, and record the transaction. Each transfer runs
as a single atomic unit with the involved account rows locked in ascending
id order, so concurrent transfers serialize instead of losing updates and a
failure at any step leaves every balance untouched.
"""

from dataclasses import dataclass
from datetime import datetime
import time
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar, Union

from .accounts import Account, AccountStore
from .auth import Caller, require_admin
from .errors import (
    AccountInactiveError, AccountNotFoundError, BusyError, InsufficientFundsError,
    InvalidFieldError, InvalidPinError, RecipientInactiveError, RecipientNotFoundError
)
from .logging_config import get_logger, log_action
from .money import AmountLike, to_positive_amount
from .recipients import (
    DirectRecipient, Recipient, TransferMethod,
    build_external_recipient, normalize_recipient_info, parse_method, recipient_to_dict
)
from .storage import StorageBusyError, StorageInterface
from .transactions import Transaction, TransactionLog, TransactionType, parse_transaction_type


T = TypeVar("T")

EXTERNAL_RECIPIENT_LABEL = "External Recipient"
RECIPIENT_TYPES = ("email", "username")


@dataclass
class TransferResult:
    """Outcome of a transfer: the recorded transaction plus who received it"""
    transaction: Transaction
    method: TransferMethod
    recipient: Recipient
    memo: str = ""
    recipient_account: Optional[Account] = None

    def to_public_dict(self) -> Dict[str, Any]:
        summary = {
            "id": self.transaction.id,
            "amount": str(self.transaction.amount),
            "timestamp": self.transaction.timestamp.isoformat(),
            "memo": self.memo,
            "transferMethod": self.method.value,
        }
        if self.recipient_account is not None:
            summary["recipient"] = self.recipient_account.username
            summary["recipientEmail"] = self.recipient_account.email
        else:
            summary["recipient"] = EXTERNAL_RECIPIENT_LABEL
            summary["recipientInfo"] = recipient_to_dict(self.recipient)
        return summary


class TransferOrchestrator:
    """Validates and applies transfers and admin-booked transactions"""

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        transaction_log: TransactionLog,
        max_retries: int = 3,
        retry_backoff: float = 0.05
    ):
        self.storage = storage
        self.account_store = account_store
        self.transaction_log = transaction_log
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.logger = get_logger("nivalus.transfers")

    def execute_transfer(
        self,
        caller: Caller,
        pin: str,
        amount: AmountLike,
        method: Union[TransferMethod, str] = TransferMethod.DIRECT,
        recipient: Optional[str] = None,
        recipient_type: str = "username",
        memo: str = "",
        details: Optional[Mapping[str, Any]] = None
    ) -> TransferResult:
        """
        Move money out of the caller's account.

        Args:
            caller: The sending account
            pin: Clear-text transfer PIN of the sender
            amount: Positive amount to send
            method: direct, wire, bank, card, p2p or other
            recipient: Email or username of the local recipient (direct),
                or a free-form label for external methods
            recipient_type: "email" or "username", how to resolve ``recipient``
            memo: Note stored with the recipient info
            details: Method-specific destination fields for external methods

        Returns:
            TransferResult with the recorded transaction

        Raises:
            AccountNotFoundError, AccountInactiveError, InvalidPinError,
            InsufficientFundsError, RecipientNotFoundError,
            RecipientInactiveError, InvalidAmountError, InvalidFieldError,
            BusyError
        """
        method = parse_method(method)
        amount = to_positive_amount(amount)
        memo = memo or ""

        sender = self.account_store.get_account(caller.account_id)
        self._require_active_sender(sender)

        if not self.account_store.verify_pin(sender, pin):
            log_action(
                self.logger, "warning", "Transfer rejected: invalid PIN",
                user_id=sender.id, action="transfer_rejected", resource="transfer",
                extra={"reason": "invalid_pin"}
            )
            raise InvalidPinError()

        # Re-checked under lock; failing here skips the lock entirely
        if amount > sender.balance:
            raise InsufficientFundsError()

        recipient_account = None
        if method == TransferMethod.DIRECT:
            recipient_account = self._resolve_recipient(recipient, recipient_type)
            descriptor = DirectRecipient(
                email=recipient_account.email,
                username=recipient_account.username,
                memo=memo
            )
        else:
            descriptor = build_external_recipient(method, details, memo, recipient)
        recipient_info = recipient_to_dict(descriptor)

        def apply() -> Transaction:
            with self.storage.atomic():
                locked = [sender.id]
                if recipient_account is not None:
                    locked.append(recipient_account.id)
                self.account_store.lock_accounts(locked)

                current_sender = self.account_store.get_account(sender.id)
                self._require_active_sender(current_sender)
                if amount > current_sender.balance:
                    raise InsufficientFundsError()
                current_sender.balance -= amount
                self.account_store.save_account(current_sender)

                if recipient_account is not None:
                    # Reads the pending debit when sender and recipient are the same
                    current_recipient = self.account_store.get_account(recipient_account.id)
                    if not current_recipient.is_active:
                        raise RecipientInactiveError()
                    current_recipient.balance += amount
                    self.account_store.save_account(current_recipient)

                return self.transaction_log.append(
                    account_id=sender.id,
                    transaction_type=TransactionType.TRANSFER,
                    amount=amount,
                    created_by=sender.id,
                    recipient_info=recipient_info
                )

        transaction = self._with_retries("transfer", apply)

        log_action(
            self.logger, "info", "Transfer completed",
            user_id=sender.id, action="transfer", resource="transaction",
            extra={
                "transaction_id": transaction.id,
                "amount": str(amount),
                "method": method.value,
                "recipient_id": recipient_account.id if recipient_account else None,
            }
        )
        return TransferResult(
            transaction=transaction,
            method=method,
            recipient=descriptor,
            memo=memo,
            recipient_account=recipient_account
        )

    def admin_create_transaction(
        self,
        caller: Caller,
        account_id: int,
        transaction_type: Union[TransactionType, str],
        amount: AmountLike,
        timestamp: Optional[datetime] = None,
        recipient_info: Union[None, str, Dict[str, Any]] = None
    ) -> Transaction:
        """
        Book a deposit, withdrawal or transfer against one account.

        Deposits always succeed; withdrawals and transfers need enough funds.
        Nothing is recorded when the balance check fails.
        """
        require_admin(caller)
        transaction_type = parse_transaction_type(transaction_type)
        amount = to_positive_amount(amount)
        self.account_store.get_account(account_id)
        recipient_info = normalize_recipient_info(recipient_info)

        def apply() -> Transaction:
            with self.storage.atomic():
                self.account_store.lock_accounts([account_id])
                account = self.account_store.get_account(account_id)
                if transaction_type == TransactionType.DEPOSIT:
                    account.balance += amount
                else:
                    if account.balance < amount:
                        raise InsufficientFundsError()
                    account.balance -= amount
                self.account_store.save_account(account)

                return self.transaction_log.append(
                    account_id=account_id,
                    transaction_type=transaction_type,
                    amount=amount,
                    created_by=caller.account_id,
                    recipient_info=recipient_info,
                    timestamp=timestamp
                )

        transaction = self._with_retries("admin_transaction", apply)

        log_action(
            self.logger, "info", "Admin transaction created",
            user_id=caller.account_id, action="admin_transaction", resource="transaction",
            extra={
                "transaction_id": transaction.id,
                "account_id": account_id,
                "type": transaction_type.value,
                "amount": str(amount),
            }
        )
        return transaction

    def _resolve_recipient(self, recipient: Optional[str], recipient_type: str) -> Account:
        if not recipient:
            raise InvalidFieldError("Enter a valid email or username")
        if recipient_type not in RECIPIENT_TYPES:
            raise InvalidFieldError("Recipient type must be email or username")
        try:
            if recipient_type == "email":
                account = self.account_store.find_by_email(recipient)
            else:
                account = self.account_store.find_by_username(recipient)
        except AccountNotFoundError:
            raise RecipientNotFoundError()
        if not account.is_active:
            raise RecipientInactiveError()
        return account

    @staticmethod
    def _require_active_sender(sender: Account) -> None:
        if not sender.is_active:
            raise AccountInactiveError()

    def _with_retries(self, action: str, operation: Callable[[], T]) -> T:
        """Run an atomic unit, retrying lock timeouts a bounded number of times"""
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except StorageBusyError:
                log_action(
                    self.logger, "warning", "Lock timeout, retrying",
                    action=action, resource="transaction",
                    extra={"attempt": attempt, "max_retries": self.max_retries}
                )
                if attempt < self.max_retries:
                    time.sleep(self.retry_backoff * attempt)
        raise BusyError()
