"""
Transaction Log Module

Append-only record of money movements. Records are immutable once written
except for the receipt, which may be attached after the fact.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum

from .accounts import AccountStore
from .errors import InvalidAmountError, InvalidFieldError, TransactionNotFoundError
from .logging_config import get_logger, log_action
from .money import ZERO, AmountLike, to_positive_amount
from .storage import StorageInterface, StorageRecord


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"


@dataclass
class Transaction(StorageRecord):
    """
    One money movement owned by a single account.

    ``created_by`` is the account that initiated the movement; it differs
    from the owner when an admin books the entry.
    """
    account_id: int
    transaction_type: TransactionType
    amount: Decimal
    timestamp: datetime
    created_by: Optional[int] = None
    recipient_info: Optional[Dict[str, Any]] = None
    receipt: Optional[str] = None

    def __post_init__(self):
        if self.amount <= ZERO:
            raise InvalidAmountError("Transaction amount must be positive")

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.account_id,
            "type": self.transaction_type.value,
            "amount": str(self.amount),
            "recipient_info": self.recipient_info,
            "timestamp": self.timestamp.isoformat(),
            "created_by": self.created_by,
            "receipt": self.receipt,
        }


def parse_transaction_type(value: Union[TransactionType, str]) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidFieldError("Invalid transaction type")


class TransactionLog:
    """Appends and queries transaction records"""

    def __init__(self, storage: StorageInterface, account_store: AccountStore):
        self.storage = storage
        self.account_store = account_store
        self.table_name = "transactions"
        self.logger = get_logger("nivalus.transactions")

    def append(
        self,
        account_id: int,
        transaction_type: Union[TransactionType, str],
        amount: AmountLike,
        created_by: Optional[int] = None,
        recipient_info: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ) -> Transaction:
        """
        Record a transaction

        Args:
            account_id: Owning account (must exist)
            transaction_type: deposit, withdrawal or transfer
            amount: Positive amount
            created_by: Initiating account, defaults to the owner
            recipient_info: Tagged recipient descriptor
            timestamp: Backfill time for admin entries; defaults to now

        Returns:
            The stored Transaction
        """
        transaction_type = parse_transaction_type(transaction_type)
        amount = to_positive_amount(amount)
        self.account_store.get_account(account_id)

        now = datetime.now(timezone.utc)
        if timestamp is None:
            timestamp = now
        elif timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        transaction = Transaction(
            id=self.storage.next_id(self.table_name),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=amount,
            timestamp=timestamp,
            created_by=created_by if created_by is not None else account_id,
            recipient_info=recipient_info
        )
        self._save_transaction(transaction)
        return transaction

    def get_transaction(self, transaction_id: int) -> Transaction:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return self._transaction_from_dict(data)

    def list_for_account(self, account_id: int, limit: Optional[int] = None) -> List[Transaction]:
        """Transactions owned by an account, most recent first"""
        records = self.storage.find(self.table_name, {"account_id": account_id})
        transactions = self._newest_first(records)
        if limit is not None:
            transactions = transactions[:limit]
        return transactions

    def list_all(self) -> List[Transaction]:
        """Every transaction, most recent first"""
        return self._newest_first(self.storage.load_all(self.table_name))

    def attach_receipt(self, transaction_id: int, receipt: str,
                       owner_id: Optional[int] = None) -> Transaction:
        """
        Set the receipt text of a transaction.

        When ``owner_id`` is given, transactions owned by someone else are
        reported as not found.
        """
        if not receipt:
            raise InvalidFieldError("Receipt content is required")

        with self.storage.atomic():
            self.storage.lock_rows(self.table_name, [transaction_id])
            transaction = self.get_transaction(transaction_id)
            if owner_id is not None and transaction.account_id != owner_id:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            transaction.receipt = receipt
            transaction.updated_at = datetime.now(timezone.utc)
            self._save_transaction(transaction)

        log_action(
            self.logger, "info", "Receipt attached",
            user_id=transaction.account_id, action="receipt_attached",
            resource="transaction", extra={"transaction_id": transaction_id}
        )
        return transaction

    def _newest_first(self, records: List[Dict[str, Any]]) -> List[Transaction]:
        transactions = [self._transaction_from_dict(data) for data in records]
        transactions.sort(key=lambda t: (t.timestamp, t.id), reverse=True)
        return transactions

    def _save_transaction(self, transaction: Transaction) -> None:
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())

    def _transaction_from_dict(self, data: Dict[str, Any]) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(data['amount']),
            timestamp=datetime.fromisoformat(data['timestamp']),
            created_by=data.get('created_by'),
            recipient_info=data.get('recipient_info'),
            receipt=data.get('receipt')
        )
