"""
Ledger error taxonomy

Every failure the core can report to a caller. Validation errors are raised
before any mutation; the HTTP layer maps each class to one status code.
"""


class LedgerError(Exception):
    """Base class for all domain errors"""

    default_message = "Ledger operation failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(LedgerError):
    default_message = "Not found"


class AccountNotFoundError(NotFoundError):
    default_message = "User not found"


class TransactionNotFoundError(NotFoundError):
    default_message = "Transaction not found"


class RecipientNotFoundError(NotFoundError):
    default_message = "Recipient not found"


class DuplicateAccountError(LedgerError):
    default_message = "Account already exists"


class DuplicateUsernameError(DuplicateAccountError):
    default_message = "Username already exists"


class DuplicateEmailError(DuplicateAccountError):
    default_message = "Email already exists"


class InvalidCredentialsError(LedgerError):
    default_message = "Invalid credentials"


class AccountInactiveError(LedgerError):
    default_message = "Your account is inactive or has been deleted."


class RecipientInactiveError(LedgerError):
    default_message = "Recipient account is inactive or deleted"


class InvalidPinError(LedgerError):
    default_message = "Invalid PIN"


class InsufficientFundsError(LedgerError):
    default_message = "Insufficient funds"


class InvalidAmountError(LedgerError):
    default_message = "Invalid amount"


class InvalidFieldError(LedgerError):
    default_message = "Invalid data"


class UnauthenticatedError(LedgerError):
    default_message = "Unauthorized. No authentication token provided."


class ForbiddenError(LedgerError):
    default_message = "Access denied. Admin privileges required."


class BusyError(LedgerError):
    default_message = "Account is busy, please retry"
