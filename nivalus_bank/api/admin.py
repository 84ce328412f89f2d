"""
Administrative endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_admin_caller, get_banking_system
from .schemas import AdminCreateUserRequest, AdminTransactionRequest, UpdateStatusRequest
from ..auth import Caller
from ..money import ZERO


router = APIRouter()


@router.get("/users")
def list_users(
    caller: Caller = Depends(get_admin_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """All accounts except deleted ones"""
    return [account.to_public_dict() for account in system.account_store.list_accounts()]


@router.post("/users", status_code=201)
def create_user(
    request: AdminCreateUserRequest,
    caller: Caller = Depends(get_admin_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_store.create_account(
        username=request.username,
        email=request.email,
        password=request.password,
        pin=request.pin,
        balance=request.balance if request.balance is not None else ZERO,
        role=request.role,
        status=request.status
    )
    return {
        "message": "User created successfully",
        "user": {
            "id": account.id,
            "username": account.username,
            "email": account.email,
            "role": account.role.value,
            "balance": str(account.balance),
        }
    }


@router.put("/users/{account_id}")
def update_user_status(
    account_id: int,
    request: UpdateStatusRequest,
    caller: Caller = Depends(get_admin_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    account = system.account_store.update_status(account_id, request.status)
    return {
        "message": "User status updated successfully",
        "user": account.to_public_dict(),
    }


@router.post("/transactions")
def create_transaction(
    request: AdminTransactionRequest,
    caller: Caller = Depends(get_admin_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Book a deposit, withdrawal or transfer against any account"""
    transaction = system.transfers.admin_create_transaction(
        caller,
        account_id=request.user_id,
        transaction_type=request.type,
        amount=request.amount,
        timestamp=request.timestamp,
        recipient_info=request.recipient_info
    )
    return {
        "message": "Transaction created successfully",
        "transaction": transaction.to_public_dict(),
    }


@router.get("/transactions")
def list_transactions(
    caller: Caller = Depends(get_admin_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    return [t.to_public_dict() for t in system.transaction_log.list_all()]
