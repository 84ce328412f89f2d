"""
Account holder endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_active_caller, get_banking_system
from .schemas import AvatarRequest, ReceiptRequest, TransferRequest
from ..auth import Caller
from ..errors import InvalidFieldError


router = APIRouter()


@router.get("/user")
def get_current_user(
    caller: Caller = Depends(get_active_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Own profile with the most recent transactions"""
    account = system.account_store.get_account(caller.account_id)
    recent = system.transaction_log.list_for_account(
        account.id, limit=system.settings.recent_transactions_limit
    )
    return {
        "id": account.id,
        "username": account.username,
        "email": account.email,
        "balance": str(account.balance),
        "avatar": account.avatar,
        "role": account.role.value,
        "recentTransactions": [t.to_public_dict() for t in recent],
    }


@router.post("/user/avatar")
def update_avatar(
    request: AvatarRequest,
    caller: Caller = Depends(get_active_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    if not request.avatar:
        raise InvalidFieldError("Avatar is required")
    system.account_store.update_avatar(caller.account_id, request.avatar)
    return {"message": "Avatar updated successfully"}


@router.post("/transfer")
def transfer(
    request: TransferRequest,
    caller: Caller = Depends(get_active_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Send money to another account or an external destination"""
    result = system.transfers.execute_transfer(
        caller,
        pin=request.pin,
        amount=request.amount,
        method=request.transfer_method,
        recipient=request.recipient,
        recipient_type=request.recipient_type,
        memo=request.memo or "",
        details=request.additional_data
    )
    return {
        "message": "Transfer successful",
        "transaction": result.to_public_dict(),
    }


@router.post("/transaction/{transaction_id}/receipt")
def save_receipt(
    transaction_id: int,
    request: ReceiptRequest,
    caller: Caller = Depends(get_active_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    """Attach a receipt to one of the caller's transactions"""
    if not request.receipt:
        raise InvalidFieldError("Receipt content is required")
    owner_id = None if caller.is_admin else caller.account_id
    system.transaction_log.attach_receipt(transaction_id, request.receipt, owner_id=owner_id)
    return {"message": "Receipt saved successfully"}


@router.get("/history")
def get_history(
    caller: Caller = Depends(get_active_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    transactions = system.transaction_log.list_for_account(caller.account_id)
    return [t.to_public_dict() for t in transactions]
