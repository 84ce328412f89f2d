"""
Login, signup and logout endpoints
"""

from fastapi import APIRouter, Depends

from .deps import BankingSystem, get_banking_system, get_caller
from .schemas import LoginRequest, SignupRequest
from ..accounts import AccountRole, AccountStatus
from ..auth import Caller
from ..money import ZERO


router = APIRouter()


@router.post("/login")
def login(
    request: LoginRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Exchange username and password for a bearer token"""
    issued = system.auth_gate.authenticate(request.username, request.password)
    account = issued.account
    return {
        "message": "Login successful",
        "id": account.id,
        "username": account.username,
        "email": account.email,
        "role": account.role.value,
        "token": issued.token,
    }


@router.post("/signup", status_code=201)
def signup(
    request: SignupRequest,
    system: BankingSystem = Depends(get_banking_system)
):
    """Public registration; always a user account with a zero balance"""
    account = system.account_store.create_account(
        username=request.username,
        email=request.email,
        password=request.password,
        pin=request.pin,
        balance=ZERO,
        role=AccountRole.USER,
        status=AccountStatus.ACTIVE
    )
    return {
        "message": "User created successfully",
        "user": {
            "id": account.id,
            "username": account.username,
            "email": account.email,
        }
    }


@router.post("/logout")
def logout(
    caller: Caller = Depends(get_caller),
    system: BankingSystem = Depends(get_banking_system)
):
    system.auth_gate.logout(caller)
    return {"message": "Logged out successfully"}
