"""
System container and request dependencies
"""

from datetime import timedelta
from typing import Optional

from fastapi import Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..accounts import AccountStore
from ..auth import AuthenticationGate, Caller, require_active, require_admin
from ..config import NivalusConfig, get_config
from ..storage import StorageInterface, create_storage
from ..transactions import TransactionLog
from ..transfers import TransferOrchestrator


class BankingSystem:
    """Storage plus every component wired on top of it"""

    def __init__(self, settings: Optional[NivalusConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.settings = settings or get_config()

        if storage is None:
            storage = create_storage(
                self.settings.database_url,
                lock_timeout=self.settings.lock_timeout_seconds
            )
        self.storage = storage

        self.account_store = AccountStore(
            self.storage, password_min_length=self.settings.password_min_length
        )
        self.transaction_log = TransactionLog(self.storage, self.account_store)
        self.transfers = TransferOrchestrator(
            self.storage, self.account_store, self.transaction_log,
            max_retries=self.settings.transfer_max_retries
        )
        self.auth_gate = AuthenticationGate(
            self.account_store,
            jwt_secret=self.settings.jwt_secret,
            jwt_algorithm=self.settings.jwt_algorithm,
            token_ttl=timedelta(hours=self.settings.jwt_expiry_hours)
        )

    def close(self) -> None:
        self.storage.close()


security = HTTPBearer(auto_error=False)


def get_banking_system(request: Request) -> BankingSystem:
    return request.app.state.system


def get_caller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token: Optional[str] = Query(None),
    system: BankingSystem = Depends(get_banking_system)
) -> Caller:
    """Resolve the bearer token (header first, then ?token=)"""
    raw_token = credentials.credentials if credentials else token
    return system.auth_gate.resolve_caller(raw_token)


def get_active_caller(caller: Caller = Depends(get_caller)) -> Caller:
    return require_active(caller)


def get_admin_caller(caller: Caller = Depends(get_active_caller)) -> Caller:
    return require_admin(caller)
