#!/usr/bin/env python3
"""
Nivalus Bank Entry Point

Starts the FastAPI server. When the NIVALUS_BOOTSTRAP_ADMIN_* settings are
all present, the admin account is created first if it does not exist yet.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from nivalus_bank.accounts import AccountRole
from nivalus_bank.api import run_server
from nivalus_bank.api.deps import BankingSystem
from nivalus_bank.errors import AccountNotFoundError, LedgerError
from nivalus_bank.logging_config import get_logger, setup_logging


def provision_admin(system: BankingSystem) -> None:
    """Create the bootstrap admin account when configured and missing"""
    settings = system.settings
    fields = (
        settings.bootstrap_admin_username,
        settings.bootstrap_admin_email,
        settings.bootstrap_admin_password,
        settings.bootstrap_admin_pin,
    )
    if not all(fields):
        return

    logger = get_logger("nivalus.bootstrap")
    try:
        system.account_store.find_by_username(settings.bootstrap_admin_username)
        logger.info("Bootstrap admin already exists")
        return
    except AccountNotFoundError:
        pass

    system.account_store.create_account(
        username=settings.bootstrap_admin_username,
        email=settings.bootstrap_admin_email,
        password=settings.bootstrap_admin_password,
        pin=settings.bootstrap_admin_pin,
        role=AccountRole.ADMIN
    )
    logger.info("Bootstrap admin created")


if __name__ == "__main__":
    system = BankingSystem()
    setup_logging(system.settings.log_level, log_format=system.settings.log_format)

    print("🏦 Starting Nivalus Bank...")
    print(f"🗄️  Storage: {system.settings.database_url.split('@')[-1]}")
    print(f"🌐 API available at: http://localhost:{system.settings.api_port}")
    print(f"📚 Documentation at: http://localhost:{system.settings.api_port}/docs")
    print()

    try:
        provision_admin(system)
        run_server(system=system)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Nivalus Bank...")
    except LedgerError as e:
        print(f"❌ Error provisioning admin: {e.message}")
        sys.exit(1)
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
