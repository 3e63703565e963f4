import argparse
import os
import sys

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from stakeapi.config import settings
from stakeapi.core.auth_middleware import create_access_token
from stakeapi.database.connection import engine
from stakeapi.database.session import get_db_context
from stakeapi.models import Base
from stakeapi.repositories.user_repository import UserRepository
from stakeapi.services.ledger_service import LedgerService


def init_db(admin_username: str = None):
    """Create tables, open the platform wallet and optionally seed an admin."""
    try:
        Base.metadata.create_all(bind=engine)
        with get_db_context() as db:
            LedgerService(db, settings).ensure_wallet(settings.PLATFORM_WALLET_ID, commit=False)
            if admin_username:
                repo = UserRepository(db)
                admin = repo.get_by_username(admin_username) or repo.create_user(
                    admin_username, role="admin", commit=False
                )
                print(f"Admin {admin.username} token: {create_access_token(admin)}")
        print(f"Database initialized: {settings.DATABASE_URL}")

    except Exception as e:
        print(f"Database initialization failed: {str(e)}")
        raise


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Initialize the settlement database")
    parser.add_argument("--admin", help="Create (or reuse) an admin user and print a token")
    args = parser.parse_args()
    init_db(args.admin)
