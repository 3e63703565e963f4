import logging

from sqlalchemy.orm import Session

from stakeapi.config import Settings
from stakeapi.core.exceptions import ConflictError, NotFoundError, ValidationError
from stakeapi.models.user import UserRole
from stakeapi.repositories.user_repository import UserRepository
from stakeapi.schemas.user import PlatformUsernameUpdate, User as UserSchema, UserCreate
from stakeapi.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


class UserService:
    """User directory: login names and declared platform gamertags."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.user_repo = UserRepository(db)

    def register_user(self, request: UserCreate) -> UserSchema:
        """Create a directory entry and open its wallet."""
        if request.role not in (UserRole.USER.value, UserRole.ADMIN.value):
            raise ValidationError(f"Unknown role: {request.role}")
        if self.user_repo.get_by_username(request.username):
            raise ConflictError(f"Username already taken: {request.username}")

        user = self.user_repo.create_user(
            request.username,
            role=request.role,
            platform_usernames=request.platform_usernames,
            commit=False,
        )
        LedgerService(self.db, self.settings).ensure_wallet(user.id, commit=False)
        self.db.commit()
        logger.info(f"Registered user {user.username} ({user.id})")
        return user

    def update_platform_username(self, user: UserSchema, request: PlatformUsernameUpdate) -> UserSchema:
        updated = self.user_repo.set_platform_username(
            user.id, request.platform, request.platform_username
        )
        if updated is None:
            raise NotFoundError(f"User not found: {user.id}")
        logger.info(f"{user.username} set {request.platform} gamertag to {request.platform_username}")
        return updated
