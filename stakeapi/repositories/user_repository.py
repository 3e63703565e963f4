from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from stakeapi.models.user import PlatformAccount, User as UserModel
from stakeapi.repositories.base import BaseRepository
from stakeapi.schemas.evidence import normalize_username
from stakeapi.schemas.user import User as UserSchema


class UserRepository(BaseRepository[UserModel, UserSchema]):
    """User directory lookups"""

    def __init__(self, db: Session):
        super().__init__(UserModel, UserSchema, db)

    def get_by_username(self, username: str) -> Optional[UserSchema]:
        model = (
            self.db.query(UserModel)
            .filter(UserModel.username_normalized == normalize_username(username))
            .first()
        )
        return self._to_schema(model)

    def find_by_platform_username(self, platform_username: str) -> List[UserSchema]:
        rows = (
            self.db.query(UserModel)
            .join(PlatformAccount, PlatformAccount.user_id == UserModel.id)
            .filter(
                PlatformAccount.platform_username_normalized
                == normalize_username(platform_username)
            )
            .all()
        )
        unique = {row.id: row for row in rows}
        return [self._to_schema(row) for row in unique.values()]

    def create_user(
        self,
        username: str,
        role: str = "user",
        platform_usernames: Optional[Dict[str, str]] = None,
        user_id: Optional[str] = None,
        commit: bool = True,
    ) -> UserSchema:
        user = UserModel(
            username=username.strip(),
            username_normalized=normalize_username(username),
            role=role,
        )
        if user_id:
            user.id = user_id
        for platform, gamertag in (platform_usernames or {}).items():
            user.platform_accounts.append(
                PlatformAccount(
                    platform=platform,
                    platform_username=gamertag.strip(),
                    platform_username_normalized=normalize_username(gamertag),
                )
            )
        self.db.add(user)
        self.db.flush()
        if commit:
            self.db.commit()
        return self._to_schema(user)

    def set_platform_username(
        self, user_id: str, platform: str, platform_username: str, commit: bool = True
    ) -> Optional[UserSchema]:
        user = self._get_model(user_id)
        if user is None:
            return None

        account = next(
            (acc for acc in user.platform_accounts if acc.platform == platform), None
        )
        if account is None:
            account = PlatformAccount(platform=platform)
            user.platform_accounts.append(account)
        account.platform_username = platform_username.strip()
        account.platform_username_normalized = normalize_username(platform_username)
        self.db.flush()
        if commit:
            self.db.commit()
        return self._to_schema(user)
