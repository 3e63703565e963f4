from enum import Enum
from typing import List, Union

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.schema import UniqueConstraint

from stakeapi.models.base import BaseModel, new_id


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"

    @classmethod
    def is_admin(cls, role: Union[str, "UserRole"]) -> bool:
        if isinstance(role, cls):
            role = role.value
        return role == cls.ADMIN.value


class User(BaseModel):
    """Directory entry: login identity plus declared per-platform gamertags."""

    __tablename__ = "users"
    __table_args__ = (Index("idx_users_username_lower", "username_normalized"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    username_normalized: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[str] = mapped_column(
        String(20), default=UserRole.USER.value, nullable=False
    )

    platform_accounts: Mapped[List["PlatformAccount"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"

    @property
    def is_admin(self) -> bool:
        return UserRole.is_admin(str(self.role))

    @property
    def platform_usernames(self) -> dict:
        return {acc.platform: acc.platform_username for acc in self.platform_accounts}


class PlatformAccount(BaseModel):
    """A gamertag a user declared for one gaming platform."""

    __tablename__ = "user_platform_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "platform", name="uq_user_platform"),
        Index("idx_platform_username_normalized", "platform_username_normalized"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(50), nullable=False)
    platform_username: Mapped[str] = mapped_column(String(100), nullable=False)
    platform_username_normalized: Mapped[str] = mapped_column(
        String(100), nullable=False
    )

    user: Mapped[User] = relationship(back_populates="platform_accounts")
