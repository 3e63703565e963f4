from typing import Dict, Optional

from pydantic import BaseModel, Field


class User(BaseModel):
    id: str
    username: str
    role: str = "user"
    is_active: bool = True
    platform_usernames: Dict[str, str] = Field(default_factory=dict)

    class Config:
        from_attributes = True

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class UserCreate(BaseModel):
    username: str = Field(..., min_length=2, max_length=100)
    role: str = Field("user", description="user | admin")
    platform_usernames: Dict[str, str] = Field(
        default_factory=dict, description="platform -> gamertag"
    )


class PlatformUsernameUpdate(BaseModel):
    platform: str = Field(..., min_length=1, max_length=50)
    platform_username: str = Field(..., min_length=1, max_length=100)


class TokenData(BaseModel):
    user_id: Optional[str] = None
    username: Optional[str] = None
    role: Optional[str] = None


class UserTokenResponse(BaseModel):
    user: User
    access_token: str
    token_type: str = "bearer"
