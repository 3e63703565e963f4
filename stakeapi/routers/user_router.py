from fastapi import APIRouter, Depends

from stakeapi.core.auth_middleware import get_current_user
from stakeapi.deps import get_user_service
from stakeapi.schemas.user import PlatformUsernameUpdate, User as UserSchema
from stakeapi.services.user_service import UserService

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserSchema)
def get_me(current_user: UserSchema = Depends(get_current_user)) -> UserSchema:
    return current_user


@router.put("/me/platform-usernames", response_model=UserSchema)
def update_platform_username(
    request: PlatformUsernameUpdate,
    current_user: UserSchema = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
) -> UserSchema:
    """Declare the gamertag used on one platform (used to resolve winners)."""
    return service.update_platform_username(current_user, request)
