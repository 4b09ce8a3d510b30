"""
services/user/router.py
The authenticated caller's profile. Accounts are provisioned by the
identity provider; this service only reflects them.
"""

from fastapi import APIRouter, Depends

from shared.middleware.auth import get_current_user
from shared.models.models import User
from shared.schemas.schemas import UserResponse

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)
