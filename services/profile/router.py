"""
services/profile/router.py
Profile read/update. One profile per user, created at signup.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Profile, User
from shared.schemas.schemas import ProfileResponse, ProfileUpdateRequest

router = APIRouter(prefix="/profiles", tags=["Profiles"])


async def get_or_create_profile(db: AsyncSession, user: User) -> Profile:
    """Invited or legacy accounts may lack a profile row."""
    profile = await db.scalar(select(Profile).where(Profile.user_id == user.id))
    if profile is None:
        profile = Profile(user_id=user.id, email=user.email, role=user.role)
        db.add(profile)
        await db.flush()
    return profile


@router.get("/me", response_model=ProfileResponse)
async def get_my_profile(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    profile = await get_or_create_profile(db, current_user)
    await db.commit()
    return ProfileResponse.model_validate(profile)


@router.put("/me", response_model=ProfileResponse)
async def update_my_profile(
    data: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Update own profile. Only non-None fields are written; `verified`, `role`
    and `rating` are not user-editable.
    """
    profile = await get_or_create_profile(db, current_user)
    for field, value in data.model_dump(exclude_none=True).items():
        setattr(profile, field, value)
    await db.commit()
    return ProfileResponse.model_validate(profile)


@router.get("/{profile_id}", response_model=ProfileResponse)
async def get_profile(profile_id: UUID, db: AsyncSession = Depends(get_db)):
    profile = await db.get(Profile, profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    return ProfileResponse.model_validate(profile)
