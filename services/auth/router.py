"""
services/auth/router.py
Email/password authentication.
Implements: Signup → Login → JWT issue → Refresh → Logout, plus email
confirmation, password reset and invite (set-password) flows.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Body, Cookie, Depends, HTTPException, Request, Response, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.mentor import applications
from services.notification.outbox import Outbox
from shared.middleware.auth import TokenData, get_current_user, get_token_data
from shared.models.models import AuthToken, Profile, RefreshToken, TokenPurpose, User, UserRole
from shared.schemas.schemas import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    PasswordForgotRequest,
    PasswordResetRequest,
    PasswordUpdateRequest,
    RefreshRequest,
    SignupRequest,
    TokenRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.dates import as_utc, utcnow
from shared.utils.security import (
    create_access_token,
    create_opaque_token,
    create_refresh_token,
    get_token_remaining_ttl,
    hash_password,
    hash_token,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


# ── Helpers ───────────────────────────────────────────────────

def _normalize(email: str) -> str:
    return email.strip().lower()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    return await db.scalar(select(User).where(func.lower(User.email) == _normalize(email)))


async def user_response(db: AsyncSession, user: User) -> UserResponse:
    profile = await db.scalar(select(Profile).where(Profile.user_id == user.id))
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role.value,
        is_active=user.is_active,
        created_at=user.created_at,
        name=profile.name if profile else None,
    )


def issue_auth_token(db: AsyncSession, user: User, purpose: TokenPurpose, lifetime: timedelta) -> str:
    """Create a single-use token; only its hash is stored. Returns the raw value."""
    raw, hashed = create_opaque_token()
    db.add(AuthToken(
        user_id=user.id,
        purpose=purpose,
        token_hash=hashed,
        expires_at=utcnow() + lifetime,
    ))
    return raw


async def consume_auth_token(db: AsyncSession, raw: str, purpose: TokenPurpose) -> User:
    """Validate and burn a single-use token. Raises 400 when unusable."""
    token = await db.scalar(
        select(AuthToken).where(
            AuthToken.token_hash == hash_token(raw),
            AuthToken.purpose == purpose,
        )
    )
    if not token or token.used_at is not None or as_utc(token.expires_at) < utcnow():
        raise HTTPException(status_code=400, detail="Link is invalid or has expired")
    user = await db.get(User, token.user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=400, detail="Link is invalid or has expired")
    token.used_at = utcnow()
    return user


async def _issue_tokens(
    user: User,
    db: AsyncSession,
    response: Response,
    request: Request,
) -> tuple[str, str]:
    """Issue access + refresh tokens. Store refresh token in DB and set cookie."""
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=user.role.value,
        email=user.email,
    )

    raw_refresh, hashed_refresh = create_refresh_token()
    db.add(RefreshToken(
        user_id=user.id,
        token_hash=hashed_refresh,
        expires_at=datetime.now(timezone.utc) + timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    ))

    # httpOnly cookie for web clients; the body copy is for everything else
    response.set_cookie(
        key="refresh_token",
        value=raw_refresh,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path="/auth",
    )
    return access_token, raw_refresh


async def _auth_response(user: User, db: AsyncSession, response: Response, request: Request) -> AuthResponse:
    access_token, raw_refresh = await _issue_tokens(user, db, response, request)
    await db.commit()
    return AuthResponse(
        access_token=access_token,
        refresh_token=raw_refresh,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=await user_response(db, user),
    )


async def _revoke_refresh(db: AsyncSession, raw_token: Optional[str]) -> None:
    if not raw_token:
        return
    db_token = await db.scalar(
        select(RefreshToken).where(RefreshToken.token_hash == hash_token(raw_token))
    )
    if db_token:
        db_token.is_revoked = True


# ── Signup / Login ────────────────────────────────────────────

@router.post(
    "/signup",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an account",
)
async def signup(
    data: SignupRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Clients get a confirmation mail. Mentors either claim an approved
    application filed under this email or get a pending mentor row.
    """
    email = _normalize(data.email)
    if await get_user_by_email(db, email):
        raise HTTPException(status_code=409, detail="An account with this email already exists")

    role = UserRole(data.role)
    user = User(email=email, password_hash=hash_password(data.password), role=role)
    db.add(user)
    await db.flush()
    db.add(Profile(user_id=user.id, name=data.name, email=email, phone=data.mobile, role=role))
    await db.flush()

    outbox = Outbox()
    if role == UserRole.MENTOR:
        mentor = await applications.claim_approved_mentor(db, user)
        if mentor is None:
            await applications.save_mentor_application(
                db, user_id=user.id, email=email, name=data.name, phone=data.mobile
            )
    else:
        raw = issue_auth_token(
            db, user, TokenPurpose.EMAIL_CONFIRM, timedelta(hours=settings.EMAIL_CONFIRM_EXPIRE_HOURS)
        )
        outbox.mail("client-signup", {
            "email": email,
            "name": data.name,
            "confirmUrl": f"{settings.FRONTEND_URL}/auth/verify?token={raw}",
        })

    result = await _auth_response(user, db, response, request)
    await outbox.flush(db, redis)
    logger.info(f"New {role.value} account: {user.id}")
    return result


@router.post("/login", response_model=AuthResponse, summary="Email/password login")
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    user = await get_user_by_email(db, data.email)
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    # Applicants who applied before signing up are matched by email here
    await applications.claim_approved_mentor(db, user)
    return await _auth_response(user, db, response, request)


@router.post("/verify", response_model=MessageResponse, summary="Confirm email address")
async def verify_email(data: TokenRequest, db: AsyncSession = Depends(get_db)):
    user = await consume_auth_token(db, data.token, TokenPurpose.EMAIL_CONFIRM)
    user.email_confirmed_at = utcnow()
    await db.commit()
    return MessageResponse(message="Email confirmed")


# ── Tokens ────────────────────────────────────────────────────

@router.post("/refresh", response_model=TokenResponse, summary="Refresh access token")
async def refresh_token(
    request: Request,
    response: Response,
    data: Optional[RefreshRequest] = Body(None),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a new access token using a valid refresh token.
    Implements refresh token rotation: the old token is revoked.
    """
    raw_token = refresh_token_cookie or (data.refresh_token if data else None)
    if not raw_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token required")

    db_token = await db.scalar(
        select(RefreshToken).where(
            RefreshToken.token_hash == hash_token(raw_token),
            RefreshToken.is_revoked.is_(False),
        )
    )
    if not db_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or revoked refresh token")
    if as_utc(db_token.expires_at) < utcnow():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token expired")

    user = await db.get(User, db_token.user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")

    db_token.is_revoked = True
    access_token, _ = await _issue_tokens(user, db, response, request)
    await db.commit()

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    response: Response,
    data: Optional[RefreshRequest] = Body(None),
    token_data: TokenData = Depends(get_token_data),
    refresh_token_cookie: Optional[str] = Cookie(None, alias="refresh_token"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Deny-list the access token's jti, revoke the refresh token, clear the cookie."""
    ttl = get_token_remaining_ttl(token_data.payload)
    if ttl > 0:
        await RedisCache(redis).revoke_token(token_data.jti, ttl)

    await _revoke_refresh(db, refresh_token_cookie or (data.refresh_token if data else None))
    response.delete_cookie(key="refresh_token", path="/auth")
    await db.commit()
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await user_response(db, current_user)


# ── Passwords ─────────────────────────────────────────────────

@router.post("/password/forgot", response_model=MessageResponse)
async def forgot_password(
    data: PasswordForgotRequest,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Always 200 so the endpoint cannot be used to discover which accounts exist."""
    user = await get_user_by_email(db, data.email)
    if user and user.is_active:
        raw = issue_auth_token(
            db, user, TokenPurpose.PASSWORD_RESET, timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES)
        )
        await db.commit()
        outbox = Outbox()
        outbox.mail("password-reset", {
            "email": user.email,
            "resetUrl": f"{settings.RESET_PASSWORD_URL}?token={raw}",
        })
        await outbox.flush(db, redis)
    return MessageResponse(message="If that email is registered, a reset link is on its way")


@router.post("/password/reset", response_model=MessageResponse)
async def reset_password(data: PasswordResetRequest, db: AsyncSession = Depends(get_db)):
    user = await consume_auth_token(db, data.token, TokenPurpose.PASSWORD_RESET)
    user.password_hash = hash_password(data.new_password)
    await db.commit()
    return MessageResponse(message="Password updated")


@router.post("/password/set", response_model=AuthResponse, summary="Set password from invite")
async def set_password_from_invite(
    data: PasswordResetRequest,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    """Invited mentors choose a password and are signed in."""
    user = await consume_auth_token(db, data.token, TokenPurpose.INVITE)
    user.password_hash = hash_password(data.new_password)
    user.email_confirmed_at = user.email_confirmed_at or utcnow()
    await applications.claim_approved_mentor(db, user)
    return await _auth_response(user, db, response, request)


@router.post("/password/update", response_model=MessageResponse)
async def update_password(
    data: PasswordUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not verify_password(data.current_password, current_user.password_hash):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    current_user.password_hash = hash_password(data.new_password)
    await db.commit()
    return MessageResponse(message="Password updated")
