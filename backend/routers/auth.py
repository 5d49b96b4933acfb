# routers/auth.py: registration, login, token refresh and identity
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    AuthService, UserRegister, UserLogin, TokenResponse, RefreshRequest,
    ACCESS_TOKEN_EXPIRE_MINUTES, get_current_user, CurrentUser,
)
from database import get_db_session
from models import User

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


async def _build_token_response(user_obj: User, db: AsyncSession) -> TokenResponse:
    """Build token response from a user ORM instance"""
    token_data = {"sub": user_obj.id, "email": user_obj.email}
    identity = await AuthService.load_identity(user_obj, db)

    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        refresh_token=AuthService.create_refresh_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": identity.id,
            "name": identity.name,
            "email": identity.email,
            "role": identity.role_name,
            "permissions": identity.permissions,
        },
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new user account with the default role"""
    user = await AuthService.register_user(user_data, db)
    return await _build_token_response(user, db)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return await _build_token_response(user, db)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_req: RefreshRequest,
    db: AsyncSession = Depends(get_db_session),
):
    """Refresh access token using a refresh token"""
    payload = AuthService.verify_token(refresh_req.refresh_token)

    if payload.get("type") != "refresh":
        raise HTTPException(status_code=401, detail="Invalid token type. Expected refresh token.")

    stmt = select(User).where(User.id == payload.get("sub"))
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return await _build_token_response(user, db)


@router.get("/me")
async def get_current_user_info(user: CurrentUser = Depends(get_current_user)):
    """Current authenticated identity with resolved permissions"""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.model_dump() if user.role else None,
        "permissions": user.permissions,
    }
