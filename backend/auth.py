# auth.py: authentication gate and authorization guards for the tracker API
# Features:
# - JWT access/refresh tokens with JTI
# - Dynamic roles: permissions resolved through the user's role reference
#   on every request, never cached on the user or in the token
# - Role allow-list guard and permission guards (single / any-of)
# - Brute force protection on login

import os
import uuid
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Union
from collections import defaultdict

import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db_session
from models import User, Role
from permissions import RoleId, resolve_role, resolve_permissions, role_name_of

logger = logging.getLogger("tracker.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY or SECRET_KEY == "change-this-to-a-secure-random-key-in-production":
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set or insecure. Generated ephemeral key. "
        "Set JWT_SECRET_KEY in production!"
    )

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))
DEFAULT_ROLE_NAME = os.getenv("DEFAULT_ROLE_NAME", "developer")
MIN_PASSWORD_LENGTH = 6
MAX_LOGIN_ATTEMPTS = 5
LOGIN_LOCKOUT_MINUTES = 15

# auto_error=False so a missing header is answered with 401, not 403
security = HTTPBearer(auto_error=False)

# In-memory brute force tracker (per process)
_login_attempts: Dict[str, list] = defaultdict(list)


# ============================================================
# PYDANTIC SCHEMAS
# ============================================================

class UserRegister(BaseModel):
    name: str
    email: EmailStr
    password: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Dict[str, Any]


class RefreshRequest(BaseModel):
    refresh_token: str


class RoleSnapshot(BaseModel):
    id: str
    name: str
    display_name: str
    is_system: bool = False


class CurrentUser(BaseModel):
    id: str
    name: str
    email: str
    role: Optional[RoleSnapshot] = None
    permissions: List[str] = []
    is_active: bool = True

    @property
    def role_name(self) -> Optional[str]:
        return role_name_of(self.role)


# ============================================================
# AUTH SERVICE
# ============================================================

class AuthService:
    """Password hashing, token issue/verification and account lookups"""

    @staticmethod
    def hash_password(password: str) -> str:
        salt = bcrypt.gensalt(rounds=12)
        return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")

    @staticmethod
    def verify_password(password: str, password_hash: str) -> bool:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))

    @staticmethod
    def _create_token(data: Dict[str, Any], token_type: str, expires_delta: timedelta) -> str:
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        to_encode.update({
            "exp": now + expires_delta,
            "iat": now,
            "type": token_type,
            "jti": str(uuid.uuid4()),
        })
        return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    @staticmethod
    def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        delta = expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
        return AuthService._create_token(data, "access", delta)

    @staticmethod
    def create_refresh_token(data: Dict[str, Any]) -> str:
        return AuthService._create_token(data, "refresh", timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))

    @staticmethod
    def verify_token(token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
            return payload
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError:
            raise HTTPException(status_code=401, detail="Invalid token")

    @staticmethod
    def _check_brute_force(email: str) -> None:
        """Check if login attempts exceed threshold"""
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=LOGIN_LOCKOUT_MINUTES)
        _login_attempts[email] = [t for t in _login_attempts[email] if t > cutoff]
        if len(_login_attempts[email]) >= MAX_LOGIN_ATTEMPTS:
            raise HTTPException(
                status_code=429,
                detail=f"Too many login attempts. Try again in {LOGIN_LOCKOUT_MINUTES} minutes.",
            )

    @staticmethod
    def _record_failed_attempt(email: str) -> None:
        _login_attempts[email].append(datetime.now(timezone.utc))

    @staticmethod
    def _clear_attempts(email: str) -> None:
        _login_attempts.pop(email, None)

    @staticmethod
    async def register_user(user_data: UserRegister, db: AsyncSession) -> User:
        stmt = select(User).where(User.email == user_data.email)
        result = await db.execute(stmt)
        if result.scalar_one_or_none():
            raise HTTPException(status_code=409, detail="User already exists")

        stmt = select(Role).where(Role.name == DEFAULT_ROLE_NAME, Role.is_active.is_(True))
        result = await db.execute(stmt)
        default_role = result.scalar_one_or_none()
        if not default_role:
            logger.warning("Default role %r not found; registering user without a role", DEFAULT_ROLE_NAME)

        new_user = User(
            name=user_data.name,
            email=user_data.email,
            password_hash=AuthService.hash_password(user_data.password),
            role_id=default_role.id if default_role else None,
            is_active=True,
        )
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
        logger.info("Registered user %s", new_user.id)
        return new_user

    @staticmethod
    async def authenticate_user(email: str, password: str, db: AsyncSession) -> Optional[User]:
        AuthService._check_brute_force(email)

        stmt = select(User).where(User.email == email)
        result = await db.execute(stmt)
        user = result.scalar_one_or_none()

        if not user or not AuthService.verify_password(password, user.password_hash):
            AuthService._record_failed_attempt(email)
            return None

        if not user.is_active:
            return None

        AuthService._clear_attempts(email)

        user.last_login_at = datetime.now(timezone.utc)
        db.add(user)
        await db.commit()
        return user

    @staticmethod
    async def load_identity(user: User, db: AsyncSession) -> CurrentUser:
        """Resolve the user's role and permission set (one role fetch)"""
        role = await resolve_role(RoleId(user.role_id), db) if user.role_id else None
        permissions = await resolve_permissions(role) if role is not None else frozenset()
        snapshot = None
        if role is not None:
            snapshot = RoleSnapshot(
                id=role.id,
                name=role.name,
                display_name=role.display_name,
                is_system=bool(role.is_system),
            )
        return CurrentUser(
            id=user.id,
            name=user.name,
            email=user.email,
            role=snapshot,
            permissions=sorted(permissions),
            is_active=bool(user.is_active),
        )


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db_session),
) -> CurrentUser:
    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = AuthService.verify_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    stmt = select(User).where(User.id == user_id)
    result = await db.execute(stmt)
    user = result.scalar_one_or_none()

    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")

    return await AuthService.load_identity(user, db)


def _forbidden(message: str, required: Union[str, List[str]], user: CurrentUser) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "message": message,
            "required": required,
            "current_role": user.role_name,
        },
    )


def authorize(*role_names: str):
    """Dependency factory: role allow-list by role name"""
    allowed = set(role_names)

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if role_name_of(user.role) not in allowed:
            raise _forbidden("Insufficient role privileges", sorted(allowed), user)
        return user
    return _check


def require_permission(permission: str):
    """Dependency factory: require a single permission token"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if permission not in user.permissions:
            logger.info("Permission %s denied for user %s", permission, user.id)
            raise _forbidden("Insufficient permissions", permission, user)
        return user
    return _check


def require_any_permission(*permissions: str):
    """Dependency factory: require at least one of the given permission tokens"""
    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if not any(p in user.permissions for p in permissions):
            logger.info("Permissions %s denied for user %s", permissions, user.id)
            raise _forbidden("Insufficient permissions", list(permissions), user)
        return user
    return _check
