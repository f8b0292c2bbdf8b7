"""
NetBilling - Router de Autenticación
Login de operadores, refresh y perfil del operador actual.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from netbilling.database import get_db
from netbilling.dependencies import get_current_user
from netbilling.models.base import utcnow
from netbilling.models.user import User
from netbilling.middleware.auth import REFRESH, decode_token, issue_tokens, verify_password
from netbilling.schemas.auth import LoginRequest, TokenResponse, RefreshRequest, UserResponse

logger = logging.getLogger("auth")

router = APIRouter(prefix="/api/v1/auth", tags=["Auth"])


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


@router.post("/login", response_model=TokenResponse)
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Email + password del operador. Retorna access y refresh token."""
    user = (await db.execute(
        select(User).where(User.email == data.email, User.is_active == True)
    )).scalar_one_or_none()

    if not user or not verify_password(data.password, user.hashed_password):
        logger.warning(f"Login fallido para {data.email}")
        raise _unauthorized("Email o contraseña incorrectos.")

    user.last_login_at = utcnow()
    await db.commit()
    return TokenResponse(**issue_tokens(user), user=UserResponse.model_validate(user))


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(data: RefreshRequest, db: AsyncSession = Depends(get_db)):
    payload = decode_token(data.refresh_token, expected_type=REFRESH)
    if not payload:
        raise _unauthorized("Refresh token inválido o expirado.")

    user = (await db.execute(
        select(User).where(
            User.id == int(payload["sub"]),
            User.tenant_id == payload["tenant_id"],
            User.is_active == True,
        )
    )).scalar_one_or_none()
    if not user:
        raise _unauthorized("Usuario no encontrado.")

    return TokenResponse(**issue_tokens(user), user=UserResponse.model_validate(user))


@router.get("/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)
