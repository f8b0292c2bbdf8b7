"""
NetBilling - Autenticación
JWT de operadores (access / refresh, con tenant_id y rol), hashing de
contraseñas y verificación del secreto compartido de los webhooks.
"""
import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from netbilling.config import get_settings

settings = get_settings()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS = "access"
REFRESH = "refresh"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def _encode(claims: Dict[str, Any], expires_in: timedelta) -> str:
    claims = dict(claims, exp=datetime.now(timezone.utc) + expires_in)
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_access_token(
    user_id: int,
    tenant_id: int,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Token corto para la API: sub, tenant_id y rol del operador."""
    return _encode(
        {"sub": str(user_id), "tenant_id": tenant_id, "role": role, "type": ACCESS},
        expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_refresh_token(user_id: int, tenant_id: int) -> str:
    return _encode(
        {"sub": str(user_id), "tenant_id": tenant_id, "type": REFRESH},
        timedelta(days=settings.JWT_REFRESH_TOKEN_EXPIRE_DAYS),
    )


def issue_tokens(user) -> Dict[str, str]:
    """Par access/refresh para un operador autenticado."""
    return {
        "access_token": create_access_token(user.id, user.tenant_id, user.role.value),
        "refresh_token": create_refresh_token(user.id, user.tenant_id),
    }


def decode_token(token: str, expected_type: Optional[str] = None) -> Optional[dict]:
    """
    Decodifica y valida un JWT. Retorna None si es inválido, expiró,
    no trae sub/tenant_id o no es del tipo esperado.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    if "sub" not in payload or "tenant_id" not in payload:
        return None
    if expected_type is not None and payload.get("type") != expected_type:
        return None
    return payload


def verify_shared_secret(received: Optional[str], expected: str) -> bool:
    """Comparación en tiempo constante del header X-Webhook-Secret."""
    return hmac.compare_digest((received or "").encode(), expected.encode())
