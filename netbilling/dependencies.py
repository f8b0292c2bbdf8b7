"""
NetBilling - Dependencies (FastAPI Depends)
Operador autenticado y sus permisos, el servicio de facturación por
request y la verificación del secreto de los webhooks.
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from netbilling.database import get_db
from netbilling.exceptions import WebhookUnauthorized
from netbilling.middleware.auth import ACCESS, decode_token, verify_shared_secret
from netbilling.models.user import User, UserRole
from netbilling.services.billing_service import BillingService

security = HTTPBearer()


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Operador dueño del access token. Si el middleware resolvió un tenant
    (subdominio o X-Tenant-Slug) el token debe ser de ese mismo tenant.
    """
    payload = decode_token(credentials.credentials, expected_type=ACCESS)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token inválido o expirado.",
        )

    token_tenant_id = payload["tenant_id"]
    request_tenant_id = getattr(request.state, "tenant_id", None)
    if request_tenant_id and token_tenant_id != request_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tienes acceso a este tenant.",
        )

    user = (await db.execute(
        select(User).where(
            User.id == int(payload["sub"]),
            User.tenant_id == token_tenant_id,
            User.is_active == True,
        )
    )).scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Usuario no encontrado o inactivo.",
        )
    return user


def require_role(*roles: UserRole):
    """Dependency factory: el operador debe tener alguno de `roles`."""
    async def role_checker(current_user: User = Depends(get_current_user)):
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Se requiere rol: {', '.join(r.value for r in roles)}",
            )
        return current_user
    return role_checker


# Mueven dinero o estado de servicio
billing_staff = require_role(UserRole.ADMIN, UserRole.BILLING)
# Configuración del ISP (paquetes)
admin_only = require_role(UserRole.ADMIN)


def get_billing_service(request: Request, db: AsyncSession = Depends(get_db)) -> BillingService:
    """BillingService por request, con dispatcher/notificador/locks compartidos de la app."""
    state = request.app.state
    return BillingService(db, state.dispatcher, state.notifier, state.locks, state.settings)


def verify_webhook_secret(request: Request) -> None:
    """Con WEBHOOK_SECRET configurado, exige el header X-Webhook-Secret correcto."""
    secret = request.app.state.settings.WEBHOOK_SECRET
    if secret and not verify_shared_secret(request.headers.get("x-webhook-secret"), secret):
        raise WebhookUnauthorized("Firma del webhook inválida")
