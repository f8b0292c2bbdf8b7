"""
NetBilling - Tenant Resolver Middleware
Resuelve el tenant a partir del subdominio o del header X-Tenant-Slug.

wispnet.netbilling.local → tenant "wispnet"
Sin slug (localhost, webhooks) el request sigue con tenant_id = None y el
tenant se toma del JWT.
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from sqlalchemy import select
from netbilling.database import AsyncSessionLocal
from netbilling.models.tenant import Tenant, TenantStatus


# Rutas que NO requieren tenant
PUBLIC_PATHS = [
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/webhooks",
]


class TenantResolverMiddleware(BaseHTTPMiddleware):

    def __init__(self, app, base_domain: str = "netbilling.local", session_factory=None):
        super().__init__(app)
        self.base_domain = base_domain
        self.session_factory = session_factory or AsyncSessionLocal

    async def dispatch(self, request: Request, call_next):
        request.state.tenant_id = None
        request.state.tenant_slug = None

        if any(request.url.path.startswith(path) for path in PUBLIC_PATHS):
            return await call_next(request)

        host = request.headers.get("host", "").split(":")[0]  # quitar puerto
        slug = request.headers.get("x-tenant-slug") or self._extract_slug(host)
        if not slug:
            return await call_next(request)

        async with self.session_factory() as session:
            result = await session.execute(
                select(Tenant).where(Tenant.slug == slug, Tenant.is_active == True)
            )
            tenant = result.scalar_one_or_none()

        if not tenant:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"detail": f"Tenant '{slug}' no encontrado o inactivo.", "code": "tenant_not_found"},
            )
        if tenant.status == TenantStatus.SUSPENDED:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"detail": "Esta cuenta está suspendida. Contacta soporte.", "code": "tenant_suspended"},
            )

        request.state.tenant_id = tenant.id
        request.state.tenant_slug = tenant.slug
        return await call_next(request)

    def _extract_slug(self, host: str) -> str | None:
        """
        wispnet.netbilling.local → "wispnet"
        wispnet.localhost → "wispnet"
        localhost / dominio base → None
        """
        if host in ("localhost", "127.0.0.1", self.base_domain):
            return None
        if host.endswith(".localhost"):
            return host[: -len(".localhost")]
        if host.endswith(f".{self.base_domain}"):
            return host[: -len(f".{self.base_domain}")]
        return None
