"""
NetBilling - Punto de entrada FastAPI
Facturación por monedero y sincronización RADIUS para ISPs (multi-tenant).
"""
import httpx
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from netbilling.config import get_settings
from netbilling.database import AsyncSessionLocal, create_db_and_tables, engine
from netbilling.exceptions import NetBillingError
from netbilling.middleware.tenant_resolver import TenantResolverMiddleware
from netbilling.scheduler import SchedulerContext
from netbilling.services.locks import ClientLockRegistry
from netbilling.services.network_sync import NetworkSyncDispatcher
from netbilling.services.notifications import NotificationEmitter

# Routers
from netbilling.routers.auth import router as auth_router
from netbilling.routers.clients import router as clients_router
from netbilling.routers.plans import router as plans_router
from netbilling.routers.webhooks import router as webhooks_router

# Importar modelos para que se registren
from netbilling.models import *  # noqa

settings = get_settings()

logger = logging.getLogger("netbilling")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - [%(name)s] - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # APScheduler es muy verboso en INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Crea tablas, arranca dispatcher/notificador/scheduler y los cierra al salir."""
    configure_logging(settings.LOG_LEVEL)
    await create_db_and_tables()

    app.state.settings = settings
    app.state.locks = ClientLockRegistry(timeout=settings.CLIENT_LOCK_TIMEOUT_SECONDS)
    app.state.dispatcher = NetworkSyncDispatcher.from_settings(settings, http_client=httpx.AsyncClient())
    app.state.notifier = NotificationEmitter(
        settings.NOTIFICATION_WEBHOOK_URL,
        timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
        http_client=httpx.AsyncClient(),
    )
    app.state.scheduler = SchedulerContext(
        AsyncSessionLocal, app.state.dispatcher, app.state.notifier, app.state.locks, settings,
    )
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler.start()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} iniciado")
    yield

    app.state.scheduler.stop()
    await app.state.notifier.aclose()
    await app.state.dispatcher.aclose()
    await engine.dispose()
    logger.info(f"{settings.APP_NAME} detenido")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Facturación por monedero y sincronización RADIUS para ISPs",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TenantResolverMiddleware, base_domain=settings.BASE_DOMAIN)


@app.exception_handler(NetBillingError)
async def netbilling_error_handler(request: Request, exc: NetBillingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


# Registrar routers
app.include_router(auth_router)
app.include_router(clients_router)
app.include_router(plans_router)
app.include_router(webhooks_router, prefix="/api")


@app.get("/health")
async def health():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "scheduler": bool(scheduler and scheduler.running),
    }
