"""
NetBilling - Router de Clientes
Alta y consulta de suscriptores, acciones administrativas de estado,
monedero y sincronización de red. Todo filtrado por tenant_id.
"""
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from netbilling.config import get_settings
from netbilling.database import get_db
from netbilling.dependencies import get_current_user, billing_staff, get_billing_service
from netbilling.exceptions import ClientNotFound, PackageNotFound
from netbilling.models.user import User
from netbilling.models.client import Client, ClientStatus, RadiusSyncStatus
from netbilling.models.plan import ServicePackage
from netbilling.models.wallet import WalletTransaction
from netbilling.schemas.client import (
    ClientCreate, ClientResponse, TransitionRequest, TransitionResponse,
    SyncResultResponse, SubscriptionResponse, RenewalDecisionResponse, RenewalResponse,
    WalletCreditRequest, WalletCreditResponse, WalletTransactionResponse, ReconciliationResponse,
)
from netbilling.schemas.common import ErrorResponse, PaginatedResponse
from netbilling.services import ledger, renewal
from netbilling.services.billing_service import BillingService, RenewalOutcome, PaymentOutcome

router = APIRouter(
    prefix="/api/v1/clients",
    tags=["Clients"],
    responses={
        402: {"model": ErrorResponse, "description": "Saldo insuficiente"},
        404: {"model": ErrorResponse, "description": "Cliente no encontrado"},
        409: {"model": ErrorResponse, "description": "Transición inválida o conflicto"},
    },
)


def decision_response(decision: renewal.RenewalDecision) -> RenewalDecisionResponse:
    if isinstance(decision, renewal.Renew):
        return RenewalDecisionResponse(decision="renew", new_end_date=decision.new_end_date,
                                       amount=float(decision.amount))
    if isinstance(decision, renewal.InsufficientFunds):
        return RenewalDecisionResponse(decision="insufficient_funds", shortfall=float(decision.shortfall))
    if isinstance(decision, renewal.AlreadyValid):
        return RenewalDecisionResponse(decision="already_valid", new_end_date=decision.end_date)
    return RenewalDecisionResponse(decision="hold", reason=decision.reason)


def renewal_response(outcome: RenewalOutcome) -> RenewalResponse:
    return RenewalResponse(
        client_id=outcome.client_id,
        status=outcome.status,
        renewed=outcome.renewed,
        decision=decision_response(outcome.decision),
        sync=SyncResultResponse.model_validate(outcome.sync) if outcome.sync else None,
    )


def payment_response(outcome: PaymentOutcome) -> WalletCreditResponse:
    return WalletCreditResponse(
        client_id=outcome.client_id,
        duplicate=outcome.duplicate,
        wallet_balance=float(outcome.wallet_balance),
        renewal=renewal_response(outcome.renewal) if outcome.renewal else None,
    )


async def _get_client(db: AsyncSession, client_id: int, tenant_id: int) -> Client:
    result = await db.execute(
        select(Client).where(Client.id == client_id, Client.tenant_id == tenant_id, Client.is_active == True)
    )
    client = result.scalar_one_or_none()
    if not client:
        raise ClientNotFound(f"Cliente {client_id} no encontrado")
    return client


@router.get("/", response_model=PaginatedResponse[ClientResponse])
async def list_clients(
    page: int = Query(1, ge=1),
    per_page: int = Query(25, ge=1, le=500),
    search: str | None = None,
    status_filter: ClientStatus | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Lista clientes del tenant con paginación, búsqueda y filtro por estado."""
    query = select(Client).where(Client.tenant_id == current_user.tenant_id, Client.is_active == True)
    if search:
        term = f"%{search}%"
        query = query.where(or_(
            Client.name.ilike(term), Client.phone.ilike(term),
            Client.email.ilike(term), Client.radius_username.ilike(term),
        ))
    if status_filter:
        query = query.where(Client.status == status_filter)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    query = query.order_by(Client.id).offset((page - 1) * per_page).limit(per_page)
    clients = (await db.execute(query)).scalars().all()

    return PaginatedResponse[ClientResponse].of(
        [ClientResponse.model_validate(c) for c in clients], total or 0, page, per_page,
    )


@router.post("/", response_model=ClientResponse, status_code=201)
async def create_client(
    data: ClientCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(billing_staff),
):
    """Alta de un cliente en estado pending con saldo cero."""
    package = None
    if data.service_package_id:
        package = await db.get(ServicePackage, data.service_package_id)
        if not package or package.tenant_id != current_user.tenant_id:
            raise PackageNotFound(f"Paquete {data.service_package_id} no encontrado")

    if data.monthly_rate is not None:
        rate_cents = ledger.rate_to_cents(data.monthly_rate)
    else:
        rate_cents = package.monthly_rate_cents if package else 0

    client = Client(
        tenant_id=current_user.tenant_id,
        name=data.name,
        email=data.email,
        phone=data.phone,
        monthly_rate_cents=rate_cents,
        subscription_type=data.subscription_type,
        service_package_id=data.service_package_id,
        radius_username=data.radius_username,
        radius_password=data.radius_password,
        status=ClientStatus.PENDING,
        wallet_balance_cents=0,
    )
    db.add(client)
    await db.commit()
    await db.refresh(client)
    return ClientResponse.model_validate(client)


@router.get("/sync/failed", response_model=list[ClientResponse])
async def list_failed_sync(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Clientes cuya sincronización falló (incluye los que agotaron reintentos)."""
    result = await db.execute(
        select(Client).where(
            Client.tenant_id == current_user.tenant_id,
            Client.is_active == True,
            Client.radius_sync_status == RadiusSyncStatus.FAILED,
        ).order_by(Client.radius_sync_attempts.desc(), Client.id)
    )
    return [ClientResponse.model_validate(c) for c in result.scalars().all()]


@router.get("/{client_id}", response_model=ClientResponse)
async def get_client(
    client_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    client = await _get_client(db, client_id, current_user.tenant_id)
    return ClientResponse.model_validate(client)


@router.get("/{client_id}/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    client_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Estado de la suscripción y análisis del monedero (vista previa de la renovación)."""
    client = await _get_client(db, client_id, current_user.tenant_id)
    now = datetime.now(timezone.utc)
    preview = renewal.evaluate(client, now, window_hours=get_settings().RENEWAL_WINDOW_HOURS)
    shortfall = max(client.monthly_rate - client.wallet_balance, 0)

    return SubscriptionResponse(
        client_id=client.id,
        status=client.status,
        subscription_type=client.subscription_type,
        monthly_rate=float(client.monthly_rate),
        wallet_balance=float(client.wallet_balance),
        subscription_start_date=client.subscription_start_date,
        subscription_end_date=client.subscription_end_date,
        hours_until_expiry=renewal.hours_until_expiry(client, now),
        can_afford_renewal=client.wallet_balance >= client.monthly_rate,
        shortfall=float(shortfall),
        radius_sync_status=client.radius_sync_status,
        preview=decision_response(preview),
    )


@router.post("/{client_id}/transition", response_model=TransitionResponse)
async def transition_client(
    client_id: int,
    data: TransitionRequest,
    service: BillingService = Depends(get_billing_service),
    current_user: User = Depends(billing_staff),
):
    """Acción administrativa: aprobar, rechazar, activar, suspender, desconectar, reabrir."""
    outcome = await service.apply_admin_action(
        client_id, data.target_state, reason=data.reason, tenant_id=current_user.tenant_id,
    )
    return TransitionResponse(
        client_id=outcome.client_id,
        previous_status=outcome.previous_status,
        status=outcome.status,
        sync=SyncResultResponse.model_validate(outcome.sync) if outcome.sync else None,
    )


@router.post("/{client_id}/renew", response_model=RenewalResponse)
async def renew_client(
    client_id: int,
    service: BillingService = Depends(get_billing_service),
    current_user: User = Depends(billing_staff),
):
    """Renovación forzada desde el monedero (ignora la ventana de 24 h)."""
    outcome = await service.renew_now(client_id, tenant_id=current_user.tenant_id)
    return renewal_response(outcome)


@router.post("/{client_id}/sync", response_model=SyncResultResponse)
async def resync_client(
    client_id: int,
    service: BillingService = Depends(get_billing_service),
    current_user: User = Depends(billing_staff),
):
    """Reenvía al punto de enforcement el comando del estado actual."""
    result = await service.resync_client(client_id, tenant_id=current_user.tenant_id)
    return SyncResultResponse.model_validate(result)


@router.post("/{client_id}/wallet/credit", response_model=WalletCreditResponse)
async def credit_wallet(
    client_id: int,
    data: WalletCreditRequest,
    service: BillingService = Depends(get_billing_service),
    current_user: User = Depends(billing_staff),
):
    """Abono manual al monedero seguido de evaluación de renovación."""
    outcome = await service.credit_wallet(
        client_id, data.amount, method=data.payment_method,
        reference_number=data.reference_number, description=data.description,
        tenant_id=current_user.tenant_id,
    )
    return payment_response(outcome)


@router.get("/{client_id}/wallet/transactions", response_model=PaginatedResponse[WalletTransactionResponse])
async def list_wallet_transactions(
    client_id: int,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    await _get_client(db, client_id, current_user.tenant_id)
    query = select(WalletTransaction).where(WalletTransaction.client_id == client_id)
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(WalletTransaction.id.desc()).offset((page - 1) * per_page).limit(per_page)
    )
    items = [
        WalletTransactionResponse(
            id=tx.id, client_id=tx.client_id, transaction_type=tx.transaction_type,
            amount=float(tx.amount), balance_after=float(ledger.from_cents(tx.balance_after_cents)),
            reference_number=tx.reference_number, payment_method=tx.payment_method,
            description=tx.description, created_at=tx.created_at,
        )
        for tx in result.scalars().all()
    ]
    return PaginatedResponse[WalletTransactionResponse].of(items, total or 0, page, per_page)


@router.get("/{client_id}/wallet/reconciliation", response_model=ReconciliationResponse)
async def reconcile_wallet(
    client_id: int,
    service: BillingService = Depends(get_billing_service),
    current_user: User = Depends(get_current_user),
):
    """Auditoría: suma de movimientos vs. saldo actual."""
    report = await service.reconcile(client_id, tenant_id=current_user.tenant_id)
    return ReconciliationResponse(
        client_id=report.client_id,
        ledger_total=float(report.ledger_total),
        wallet_balance=float(report.wallet_balance),
        transaction_count=report.transaction_count,
        is_consistent=report.is_consistent,
    )
