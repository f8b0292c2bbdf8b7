"""
NetBilling - Router: Paquetes de servicio
Al cambiar velocidad o grupo RADIUS de un paquete se re-sincronizan
todos sus clientes activos.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List

from netbilling.database import get_db
from netbilling.dependencies import get_current_user, admin_only, get_billing_service
from netbilling.exceptions import PackageNotFound
from netbilling.models.plan import ServicePackage
from netbilling.models.user import User
from netbilling.schemas.client import SyncResultResponse
from netbilling.schemas.plan import (
    ServicePackageCreate, ServicePackageUpdate,
    ServicePackageResponse, ServicePackageUpdateResponse,
)
from netbilling.services import ledger
from netbilling.services.billing_service import BillingService

router = APIRouter(prefix="/api/v1/plans", tags=["Paquetes de Servicio"])


@router.get("/", response_model=List[ServicePackageResponse])
async def list_packages(
    is_active: bool | None = True,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    q = select(ServicePackage).where(ServicePackage.tenant_id == user.tenant_id)
    if is_active is not None:
        q = q.where(ServicePackage.is_active == is_active)
    result = await db.execute(q.order_by(ServicePackage.id))
    return [ServicePackageResponse.model_validate(p) for p in result.scalars().all()]


@router.post("/", response_model=ServicePackageResponse, status_code=201)
async def create_package(
    data: ServicePackageCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(admin_only),
):
    package = ServicePackage(
        tenant_id=user.tenant_id,
        monthly_rate_cents=ledger.rate_to_cents(data.monthly_rate),
        **data.model_dump(exclude={"monthly_rate"}),
    )
    db.add(package)
    await db.commit()
    await db.refresh(package)
    return ServicePackageResponse.model_validate(package)


@router.get("/{package_id}", response_model=ServicePackageResponse)
async def get_package(
    package_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    package = await db.get(ServicePackage, package_id)
    if not package or package.tenant_id != user.tenant_id:
        raise PackageNotFound(f"Paquete {package_id} no encontrado")
    return ServicePackageResponse.model_validate(package)


@router.patch("/{package_id}", response_model=ServicePackageUpdateResponse)
async def update_package(
    package_id: int,
    data: ServicePackageUpdate,
    service: BillingService = Depends(get_billing_service),
    user: User = Depends(admin_only),
):
    changes = data.model_dump(exclude_unset=True)
    if "monthly_rate" in changes:
        changes["monthly_rate_cents"] = ledger.rate_to_cents(changes.pop("monthly_rate"))

    outcome = await service.update_package(package_id, changes, tenant_id=user.tenant_id)
    return ServicePackageUpdateResponse(
        package=ServicePackageResponse.model_validate(outcome.package),
        resynced=[SyncResultResponse.model_validate(r) for r in outcome.resynced],
    )
