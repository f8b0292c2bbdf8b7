"""
NetBilling - Schemas: Paquetes de servicio
"""
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from netbilling.schemas.client import SyncResultResponse


class ServicePackageBase(BaseModel):
    name: str = Field(..., max_length=200)
    download_speed: int = Field(..., gt=0, description="Mbps")
    upload_speed: int = Field(..., gt=0, description="Mbps")
    session_timeout: Optional[int] = Field(None, ge=0)
    idle_timeout: Optional[int] = Field(None, ge=0)
    groupname: Optional[str] = Field(None, max_length=100)
    monthly_rate: Decimal = Field(..., ge=0)


class ServicePackageCreate(ServicePackageBase):
    pass


class ServicePackageUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=200)
    download_speed: Optional[int] = Field(None, gt=0)
    upload_speed: Optional[int] = Field(None, gt=0)
    session_timeout: Optional[int] = Field(None, ge=0)
    idle_timeout: Optional[int] = Field(None, ge=0)
    groupname: Optional[str] = Field(None, max_length=100)
    monthly_rate: Optional[Decimal] = Field(None, ge=0)
    is_active: Optional[bool] = None


class ServicePackageResponse(BaseModel):
    id: int
    name: str
    download_speed: int
    upload_speed: int
    session_timeout: Optional[int] = None
    idle_timeout: Optional[int] = None
    groupname: Optional[str] = None
    monthly_rate: float
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ServicePackageUpdateResponse(BaseModel):
    package: ServicePackageResponse
    resynced: List[SyncResultResponse] = []
