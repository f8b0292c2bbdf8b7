"""
NetBilling - Schemas comunes
Paginación, mensajes simples y el cuerpo de error de NetBillingError.
"""
from pydantic import BaseModel
from typing import Generic, TypeVar, List, Optional, Sequence

T = TypeVar("T")


class PaginatedResponse(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    per_page: int
    pages: int

    @classmethod
    def of(cls, items: Sequence[T], total: int, page: int, per_page: int) -> "PaginatedResponse[T]":
        return cls(
            items=list(items), total=total, page=page, per_page=per_page,
            pages=(total + per_page - 1) // per_page if total else 0,
        )


class MessageResponse(BaseModel):
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Cuerpo que produce el handler de NetBillingError."""
    detail: str
    code: str
