"""
NetBilling - Router: Webhooks
Endpoints públicos (sin JWT):
  - /webhooks/payments: pago confirmado por la pasarela.
  - /webhooks/enforcement: confirmación asíncrona del punto de enforcement.
Si WEBHOOK_SECRET está configurado se exige el header X-Webhook-Secret.
"""
import logging
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ValidationError

from netbilling.dependencies import get_billing_service, verify_webhook_secret
from netbilling.exceptions import MalformedRequest
from netbilling.schemas.billing import PaymentConfirmation, EnforcementCallback, WebhookAck
from netbilling.schemas.common import ErrorResponse, MessageResponse
from netbilling.services.billing_service import BillingService

logger = logging.getLogger("webhooks")

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"],
    dependencies=[Depends(verify_webhook_secret)],
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)


async def _parse(request: Request, schema: type[BaseModel]):
    try:
        body = await request.json()
    except ValueError:
        raise MalformedRequest("JSON inválido")
    if not isinstance(body, dict):
        raise MalformedRequest("Se esperaba un objeto JSON")
    try:
        return schema.model_validate(body)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "body" for err in e.errors())
        raise MalformedRequest(f"Payload inválido: {fields}")


@router.post("/payments", response_model=WebhookAck)
async def payment_webhook(request: Request, service: BillingService = Depends(get_billing_service)):
    """
    Pago confirmado: abona al monedero y evalúa la renovación.
    Un referenceNumber repetido se confirma sin abonar de nuevo.
    """
    data = await _parse(request, PaymentConfirmation)
    logger.info(f"Webhook de pago recibido: cliente {data.client_id} ref {data.reference_number} monto {data.amount}")

    outcome = await service.process_payment_confirmation(
        data.client_id, data.amount, data.reference_number, method=data.method,
    )
    renewal_kind = None
    if outcome.renewal is not None:
        renewal_kind = type(outcome.renewal.decision).__name__
    return WebhookAck(
        duplicate=outcome.duplicate,
        client_id=outcome.client_id,
        wallet_balance=float(outcome.wallet_balance),
        renewal=renewal_kind,
    )


@router.post("/enforcement", response_model=MessageResponse)
async def enforcement_callback(request: Request, service: BillingService = Depends(get_billing_service)):
    """El punto de enforcement confirma (o reporta fallo de) un comando previo."""
    data = await _parse(request, EnforcementCallback)
    result = await service.handle_enforcement_callback(
        data.client_id, data.username, data.action, data.success, data.error,
    )
    return MessageResponse(
        message="ignored" if result["ignored"] else "ok",
        detail=f"cliente {result['client_id']}: sync {result['radius_sync_status'].value}",
    )
