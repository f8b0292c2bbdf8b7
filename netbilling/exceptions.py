"""
NetBilling - Errores de dominio
Cada error lleva su código HTTP y un código legible por máquina.
Un solo handler en main.py los convierte en respuesta JSON.
"""
from decimal import Decimal
from typing import Optional


class NetBillingError(Exception):
    status_code = 400
    code = "netbilling_error"

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__name__
        super().__init__(self.message)


class InvalidAmount(NetBillingError):
    status_code = 400
    code = "invalid_amount"


class InsufficientFunds(NetBillingError):
    status_code = 402
    code = "insufficient_funds"

    def __init__(self, message: str = "", shortfall: Optional[Decimal] = None):
        super().__init__(message or "Saldo insuficiente en el monedero")
        self.shortfall = shortfall


class InvalidTransition(NetBillingError):
    status_code = 409
    code = "invalid_transition"


class ConcurrentModification(NetBillingError):
    status_code = 409
    code = "concurrent_modification"


class MalformedRequest(NetBillingError):
    status_code = 400
    code = "malformed_request"


class ClientNotFound(NetBillingError):
    status_code = 404
    code = "client_not_found"


class PackageNotFound(NetBillingError):
    status_code = 404
    code = "package_not_found"


class SyncFailed(NetBillingError):
    """Fallo al enviar un comando al punto de enforcement. Se registra, no se propaga."""
    status_code = 502
    code = "sync_failed"

    def __init__(self, message: str = "", http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


class WebhookUnauthorized(NetBillingError):
    status_code = 401
    code = "invalid_webhook_secret"
