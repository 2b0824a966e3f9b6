"""
Error taxonomy shared by every workflow.

Each error carries a stable ``code``, a human message and optional
structured ``details``; the HTTP adapter maps ``status_code`` directly.
"""
from decimal import Decimal
from typing import Any, Optional


class GarantiasError(Exception):
    status_code = 400
    default_code = "GENERAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(GarantiasError):
    status_code = 422
    default_code = "VALIDATION_ERROR"


class NotFoundError(GarantiasError):
    status_code = 404
    default_code = "NOT_FOUND"

    def __init__(self, resource: str = "Recurso", code: Optional[str] = None):
        super().__init__(f"{resource} no encontrado", code)


class ConflictError(GarantiasError):
    status_code = 409
    default_code = "CONFLICT"


class ForbiddenError(GarantiasError):
    status_code = 403
    default_code = "FORBIDDEN"

    def __init__(self, message: str = "Sin permisos para realizar esta acción", code: Optional[str] = None):
        super().__init__(message, code)


class InvalidStateTransitionError(ConflictError):
    default_code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"{entity}: no se puede cambiar de '{from_state}' a '{to_state}'",
            details={"entity": entity, "from": from_state, "to": to_state},
        )


def invalid_auction_state(expected: str, current: str) -> ConflictError:
    return ConflictError(
        f"La subasta debe estar en estado '{expected}', actualmente está en '{current}'",
        "INVALID_AUCTION_STATE",
        {"expected": expected, "current": current},
    )


def invalid_guarantee_amount(expected: Decimal, received: Decimal) -> ValidationError:
    return ValidationError(
        "El monto debe coincidir exactamente con el 8% de la oferta",
        "INVALID_AMOUNT",
        {"expected": str(expected), "received": str(received), "field": "monto"},
    )


def already_processed() -> ConflictError:
    return ConflictError("Este pago ya fue procesado anteriormente", "ALREADY_PROCESSED")


def require_admin(caller) -> None:
    if not caller.is_admin:
        raise ForbiddenError("Operación reservada para administradores", "ADMIN_ONLY")


def require_client(caller) -> None:
    if caller.is_admin:
        raise ForbiddenError("Operación reservada para clientes", "CLIENT_ONLY")


def require_owner_or_admin(caller, owner_id) -> None:
    if not caller.is_admin and caller.user_id != owner_id:
        raise ForbiddenError("No tiene permisos sobre este recurso", "NOT_OWNER")
