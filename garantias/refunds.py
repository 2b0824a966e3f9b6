"""
Refund workflow.

A request holds ``monto_solicitado`` out of the available balance from the
moment it is created until it is rejected, cancelled or processed.
Processing either keeps the money in the account (``mantener_saldo``) or pays
it out (``devolver_dinero``).
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .collaborators import BlobStore, NotificationDispatcher, discard_voucher, upload_voucher
from .errors import (
    ConflictError,
    ForbiddenError,
    ValidationError,
    require_admin,
    require_client,
    require_owner_or_admin,
)
from .ledger import ZERO, BalanceReconciler, MovementLedger, money
from .models import (
    Caller,
    CreateRefundRequest,
    ManageRefundRequest,
    Movement,
    MovementDirection,
    MovementKind,
    MovementStatus,
    ProcessRefundRequest,
    Refund,
    RefundResponse,
    RefundStatus,
    RefundType,
)
from .storage import InMemoryStorage
from .transitions import IN_FLIGHT_REFUND_STATES, REFUNDABLE_AUCTION_STATES, ensure_transition


logger = structlog.get_logger(__name__)

MANAGE_DECISIONS = (RefundStatus.CONFIRMADO, RefundStatus.RECHAZADO)


class RefundWorkflow:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: MovementLedger,
        reconciler: BalanceReconciler,
        dispatcher: NotificationDispatcher,
        blob_store: BlobStore,
    ):
        self.storage = storage
        self.ledger = ledger
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.blob_store = blob_store

    def _refundable_auctions(self, user_id: UUID) -> list[dict]:
        auction_ids = {g["auction_id"] for g in self.storage.select("guarantees", lambda g: g["user_id"] == user_id)}
        auctions = [
            self.storage.auctions[a] for a in auction_ids
            if a in self.storage.auctions and self.storage.auctions[a]["estado"] in REFUNDABLE_AUCTION_STATES
        ]
        return sorted(auctions, key=lambda a: a["fecha_resultado"] or a["updated_at"], reverse=True)

    def _check_auction_reference(self, user_id: UUID, auction_id: UUID, amount) -> dict:
        auction = self.storage.auctions.get(auction_id)
        winners = self.storage.select("guarantees", lambda g: g["auction_id"] == auction_id and g["user_id"] == user_id)
        if auction is None or not winners:
            raise ConflictError("La subasta no corresponde al usuario", "INVALID_AUCTION_FOR_REFUND")
        if auction["estado"] not in REFUNDABLE_AUCTION_STATES:
            raise ConflictError(
                "La subasta no está en un estado reembolsable",
                "AUCTION_STATE_NOT_REFUNDABLE",
                {"current": auction["estado"].value},
            )
        remainder = self.ledger.refundable_remainder(user_id, auction_id)
        if money(amount) > remainder:
            raise ConflictError(
                "El monto solicitado excede la garantía retenida en la subasta",
                "REFUND_AMOUNT_EXCEEDS_RETAINED",
                {"available": str(remainder), "requested": str(money(amount))},
            )
        return auction

    def _resolve_auction(self, refund: dict, request: ProcessRefundRequest) -> Optional[UUID]:
        """Auction the processing movement is tied to: explicit, else the best candidate."""
        auction_id = refund["auction_id"] or request.auction_id
        if auction_id is not None:
            return auction_id
        candidates = self._refundable_auctions(refund["user_id"])
        for auction in candidates:
            if self.ledger.refundable_remainder(refund["user_id"], auction["id"]) >= refund["monto_solicitado"]:
                return auction["id"]
        return candidates[0]["id"] if candidates else None

    def create(self, caller: Caller, request: CreateRefundRequest) -> RefundResponse:
        require_client(caller)
        amount = money(request.monto_solicitado)
        if amount <= ZERO:
            raise ValidationError("El monto solicitado debe ser mayor a 0", "INVALID_REFUND_AMOUNT")

        user_id = caller.user_id
        with self.storage.transaction() as tx:
            in_flight = self.storage.select("refunds", lambda r: (
                r["user_id"] == user_id and r["estado"] in IN_FLIGHT_REFUND_STATES
            ))
            if in_flight:
                raise ConflictError("Ya tiene una solicitud de reembolso en curso", "REFUND_PENDING_EXISTS",
                                    {"refund_id": str(in_flight[0]["id"])})

            available = self.reconciler.reconcile(user_id).saldo_disponible
            if amount > available:
                raise ConflictError(
                    "Saldo disponible insuficiente para el reembolso",
                    "INSUFFICIENT_AVAILABLE_BALANCE",
                    {"available": str(available), "requested": str(amount)},
                )
            if request.auction_id is not None:
                self._check_auction_reference(user_id, request.auction_id, amount)

            refund_id = uuid4()
            refund = {
                "id": refund_id,
                "user_id": user_id,
                "monto_solicitado": amount,
                "tipo_reembolso": request.tipo_reembolso,
                "estado": RefundStatus.SOLICITADO,
                "motivo": request.motivo,
                "auction_id": request.auction_id,
                "created_at": datetime.now(timezone.utc),
                "fecha_respuesta": None,
                "fecha_procesamiento": None,
            }
            self.storage.refunds[refund_id] = refund
            balance = self.reconciler.reconcile(user_id)

            self.dispatcher.notify(
                tx, user_id, "reembolso_solicitado", "Solicitud de reembolso registrada",
                f"Su solicitud de reembolso por ${amount} fue registrada.",
                reference_type="refund", reference_id=refund_id,
            )
            self.dispatcher.notify_admins(
                tx, "reembolso_solicitado", "Nueva solicitud de reembolso",
                f"Un cliente solicitó un reembolso de ${amount} ({request.tipo_reembolso.value}).",
                reference_type="refund", reference_id=refund_id,
            )

        logger.info("refund_requested", refund_id=str(refund_id), user_id=str(user_id), monto=str(amount))
        return RefundResponse(refund=Refund(**refund), balance=balance,
                              message="Solicitud de reembolso creada exitosamente")

    def manage(self, caller: Caller, refund_id: UUID, request: ManageRefundRequest) -> RefundResponse:
        require_admin(caller)
        if request.estado not in MANAGE_DECISIONS:
            raise ValidationError("La decisión debe ser 'confirmado' o 'rechazado'", "INVALID_REFUND_DECISION")
        if request.estado == RefundStatus.RECHAZADO and not (request.motivo or "").strip():
            raise ValidationError("Debe indicar el motivo del rechazo", "REJECTION_REASON_REQUIRED")

        with self.storage.transaction() as tx:
            refund = self.storage.get("refunds", refund_id, "Reembolso")
            if refund["estado"] != RefundStatus.SOLICITADO:
                raise ConflictError("Solo se pueden gestionar solicitudes en estado 'solicitado'",
                                    "INVALID_REFUND_STATE", {"current": refund["estado"].value})
            refund["estado"] = ensure_transition(refund["estado"], request.estado)
            refund["fecha_respuesta"] = datetime.now(timezone.utc)
            if request.motivo:
                refund["motivo"] = request.motivo
            balance = self.reconciler.reconcile(refund["user_id"])

            if request.estado == RefundStatus.CONFIRMADO:
                tipo, titulo, mensaje = ("reembolso_confirmado", "Reembolso confirmado",
                                         f"Su reembolso de ${refund['monto_solicitado']} fue confirmado.")
            else:
                tipo, titulo, mensaje = ("reembolso_rechazado", "Reembolso rechazado",
                                         f"Su solicitud de reembolso fue rechazada. Motivo: {request.motivo}")
            self.dispatcher.notify(tx, refund["user_id"], tipo, titulo, mensaje,
                                   reference_type="refund", reference_id=refund_id)

        logger.info("refund_managed", refund_id=str(refund_id), estado=request.estado.value)
        return RefundResponse(refund=Refund(**refund), balance=balance,
                              message=f"Reembolso {request.estado.value}")

    def process(
        self,
        caller: Caller,
        refund_id: UUID,
        request: Optional[ProcessRefundRequest] = None,
        voucher: Optional[tuple[bytes, str]] = None,
    ) -> RefundResponse:
        require_admin(caller)
        request = request or ProcessRefundRequest()
        with self.storage.read():
            refund = self.storage.get("refunds", refund_id, "Reembolso")
            owner_id = refund["user_id"]

        voucher_url = upload_voucher(self.blob_store, voucher, owner_id)
        try:
            return self._process(caller, refund_id, request, voucher_url)
        except Exception:
            discard_voucher(self.blob_store, voucher_url)
            raise

    def _process(
        self, caller: Caller, refund_id: UUID, request: ProcessRefundRequest, voucher_url: Optional[str]
    ) -> RefundResponse:
        with self.storage.transaction() as tx:
            refund = self.storage.get("refunds", refund_id, "Reembolso")
            if refund["estado"] != RefundStatus.CONFIRMADO:
                raise ConflictError("Solo se pueden procesar reembolsos confirmados",
                                    "INVALID_REFUND_STATE", {"current": refund["estado"].value})

            user_id = refund["user_id"]
            amount = refund["monto_solicitado"]
            auction_id = self._resolve_auction(refund, request)

            if refund["tipo_reembolso"] == RefundType.DEVOLVER_DINERO:
                if len((request.numero_operacion or "").strip()) < 3:
                    raise ValidationError("Debe indicar un número de operación válido", "INVALID_OPERATION_NUMBER",
                                          {"field": "numero_operacion"})
                if auction_id is None or self.ledger.refundable_remainder(user_id, auction_id) < amount:
                    raise ConflictError(
                        "No se encontró una subasta con garantía suficiente para el reembolso",
                        "MISSING_AUCTION_REFERENCE_FOR_REFUND",
                    )
                direccion = MovementDirection.SALIDA
                concepto = "Reembolso de garantía (devolución de dinero)"
                if request.banco_destino:
                    concepto = f"{concepto} - {request.banco_destino}"
            else:
                direccion = MovementDirection.ENTRADA
                concepto = "Reembolso de garantía (mantener saldo)"

            refund["estado"] = ensure_transition(refund["estado"], RefundStatus.PROCESADO)
            refund["fecha_procesamiento"] = datetime.now(timezone.utc)
            movement = self.ledger.append(
                user_id,
                direccion,
                MovementKind.REEMBOLSO,
                amount,
                MovementStatus.VALIDADO,
                concepto=concepto,
                auction_id=auction_id,
                refund_id=refund_id,
                created_by=caller.user_id,
                tipo_pago=request.tipo_transferencia,
                numero_cuenta_origen=request.numero_cuenta_destino,
                numero_operacion=request.numero_operacion,
                voucher_url=voucher_url,
            )
            balance = self.reconciler.reconcile(user_id)

            self.dispatcher.notify(
                tx, user_id, "reembolso_procesado", "Reembolso procesado",
                f"Su reembolso de ${amount} fue procesado.",
                reference_type="refund", reference_id=refund_id,
            )

        logger.info(
            "refund_processed",
            refund_id=str(refund_id),
            tipo_reembolso=refund["tipo_reembolso"].value,
            movement_id=str(movement["id"]),
            auction_id=str(auction_id) if auction_id else None,
        )
        return RefundResponse(
            refund=Refund(**refund),
            movement=Movement(**movement),
            balance=balance,
            message="Reembolso procesado exitosamente",
        )

    def cancel(self, caller: Caller, refund_id: UUID) -> RefundResponse:
        with self.storage.transaction() as tx:
            refund = self.storage.get("refunds", refund_id, "Reembolso")
            require_owner_or_admin(caller, refund["user_id"])
            if refund["estado"] != RefundStatus.CONFIRMADO:
                raise ConflictError("Solo se pueden cancelar reembolsos confirmados",
                                    "INVALID_REFUND_STATE", {"current": refund["estado"].value})
            refund["estado"] = ensure_transition(refund["estado"], RefundStatus.CANCELADO)
            refund["fecha_respuesta"] = datetime.now(timezone.utc)
            balance = self.reconciler.reconcile(refund["user_id"])
            if caller.user_id != refund["user_id"]:
                self.dispatcher.notify(
                    tx, refund["user_id"], "reembolso_cancelado", "Reembolso cancelado",
                    "Su solicitud de reembolso fue cancelada.",
                    reference_type="refund", reference_id=refund_id,
                )

        logger.info("refund_cancelled", refund_id=str(refund_id), cancelled_by=str(caller.user_id))
        return RefundResponse(refund=Refund(**refund), balance=balance, message="Reembolso cancelado")

    def list_refunds(self, caller: Caller, user_id: Optional[UUID] = None) -> list[Refund]:
        if not caller.is_admin:
            if user_id is not None and user_id != caller.user_id:
                raise ForbiddenError("No tiene permisos sobre este recurso", "NOT_OWNER")
            user_id = caller.user_id
        with self.storage.read():
            rows = self.storage.select("refunds", lambda r: user_id is None or r["user_id"] == user_id)
        return sorted((Refund(**r) for r in rows), key=lambda r: r.created_at, reverse=True)
