from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

import structlog

from .collaborators import BlobStore, NotificationDispatcher, discard_voucher, upload_voucher
from .errors import (
    ConflictError,
    ForbiddenError,
    ValidationError,
    already_processed,
    invalid_auction_state,
    invalid_guarantee_amount,
    require_admin,
    require_client,
)
from .ledger import BalanceReconciler, MovementLedger, money
from .models import (
    ApprovePaymentRequest,
    Auction,
    AuctionStatus,
    Caller,
    Movement,
    MovementDirection,
    MovementKind,
    MovementStatus,
    PaymentResponse,
    RegisterPaymentRequest,
    RejectPaymentRequest,
)
from .storage import InMemoryStorage
from .transitions import ensure_transition
from .winners import active_winner


logger = structlog.get_logger(__name__)

PAYABLE_STATES = (AuctionStatus.PENDIENTE, AuctionStatus.EN_VALIDACION)


class PaymentWorkflow:
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

    def register(
        self,
        caller: Caller,
        request: RegisterPaymentRequest,
        voucher: Optional[tuple[bytes, str]] = None,
    ) -> PaymentResponse:
        require_client(caller)
        if request.fecha_pago > datetime.now(timezone.utc):
            raise ValidationError("La fecha de pago no puede ser futura", "FUTURE_PAYMENT_DATE",
                                  {"field": "fecha_pago"})

        voucher_url = upload_voucher(self.blob_store, voucher, caller.user_id)
        try:
            return self._register(caller, request, voucher_url)
        except Exception:
            discard_voucher(self.blob_store, voucher_url)
            raise

    def _register(self, caller: Caller, request: RegisterPaymentRequest, voucher_url: Optional[str]) -> PaymentResponse:
        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", request.auction_id, "Subasta")
            if auction["estado"] not in PAYABLE_STATES:
                raise invalid_auction_state(AuctionStatus.PENDIENTE.value, auction["estado"].value)

            guarantee = active_winner(self.storage, request.auction_id)
            if guarantee is None or guarantee["user_id"] != caller.user_id:
                raise ForbiddenError("No es el ganador actual de esta subasta", "NOT_CURRENT_WINNER")

            expected = guarantee["monto_garantia"]
            if money(request.monto) != expected:
                raise invalid_guarantee_amount(expected, money(request.monto))

            if request.numero_operacion and self.ledger.find_by_operation(caller.user_id, request.numero_operacion):
                raise ConflictError(
                    "El número de operación ya fue registrado",
                    "DUPLICATE_OPERATION_NUMBER",
                    {"numero_operacion": request.numero_operacion},
                )
            if self.ledger.pending_payments(request.auction_id):
                raise ConflictError("Ya existe un pago pendiente de validación para esta subasta",
                                    "PAYMENT_PENDING_EXISTS")

            movement = self.ledger.append(
                caller.user_id,
                MovementDirection.ENTRADA,
                MovementKind.PAGO_GARANTIA,
                request.monto,
                MovementStatus.PENDIENTE,
                concepto=request.concepto,
                auction_id=request.auction_id,
                guarantee_id=guarantee["id"],
                created_by=caller.user_id,
                moneda=request.moneda,
                tipo_pago=request.tipo_pago,
                numero_cuenta_origen=request.numero_cuenta_origen,
                numero_operacion=request.numero_operacion,
                voucher_url=voucher_url,
                fecha_pago=request.fecha_pago,
            )
            auction["estado"] = ensure_transition(auction["estado"], AuctionStatus.EN_VALIDACION)
            auction["updated_at"] = datetime.now(timezone.utc)
            balance = self.reconciler.balance(caller.user_id)

            self.dispatcher.notify(
                tx, caller.user_id, "pago_registrado", "Pago registrado",
                f"Su pago de ${movement['monto']} fue registrado y está en validación.",
                reference_type="movement", reference_id=movement["id"],
            )
            self.dispatcher.notify_admins(
                tx, "pago_registrado", "Nuevo pago de garantía",
                f"Se registró un pago de ${movement['monto']} pendiente de validación.",
                reference_type="movement", reference_id=movement["id"],
            )

        logger.info(
            "payment_movement_registered",
            movement_id=str(movement["id"]),
            auction_id=str(request.auction_id),
            user_id=str(caller.user_id),
            monto=str(movement["monto"]),
        )
        return PaymentResponse(
            movement=Movement(**movement),
            auction=Auction(**auction),
            balance=balance,
            message="Pago registrado exitosamente. Pendiente de validación.",
        )

    def _pending_payment(self, movement_id: UUID) -> tuple[dict, dict]:
        movement = self.storage.get("movements", movement_id, "Movimiento")
        if movement["tipo"] != MovementKind.PAGO_GARANTIA:
            raise ConflictError("El movimiento no es un pago de garantía", "INVALID_MOVEMENT_TYPE")
        if movement["estado"] != MovementStatus.PENDIENTE:
            raise already_processed()
        auction = self.storage.get("auctions", movement["auction_id"], "Subasta")
        if auction["estado"] != AuctionStatus.EN_VALIDACION:
            raise invalid_auction_state(AuctionStatus.EN_VALIDACION.value, auction["estado"].value)
        return movement, auction

    def approve(
        self, caller: Caller, movement_id: UUID, request: Optional[ApprovePaymentRequest] = None
    ) -> PaymentResponse:
        require_admin(caller)
        request = request or ApprovePaymentRequest()
        with self.storage.transaction() as tx:
            movement, auction = self._pending_payment(movement_id)
            self.ledger.resolve(movement, MovementStatus.VALIDADO, comentarios=request.comentarios)

            now = datetime.now(timezone.utc)
            auction["estado"] = ensure_transition(auction["estado"], AuctionStatus.FINALIZADA)
            auction["finished_at"] = now
            auction["updated_at"] = now
            balance = self.reconciler.reconcile(movement["user_id"])

            self.dispatcher.notify(
                tx, movement["user_id"], "pago_validado", "Pago validado",
                f"Su pago de ${movement['monto']} fue validado.",
                reference_type="movement", reference_id=movement_id,
            )

        logger.info(
            "payment_movement_approved",
            movement_id=str(movement_id),
            admin_id=str(caller.user_id),
            saldo_total=str(balance.saldo_total),
        )
        return PaymentResponse(
            movement=Movement(**movement),
            auction=Auction(**auction),
            balance=balance,
            message="Pago aprobado exitosamente",
        )

    def reject(self, caller: Caller, movement_id: UUID, request: RejectPaymentRequest) -> PaymentResponse:
        require_admin(caller)
        reasons = [r.value for r in request.motivos]
        if request.otros_motivos:
            reasons.append(request.otros_motivos)
        motivo = "; ".join(reasons)

        with self.storage.transaction() as tx:
            movement, auction = self._pending_payment(movement_id)
            self.ledger.resolve(movement, MovementStatus.RECHAZADO, motivo_rechazo=motivo,
                                comentarios=request.comentarios)
            auction["estado"] = ensure_transition(auction["estado"], AuctionStatus.PENDIENTE)
            auction["updated_at"] = datetime.now(timezone.utc)
            balance = self.reconciler.reconcile(movement["user_id"])

            self.dispatcher.notify(
                tx, movement["user_id"], "pago_rechazado", "Pago rechazado",
                f"Su pago fue rechazado. Motivo: {motivo}",
                reference_type="movement", reference_id=movement_id,
            )

        logger.info("payment_movement_rejected", movement_id=str(movement_id), motivo=motivo)
        return PaymentResponse(
            movement=Movement(**movement),
            auction=Auction(**auction),
            balance=balance,
            message="Pago rechazado",
        )
