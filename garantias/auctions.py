"""
Auction lifecycle: catalogue operations on auctions and their assets, manual
status changes, payment deadline extensions and competition results.
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .collaborators import NotificationDispatcher
from .config import Settings, get_settings
from .errors import (
    ConflictError,
    ForbiddenError,
    ValidationError,
    invalid_auction_state,
    require_admin,
)
from .ledger import BalanceReconciler, MovementLedger, ZERO, money
from .models import (
    Asset,
    Auction,
    AuctionDetail,
    AuctionStatus,
    Caller,
    CompetitionResult,
    CompetitionResultRequest,
    CompetitionResultResponse,
    CreateAuctionRequest,
    ExtendDeadlineRequest,
    Guarantee,
    GuaranteeStatus,
    Movement,
    MovementDirection,
    MovementKind,
    MovementStatus,
    UpdateAuctionStatusRequest,
)
from .storage import InMemoryStorage
from .transitions import ensure_transition
from .winners import active_winner, current_winner, expired_auctions


logger = structlog.get_logger(__name__)

# Every other auction state is reached only through its workflow
MANUAL_AUCTION_STATES = frozenset({AuctionStatus.CANCELADA})

_RESULT_STATES = {
    CompetitionResult.GANADA: AuctionStatus.GANADA,
    CompetitionResult.PERDIDA: AuctionStatus.PERDIDA,
    CompetitionResult.PENALIZADA: AuctionStatus.PENALIZADA,
}


class AuctionService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: MovementLedger,
        reconciler: BalanceReconciler,
        dispatcher: NotificationDispatcher,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.ledger = ledger
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    def create_auction(self, caller: Caller, request: CreateAuctionRequest) -> AuctionDetail:
        require_admin(caller)
        placa = request.asset.placa.strip().upper()
        with self.storage.transaction():
            if self.storage.select("assets", lambda a: a["placa"] == placa):
                raise ConflictError(f"Ya existe un vehículo con placa {placa}", "DUPLICATE_PLATE")

            now = datetime.now(timezone.utc)
            asset_id, auction_id = uuid4(), uuid4()
            asset = {"id": asset_id, **request.asset.model_dump(), "placa": placa}
            auction = {
                "id": auction_id,
                "asset_id": asset_id,
                "estado": AuctionStatus.ACTIVA,
                "winning_guarantee_id": None,
                "created_at": now,
                "updated_at": now,
                "finished_at": None,
                "fecha_resultado": None,
            }
            self.storage.assets[asset_id] = asset
            self.storage.auctions[auction_id] = auction

        logger.info("auction_created", auction_id=str(auction_id), placa=placa)
        return AuctionDetail(auction=Auction(**auction), asset=Asset(**asset), guarantees=[])

    def _detail(self, auction: dict) -> AuctionDetail:
        guarantees = sorted(
            self.storage.select("guarantees", lambda g: g["auction_id"] == auction["id"]),
            key=lambda g: g["created_at"],
        )
        winner = active_winner(self.storage, auction["id"])
        return AuctionDetail(
            auction=Auction(**auction),
            asset=Asset(**self.storage.get("assets", auction["asset_id"], "Vehículo")),
            guarantees=[Guarantee(**g) for g in guarantees],
            fecha_limite_pago=winner["fecha_limite_pago"] if winner else None,
        )

    def _participants(self, auction_id: UUID) -> set:
        return {g["user_id"] for g in self.storage.select("guarantees", lambda g: g["auction_id"] == auction_id)}

    def get_auction(self, caller: Caller, auction_id: UUID) -> AuctionDetail:
        with self.storage.read():
            auction = self.storage.get("auctions", auction_id, "Subasta")
            if not caller.is_admin and caller.user_id not in self._participants(auction_id):
                raise ForbiddenError("No tiene permisos sobre esta subasta", "NOT_OWNER")
            return self._detail(auction)

    def list_auctions(
        self, caller: Caller, estado: Optional[list[AuctionStatus]] = None
    ) -> list[AuctionDetail]:
        with self.storage.read():
            auctions = [
                a for a in self.storage.auctions.values()
                if (not estado or a["estado"] in estado)
                and (caller.is_admin or caller.user_id in self._participants(a["id"]))
            ]
            auctions.sort(key=lambda a: a["created_at"], reverse=True)
            return [self._detail(a) for a in auctions]

    def list_expired_auctions(self, caller: Caller, now: Optional[datetime] = None) -> list[AuctionDetail]:
        """Pending auctions past their payment deadline, awaiting the sweep."""
        require_admin(caller)
        now = now or datetime.now(timezone.utc)
        with self.storage.read():
            return [self._detail(a) for a in expired_auctions(self.storage, now)]

    def update_status(self, caller: Caller, auction_id: UUID, request: UpdateAuctionStatusRequest) -> Auction:
        require_admin(caller)
        if request.estado not in MANUAL_AUCTION_STATES:
            raise ConflictError(
                f"El estado '{request.estado.value}' solo se alcanza mediante su flujo de negocio",
                "WORKFLOW_MANAGED_STATE",
            )
        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", auction_id, "Subasta")
            previous_state = auction["estado"]
            auction["estado"] = ensure_transition(previous_state, request.estado)
            auction["updated_at"] = datetime.now(timezone.utc)

            winner = active_winner(self.storage, auction_id)
            if winner is not None:
                winner["estado"] = ensure_transition(winner["estado"], GuaranteeStatus.PERDEDORA)
                self.dispatcher.notify(
                    tx, winner["user_id"], "subasta_cancelada", "Subasta cancelada",
                    request.motivo or "La subasta fue cancelada por el administrador.",
                    reference_type="auction", reference_id=auction_id,
                )

        logger.info(
            "auction_status_updated",
            auction_id=str(auction_id),
            from_state=previous_state.value,
            to_state=request.estado.value,
        )
        return Auction(**auction)

    def extend_deadline(self, caller: Caller, auction_id: UUID, request: ExtendDeadlineRequest) -> AuctionDetail:
        require_admin(caller)
        if request.fecha_limite_pago <= datetime.now(timezone.utc):
            raise ValidationError("La nueva fecha límite debe ser futura", "INVALID_DEADLINE")

        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", auction_id, "Subasta")
            if auction["estado"] != AuctionStatus.PENDIENTE:
                raise invalid_auction_state(AuctionStatus.PENDIENTE.value, auction["estado"].value)
            winner = active_winner(self.storage, auction_id)
            if winner is None:
                raise ConflictError("La subasta no tiene un ganador asignado", "NO_CURRENT_WINNER")

            winner["fecha_limite_pago"] = request.fecha_limite_pago
            auction["updated_at"] = datetime.now(timezone.utc)
            self.dispatcher.notify(
                tx, winner["user_id"], "plazo_extendido", "Plazo de pago extendido",
                f"Nueva fecha límite de pago: {request.fecha_limite_pago.isoformat()}",
                reference_type="auction", reference_id=auction_id,
            )
            detail = self._detail(auction)

        logger.info("auction_deadline_extended", auction_id=str(auction_id),
                    fecha_limite_pago=request.fecha_limite_pago.isoformat())
        return detail

    def delete_auction(self, caller: Caller, auction_id: UUID) -> None:
        require_admin(caller)
        with self.storage.transaction():
            auction = self.storage.get("auctions", auction_id, "Subasta")
            if self.storage.select("movements", lambda m: m["auction_id"] == auction_id):
                raise ConflictError("No se puede eliminar una subasta con pagos registrados", "HAS_PAYMENTS")
            if self.storage.select("guarantees", lambda g: g["auction_id"] == auction_id):
                raise ConflictError("No se puede eliminar una subasta con ofertas", "HAS_OFFERS")
            del self.storage.auctions[auction_id]
            self.storage.assets.pop(auction["asset_id"], None)
        logger.info("auction_deleted", auction_id=str(auction_id))

    def record_competition_result(
        self, caller: Caller, auction_id: UUID, request: CompetitionResultRequest
    ) -> CompetitionResultResponse:
        """
        Close a ``finalizada`` auction with the outcome of the external
        competition.

        ``ganada`` keeps the guarantee retained until billing, ``perdida``
        credits it back through an automatic refund movement, ``penalizada``
        forfeits a share of it and leaves the rest available.
        """
        require_admin(caller)
        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", auction_id, "Subasta")
            if auction["estado"] != AuctionStatus.FINALIZADA:
                raise invalid_auction_state(AuctionStatus.FINALIZADA.value, auction["estado"].value)
            winner = current_winner(self.storage, auction)
            if winner is None:
                raise ConflictError("La subasta no tiene un ganador asignado", "NO_CURRENT_WINNER")

            user_id = winner["user_id"]
            validated = self.ledger.validated_guarantee_total(user_id, auction_id)
            if validated <= ZERO:
                raise ConflictError("La subasta no tiene una garantía validada", "NO_VALIDATED_GUARANTEE")

            now = datetime.now(timezone.utc)
            auction["estado"] = ensure_transition(auction["estado"], _RESULT_STATES[request.resultado])
            auction["fecha_resultado"] = now
            auction["updated_at"] = now

            movements = []
            if request.resultado == CompetitionResult.GANADA:
                winner["estado"] = ensure_transition(winner["estado"], GuaranteeStatus.GANADORA)
                titulo, mensaje, tipo = (
                    "Competencia ganada",
                    "Su garantía se aplicará al completar la facturación.",
                    "competencia_ganada",
                )
            elif request.resultado == CompetitionResult.PERDIDA:
                winner["estado"] = ensure_transition(winner["estado"], GuaranteeStatus.PERDEDORA)
                movements.append(self.ledger.append(
                    user_id,
                    MovementDirection.ENTRADA,
                    MovementKind.REEMBOLSO,
                    validated,
                    MovementStatus.VALIDADO,
                    concepto="Reembolso automático por competencia perdida",
                    auction_id=auction_id,
                    guarantee_id=winner["id"],
                    created_by=caller.user_id,
                ))
                titulo, mensaje, tipo = (
                    "Competencia perdida",
                    f"Su garantía de ${validated} está disponible para reembolso.",
                    "competencia_perdida",
                )
            else:
                winner["estado"] = ensure_transition(winner["estado"], GuaranteeStatus.PERDEDORA)
                penalty = money(validated * self.settings.penalty_percentage)
                movements.append(self.ledger.append(
                    user_id,
                    MovementDirection.SALIDA,
                    MovementKind.PENALIDAD,
                    penalty,
                    MovementStatus.VALIDADO,
                    concepto="Penalidad por incumplimiento en la competencia",
                    auction_id=auction_id,
                    guarantee_id=winner["id"],
                    created_by=caller.user_id,
                ))
                titulo, mensaje, tipo = (
                    "Penalidad aplicada",
                    f"Se aplicó una penalidad de ${penalty}. "
                    f"El saldo restante de ${money(validated - penalty)} está disponible para reembolso.",
                    "penalidad_aplicada",
                )

            balance = self.reconciler.reconcile(user_id)
            self.dispatcher.notify(tx, user_id, tipo, titulo, mensaje,
                                   reference_type="auction", reference_id=auction_id)

        logger.info(
            "competition_result_recorded",
            auction_id=str(auction_id),
            resultado=request.resultado.value,
            user_id=str(user_id),
        )
        return CompetitionResultResponse(
            auction=Auction(**auction),
            resultado=request.resultado,
            movements=[Movement(**m) for m in movements],
            balance=balance,
            observaciones=request.observaciones,
        )
