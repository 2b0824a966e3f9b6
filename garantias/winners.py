from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .collaborators import NotificationDispatcher
from .config import Settings, get_settings
from .errors import ConflictError, NotFoundError, ValidationError, invalid_auction_state, require_admin
from .ledger import BalanceReconciler, MovementLedger, guarantee_amount
from .models import (
    Auction,
    AuctionStatus,
    Caller,
    CreateWinnerRequest,
    Guarantee,
    GuaranteeStatus,
    MovementStatus,
    ReassignWinnerRequest,
    UserType,
    WinnerResponse,
)
from .storage import InMemoryStorage
from .transitions import ensure_transition


logger = structlog.get_logger(__name__)

REASSIGNABLE_STATES = (AuctionStatus.PENDIENTE, AuctionStatus.EN_VALIDACION, AuctionStatus.VENCIDA)
REASSIGNMENT_REJECTION = "Ganador reasignado"


def current_winner(storage: InMemoryStorage, auction: dict) -> Optional[dict]:
    """The guarantee the auction currently points at, whatever its state."""
    guarantee_id = auction.get("winning_guarantee_id")
    if guarantee_id is None:
        return None
    return storage.guarantees.get(guarantee_id)


def active_winner(storage: InMemoryStorage, auction_id: UUID) -> Optional[dict]:
    matches = storage.select("guarantees", lambda g: (
        g["auction_id"] == auction_id
        and g["posicion_ranking"] == 1
        and g["estado"] == GuaranteeStatus.ACTIVA
    ))
    return matches[0] if matches else None


def expired_auctions(storage: InMemoryStorage, now: datetime) -> list[dict]:
    """Pending auctions whose active winner let the payment deadline pass."""
    expired = []
    for auction in storage.select("auctions", lambda a: a["estado"] == AuctionStatus.PENDIENTE):
        winner = active_winner(storage, auction["id"])
        deadline = winner["fecha_limite_pago"] if winner else None
        if deadline is not None and deadline < now:
            expired.append(auction)
    return expired


def require_client_user(storage: InMemoryStorage, user_id: UUID) -> dict:
    user = storage.users.get(user_id)
    if user is None or user["user_type"] != UserType.CLIENT:
        raise NotFoundError("Cliente", "CLIENT_NOT_FOUND")
    return user


class WinnerWorkflow:
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

    def _new_guarantee(self, auction_id: UUID, user_id: UUID, offer, deadline=None, reason=None) -> dict:
        guarantee_id = uuid4()
        row = {
            "id": guarantee_id,
            "auction_id": auction_id,
            "user_id": user_id,
            "monto_oferta": offer,
            "monto_garantia": guarantee_amount(offer, self.settings.guarantee_percentage),
            "posicion_ranking": 1,
            "estado": GuaranteeStatus.ACTIVA,
            "fecha_limite_pago": deadline,
            "motivo_reasignacion": reason,
            "created_at": datetime.now(timezone.utc),
        }
        self.storage.guarantees[guarantee_id] = row
        return row

    def create_winner(self, caller: Caller, auction_id: UUID, request: CreateWinnerRequest) -> WinnerResponse:
        require_admin(caller)
        now = datetime.now(timezone.utc)
        if request.fecha_limite_pago is not None and request.fecha_limite_pago <= now:
            raise ValidationError("La fecha límite de pago debe ser futura", "INVALID_DEADLINE")

        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", auction_id, "Subasta")
            if auction["estado"] != AuctionStatus.ACTIVA:
                raise invalid_auction_state(AuctionStatus.ACTIVA.value, auction["estado"].value)
            require_client_user(self.storage, request.user_id)

            guarantee = self._new_guarantee(auction_id, request.user_id, request.monto_oferta,
                                            deadline=request.fecha_limite_pago)
            auction["estado"] = ensure_transition(auction["estado"], AuctionStatus.PENDIENTE)
            auction["winning_guarantee_id"] = guarantee["id"]
            auction["updated_at"] = now

            self.dispatcher.notify(
                tx, request.user_id, "ganador_asignado", "Ganaste la subasta",
                f"Debe depositar una garantía de ${guarantee['monto_garantia']} para continuar.",
                reference_type="auction", reference_id=auction_id,
            )

        logger.info(
            "winner_assigned",
            auction_id=str(auction_id),
            user_id=str(request.user_id),
            monto_garantia=str(guarantee["monto_garantia"]),
        )
        return WinnerResponse(
            auction=Auction(**auction),
            guarantee=Guarantee(**guarantee),
            message="Ganador asignado exitosamente",
        )

    def reassign_winner(self, caller: Caller, auction_id: UUID, request: ReassignWinnerRequest) -> WinnerResponse:
        require_admin(caller)
        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", auction_id, "Subasta")
            if auction["estado"] not in REASSIGNABLE_STATES:
                raise invalid_auction_state(
                    "|".join(s.value for s in REASSIGNABLE_STATES), auction["estado"].value
                )

            previous = current_winner(self.storage, auction)
            if previous is None:
                raise ConflictError("La subasta no tiene un ganador asignado", "NO_CURRENT_WINNER")
            if previous["user_id"] == request.user_id:
                raise ConflictError("El nuevo ganador debe ser distinto al actual", "SAME_USER")
            require_client_user(self.storage, request.user_id)

            if previous["estado"] == GuaranteeStatus.ACTIVA:
                previous["estado"] = ensure_transition(previous["estado"], GuaranteeStatus.PERDEDORA)
            for movement in self.ledger.pending_payments(auction_id, previous["id"]):
                self.ledger.resolve(movement, MovementStatus.RECHAZADO, motivo_rechazo=REASSIGNMENT_REJECTION)

            guarantee = self._new_guarantee(auction_id, request.user_id, request.monto_oferta,
                                            reason=request.motivo_reasignacion)
            auction["estado"] = ensure_transition(auction["estado"], AuctionStatus.PENDIENTE)
            auction["winning_guarantee_id"] = guarantee["id"]
            auction["updated_at"] = datetime.now(timezone.utc)

            self.reconciler.reconcile(previous["user_id"])
            self.dispatcher.notify(
                tx, previous["user_id"], "ganador_reasignado", "Subasta reasignada",
                "La subasta fue reasignada a otro postor.",
                reference_type="auction", reference_id=auction_id,
            )
            self.dispatcher.notify(
                tx, request.user_id, "ganador_asignado", "Ganaste la subasta",
                f"Debe depositar una garantía de ${guarantee['monto_garantia']} para continuar.",
                reference_type="auction", reference_id=auction_id,
            )

        logger.info(
            "winner_reassigned",
            auction_id=str(auction_id),
            previous_user_id=str(previous["user_id"]),
            user_id=str(request.user_id),
        )
        return WinnerResponse(
            auction=Auction(**auction),
            guarantee=Guarantee(**guarantee),
            previous_guarantee=Guarantee(**previous),
            message="Ganador reasignado exitosamente",
        )
