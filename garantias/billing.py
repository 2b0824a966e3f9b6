from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .collaborators import NotificationDispatcher
from .config import Settings, get_settings
from .errors import ConflictError, ForbiddenError, require_client
from .ledger import ZERO, BalanceReconciler, MovementLedger, guarantee_amount
from .models import (
    Auction,
    AuctionStatus,
    Billing,
    BillingResponse,
    Caller,
    CreateBillingRequest,
)
from .storage import InMemoryStorage
from .transitions import ensure_transition
from .winners import current_winner


logger = structlog.get_logger(__name__)


class BillingService:
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

    def create_billing(self, caller: Caller, request: CreateBillingRequest) -> BillingResponse:
        """
        Invoice a won auction and apply its guarantee.

        The retained cache is decremented by the billed amount rather than
        recomputed, so the release is scoped to this auction.
        """
        require_client(caller)
        user_id = caller.user_id
        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", request.auction_id, "Subasta")
            if auction["estado"] != AuctionStatus.GANADA:
                raise ConflictError(
                    "Solo se pueden facturar subastas ganadas",
                    "AUCTION_NOT_WON",
                    {"current": auction["estado"].value},
                )
            winner = current_winner(self.storage, auction)
            if winner is None or winner["user_id"] != user_id:
                raise ForbiddenError("Solo el ganador puede facturar esta subasta", "NOT_WINNER")

            if self.storage.select("billings", lambda b: b["auction_id"] == request.auction_id):
                raise ConflictError("La subasta ya fue facturada", "BILLING_ALREADY_EXISTS")
            if self.storage.select("billings", lambda b: (
                b["user_id"] == user_id and b["billing_document_number"] == request.billing_document_number
            )):
                raise ConflictError(
                    "Ya existe una facturación con este número de documento",
                    "DUPLICATE_BILLING_DOCUMENT",
                    {"billing_document_number": request.billing_document_number},
                )

            amount = self.ledger.validated_guarantee_total(user_id, request.auction_id)
            if amount <= ZERO:
                amount = guarantee_amount(winner["monto_oferta"], self.settings.guarantee_percentage)

            asset = self.storage.get("assets", auction["asset_id"], "Vehículo")
            billing_id = uuid4()
            billing = {
                "id": billing_id,
                "user_id": user_id,
                "auction_id": request.auction_id,
                "monto": amount,
                "moneda": self.settings.currency,
                "billing_document_type": request.billing_document_type,
                "billing_document_number": request.billing_document_number,
                "billing_name": request.billing_name,
                "concepto": f"Compra vehículo {asset['marca']} {asset['modelo']} {asset['anio']} - {asset['placa']}",
                "created_at": datetime.now(timezone.utc),
            }
            self.storage.billings[billing_id] = billing

            auction["estado"] = ensure_transition(auction["estado"], AuctionStatus.FACTURADA)
            auction["updated_at"] = datetime.now(timezone.utc)
            self.reconciler.release_auction_retention(user_id, amount)
            balance = self.reconciler.balance(user_id)

            self.dispatcher.notify(
                tx, user_id, "facturacion_completada", "Facturación completada",
                f"Se generó la facturación por ${amount} a nombre de {request.billing_name}.",
                reference_type="billing", reference_id=billing_id,
            )
            self.dispatcher.notify_admins(
                tx, "billing_generado", "Nueva facturación",
                f"Se generó la facturación de la subasta {asset['placa']} por ${amount}.",
                reference_type="billing", reference_id=billing_id,
            )

        logger.info("billing_created", billing_id=str(billing_id), auction_id=str(request.auction_id),
                    user_id=str(user_id), monto=str(amount))
        return BillingResponse(billing=Billing(**billing), auction=Auction(**auction), balance=balance)

    def list_billings(self, caller: Caller, user_id: Optional[UUID] = None) -> list[Billing]:
        if not caller.is_admin:
            user_id = caller.user_id
        with self.storage.read():
            rows = self.storage.select("billings", lambda b: user_id is None or b["user_id"] == user_id)
        return sorted((Billing(**b) for b in rows), key=lambda b: b.created_at, reverse=True)
