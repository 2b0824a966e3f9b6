from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

import structlog

from .auctions import AuctionService
from .billing import BillingService
from .collaborators import BlobStore, InMemoryBlobStore, LoggingNotifier, NotificationDispatcher, Notifier
from .config import Settings, get_settings
from .errors import ConflictError, ForbiddenError, require_admin, require_owner_or_admin
from .jobs import AuctionJobs, JobRunner
from .ledger import ZERO, BalanceReconciler, BalanceService, MovementLedger
from .models import Caller, CreateUserRequest, MarkAllReadResult, Notification, NotificationStatus, User
from .payments import PaymentWorkflow
from .refunds import RefundWorkflow
from .storage import InMemoryStorage
from .winners import WinnerWorkflow


logger = structlog.get_logger(__name__)


class GarantiasService:
    """
    Single entry point wiring every workflow to one storage, one ledger and
    one notification dispatcher.

    Workflows are exposed as attributes (``payments``, ``winners``,
    ``auctions``, ``refunds``, ``billing``, ``balances``, ``jobs``); the
    handful of user operations live here.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        blob_store: Optional[BlobStore] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.blob_store = blob_store or InMemoryBlobStore()
        self.notifier = notifier or LoggingNotifier()

        self.dispatcher = NotificationDispatcher(self.storage, self.notifier, self.settings)
        self.ledger = MovementLedger(self.storage, self.settings)
        self.reconciler = BalanceReconciler(self.storage, self.ledger)

        core = (self.storage, self.ledger, self.reconciler, self.dispatcher)
        self.balances = BalanceService(*core)
        self.winners = WinnerWorkflow(*core, self.settings)
        self.auctions = AuctionService(*core, self.settings)
        self.payments = PaymentWorkflow(*core, self.blob_store)
        self.refunds = RefundWorkflow(*core, self.blob_store)
        self.billing = BillingService(*core, self.settings)
        self.auction_jobs = AuctionJobs(self.storage, self.dispatcher, self.settings)
        self.jobs = JobRunner(self.auction_jobs)

    def create_user(self, caller: Caller, request: CreateUserRequest) -> User:
        require_admin(caller)
        with self.storage.transaction():
            if request.document_number and self.storage.select(
                "users", lambda u: u["document_number"] == request.document_number
            ):
                raise ConflictError("Ya existe un usuario con este documento", "DUPLICATE_DOCUMENT")
            user_id = uuid4()
            row = {
                "id": user_id,
                **request.model_dump(),
                "saldo_total": ZERO,
                "saldo_retenido": ZERO,
                "created_at": datetime.now(timezone.utc),
            }
            self.storage.users[user_id] = row
        logger.info("user_created", user_id=str(user_id), user_type=request.user_type.value)
        return User(**row)

    def get_user(self, caller: Caller, user_id: UUID) -> User:
        require_owner_or_admin(caller, user_id)
        with self.storage.read():
            return User(**self.storage.get("users", user_id, "Usuario"))

    def list_notifications(
        self, caller: Caller, user_id: Optional[UUID] = None, estado: Optional[NotificationStatus] = None
    ) -> list[Notification]:
        user_id = user_id or caller.user_id
        require_owner_or_admin(caller, user_id)
        with self.storage.read():
            rows = self.storage.select(
                "notifications", lambda n: n["user_id"] == user_id and (estado is None or n["estado"] == estado)
            )
        return sorted((Notification(**n) for n in rows), key=lambda n: n.created_at, reverse=True)

    def mark_notification_read(self, caller: Caller, notification_id: UUID) -> Notification:
        with self.storage.transaction():
            row = self.storage.get("notifications", notification_id, "Notificación")
            if row["user_id"] != caller.user_id:
                raise ForbiddenError("No tiene permisos para modificar esta notificación", "NOT_OWNER")
            if row["estado"] != NotificationStatus.VISTA:
                row["estado"] = NotificationStatus.VISTA
                row["fecha_vista"] = datetime.now(timezone.utc)
            return Notification(**row)

    def mark_all_notifications_read(self, caller: Caller) -> MarkAllReadResult:
        now = datetime.now(timezone.utc)
        with self.storage.transaction():
            unread = self.storage.select("notifications", lambda n: (
                n["user_id"] == caller.user_id and n["estado"] == NotificationStatus.PENDIENTE
            ))
            for row in unread:
                row["estado"] = NotificationStatus.VISTA
                row["fecha_vista"] = now
        logger.info("notifications_marked_read", user_id=str(caller.user_id), updated=len(unread))
        return MarkAllReadResult(updated=len(unread))

    def shutdown(self) -> None:
        self.dispatcher.shutdown()
