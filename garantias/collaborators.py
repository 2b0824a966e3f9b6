"""
External collaborators: blob storage for vouchers and outbound notifications.

Uploads are performed before a transaction opens; notifications are recorded
inside the transaction and delivered after commit, best-effort.
"""
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional, Protocol
from uuid import UUID, uuid4

import structlog

from .config import Settings, get_settings
from .errors import ConflictError
from .models import DeliveryStatus, NotificationStatus, UserType
from .storage import InMemoryStorage, Transaction


logger = structlog.get_logger(__name__)


class BlobStore(Protocol):
    def store(self, data: bytes, name: str, owner_id: UUID) -> str: ...

    def delete(self, blob_id: str) -> None: ...


class Notifier(Protocol):
    def send(self, user_id: UUID, subject: str, body: str) -> None: ...


class InMemoryBlobStore:
    def __init__(self):
        self.blobs: dict[str, dict] = {}

    def store(self, data: bytes, name: str, owner_id: UUID) -> str:
        url = f"memory://vouchers/{owner_id}/{uuid4().hex}-{name}"
        self.blobs[url] = {"data": data, "name": name, "owner_id": owner_id}
        return url

    def delete(self, blob_id: str) -> None:
        self.blobs.pop(blob_id, None)


class InMemoryNotifier:
    def __init__(self):
        self.sent: list[dict] = []

    def send(self, user_id: UUID, subject: str, body: str) -> None:
        self.sent.append({"user_id": user_id, "subject": subject, "body": body})


class LoggingNotifier:
    def send(self, user_id: UUID, subject: str, body: str) -> None:
        logger.info("notification_sent", user_id=str(user_id), subject=subject)


def upload_voucher(blob_store: BlobStore, voucher: Optional[tuple[bytes, str]], owner_id: UUID) -> Optional[str]:
    """Upload ``(data, filename)`` outside any transaction; returns the blob URL."""
    if not voucher:
        return None
    data, filename = voucher
    try:
        url = blob_store.store(data, filename or "voucher", owner_id)
    except Exception as e:
        logger.error("voucher_upload_failed", owner_id=str(owner_id), error=str(e))
        raise ConflictError("Error al procesar el archivo del comprobante", "UPLOAD_ERROR") from e
    logger.info("voucher_uploaded", owner_id=str(owner_id), url=url)
    return url


def discard_voucher(blob_store: BlobStore, url: Optional[str]) -> None:
    if not url:
        return
    try:
        blob_store.delete(url)
    except Exception as e:
        logger.warning("voucher_cleanup_failed", url=url, error=str(e))


class NotificationDispatcher:
    def __init__(
        self,
        storage: InMemoryStorage,
        notifier: Notifier,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.notifier = notifier
        settings = settings or get_settings()
        self._executor = (
            ThreadPoolExecutor(max_workers=settings.notification_workers, thread_name_prefix="notify")
            if settings.notifications_async
            else None
        )

    def notify(
        self,
        tx: Transaction,
        user_id: UUID,
        tipo: str,
        titulo: str,
        mensaje: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[UUID] = None,
    ) -> UUID:
        notification_id = uuid4()
        self.storage.notifications[notification_id] = {
            "id": notification_id,
            "user_id": user_id,
            "tipo": tipo,
            "titulo": titulo,
            "mensaje": mensaje,
            "reference_type": reference_type,
            "reference_id": reference_id,
            "email_status": DeliveryStatus.PENDIENTE,
            "email_error": None,
            "estado": NotificationStatus.PENDIENTE,
            "fecha_vista": None,
            "created_at": datetime.now(timezone.utc),
            "sent_at": None,
        }
        tx.after_commit(self._dispatch, notification_id, user_id, titulo, mensaje)
        return notification_id

    def notify_admins(self, tx: Transaction, tipo: str, titulo: str, mensaje: str, **refs) -> None:
        admins = self.storage.select("users", lambda u: u["user_type"] == UserType.ADMIN)
        for admin in admins:
            self.notify(tx, admin["id"], tipo, titulo, mensaje, **refs)

    def _dispatch(self, notification_id: UUID, user_id: UUID, subject: str, body: str) -> None:
        if self._executor is None:
            self._deliver(notification_id, user_id, subject, body)
        else:
            self._executor.submit(self._deliver, notification_id, user_id, subject, body)

    def _deliver(self, notification_id: UUID, user_id: UUID, subject: str, body: str) -> None:
        try:
            self.notifier.send(user_id, subject, body)
        except Exception as e:
            logger.warning("notification_delivery_failed", notification_id=str(notification_id), error=str(e))
            self._mark(notification_id, DeliveryStatus.FALLIDO, str(e)[:300])
            return
        self._mark(notification_id, DeliveryStatus.ENVIADO)

    def _mark(self, notification_id: UUID, status: DeliveryStatus, error: Optional[str] = None) -> None:
        with self.storage.read():
            row = self.storage.notifications.get(notification_id)
            if row is None:
                return
            row["email_status"] = status
            row["email_error"] = error
            if status == DeliveryStatus.ENVIADO:
                row["sent_at"] = datetime.now(timezone.utc)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
