"""
Scheduled sweeps over auctions.

``AuctionJobs`` holds the jobs themselves; ``JobRunner`` maps job names to
them so a scheduler or an administrator can trigger one on demand.
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel

from .collaborators import NotificationDispatcher
from .config import Settings, get_settings
from .errors import NotFoundError, require_admin
from .ledger import money
from .models import (
    AuctionStatus,
    Caller,
    DailyReport,
    GuaranteeStatus,
    MovementKind,
    MovementStatus,
    SweepResult,
    UpcomingExpirationsResult,
)
from .storage import InMemoryStorage
from .transitions import ensure_transition
from .winners import active_winner, expired_auctions


logger = structlog.get_logger(__name__)


class AuctionJobs:
    def __init__(
        self,
        storage: InMemoryStorage,
        dispatcher: NotificationDispatcher,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()

    def _expired(self, now: datetime) -> list[UUID]:
        with self.storage.read():
            return [a["id"] for a in expired_auctions(self.storage, now)]

    def process_expired_auctions(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Mark every pending auction whose payment deadline has passed as
        ``vencida`` and its winning guarantee as ``perdedora``.

        Each auction runs in its own transaction; a failing row is logged and
        counted without stopping the sweep.
        """
        now = now or datetime.now(timezone.utc)
        candidates = self._expired(now)
        result = SweepResult(total=len(candidates))
        if not candidates:
            logger.info("expired_auctions_none")
            return result

        for auction_id in candidates:
            try:
                if self.expire_auction(auction_id, now):
                    result.processed += 1
                    result.auction_ids.append(auction_id)
            except Exception as e:
                result.errors += 1
                logger.error("expired_auction_failed", auction_id=str(auction_id), error=str(e), exc_info=True)

        logger.info("expired_auctions_processed", processed=result.processed, errors=result.errors, total=result.total)
        return result

    def expire_auction(self, auction_id: UUID, now: datetime) -> bool:
        with self.storage.transaction() as tx:
            auction = self.storage.get("auctions", auction_id, "Subasta")
            winner = active_winner(self.storage, auction_id)
            # Already handled by a concurrent sweep or a reassignment
            if (
                auction["estado"] != AuctionStatus.PENDIENTE
                or winner is None
                or winner["fecha_limite_pago"] is None
                or winner["fecha_limite_pago"] >= now
            ):
                return False

            winner["estado"] = ensure_transition(winner["estado"], GuaranteeStatus.PERDEDORA)
            auction["estado"] = ensure_transition(auction["estado"], AuctionStatus.VENCIDA)
            auction["updated_at"] = now

            placa = self.storage.get("assets", auction["asset_id"], "Vehículo")["placa"]
            self.dispatcher.notify(
                tx, winner["user_id"], "subasta_vencida", "Plazo de pago vencido",
                f"El plazo para pagar la garantía de la subasta {placa} venció.",
                reference_type="auction", reference_id=auction_id,
            )
            self.dispatcher.notify_admins(
                tx, "subasta_vencida", "Subasta vencida",
                f"La subasta {placa} venció sin pago. Puede reasignar el ganador.",
                reference_type="auction", reference_id=auction_id,
            )

        logger.info("auction_expired", auction_id=str(auction_id), user_id=str(winner["user_id"]))
        return True

    def check_upcoming_expirations(self, now: Optional[datetime] = None) -> UpcomingExpirationsResult:
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(hours=self.settings.upcoming_expiration_hours)
        result = UpcomingExpirationsResult()

        with self.storage.transaction() as tx:
            for auction in self.storage.select("auctions", lambda a: a["estado"] == AuctionStatus.PENDIENTE):
                winner = active_winner(self.storage, auction["id"])
                deadline = winner["fecha_limite_pago"] if winner else None
                if deadline is None or not (now < deadline <= horizon):
                    continue
                already_warned = self.storage.select("notifications", lambda n: (
                    n["tipo"] == "pago_por_vencer" and n["reference_id"] == winner["id"]
                ))
                if already_warned:
                    continue
                remaining = int((deadline - now).total_seconds() // 60)
                self.dispatcher.notify(
                    tx, winner["user_id"], "pago_por_vencer", "Su plazo de pago está por vencer",
                    f"Quedan {remaining} minutos para registrar el pago de la garantía.",
                    reference_type="guarantee", reference_id=winner["id"],
                )
                result.notifications += 1
                result.auction_ids.append(auction["id"])

        if result.notifications:
            logger.warning("upcoming_expirations_found", count=result.notifications)
        return result

    def generate_daily_report(self, now: Optional[datetime] = None) -> DailyReport:
        hasta = now or datetime.now(timezone.utc)
        desde = hasta - timedelta(days=1)

        def in_window(ts: Optional[datetime]) -> bool:
            return ts is not None and desde <= ts < hasta

        with self.storage.read():
            payments = self.storage.select("movements", lambda m: m["tipo"] == MovementKind.PAGO_GARANTIA)
            validated = [
                m for m in payments
                if m["estado"] == MovementStatus.VALIDADO and in_window(m["fecha_resolucion"])
            ]
            report = DailyReport(
                desde=desde,
                hasta=hasta,
                subastas_creadas=len(self.storage.select("auctions", lambda a: in_window(a["created_at"]))),
                pagos_registrados=len([m for m in payments if in_window(m["created_at"])]),
                pagos_validados=len(validated),
                subastas_finalizadas=len(self.storage.select("auctions", lambda a: in_window(a["finished_at"]))),
                movimientos_totales=len(self.storage.select("movements", lambda m: in_window(m["created_at"]))),
                monto_validado=money(sum((m["monto"] for m in validated), 0)),
            )
        logger.info("daily_report_generated", **report.model_dump(mode="json"))
        return report


class JobRunner:
    def __init__(self, jobs: AuctionJobs):
        self.jobs: dict[str, Callable[[], BaseModel]] = {
            "process-expired": jobs.process_expired_auctions,
            "check-upcoming": jobs.check_upcoming_expirations,
            "daily-report": jobs.generate_daily_report,
        }

    def available(self) -> list[str]:
        return sorted(self.jobs)

    def run(self, caller: Caller, name: str) -> BaseModel:
        require_admin(caller)
        job = self.jobs.get(name)
        if job is None:
            raise NotFoundError(f"Job '{name}'", "JOB_NOT_FOUND")

        logger.info("job_started", job=name, executed_by=str(caller.user_id))
        started = time.perf_counter()
        result = job()
        logger.info("job_completed", job=name, duration_ms=round((time.perf_counter() - started) * 1000, 2))
        return result
