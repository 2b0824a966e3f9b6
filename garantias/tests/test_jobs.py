"""
Tests for the scheduled auction sweeps and the job runner.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from garantias.errors import ForbiddenError, NotFoundError
from garantias.models import (
    AuctionStatus,
    DailyReport,
    GuaranteeStatus,
    ReassignWinnerRequest,
    SweepResult,
)


def expiring_auction(flow, client, hours=1):
    auction = flow.auction()
    response = flow.winner(auction.id, client.user_id, deadline=datetime.now(timezone.utc) + timedelta(hours=hours))
    return auction, response.guarantee


class TestExpirationSweep:
    """Tests for expiring auctions whose payment deadline passed."""

    def test_expired_auction_becomes_vencida(self, service, flow, alice):
        auction, guarantee = expiring_auction(flow, alice)
        later = datetime.now(timezone.utc) + timedelta(hours=2)

        result = service.auction_jobs.process_expired_auctions(later)

        assert result.processed == 1
        assert result.errors == 0
        assert result.total == 1
        assert result.auction_ids == [auction.id]
        assert service.storage.auctions[auction.id]["estado"] == AuctionStatus.VENCIDA
        assert service.storage.guarantees[guarantee.id]["estado"] == GuaranteeStatus.PERDEDORA

    def test_sweep_is_idempotent(self, service, flow, alice):
        expiring_auction(flow, alice)
        later = datetime.now(timezone.utc) + timedelta(hours=2)

        service.auction_jobs.process_expired_auctions(later)
        second = service.auction_jobs.process_expired_auctions(later)

        assert second == SweepResult()

    def test_deadline_not_reached_is_left_alone(self, service, flow, alice):
        auction, _ = expiring_auction(flow, alice, hours=5)
        result = service.auction_jobs.process_expired_auctions()
        assert result.total == 0
        assert service.storage.auctions[auction.id]["estado"] == AuctionStatus.PENDIENTE

    def test_auctions_in_validation_are_not_expired(self, service, flow, alice):
        auction, _ = expiring_auction(flow, alice)
        flow.pay(alice, auction.id)
        result = service.auction_jobs.process_expired_auctions(datetime.now(timezone.utc) + timedelta(hours=2))
        assert result.total == 0

    def test_sweep_applies_no_penalty(self, service, flow, alice):
        expiring_auction(flow, alice)
        service.auction_jobs.process_expired_auctions(datetime.now(timezone.utc) + timedelta(hours=2))
        assert service.storage.movements == {}

    def test_failing_row_does_not_stop_sweep(self, service, flow, alice, bob, monkeypatch):
        broken, _ = expiring_auction(flow, alice)
        healthy, _ = expiring_auction(flow, bob)
        original = service.auction_jobs.expire_auction

        def expire(auction_id, now):
            if auction_id == broken.id:
                raise RuntimeError("storage unavailable")
            return original(auction_id, now)

        monkeypatch.setattr(service.auction_jobs, "expire_auction", expire)
        result = service.auction_jobs.process_expired_auctions(datetime.now(timezone.utc) + timedelta(hours=2))

        assert result.processed == 1
        assert result.errors == 1
        assert result.total == 2
        assert service.storage.auctions[broken.id]["estado"] == AuctionStatus.PENDIENTE
        assert service.storage.auctions[healthy.id]["estado"] == AuctionStatus.VENCIDA

    def test_expired_auction_can_be_reassigned(self, service, flow, admin, alice, bob):
        auction, _ = expiring_auction(flow, alice)
        service.auction_jobs.process_expired_auctions(datetime.now(timezone.utc) + timedelta(hours=2))

        response = service.winners.reassign_winner(admin, auction.id, ReassignWinnerRequest(
            user_id=bob.user_id, monto_oferta=Decimal("8000.00"),
        ))
        assert response.auction.estado == AuctionStatus.PENDIENTE
        assert response.guarantee.monto_garantia == Decimal("640.00")


class TestUpcomingExpirations:
    """Tests for deadline warnings."""

    def test_warns_winner_once(self, service, flow, alice, notifier):
        auction, _ = expiring_auction(flow, alice, hours=1)
        expiring_auction(flow, alice, hours=10)
        notifier.sent.clear()

        first = service.auction_jobs.check_upcoming_expirations()
        second = service.auction_jobs.check_upcoming_expirations()

        assert first.notifications == 1
        assert first.auction_ids == [auction.id]
        assert second.notifications == 0
        assert len(notifier.sent) == 1


class TestJobRunner:
    """Tests for running jobs on demand."""

    def test_run_known_job(self, service, admin):
        result = service.jobs.run(admin, "process-expired")
        assert isinstance(result, SweepResult)

    def test_daily_report(self, service, flow, admin, alice):
        flow.paid_auction(alice)
        report = service.jobs.run(admin, "daily-report")
        assert isinstance(report, DailyReport)
        assert report.subastas_creadas == 1
        assert report.pagos_validados == 1
        assert report.monto_validado == Decimal("680.00")

    def test_unknown_job(self, service, admin):
        with pytest.raises(NotFoundError) as exc_info:
            service.jobs.run(admin, "cleanup")
        assert exc_info.value.code == "JOB_NOT_FOUND"

    def test_clients_cannot_run_jobs(self, service, alice):
        with pytest.raises(ForbiddenError):
            service.jobs.run(alice, "process-expired")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
