"""
Tests for the auction lifecycle and competition results.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from garantias.errors import ConflictError, ForbiddenError, InvalidStateTransitionError, ValidationError
from garantias.models import (
    AssetData,
    AuctionStatus,
    CompetitionResult,
    CreateAuctionRequest,
    ExtendDeadlineRequest,
    GuaranteeStatus,
    MovementDirection,
    MovementKind,
    MovementStatus,
    UpdateAuctionStatusRequest,
)


class TestAuctionCatalogue:
    """Tests for creating, reading and deleting auctions."""

    def test_create_auction_starts_active(self, service, flow):
        auction = flow.auction()
        assert auction.estado == AuctionStatus.ACTIVA
        assert auction.winning_guarantee_id is None

    def test_duplicate_plate_rejected(self, service, admin):
        request = CreateAuctionRequest(asset=AssetData(
            placa="xyz-987", marca="Nissan", modelo="Frontier", anio=2020,
            empresa_propietaria="Leasing Andino SAC",
        ))
        detail = service.auctions.create_auction(admin, request)
        assert detail.asset.placa == "XYZ-987"
        with pytest.raises(ConflictError) as exc_info:
            service.auctions.create_auction(admin, request)
        assert exc_info.value.code == "DUPLICATE_PLATE"

    def test_client_only_sees_own_auctions(self, service, flow, admin, alice, bob):
        mine = flow.auction()
        flow.auction()
        flow.winner(mine.id, alice.user_id)

        assert [d.auction.id for d in service.auctions.list_auctions(alice)] == [mine.id]
        assert len(service.auctions.list_auctions(admin)) == 2
        with pytest.raises(ForbiddenError):
            service.auctions.get_auction(bob, mine.id)

    def test_list_filters_by_state(self, service, flow, admin, alice):
        pending = flow.auction()
        flow.auction()
        flow.winner(pending.id, alice.user_id)
        listed = service.auctions.list_auctions(admin, [AuctionStatus.PENDIENTE])
        assert [d.auction.id for d in listed] == [pending.id]

    def test_list_expired_auctions(self, service, flow, admin, alice, bob):
        soon = flow.auction()
        later = flow.auction()
        flow.winner(soon.id, alice.user_id, deadline=datetime.now(timezone.utc) + timedelta(hours=1))
        flow.winner(later.id, bob.user_id, deadline=datetime.now(timezone.utc) + timedelta(hours=5))
        now = datetime.now(timezone.utc) + timedelta(hours=2)

        expired = service.auctions.list_expired_auctions(admin, now=now)

        assert [d.auction.id for d in expired] == [soon.id]
        assert expired[0].fecha_limite_pago < now
        assert service.auctions.list_expired_auctions(admin) == []
        with pytest.raises(ForbiddenError):
            service.auctions.list_expired_auctions(alice)

    def test_expired_list_drains_after_sweep(self, service, flow, admin, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id, deadline=datetime.now(timezone.utc) + timedelta(hours=1))
        now = datetime.now(timezone.utc) + timedelta(hours=2)

        service.auction_jobs.process_expired_auctions(now)

        assert service.auctions.list_expired_auctions(admin, now=now) == []
        assert service.storage.auctions[auction.id]["estado"] == AuctionStatus.VENCIDA

    def test_delete_auction_without_activity(self, service, flow, admin):
        auction = flow.auction()
        service.auctions.delete_auction(admin, auction.id)
        assert auction.id not in service.storage.auctions
        assert service.storage.assets == {}

    def test_delete_rejected_with_offers_or_payments(self, service, flow, admin, alice):
        with_offer = flow.auction()
        flow.winner(with_offer.id, alice.user_id)
        with pytest.raises(ConflictError) as exc_info:
            service.auctions.delete_auction(admin, with_offer.id)
        assert exc_info.value.code == "HAS_OFFERS"

        flow.pay(alice, with_offer.id)
        with pytest.raises(ConflictError) as exc_info:
            service.auctions.delete_auction(admin, with_offer.id)
        assert exc_info.value.code == "HAS_PAYMENTS"


class TestAuctionStatus:
    """Tests for manual status changes and deadline extensions."""

    def test_cancel_pending_auction_releases_winner(self, service, flow, admin, alice):
        auction = flow.auction()
        guarantee = flow.winner(auction.id, alice.user_id).guarantee

        updated = service.auctions.update_status(admin, auction.id, UpdateAuctionStatusRequest(
            estado=AuctionStatus.CANCELADA, motivo="Vehículo retirado",
        ))

        assert updated.estado == AuctionStatus.CANCELADA
        assert service.storage.guarantees[guarantee.id]["estado"] == GuaranteeStatus.PERDEDORA

    def test_workflow_states_cannot_be_set_manually(self, service, flow, admin):
        auction = flow.auction()
        with pytest.raises(ConflictError) as exc_info:
            service.auctions.update_status(admin, auction.id, UpdateAuctionStatusRequest(
                estado=AuctionStatus.FINALIZADA,
            ))
        assert exc_info.value.code == "WORKFLOW_MANAGED_STATE"

    def test_cannot_cancel_auction_in_validation(self, service, flow, admin, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        flow.pay(alice, auction.id)
        with pytest.raises(InvalidStateTransitionError):
            service.auctions.update_status(admin, auction.id, UpdateAuctionStatusRequest(
                estado=AuctionStatus.CANCELADA,
            ))

    def test_extend_deadline(self, service, flow, admin, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id, deadline=datetime.now(timezone.utc) + timedelta(hours=1))
        new_deadline = datetime.now(timezone.utc) + timedelta(days=3)

        detail = service.auctions.extend_deadline(admin, auction.id, ExtendDeadlineRequest(
            fecha_limite_pago=new_deadline,
        ))
        assert detail.fecha_limite_pago == new_deadline

    def test_extend_deadline_requires_future_date(self, service, flow, admin, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        with pytest.raises(ValidationError):
            service.auctions.extend_deadline(admin, auction.id, ExtendDeadlineRequest(
                fecha_limite_pago=datetime.now(timezone.utc) - timedelta(hours=1),
            ))


class TestCompetitionResult:
    """Tests for recording the outcome of a finalized auction."""

    def test_ganada_keeps_retention(self, service, flow, alice):
        auction = flow.paid_auction(alice)

        response = flow.result(auction.id, CompetitionResult.GANADA)

        assert response.auction.estado == AuctionStatus.GANADA
        assert response.auction.fecha_resultado is not None
        assert response.movements == []
        assert response.balance.saldo_retenido == Decimal("680.00")
        assert response.balance.saldo_disponible == Decimal("0.00")
        winner = service.storage.guarantees[response.auction.winning_guarantee_id]
        assert winner["estado"] == GuaranteeStatus.GANADORA

    def test_perdida_creates_refund_entry_and_releases_retention(self, service, flow, alice):
        auction = flow.paid_auction(alice)

        response = flow.result(auction.id, CompetitionResult.PERDIDA)

        assert response.auction.estado == AuctionStatus.PERDIDA
        [movement] = response.movements
        assert movement.direccion == MovementDirection.ENTRADA
        assert movement.tipo == MovementKind.REEMBOLSO
        assert movement.estado == MovementStatus.VALIDADO
        assert movement.monto == Decimal("680.00")
        assert response.balance.saldo_total == Decimal("680.00")
        assert response.balance.saldo_retenido == Decimal("0.00")
        assert response.balance.saldo_disponible == Decimal("680.00")

    def test_penalizada_charges_thirty_percent(self, service, flow, alice):
        auction = flow.paid_auction(alice)

        response = flow.result(auction.id, CompetitionResult.PENALIZADA)

        assert response.auction.estado == AuctionStatus.PENALIZADA
        [movement] = response.movements
        assert movement.direccion == MovementDirection.SALIDA
        assert movement.tipo == MovementKind.PENALIDAD
        assert movement.monto == Decimal("204.00")
        assert response.balance.saldo_total == Decimal("476.00")
        assert response.balance.saldo_retenido == Decimal("0.00")
        assert response.balance.saldo_disponible == Decimal("476.00")

    def test_result_requires_finalized_auction(self, service, flow, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        with pytest.raises(ConflictError) as exc_info:
            flow.result(auction.id, CompetitionResult.GANADA)
        assert exc_info.value.code == "INVALID_AUCTION_STATE"

    def test_result_is_recorded_once(self, service, flow, alice):
        auction = flow.paid_auction(alice)
        flow.result(auction.id, CompetitionResult.PERDIDA)
        with pytest.raises(ConflictError):
            flow.result(auction.id, CompetitionResult.PERDIDA)
        refunds = [m for m in service.storage.movements.values() if m["tipo"] == MovementKind.REEMBOLSO]
        assert len(refunds) == 1

    def test_result_notifies_client(self, service, flow, alice, notifier):
        auction = flow.paid_auction(alice)
        notifier.sent.clear()
        flow.result(auction.id, CompetitionResult.PENALIZADA)
        assert [n["subject"] for n in notifier.sent] == ["Penalidad aplicada"]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
