"""
Tests for winner assignment and reassignment.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from garantias.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from garantias.models import (
    AuctionStatus,
    CompetitionResult,
    GuaranteeStatus,
    MovementStatus,
    ReassignWinnerRequest,
)


def reassign(service, admin, auction_id, user_id, offer="9000.00", reason="Ganador no pagó"):
    return service.winners.reassign_winner(admin, auction_id, ReassignWinnerRequest(
        user_id=user_id, monto_oferta=Decimal(offer), motivo_reasignacion=reason,
    ))


class TestCreateWinner:
    """Tests for assigning the first winner of an auction."""

    def test_create_winner_computes_guarantee(self, service, flow, alice):
        auction = flow.auction()
        deadline = datetime.now(timezone.utc) + timedelta(days=2)

        response = flow.winner(auction.id, alice.user_id, "8500.00", deadline)

        assert response.guarantee.monto_garantia == Decimal("680.00")
        assert response.guarantee.posicion_ranking == 1
        assert response.guarantee.estado == GuaranteeStatus.ACTIVA
        assert response.guarantee.fecha_limite_pago == deadline
        assert response.auction.estado == AuctionStatus.PENDIENTE
        assert response.auction.winning_guarantee_id == response.guarantee.id

    def test_auction_must_be_active(self, service, flow, alice, bob):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        with pytest.raises(ConflictError) as exc_info:
            flow.winner(auction.id, bob.user_id)
        assert exc_info.value.code == "INVALID_AUCTION_STATE"

    def test_winner_must_be_a_client(self, service, flow, admin):
        auction = flow.auction()
        with pytest.raises(NotFoundError):
            flow.winner(auction.id, admin.user_id)
        with pytest.raises(NotFoundError):
            flow.winner(auction.id, uuid4())

    def test_deadline_must_be_future(self, service, flow, alice):
        auction = flow.auction()
        with pytest.raises(ValidationError) as exc_info:
            flow.winner(auction.id, alice.user_id, deadline=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert exc_info.value.code == "INVALID_DEADLINE"

    def test_client_cannot_assign_winner(self, service, flow, alice):
        auction = flow.auction()
        flow.admin = alice
        with pytest.raises(ForbiddenError):
            flow.winner(auction.id, alice.user_id)


class TestReassignWinner:
    """Tests for replacing the current winner."""

    def test_reassign_from_pending(self, service, flow, admin, alice, bob):
        auction = flow.auction()
        first = flow.winner(auction.id, alice.user_id).guarantee

        response = reassign(service, admin, auction.id, bob.user_id)

        assert response.previous_guarantee.id == first.id
        assert response.previous_guarantee.estado == GuaranteeStatus.PERDEDORA
        assert response.guarantee.user_id == bob.user_id
        assert response.guarantee.posicion_ranking == 1
        assert response.guarantee.fecha_limite_pago is None
        assert response.guarantee.monto_garantia == Decimal("720.00")
        assert response.auction.estado == AuctionStatus.PENDIENTE
        assert response.auction.winning_guarantee_id == response.guarantee.id

        active = [
            g for g in service.storage.guarantees.values()
            if g["auction_id"] == auction.id and g["estado"] == GuaranteeStatus.ACTIVA
        ]
        assert len(active) == 1

    def test_reassign_rejects_pending_payment_of_displaced_winner(self, service, flow, admin, alice, bob):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        movement = flow.pay(alice, auction.id).movement

        reassign(service, admin, auction.id, bob.user_id)

        row = service.storage.movements[movement.id]
        assert row["estado"] == MovementStatus.RECHAZADO
        assert row["motivo_rechazo"] == "Ganador reasignado"
        assert service.balances.get_balance(admin, alice.user_id).saldo_total == Decimal("0.00")

    def test_new_winner_can_pay_after_reassignment(self, service, flow, admin, alice, bob):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        flow.pay(alice, auction.id)
        reassign(service, admin, auction.id, bob.user_id)

        response = flow.pay(bob, auction.id, monto="720.00")
        assert response.auction.estado == AuctionStatus.EN_VALIDACION

    def test_reassign_same_user_rejected(self, service, flow, admin, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        with pytest.raises(ConflictError) as exc_info:
            reassign(service, admin, auction.id, alice.user_id)
        assert exc_info.value.code == "SAME_USER"

    def test_reassign_without_winner_rejected(self, service, flow, admin, bob):
        auction = flow.auction()
        with pytest.raises(ConflictError) as exc_info:
            reassign(service, admin, auction.id, bob.user_id)
        assert exc_info.value.code == "INVALID_AUCTION_STATE"

    @pytest.mark.parametrize("resultado", [CompetitionResult.GANADA, CompetitionResult.PERDIDA])
    def test_reassign_terminal_or_closed_auction_rejected(self, service, flow, admin, alice, bob, resultado):
        auction = flow.paid_auction(alice)
        with pytest.raises(ConflictError):
            reassign(service, admin, auction.id, bob.user_id)
        flow.result(auction.id, resultado)
        with pytest.raises(ConflictError) as exc_info:
            reassign(service, admin, auction.id, bob.user_id)
        assert exc_info.value.code == "INVALID_AUCTION_STATE"

    def test_reassign_applies_no_penalty(self, service, flow, admin, alice, bob):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        reassign(service, admin, auction.id, bob.user_id)
        assert not [m for m in service.storage.movements.values() if m["user_id"] == alice.user_id]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
