"""
Tests for billing finalization of won auctions.
"""

from decimal import Decimal

import pytest

from garantias.errors import ConflictError, ForbiddenError
from garantias.models import AuctionStatus, BillingDocumentType, CompetitionResult, CreateBillingRequest


def bill(service, client, auction_id, document="20123456789"):
    return service.billing.create_billing(client, CreateBillingRequest(
        auction_id=auction_id,
        billing_document_type=BillingDocumentType.RUC,
        billing_document_number=document,
        billing_name="Transportes Quispe SAC",
    ))


def won_auction(flow, client, offer="8500.00"):
    auction = flow.paid_auction(client, offer)
    flow.result(auction.id, CompetitionResult.GANADA)
    return auction


class TestCreateBilling:
    """Tests for invoicing a won auction."""

    def test_billing_applies_guarantee(self, service, flow, alice):
        auction = won_auction(flow, alice)

        response = bill(service, alice, auction.id)

        assert response.billing.monto == Decimal("680.00")
        assert "ABC-001" in response.billing.concepto
        assert response.auction.estado == AuctionStatus.FACTURADA
        assert response.balance.saldo_total == Decimal("680.00")
        assert response.balance.saldo_retenido == Decimal("0.00")
        assert response.balance.saldo_aplicado == Decimal("680.00")
        assert response.balance.saldo_disponible == Decimal("0.00")

    def test_release_is_scoped_to_billed_auction(self, service, flow, alice):
        first = won_auction(flow, alice, "8500.00")
        won_auction(flow, alice, "5000.00")

        response = bill(service, alice, first.id)

        assert response.balance.saldo_retenido == Decimal("400.00")
        assert response.balance.saldo_disponible == Decimal("0.00")

    def test_balance_stays_consistent_after_recompute(self, service, flow, alice):
        auction = won_auction(flow, alice)
        billed = bill(service, alice, auction.id).balance
        with service.storage.transaction():
            recomputed = service.reconciler.reconcile(alice.user_id)
        assert recomputed == billed

    def test_only_winner_can_bill(self, service, flow, bob, alice):
        auction = won_auction(flow, alice)
        with pytest.raises(ForbiddenError) as exc_info:
            bill(service, bob, auction.id)
        assert exc_info.value.code == "NOT_WINNER"

    def test_auction_must_be_won(self, service, flow, alice):
        auction = flow.paid_auction(alice)
        with pytest.raises(ConflictError) as exc_info:
            bill(service, alice, auction.id)
        assert exc_info.value.code == "AUCTION_NOT_WON"

    def test_auction_billed_once(self, service, flow, alice):
        auction = won_auction(flow, alice)
        bill(service, alice, auction.id)
        with pytest.raises(ConflictError) as exc_info:
            bill(service, alice, auction.id, document="20999999999")
        assert exc_info.value.code == "AUCTION_NOT_WON"

    def test_document_number_unique_per_client(self, service, flow, alice):
        first = won_auction(flow, alice)
        second = won_auction(flow, alice, "5000.00")
        bill(service, alice, first.id)
        with pytest.raises(ConflictError) as exc_info:
            bill(service, alice, second.id)
        assert exc_info.value.code == "DUPLICATE_BILLING_DOCUMENT"

    def test_admins_notified(self, service, flow, admin, alice, notifier):
        auction = won_auction(flow, alice)
        notifier.sent.clear()
        bill(service, alice, auction.id)
        assert {n["user_id"] for n in notifier.sent} == {alice.user_id, admin.user_id}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
