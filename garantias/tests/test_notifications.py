"""
Tests for notification delivery and read state.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from garantias.errors import ForbiddenError, NotFoundError
from garantias.models import AuctionStatus, DeliveryStatus, MovementStatus, NotificationStatus


class FailingNotifier:
    def __init__(self):
        self.attempts = 0

    def send(self, user_id, subject, body):
        self.attempts += 1
        raise ConnectionError("smtp unavailable")


class TestDeliveryFailures:
    """A notifier that raises must not undo the committed operation."""

    @pytest.fixture
    def notifier(self):
        return FailingNotifier()

    def test_approval_commits_when_delivery_fails(self, service, flow, admin, alice, notifier):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        movement = flow.pay(alice, auction.id).movement

        response = service.payments.approve(admin, movement.id)

        assert response.movement.estado == MovementStatus.VALIDADO
        assert service.storage.movements[movement.id]["estado"] == MovementStatus.VALIDADO
        assert service.storage.auctions[auction.id]["estado"] == AuctionStatus.FINALIZADA
        assert service.balances.get_balance(alice, alice.user_id).saldo_total == Decimal("680.00")

        assert notifier.attempts > 0
        notifications = service.list_notifications(alice)
        assert notifications
        assert {n.email_status for n in notifications} == {DeliveryStatus.FALLIDO}
        assert all("smtp unavailable" in n.email_error for n in notifications)
        assert all(n.sent_at is None for n in notifications)


class TestReadState:
    """Tests for marking notifications as seen."""

    def test_new_notifications_are_unread(self, service, flow, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)

        notifications = service.list_notifications(alice)
        assert [n.estado for n in notifications] == [NotificationStatus.PENDIENTE]
        assert notifications[0].fecha_vista is None

    def test_mark_one_as_read(self, service, flow, alice):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        notification = service.list_notifications(alice)[0]

        read = service.mark_notification_read(alice, notification.id)
        assert read.estado == NotificationStatus.VISTA
        assert read.fecha_vista is not None

        again = service.mark_notification_read(alice, notification.id)
        assert again.fecha_vista == read.fecha_vista

    def test_only_recipient_can_mark_read(self, service, flow, admin, alice, bob):
        auction = flow.auction()
        flow.winner(auction.id, alice.user_id)
        notification = service.list_notifications(alice)[0]

        with pytest.raises(ForbiddenError):
            service.mark_notification_read(bob, notification.id)
        with pytest.raises(ForbiddenError):
            service.mark_notification_read(admin, notification.id)
        assert service.storage.notifications[notification.id]["estado"] == NotificationStatus.PENDIENTE

    def test_unknown_notification(self, service, alice):
        with pytest.raises(NotFoundError):
            service.mark_notification_read(alice, uuid4())

    def test_mark_all_only_touches_own_unread(self, service, flow, alice, bob):
        first = flow.auction()
        second = flow.auction()
        third = flow.auction()
        flow.winner(first.id, alice.user_id)
        flow.winner(second.id, alice.user_id)
        flow.winner(third.id, bob.user_id)

        result = service.mark_all_notifications_read(alice)

        assert result.updated == 2
        assert service.list_notifications(alice, estado=NotificationStatus.PENDIENTE) == []
        assert len(service.list_notifications(alice, estado=NotificationStatus.VISTA)) == 2
        assert [n.estado for n in service.list_notifications(bob)] == [NotificationStatus.PENDIENTE]
        assert service.mark_all_notifications_read(alice).updated == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
