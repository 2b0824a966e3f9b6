from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from garantias.collaborators import InMemoryBlobStore, InMemoryNotifier
from garantias.config import Settings
from garantias.models import (
    AssetData,
    Caller,
    CompetitionResult,
    CompetitionResultRequest,
    CreateAuctionRequest,
    CreateWinnerRequest,
    PaymentMethod,
    RegisterPaymentRequest,
    UserType,
)
from garantias.service import GarantiasService
from garantias.storage import ADMIN_ID, CLIENT_ALICE_ID, CLIENT_BOB_ID


class Flow:
    """Shortcuts that drive an auction through the common steps."""

    def __init__(self, service: GarantiasService, admin: Caller):
        self.service = service
        self.admin = admin
        self._plates = 0

    def auction(self):
        self._plates += 1
        request = CreateAuctionRequest(asset=AssetData(
            placa=f"ABC-{self._plates:03d}",
            marca="Toyota",
            modelo="Hilux",
            anio=2021,
            empresa_propietaria="Leasing Andino SAC",
        ))
        return self.service.auctions.create_auction(self.admin, request).auction

    def winner(self, auction_id, user_id, offer="8500.00", deadline=None):
        request = CreateWinnerRequest(user_id=user_id, monto_oferta=Decimal(offer), fecha_limite_pago=deadline)
        return self.service.winners.create_winner(self.admin, auction_id, request)

    def pay(self, client: Caller, auction_id, monto="680.00", numero_operacion=None, voucher=None):
        request = RegisterPaymentRequest(
            auction_id=auction_id,
            monto=Decimal(monto),
            tipo_pago=PaymentMethod.TRANSFERENCIA,
            numero_cuenta_origen="19412345678901",
            numero_operacion=numero_operacion,
            fecha_pago=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        return self.service.payments.register(client, request, voucher)

    def paid_auction(self, client: Caller, offer="8500.00"):
        """Auction with an approved guarantee payment, left in ``finalizada``."""
        auction = self.auction()
        response = self.winner(auction.id, client.user_id, offer)
        payment = self.pay(client, auction.id, str(response.guarantee.monto_garantia))
        self.service.payments.approve(self.admin, payment.movement.id)
        return auction

    def result(self, auction_id, resultado: CompetitionResult):
        return self.service.auctions.record_competition_result(
            self.admin, auction_id, CompetitionResultRequest(resultado=resultado)
        )


@pytest.fixture
def settings():
    return Settings(notifications_async=False, log_json=False)


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def blob_store():
    return InMemoryBlobStore()


@pytest.fixture
def service(settings, notifier, blob_store):
    service = GarantiasService(blob_store=blob_store, notifier=notifier, settings=settings)
    yield service
    service.shutdown()


@pytest.fixture
def admin():
    return Caller(user_id=ADMIN_ID, role=UserType.ADMIN)


@pytest.fixture
def alice():
    return Caller(user_id=CLIENT_ALICE_ID, role=UserType.CLIENT)


@pytest.fixture
def bob():
    return Caller(user_id=CLIENT_BOB_ID, role=UserType.CLIENT)


@pytest.fixture
def flow(service, admin):
    return Flow(service, admin)
