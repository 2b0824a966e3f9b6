from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


Money = Annotated[Decimal, Field(gt=0, max_digits=14, decimal_places=2)]
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class UserType(str, Enum):
    ADMIN = "admin"
    CLIENT = "client"


class AuctionStatus(str, Enum):
    ACTIVA = "activa"
    PENDIENTE = "pendiente"
    EN_VALIDACION = "en_validacion"
    FINALIZADA = "finalizada"
    VENCIDA = "vencida"
    CANCELADA = "cancelada"
    GANADA = "ganada"
    PERDIDA = "perdida"
    PENALIZADA = "penalizada"
    FACTURADA = "facturada"


class GuaranteeStatus(str, Enum):
    ACTIVA = "activa"
    GANADORA = "ganadora"
    PERDEDORA = "perdedora"


class MovementDirection(str, Enum):
    ENTRADA = "entrada"
    SALIDA = "salida"


class MovementKind(str, Enum):
    PAGO_GARANTIA = "pago_garantia"
    REEMBOLSO = "reembolso"
    PENALIDAD = "penalidad"
    AJUSTE_MANUAL = "ajuste_manual"


class MovementStatus(str, Enum):
    PENDIENTE = "pendiente"
    VALIDADO = "validado"
    RECHAZADO = "rechazado"


class RefundStatus(str, Enum):
    SOLICITADO = "solicitado"
    CONFIRMADO = "confirmado"
    RECHAZADO = "rechazado"
    PROCESADO = "procesado"
    CANCELADO = "cancelado"


class RefundType(str, Enum):
    MANTENER_SALDO = "mantener_saldo"
    DEVOLVER_DINERO = "devolver_dinero"


class CompetitionResult(str, Enum):
    GANADA = "ganada"
    PERDIDA = "perdida"
    PENALIZADA = "penalizada"


class RejectionReason(str, Enum):
    MONTO_INCORRECTO = "Monto incorrecto"
    COMPROBANTE_ILEGIBLE = "Comprobante ilegible"
    DATOS_BANCARIOS_INCORRECTOS = "Datos bancarios incorrectos"
    FECHA_PAGO_INVALIDA = "Fecha de pago inválida"
    DOCUMENTO_FACTURACION_INCORRECTO = "Documento de facturación incorrecto"


class PaymentMethod(str, Enum):
    DEPOSITO = "deposito"
    TRANSFERENCIA = "transferencia"


class BillingDocumentType(str, Enum):
    RUC = "RUC"
    DNI = "DNI"


class DeliveryStatus(str, Enum):
    PENDIENTE = "pendiente"
    ENVIADO = "enviado"
    FALLIDO = "fallido"


class NotificationStatus(str, Enum):
    PENDIENTE = "pendiente"
    VISTA = "vista"


class Caller(BaseModel):
    """Who is invoking an operation; passed explicitly to every service call."""
    user_id: UUID
    role: UserType

    @property
    def is_admin(self) -> bool:
        return self.role == UserType.ADMIN


# --- Entities ---------------------------------------------------------------

class User(BaseModel):
    id: UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    user_type: UserType = UserType.CLIENT
    saldo_total: Decimal = Decimal("0.00")
    saldo_retenido: Decimal = Decimal("0.00")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Asset(BaseModel):
    id: UUID
    placa: str
    marca: str
    modelo: str
    anio: int
    empresa_propietaria: str
    descripcion: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Auction(BaseModel):
    id: UUID
    asset_id: UUID
    estado: AuctionStatus
    winning_guarantee_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    fecha_resultado: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Guarantee(BaseModel):
    id: UUID
    auction_id: UUID
    user_id: UUID
    monto_oferta: Decimal
    monto_garantia: Decimal
    posicion_ranking: int = 1
    estado: GuaranteeStatus
    fecha_limite_pago: Optional[datetime] = None
    motivo_reasignacion: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Movement(BaseModel):
    id: UUID
    user_id: UUID
    direccion: MovementDirection
    tipo: MovementKind
    monto: Decimal
    moneda: str = "USD"
    estado: MovementStatus
    concepto: str
    auction_id: Optional[UUID] = None
    guarantee_id: Optional[UUID] = None
    refund_id: Optional[UUID] = None
    tipo_pago: Optional[PaymentMethod] = None
    numero_cuenta_origen: Optional[str] = None
    numero_operacion: Optional[str] = None
    voucher_url: Optional[str] = None
    fecha_pago: Optional[datetime] = None
    fecha_resolucion: Optional[datetime] = None
    motivo_rechazo: Optional[str] = None
    created_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Refund(BaseModel):
    id: UUID
    user_id: UUID
    monto_solicitado: Decimal
    tipo_reembolso: RefundType
    estado: RefundStatus
    motivo: Optional[str] = None
    auction_id: Optional[UUID] = None
    created_at: datetime
    fecha_respuesta: Optional[datetime] = None
    fecha_procesamiento: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class Billing(BaseModel):
    id: UUID
    user_id: UUID
    auction_id: UUID
    monto: Decimal
    moneda: str = "USD"
    billing_document_type: BillingDocumentType
    billing_document_number: str
    billing_name: str
    concepto: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Notification(BaseModel):
    id: UUID
    user_id: UUID
    tipo: str
    titulo: str
    mensaje: str
    reference_type: Optional[str] = None
    reference_id: Optional[UUID] = None
    email_status: DeliveryStatus = DeliveryStatus.PENDIENTE
    email_error: Optional[str] = None
    estado: NotificationStatus = NotificationStatus.PENDIENTE
    fecha_vista: Optional[datetime] = None
    created_at: datetime
    sent_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserBalance(BaseModel):
    user_id: UUID
    saldo_total: Decimal
    saldo_retenido: Decimal
    saldo_aplicado: Decimal
    saldo_disponible: Decimal
    saldo_en_reembolso: Decimal


# --- Requests ---------------------------------------------------------------

class CreateUserRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    user_type: UserType = UserType.CLIENT


class AssetData(BaseModel):
    placa: str = Field(..., min_length=5, max_length=10)
    marca: str = Field(..., min_length=1, max_length=50)
    modelo: str = Field(..., min_length=1, max_length=50)
    anio: int = Field(..., ge=1990)
    empresa_propietaria: str = Field(..., min_length=1, max_length=200)
    descripcion: Optional[str] = Field(default=None, max_length=500)


class CreateAuctionRequest(BaseModel):
    asset: AssetData

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "asset": {
                "placa": "ABC-123",
                "marca": "Toyota",
                "modelo": "Hilux",
                "anio": 2021,
                "empresa_propietaria": "Leasing Andino SAC",
            }
        }
    })


class UpdateAuctionStatusRequest(BaseModel):
    estado: AuctionStatus
    motivo: Optional[str] = Field(default=None, max_length=200)


class ExtendDeadlineRequest(BaseModel):
    fecha_limite_pago: UtcDatetime
    motivo: Optional[str] = Field(default=None, max_length=200)


class CreateWinnerRequest(BaseModel):
    user_id: UUID
    monto_oferta: Money
    fecha_limite_pago: Optional[UtcDatetime] = None


class ReassignWinnerRequest(BaseModel):
    user_id: UUID
    monto_oferta: Money
    motivo_reasignacion: Optional[str] = Field(default=None, max_length=200)


class RegisterPaymentRequest(BaseModel):
    auction_id: UUID
    monto: Money
    tipo_pago: PaymentMethod
    numero_cuenta_origen: Optional[str] = Field(default=None, min_length=10, max_length=20)
    numero_operacion: Optional[str] = Field(default=None, max_length=100)
    fecha_pago: UtcDatetime
    moneda: str = Field(default="USD", min_length=3, max_length=3)
    concepto: str = Field(default="Pago de garantía", max_length=300)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "auction_id": "7c9e6679-7425-40de-944b-e07fc1f90ae7",
            "monto": "680.00",
            "tipo_pago": "transferencia",
            "numero_cuenta_origen": "19412345678901",
            "numero_operacion": "OP-000123",
            "fecha_pago": "2026-10-01T15:00:00Z",
        }
    })


class ApprovePaymentRequest(BaseModel):
    comentarios: Optional[str] = Field(default=None, max_length=300)


class RejectPaymentRequest(BaseModel):
    motivos: list[RejectionReason] = Field(..., min_length=1)
    otros_motivos: Optional[str] = Field(default=None, max_length=200)
    comentarios: Optional[str] = Field(default=None, max_length=300)


class CompetitionResultRequest(BaseModel):
    resultado: CompetitionResult
    observaciones: Optional[str] = Field(default=None, max_length=500)


class CreateRefundRequest(BaseModel):
    monto_solicitado: Decimal = Field(..., max_digits=14, decimal_places=2)
    tipo_reembolso: RefundType
    motivo: Optional[str] = Field(default=None, max_length=200)
    auction_id: Optional[UUID] = None


class ManageRefundRequest(BaseModel):
    estado: RefundStatus
    motivo: Optional[str] = Field(default=None, max_length=300)


class ProcessRefundRequest(BaseModel):
    tipo_transferencia: Optional[PaymentMethod] = None
    banco_destino: Optional[str] = Field(default=None, min_length=3, max_length=50)
    numero_cuenta_destino: Optional[str] = Field(default=None, min_length=10, max_length=20)
    numero_operacion: Optional[str] = Field(default=None, max_length=100)
    auction_id: Optional[UUID] = None


class CreateBillingRequest(BaseModel):
    auction_id: UUID
    billing_document_type: BillingDocumentType
    billing_document_number: str = Field(..., min_length=8, max_length=11)
    billing_name: str = Field(..., min_length=3, max_length=200)


class ManualAdjustmentRequest(BaseModel):
    direccion: MovementDirection
    monto: Money
    motivo: str = Field(..., min_length=3, max_length=300)


class MovementFilters(BaseModel):
    tipo: Optional[list[MovementKind]] = None
    estado: Optional[list[MovementStatus]] = None
    fecha_desde: Optional[UtcDatetime] = None
    fecha_hasta: Optional[UtcDatetime] = None
    user_id: Optional[UUID] = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)


# --- Responses --------------------------------------------------------------

class WinnerResponse(BaseModel):
    auction: Auction
    guarantee: Guarantee
    previous_guarantee: Optional[Guarantee] = None
    message: str


class PaymentResponse(BaseModel):
    movement: Movement
    auction: Auction
    balance: UserBalance
    message: str


class CompetitionResultResponse(BaseModel):
    auction: Auction
    resultado: CompetitionResult
    movements: list[Movement] = Field(default_factory=list)
    balance: UserBalance
    observaciones: Optional[str] = None


class RefundResponse(BaseModel):
    refund: Refund
    movement: Optional[Movement] = None
    balance: UserBalance
    message: str


class BillingResponse(BaseModel):
    billing: Billing
    auction: Auction
    balance: UserBalance


class MovementResponse(BaseModel):
    movement: Movement
    balance: UserBalance


class MovementListResponse(BaseModel):
    movements: list[Movement]
    total_count: int
    limit: int
    offset: int


class AuctionDetail(BaseModel):
    auction: Auction
    asset: Asset
    guarantees: list[Guarantee]
    fecha_limite_pago: Optional[datetime] = None


class SweepResult(BaseModel):
    processed: int = 0
    errors: int = 0
    total: int = 0
    auction_ids: list[UUID] = Field(default_factory=list)


class UpcomingExpirationsResult(BaseModel):
    notifications: int = 0
    auction_ids: list[UUID] = Field(default_factory=list)


class DailyReport(BaseModel):
    desde: datetime
    hasta: datetime
    subastas_creadas: int = 0
    pagos_registrados: int = 0
    pagos_validados: int = 0
    subastas_finalizadas: int = 0
    movimientos_totales: int = 0
    monto_validado: Decimal = Decimal("0.00")


class MarkAllReadResult(BaseModel):
    updated: int = 0


class BalanceStats(BaseModel):
    """System-wide totals over every client balance."""
    saldo_total_sistema: Decimal = Decimal("0.00")
    saldo_retenido_total: Decimal = Decimal("0.00")
    saldo_aplicado_total: Decimal = Decimal("0.00")
    saldo_en_reembolso_total: Decimal = Decimal("0.00")
    saldo_disponible_total: Decimal = Decimal("0.00")
    total_usuarios_con_saldo: int = 0
    total_usuarios: int = 0
    movimientos_mes_actual: int = 0


class UserBalanceSummary(BaseModel):
    user_id: UUID
    nombre: str
    documento: Optional[str] = None
    email: Optional[str] = None
    balance: UserBalance


class BalanceSummaryResponse(BaseModel):
    balances: list[UserBalanceSummary]
    total_count: int
    limit: int
    offset: int


class BalanceDashboard(BaseModel):
    statistics: BalanceStats
    top_balances: list[UserBalanceSummary]
    generated_at: datetime
