from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from .config import get_settings
from .errors import GarantiasError
from .logging_config import setup_logging
from .models import (
    ApprovePaymentRequest,
    Auction,
    AuctionDetail,
    AuctionStatus,
    BalanceDashboard,
    BalanceStats,
    BalanceSummaryResponse,
    Billing,
    BillingResponse,
    Caller,
    CompetitionResultRequest,
    CompetitionResultResponse,
    CreateAuctionRequest,
    CreateBillingRequest,
    CreateRefundRequest,
    CreateUserRequest,
    CreateWinnerRequest,
    ExtendDeadlineRequest,
    ManageRefundRequest,
    ManualAdjustmentRequest,
    MarkAllReadResult,
    Movement,
    MovementFilters,
    MovementKind,
    MovementListResponse,
    MovementResponse,
    MovementStatus,
    Notification,
    NotificationStatus,
    PaymentMethod,
    PaymentResponse,
    ProcessRefundRequest,
    ReassignWinnerRequest,
    Refund,
    RefundResponse,
    RegisterPaymentRequest,
    RejectPaymentRequest,
    UpdateAuctionStatusRequest,
    User,
    UserBalance,
    UserType,
    WinnerResponse,
)
from .service import GarantiasService


logger = structlog.get_logger(__name__)


def _error_response(status_code: int, code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {
                "code": code,
                "message": message,
                "details": details,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        },
    )


def _field_path(loc) -> str:
    parts = [str(p) for p in loc]
    if parts and parts[0] in ("body", "query", "path", "header"):
        parts = parts[1:]
    return ".".join(parts)


def get_service(request: Request) -> GarantiasService:
    return request.app.state.service


def get_caller(
    x_user_id: UUID = Header(..., alias="X-User-Id"),
    x_user_role: UserType = Header(UserType.CLIENT, alias="X-User-Role"),
) -> Caller:
    return Caller(user_id=x_user_id, role=x_user_role)


def _read_voucher(voucher: Optional[UploadFile]) -> Optional[tuple[bytes, str]]:
    if voucher is None:
        return None
    return voucher.file.read(), voucher.filename or "voucher"


def create_app(service: Optional[GarantiasService] = None, root_path: str = "") -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="BOB Garantías API",
        description="Guarantee ledger for vehicle auctions: payments, balances, refunds and billing",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.service = service or GarantiasService(settings=settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GarantiasError)
    async def garantias_error_handler(request: Request, exc: GarantiasError):
        logger.warning("request_failed", path=request.url.path, code=exc.code, status_code=exc.status_code)
        return _error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(PydanticValidationError)
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": _field_path(err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return _error_response(422, "VALIDATION_ERROR",
                               "Datos de entrada inválidos", details)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path)
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_SERVER_ERROR",
                               "Error interno del servidor")

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "bob-garantias"}

    # Users

    @app.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def create_user(request: CreateUserRequest, caller: Caller = Depends(get_caller),
                    service: GarantiasService = Depends(get_service)):
        return service.create_user(caller, request)

    @app.get("/users/{user_id}", response_model=User, tags=["Users"])
    def get_user(user_id: UUID, caller: Caller = Depends(get_caller),
                 service: GarantiasService = Depends(get_service)):
        return service.get_user(caller, user_id)

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Balances"])
    def get_balance(user_id: UUID, caller: Caller = Depends(get_caller),
                    service: GarantiasService = Depends(get_service)):
        return service.balances.get_balance(caller, user_id)

    @app.post("/users/{user_id}/adjustments", response_model=MovementResponse,
              status_code=status.HTTP_201_CREATED, tags=["Balances"])
    def create_manual_adjustment(user_id: UUID, request: ManualAdjustmentRequest,
                                 caller: Caller = Depends(get_caller),
                                 service: GarantiasService = Depends(get_service)):
        return service.balances.create_manual_adjustment(caller, user_id, request)

    @app.get("/users/{user_id}/notifications", response_model=list[Notification], tags=["Users"])
    def list_notifications(user_id: UUID, estado: Optional[NotificationStatus] = None,
                           caller: Caller = Depends(get_caller),
                           service: GarantiasService = Depends(get_service)):
        return service.list_notifications(caller, user_id, estado)

    @app.patch("/notifications/read-all", response_model=MarkAllReadResult, tags=["Users"])
    def mark_all_notifications_read(caller: Caller = Depends(get_caller),
                                    service: GarantiasService = Depends(get_service)):
        return service.mark_all_notifications_read(caller)

    @app.patch("/notifications/{notification_id}/read", response_model=Notification, tags=["Users"])
    def mark_notification_read(notification_id: UUID, caller: Caller = Depends(get_caller),
                               service: GarantiasService = Depends(get_service)):
        return service.mark_notification_read(caller, notification_id)

    # Balances

    @app.get("/balances/stats", response_model=BalanceStats, tags=["Balances"])
    def get_balance_stats(caller: Caller = Depends(get_caller),
                          service: GarantiasService = Depends(get_service)):
        return service.balances.get_balance_stats(caller)

    @app.get("/balances/summary", response_model=BalanceSummaryResponse, tags=["Balances"])
    def get_balances_summary(
        search: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        caller: Caller = Depends(get_caller),
        service: GarantiasService = Depends(get_service),
    ):
        return service.balances.get_balances_summary(caller, search, limit, offset)

    @app.get("/balances/dashboard", response_model=BalanceDashboard, tags=["Balances"])
    def get_dashboard(caller: Caller = Depends(get_caller),
                      service: GarantiasService = Depends(get_service)):
        return service.balances.get_dashboard(caller)

    # Movements

    @app.get("/movements", response_model=MovementListResponse, tags=["Movements"])
    def list_movements(
        tipo: Optional[list[MovementKind]] = Query(None),
        estado: Optional[list[MovementStatus]] = Query(None),
        fecha_desde: Optional[datetime] = None,
        fecha_hasta: Optional[datetime] = None,
        user_id: Optional[UUID] = None,
        limit: int = Query(20, ge=1, le=100),
        offset: int = Query(0, ge=0),
        caller: Caller = Depends(get_caller),
        service: GarantiasService = Depends(get_service),
    ):
        filters = MovementFilters(tipo=tipo, estado=estado, fecha_desde=fecha_desde, fecha_hasta=fecha_hasta,
                                  user_id=user_id, limit=limit, offset=offset)
        return service.balances.list_movements(caller, filters)

    @app.get("/movements/{movement_id}", response_model=Movement, tags=["Movements"])
    def get_movement(movement_id: UUID, caller: Caller = Depends(get_caller),
                     service: GarantiasService = Depends(get_service)):
        return service.balances.get_movement(caller, movement_id)

    # Auctions

    @app.post("/auctions", response_model=AuctionDetail, status_code=status.HTTP_201_CREATED, tags=["Auctions"])
    def create_auction(request: CreateAuctionRequest, caller: Caller = Depends(get_caller),
                       service: GarantiasService = Depends(get_service)):
        return service.auctions.create_auction(caller, request)

    @app.get("/auctions", response_model=list[AuctionDetail], tags=["Auctions"])
    def list_auctions(estado: Optional[list[AuctionStatus]] = Query(None),
                      caller: Caller = Depends(get_caller),
                      service: GarantiasService = Depends(get_service)):
        return service.auctions.list_auctions(caller, estado)

    @app.get("/auctions/expired", response_model=list[AuctionDetail], tags=["Auctions"])
    def list_expired_auctions(caller: Caller = Depends(get_caller),
                              service: GarantiasService = Depends(get_service)):
        return service.auctions.list_expired_auctions(caller)

    @app.get("/auctions/{auction_id}", response_model=AuctionDetail, tags=["Auctions"])
    def get_auction(auction_id: UUID, caller: Caller = Depends(get_caller),
                    service: GarantiasService = Depends(get_service)):
        return service.auctions.get_auction(caller, auction_id)

    @app.patch("/auctions/{auction_id}/status", response_model=Auction, tags=["Auctions"])
    def update_auction_status(auction_id: UUID, request: UpdateAuctionStatusRequest,
                              caller: Caller = Depends(get_caller),
                              service: GarantiasService = Depends(get_service)):
        return service.auctions.update_status(caller, auction_id, request)

    @app.patch("/auctions/{auction_id}/deadline", response_model=AuctionDetail, tags=["Auctions"])
    def extend_deadline(auction_id: UUID, request: ExtendDeadlineRequest,
                        caller: Caller = Depends(get_caller),
                        service: GarantiasService = Depends(get_service)):
        return service.auctions.extend_deadline(caller, auction_id, request)

    @app.delete("/auctions/{auction_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Auctions"])
    def delete_auction(auction_id: UUID, caller: Caller = Depends(get_caller),
                       service: GarantiasService = Depends(get_service)):
        service.auctions.delete_auction(caller, auction_id)

    @app.post("/auctions/{auction_id}/winner", response_model=WinnerResponse,
              status_code=status.HTTP_201_CREATED, tags=["Auctions"])
    def create_winner(auction_id: UUID, request: CreateWinnerRequest,
                      caller: Caller = Depends(get_caller),
                      service: GarantiasService = Depends(get_service)):
        return service.winners.create_winner(caller, auction_id, request)

    @app.post("/auctions/{auction_id}/reassign-winner", response_model=WinnerResponse, tags=["Auctions"])
    def reassign_winner(auction_id: UUID, request: ReassignWinnerRequest,
                        caller: Caller = Depends(get_caller),
                        service: GarantiasService = Depends(get_service)):
        return service.winners.reassign_winner(caller, auction_id, request)

    @app.patch("/auctions/{auction_id}/competition-result", response_model=CompetitionResultResponse,
               tags=["Auctions"])
    def record_competition_result(auction_id: UUID, request: CompetitionResultRequest,
                                  caller: Caller = Depends(get_caller),
                                  service: GarantiasService = Depends(get_service)):
        return service.auctions.record_competition_result(caller, auction_id, request)

    # Guarantee payments

    @app.post("/guarantee-payments", response_model=PaymentResponse,
              status_code=status.HTTP_201_CREATED, tags=["Payments"])
    def register_payment(
        auction_id: UUID = Form(...),
        monto: Decimal = Form(...),
        tipo_pago: PaymentMethod = Form(...),
        fecha_pago: datetime = Form(...),
        numero_cuenta_origen: Optional[str] = Form(None),
        numero_operacion: Optional[str] = Form(None),
        moneda: str = Form("USD"),
        concepto: str = Form("Pago de garantía"),
        voucher: Optional[UploadFile] = File(None),
        caller: Caller = Depends(get_caller),
        service: GarantiasService = Depends(get_service),
    ):
        request = RegisterPaymentRequest(
            auction_id=auction_id, monto=monto, tipo_pago=tipo_pago, fecha_pago=fecha_pago,
            numero_cuenta_origen=numero_cuenta_origen, numero_operacion=numero_operacion,
            moneda=moneda, concepto=concepto,
        )
        return service.payments.register(caller, request, _read_voucher(voucher))

    @app.patch("/guarantee-payments/{movement_id}/approve", response_model=PaymentResponse, tags=["Payments"])
    def approve_payment(movement_id: UUID, request: Optional[ApprovePaymentRequest] = None,
                        caller: Caller = Depends(get_caller),
                        service: GarantiasService = Depends(get_service)):
        return service.payments.approve(caller, movement_id, request)

    @app.patch("/guarantee-payments/{movement_id}/reject", response_model=PaymentResponse, tags=["Payments"])
    def reject_payment(movement_id: UUID, request: RejectPaymentRequest,
                       caller: Caller = Depends(get_caller),
                       service: GarantiasService = Depends(get_service)):
        return service.payments.reject(caller, movement_id, request)

    # Refunds

    @app.post("/refunds", response_model=RefundResponse, status_code=status.HTTP_201_CREATED, tags=["Refunds"])
    def create_refund(request: CreateRefundRequest, caller: Caller = Depends(get_caller),
                      service: GarantiasService = Depends(get_service)):
        return service.refunds.create(caller, request)

    @app.get("/refunds", response_model=list[Refund], tags=["Refunds"])
    def list_refunds(user_id: Optional[UUID] = None, caller: Caller = Depends(get_caller),
                     service: GarantiasService = Depends(get_service)):
        return service.refunds.list_refunds(caller, user_id)

    @app.patch("/refunds/{refund_id}/manage", response_model=RefundResponse, tags=["Refunds"])
    def manage_refund(refund_id: UUID, request: ManageRefundRequest,
                      caller: Caller = Depends(get_caller),
                      service: GarantiasService = Depends(get_service)):
        return service.refunds.manage(caller, refund_id, request)

    @app.patch("/refunds/{refund_id}/process", response_model=RefundResponse, tags=["Refunds"])
    def process_refund(
        refund_id: UUID,
        tipo_transferencia: Optional[PaymentMethod] = Form(None),
        banco_destino: Optional[str] = Form(None),
        numero_cuenta_destino: Optional[str] = Form(None),
        numero_operacion: Optional[str] = Form(None),
        auction_id: Optional[UUID] = Form(None),
        voucher: Optional[UploadFile] = File(None),
        caller: Caller = Depends(get_caller),
        service: GarantiasService = Depends(get_service),
    ):
        request = ProcessRefundRequest(
            tipo_transferencia=tipo_transferencia, banco_destino=banco_destino,
            numero_cuenta_destino=numero_cuenta_destino, numero_operacion=numero_operacion,
            auction_id=auction_id,
        )
        return service.refunds.process(caller, refund_id, request, _read_voucher(voucher))

    @app.patch("/refunds/{refund_id}/cancel", response_model=RefundResponse, tags=["Refunds"])
    def cancel_refund(refund_id: UUID, caller: Caller = Depends(get_caller),
                      service: GarantiasService = Depends(get_service)):
        return service.refunds.cancel(caller, refund_id)

    # Billing

    @app.post("/billing", response_model=BillingResponse, status_code=status.HTTP_201_CREATED, tags=["Billing"])
    def create_billing(request: CreateBillingRequest, caller: Caller = Depends(get_caller),
                       service: GarantiasService = Depends(get_service)):
        return service.billing.create_billing(caller, request)

    @app.get("/billing", response_model=list[Billing], tags=["Billing"])
    def list_billings(user_id: Optional[UUID] = None, caller: Caller = Depends(get_caller),
                      service: GarantiasService = Depends(get_service)):
        return service.billing.list_billings(caller, user_id)

    # Jobs

    @app.get("/jobs", tags=["Jobs"])
    def list_jobs(service: GarantiasService = Depends(get_service)):
        return {"jobs": service.jobs.available()}

    @app.post("/jobs/run/{job_name}", tags=["Jobs"])
    def run_job(job_name: str, caller: Caller = Depends(get_caller),
                service: GarantiasService = Depends(get_service)):
        result = service.jobs.run(caller, job_name)
        return {
            "job_name": job_name,
            "result": result.model_dump(mode="json"),
            "executed_by": str(caller.user_id),
            "executed_at": datetime.now(timezone.utc).isoformat(),
        }


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
