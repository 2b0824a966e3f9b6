"""
Movement ledger and balance reconciliation.

The ledger is append-only: rows are never deleted and only their state,
resolution timestamp and rejection reason change. ``saldo_total`` and
``saldo_retenido`` on the user row are caches re-derived from it inside the
same transaction as the mutation that affects them.
"""
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from .collaborators import NotificationDispatcher
from .config import Settings, get_settings
from .errors import ConflictError, NotFoundError, ValidationError, require_admin, require_owner_or_admin
from .models import (
    BalanceDashboard,
    BalanceStats,
    BalanceSummaryResponse,
    Caller,
    ManualAdjustmentRequest,
    Movement,
    MovementDirection,
    MovementFilters,
    MovementKind,
    MovementListResponse,
    MovementResponse,
    MovementStatus,
    UserBalance,
    UserBalanceSummary,
    UserType,
)
from .storage import InMemoryStorage
from .transitions import IN_FLIGHT_REFUND_STATES, RETAINING_AUCTION_STATES, ensure_transition


logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def guarantee_amount(offer, percentage: Decimal) -> Decimal:
    return money(Decimal(str(offer)) * percentage)


def _sum(rows: list[dict], field: str = "monto") -> Decimal:
    return money(sum((row[field] for row in rows), ZERO))


class MovementLedger:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or get_settings()

    def append(
        self,
        user_id: UUID,
        direccion: MovementDirection,
        tipo: MovementKind,
        monto,
        estado: MovementStatus,
        concepto: str,
        auction_id: Optional[UUID] = None,
        guarantee_id: Optional[UUID] = None,
        refund_id: Optional[UUID] = None,
        created_by: Optional[UUID] = None,
        **details,
    ) -> dict:
        amount = money(monto)
        if amount <= ZERO:
            raise ValidationError("El monto del movimiento debe ser mayor a 0", "INVALID_MOVEMENT_AMOUNT",
                                  {"received": str(monto)})
        self.storage.get("users", user_id, "Usuario")

        now = datetime.now(timezone.utc)
        movement_id = uuid4()
        row = {
            "id": movement_id,
            "user_id": user_id,
            "direccion": direccion,
            "tipo": tipo,
            "monto": amount,
            "moneda": details.pop("moneda", None) or self.settings.currency,
            "estado": estado,
            "concepto": concepto,
            "auction_id": auction_id,
            "guarantee_id": guarantee_id,
            "refund_id": refund_id,
            "tipo_pago": details.pop("tipo_pago", None),
            "numero_cuenta_origen": details.pop("numero_cuenta_origen", None),
            "numero_operacion": details.pop("numero_operacion", None),
            "voucher_url": details.pop("voucher_url", None),
            "fecha_pago": details.pop("fecha_pago", None) or now,
            "fecha_resolucion": now if estado == MovementStatus.VALIDADO else None,
            "motivo_rechazo": None,
            "created_by": created_by,
            "created_at": now,
        }
        if details:
            raise TypeError(f"Unexpected movement fields: {sorted(details)}")
        self.storage.movements[movement_id] = row
        logger.info(
            "movement_appended",
            movement_id=str(movement_id),
            user_id=str(user_id),
            direccion=direccion.value,
            tipo=tipo.value,
            monto=str(amount),
            estado=estado.value,
        )
        return row

    def resolve(
        self,
        movement: dict,
        estado: MovementStatus,
        motivo_rechazo: Optional[str] = None,
        comentarios: Optional[str] = None,
    ) -> dict:
        movement["estado"] = ensure_transition(movement["estado"], estado)
        movement["fecha_resolucion"] = datetime.now(timezone.utc)
        if estado == MovementStatus.RECHAZADO:
            movement["motivo_rechazo"] = motivo_rechazo
        if comentarios:
            movement["concepto"] = f"{movement['concepto']} | {comentarios}"
        return movement

    def select(self, user_id: UUID, predicate: Callable[[dict], bool] = lambda m: True) -> list[dict]:
        return self.storage.select("movements", lambda m: m["user_id"] == user_id and predicate(m))

    def validated(
        self,
        user_id: UUID,
        direccion: Optional[MovementDirection] = None,
        tipo: Optional[MovementKind] = None,
        auction_id: Optional[UUID] = None,
    ) -> list[dict]:
        return self.select(user_id, lambda m: (
            m["estado"] == MovementStatus.VALIDADO
            and (direccion is None or m["direccion"] == direccion)
            and (tipo is None or m["tipo"] == tipo)
            and (auction_id is None or m["auction_id"] == auction_id)
        ))

    def validated_guarantee_total(self, user_id: UUID, auction_id: UUID) -> Decimal:
        return _sum(self.validated(user_id, MovementDirection.ENTRADA, MovementKind.PAGO_GARANTIA, auction_id))

    def refundable_remainder(self, user_id: UUID, auction_id: UUID) -> Decimal:
        """Validated guarantee for the auction not yet paid out or forfeited."""
        guarantees = self.validated_guarantee_total(user_id, auction_id)
        penalties = _sum(self.validated(user_id, MovementDirection.SALIDA, MovementKind.PENALIDAD, auction_id))
        paid_out = _sum(self.validated(user_id, MovementDirection.SALIDA, MovementKind.REEMBOLSO, auction_id))
        return money(guarantees - penalties - paid_out)

    def pending_payments(self, auction_id: UUID, guarantee_id: Optional[UUID] = None) -> list[dict]:
        return self.storage.select("movements", lambda m: (
            m["auction_id"] == auction_id
            and m["tipo"] == MovementKind.PAGO_GARANTIA
            and m["estado"] == MovementStatus.PENDIENTE
            and (guarantee_id is None or m["guarantee_id"] == guarantee_id)
        ))

    def find_by_operation(self, user_id: UUID, numero_operacion: str) -> Optional[dict]:
        matches = self.select(user_id, lambda m: m["numero_operacion"] == numero_operacion)
        return matches[0] if matches else None


class BalanceReconciler:
    def __init__(self, storage: InMemoryStorage, ledger: MovementLedger):
        self.storage = storage
        self.ledger = ledger

    def recompute_total(self, user_id: UUID) -> Decimal:
        user = self.storage.get("users", user_id, "Usuario")
        entradas = self.ledger.select(user_id, lambda m: (
            m["estado"] == MovementStatus.VALIDADO
            and m["direccion"] == MovementDirection.ENTRADA
            and m["tipo"] != MovementKind.REEMBOLSO
        ))
        salidas = self.ledger.validated(user_id, MovementDirection.SALIDA)
        user["saldo_total"] = money(_sum(entradas) - _sum(salidas))
        return user["saldo_total"]

    def recompute_retained(self, user_id: UUID) -> Decimal:
        user = self.storage.get("users", user_id, "Usuario")
        retaining = {
            a["id"] for a in self.storage.auctions.values()
            if a["estado"] in RETAINING_AUCTION_STATES
        }
        guarantees = self.ledger.validated(user_id, MovementDirection.ENTRADA, MovementKind.PAGO_GARANTIA)
        refunds = self.ledger.validated(user_id, tipo=MovementKind.REEMBOLSO)
        retained_by_auctions = max(
            ZERO,
            _sum([m for m in guarantees if m["auction_id"] in retaining])
            - _sum([m for m in refunds if m["auction_id"] in retaining]),
        )
        user["saldo_retenido"] = money(retained_by_auctions + self.in_flight_hold(user_id))
        return user["saldo_retenido"]

    def reconcile(self, user_id: UUID) -> UserBalance:
        total = self.recompute_total(user_id)
        retained = self.recompute_retained(user_id)
        logger.debug("balance_reconciled", user_id=str(user_id), saldo_total=str(total), saldo_retenido=str(retained))
        return self.balance(user_id)

    def release_auction_retention(self, user_id: UUID, amount: Decimal) -> Decimal:
        user = self.storage.get("users", user_id, "Usuario")
        user["saldo_retenido"] = money(max(ZERO, user["saldo_retenido"] - money(amount)))
        return user["saldo_retenido"]

    def in_flight_hold(self, user_id: UUID) -> Decimal:
        refunds = self.storage.select("refunds", lambda r: (
            r["user_id"] == user_id and r["estado"] in IN_FLIGHT_REFUND_STATES
        ))
        return _sum(refunds, "monto_solicitado")

    def applied(self, user_id: UUID) -> Decimal:
        return _sum(self.storage.select("billings", lambda b: b["user_id"] == user_id))

    def balance(self, user_id: UUID) -> UserBalance:
        user = self.storage.get("users", user_id, "Usuario")
        applied = self.applied(user_id)
        return UserBalance(
            user_id=user_id,
            saldo_total=user["saldo_total"],
            saldo_retenido=user["saldo_retenido"],
            saldo_aplicado=applied,
            saldo_disponible=money(user["saldo_total"] - user["saldo_retenido"] - applied),
            saldo_en_reembolso=self.in_flight_hold(user_id),
        )


class BalanceService:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: MovementLedger,
        reconciler: BalanceReconciler,
        dispatcher: NotificationDispatcher,
    ):
        self.storage = storage
        self.ledger = ledger
        self.reconciler = reconciler
        self.dispatcher = dispatcher

    def get_balance(self, caller: Caller, user_id: UUID) -> UserBalance:
        require_owner_or_admin(caller, user_id)
        with self.storage.read():
            return self.reconciler.balance(user_id)

    def get_movement(self, caller: Caller, movement_id: UUID) -> Movement:
        with self.storage.read():
            row = self.storage.get("movements", movement_id, "Movimiento")
            require_owner_or_admin(caller, row["user_id"])
            return Movement(**row)

    def list_movements(self, caller: Caller, filters: Optional[MovementFilters] = None) -> MovementListResponse:
        filters = filters or MovementFilters()
        user_id = filters.user_id if caller.is_admin else caller.user_id

        def matches(m: dict) -> bool:
            return (
                (user_id is None or m["user_id"] == user_id)
                and (not filters.tipo or m["tipo"] in filters.tipo)
                and (not filters.estado or m["estado"] in filters.estado)
                and (filters.fecha_desde is None or m["created_at"] >= filters.fecha_desde)
                and (filters.fecha_hasta is None or m["created_at"] <= filters.fecha_hasta)
            )

        with self.storage.read():
            rows = [Movement(**m) for m in self.storage.select("movements", matches)]
        rows.sort(key=lambda m: m.created_at, reverse=True)
        return MovementListResponse(
            movements=rows[filters.offset:filters.offset + filters.limit],
            total_count=len(rows),
            limit=filters.limit,
            offset=filters.offset,
        )

    def create_manual_adjustment(
        self, caller: Caller, user_id: UUID, request: ManualAdjustmentRequest
    ) -> MovementResponse:
        require_admin(caller)
        with self.storage.transaction() as tx:
            user = self.storage.get("users", user_id, "Usuario")
            if user["user_type"] != UserType.CLIENT:
                raise NotFoundError("Cliente")

            if request.direccion == MovementDirection.SALIDA:
                available = self.reconciler.balance(user_id).saldo_disponible
                if money(request.monto) > available:
                    raise ConflictError(
                        "Saldo insuficiente para realizar la operación",
                        "INSUFFICIENT_AVAILABLE_BALANCE",
                        {"available": str(available), "required": str(request.monto)},
                    )

            movement = self.ledger.append(
                user_id,
                request.direccion,
                MovementKind.AJUSTE_MANUAL,
                request.monto,
                MovementStatus.VALIDADO,
                concepto=f"Ajuste manual: {request.motivo}",
                created_by=caller.user_id,
            )
            balance = self.reconciler.reconcile(user_id)
            self.dispatcher.notify(
                tx, user_id, "ajuste_manual", "Ajuste de saldo",
                f"Se registró un ajuste manual de ${movement['monto']} en su cuenta.",
                reference_type="movement", reference_id=movement["id"],
            )

        logger.info("manual_adjustment_created", movement_id=str(movement["id"]), admin_id=str(caller.user_id))
        return MovementResponse(movement=Movement(**movement), balance=balance)

    def _clients(self) -> list[dict]:
        return self.storage.select("users", lambda u: u["user_type"] == UserType.CLIENT)

    def _summary(self, user: dict) -> UserBalanceSummary:
        document = user.get("document_number")
        if document and user.get("document_type"):
            document = f"{user['document_type']} {document}"
        return UserBalanceSummary(
            user_id=user["id"],
            nombre=f"{user['first_name']} {user['last_name']}",
            documento=document,
            email=user.get("email"),
            balance=self.reconciler.balance(user["id"]),
        )

    def get_balance_stats(self, caller: Caller, now: Optional[datetime] = None) -> BalanceStats:
        require_admin(caller)
        now = now or datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        with self.storage.read():
            balances = [self.reconciler.balance(u["id"]) for u in self._clients()]
            movements_this_month = len(self.storage.select("movements", lambda m: m["created_at"] >= month_start))

        def total(field: str) -> Decimal:
            return money(sum((getattr(b, field) for b in balances), ZERO))

        return BalanceStats(
            saldo_total_sistema=total("saldo_total"),
            saldo_retenido_total=total("saldo_retenido"),
            saldo_aplicado_total=total("saldo_aplicado"),
            saldo_en_reembolso_total=total("saldo_en_reembolso"),
            saldo_disponible_total=total("saldo_disponible"),
            total_usuarios_con_saldo=sum(1 for b in balances if b.saldo_total > ZERO),
            total_usuarios=len(balances),
            movimientos_mes_actual=movements_this_month,
        )

    def get_balances_summary(
        self, caller: Caller, search: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> BalanceSummaryResponse:
        """Per-client balances, largest ``saldo_total`` first.

        ``search`` matches names, document number or email, case-insensitively.
        """
        require_admin(caller)
        needle = search.strip().lower() if search else None

        def matches(user: dict) -> bool:
            if not needle:
                return True
            fields = (user["first_name"], user["last_name"], user.get("document_number"), user.get("email"))
            return any(needle in value.lower() for value in fields if value)

        with self.storage.read():
            summaries = [self._summary(u) for u in self._clients() if matches(u)]
        summaries.sort(key=lambda s: s.balance.saldo_total, reverse=True)
        return BalanceSummaryResponse(
            balances=summaries[offset:offset + limit],
            total_count=len(summaries),
            limit=limit,
            offset=offset,
        )

    def get_dashboard(self, caller: Caller, top: int = 5) -> BalanceDashboard:
        stats = self.get_balance_stats(caller)
        return BalanceDashboard(
            statistics=stats,
            top_balances=self.get_balances_summary(caller, limit=top).balances,
            generated_at=datetime.now(timezone.utc),
        )
