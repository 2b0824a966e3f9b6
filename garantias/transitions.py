"""
Transition tables for the four state machines.

Auction:
- activa        → pendiente | cancelada
- pendiente     → en_validacion | vencida | pendiente (reassignment) | cancelada
- en_validacion → finalizada | pendiente
- vencida       → pendiente (reassignment) | cancelada
- finalizada    → ganada | perdida | penalizada
- ganada        → facturada
- perdida, penalizada, facturada, cancelada are terminal

Guarantee:  activa → ganadora | perdedora
Movement:   pendiente → validado | rechazado
Refund:     solicitado → confirmado | rechazado; confirmado → procesado | cancelado
"""
from enum import Enum
from typing import Dict, FrozenSet, Mapping, TypeVar

from .errors import InvalidStateTransitionError
from .models import AuctionStatus, GuaranteeStatus, MovementStatus, RefundStatus


S = TypeVar("S", bound=Enum)


AUCTION_TRANSITIONS: Dict[AuctionStatus, FrozenSet[AuctionStatus]] = {
    AuctionStatus.ACTIVA: frozenset({AuctionStatus.PENDIENTE, AuctionStatus.CANCELADA}),
    AuctionStatus.PENDIENTE: frozenset({
        AuctionStatus.EN_VALIDACION,
        AuctionStatus.VENCIDA,
        AuctionStatus.PENDIENTE,
        AuctionStatus.CANCELADA,
    }),
    AuctionStatus.EN_VALIDACION: frozenset({AuctionStatus.FINALIZADA, AuctionStatus.PENDIENTE}),
    AuctionStatus.VENCIDA: frozenset({AuctionStatus.PENDIENTE, AuctionStatus.CANCELADA}),
    AuctionStatus.FINALIZADA: frozenset({
        AuctionStatus.GANADA,
        AuctionStatus.PERDIDA,
        AuctionStatus.PENALIZADA,
    }),
    AuctionStatus.GANADA: frozenset({AuctionStatus.FACTURADA}),
    AuctionStatus.PERDIDA: frozenset(),
    AuctionStatus.PENALIZADA: frozenset(),
    AuctionStatus.FACTURADA: frozenset(),
    AuctionStatus.CANCELADA: frozenset(),
}

GUARANTEE_TRANSITIONS: Dict[GuaranteeStatus, FrozenSet[GuaranteeStatus]] = {
    GuaranteeStatus.ACTIVA: frozenset({GuaranteeStatus.GANADORA, GuaranteeStatus.PERDEDORA}),
    GuaranteeStatus.GANADORA: frozenset(),
    GuaranteeStatus.PERDEDORA: frozenset(),
}

MOVEMENT_TRANSITIONS: Dict[MovementStatus, FrozenSet[MovementStatus]] = {
    MovementStatus.PENDIENTE: frozenset({MovementStatus.VALIDADO, MovementStatus.RECHAZADO}),
    MovementStatus.VALIDADO: frozenset(),
    MovementStatus.RECHAZADO: frozenset(),
}

REFUND_TRANSITIONS: Dict[RefundStatus, FrozenSet[RefundStatus]] = {
    RefundStatus.SOLICITADO: frozenset({RefundStatus.CONFIRMADO, RefundStatus.RECHAZADO}),
    RefundStatus.CONFIRMADO: frozenset({RefundStatus.PROCESADO, RefundStatus.CANCELADO}),
    RefundStatus.RECHAZADO: frozenset(),
    RefundStatus.PROCESADO: frozenset(),
    RefundStatus.CANCELADO: frozenset(),
}

_MACHINES: Dict[type, tuple[str, Mapping]] = {
    AuctionStatus: ("Subasta", AUCTION_TRANSITIONS),
    GuaranteeStatus: ("Garantía", GUARANTEE_TRANSITIONS),
    MovementStatus: ("Movimiento", MOVEMENT_TRANSITIONS),
    RefundStatus: ("Reembolso", REFUND_TRANSITIONS),
}

# Auction states in which validated guarantees stay retained
RETAINING_AUCTION_STATES = frozenset({
    AuctionStatus.FINALIZADA,
    AuctionStatus.GANADA,
    AuctionStatus.PERDIDA,
})

REFUNDABLE_AUCTION_STATES = frozenset({AuctionStatus.PERDIDA, AuctionStatus.PENALIZADA})

IN_FLIGHT_REFUND_STATES = frozenset({RefundStatus.SOLICITADO, RefundStatus.CONFIRMADO})


def allowed_transitions(from_state: S) -> FrozenSet[S]:
    _, table = _MACHINES[type(from_state)]
    return table.get(from_state, frozenset())


def is_valid_transition(from_state: S, to_state: S) -> bool:
    return to_state in allowed_transitions(from_state)


def ensure_transition(from_state: S, to_state: S) -> S:
    if not is_valid_transition(from_state, to_state):
        entity, _ = _MACHINES[type(from_state)]
        raise InvalidStateTransitionError(entity, from_state.value, to_state.value)
    return to_state


def is_terminal(state: Enum) -> bool:
    return not allowed_transitions(state)
