"""Payment status transition table.

``pending`` resolves to one of ``successful``, ``failed`` or ``expired``;
only ``successful`` may later move to ``refunded``. The table is checked when
this module is imported, so a malformed edit fails at startup rather than at
runtime.
"""

from enum import Enum
from types import MappingProxyType
from typing import Mapping

from membella.modules.payment.models import PaymentStatus


class TransitionOutcome(str, Enum):
    """What a requested status change did."""
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    REJECTED = "rejected"
    LOST_RACE = "lost_race"


ALLOWED_TRANSITIONS: Mapping[PaymentStatus, frozenset[PaymentStatus]] = MappingProxyType({
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.SUCCESSFUL,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
    }),
    PaymentStatus.SUCCESSFUL: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
})

# Statuses after which polling stops
TERMINAL_STATUSES: frozenset[PaymentStatus] = frozenset({
    PaymentStatus.SUCCESSFUL,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
    PaymentStatus.REFUNDED,
})


def _check_table(table: Mapping[PaymentStatus, frozenset[PaymentStatus]]) -> None:
    missing = set(PaymentStatus) - set(table)
    if missing:
        raise RuntimeError(f"Transition table missing statuses: {sorted(s.value for s in missing)}")
    for source, targets in table.items():
        if source in targets:
            raise RuntimeError(f"Transition table has a self edge on {source.value}")
        if PaymentStatus.PENDING in targets:
            raise RuntimeError(f"Transition table moves {source.value} back to pending")
    for sink in (PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.REFUNDED):
        if table[sink]:
            raise RuntimeError(f"{sink.value} must not have outgoing transitions")


_check_table(ALLOWED_TRANSITIONS)


def can_transition(current: PaymentStatus | str, new: PaymentStatus | str) -> bool:
    """Whether ``current -> new`` is an edge of the table."""
    return PaymentStatus(new) in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def is_terminal(status: PaymentStatus | str) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES
