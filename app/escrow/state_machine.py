# app/escrow/state_machine.py
from __future__ import annotations

from enum import Enum

from app.escrow.errors import PreconditionFailed


class InvalidTransition(PreconditionFailed):
    code = "INVALID_TRANSITION"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    RELEASED = "released"
    DISPUTED = "disputed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class DisputeStatus(str, Enum):
    OPEN = "open"
    RESOLVED_SELLER = "resolved_seller"
    RESOLVED_BUYER = "resolved_buyer"


class CredentialState(str, Enum):
    UNISSUED = "unissued"
    ISSUED = "issued"
    USED = "used"


class AttemptStatus(str, Enum):
    CLAIMED = "CLAIMED"
    TRANSFERRED = "TRANSFERRED"
    SETTLED = "SETTLED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
    TRANSFER_UNKNOWN = "TRANSFER_UNKNOWN"
    RETRYING = "RETRYING"


INVOICE_ALLOWED = {
    InvoiceStatus.PENDING: {InvoiceStatus.PAID, InvoiceStatus.EXPIRED},
    # paid -> completed: seller may release by code before marking delivered
    InvoiceStatus.PAID: {InvoiceStatus.DELIVERED, InvoiceStatus.COMPLETED, InvoiceStatus.REFUNDED},
    InvoiceStatus.DELIVERED: {InvoiceStatus.COMPLETED, InvoiceStatus.REFUNDED},
    InvoiceStatus.COMPLETED: set(),
    InvoiceStatus.EXPIRED: set(),
    InvoiceStatus.REFUNDED: set(),
}

MILESTONE_ALLOWED = {
    MilestoneStatus.PENDING: {MilestoneStatus.COMPLETED, MilestoneStatus.DISPUTED},
    MilestoneStatus.COMPLETED: {MilestoneStatus.RELEASED, MilestoneStatus.DISPUTED},
    MilestoneStatus.RELEASED: set(),
    MilestoneStatus.DISPUTED: set(),
}

PAYMENT_ALLOWED = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: set(),
    PaymentStatus.FAILED: set(),
}

DISPUTE_ALLOWED = {
    DisputeStatus.OPEN: {DisputeStatus.RESOLVED_SELLER, DisputeStatus.RESOLVED_BUYER},
    DisputeStatus.RESOLVED_SELLER: set(),
    DisputeStatus.RESOLVED_BUYER: set(),
}

CREDENTIAL_ALLOWED = {
    CredentialState.UNISSUED: {CredentialState.ISSUED},
    CredentialState.ISSUED: {CredentialState.USED},
    CredentialState.USED: set(),
}

ATTEMPT_ALLOWED = {
    AttemptStatus.CLAIMED: {
        AttemptStatus.TRANSFERRED,
        AttemptStatus.TRANSFER_FAILED,
        AttemptStatus.TRANSFER_UNKNOWN,
    },
    AttemptStatus.TRANSFER_FAILED: {AttemptStatus.RETRYING},
    AttemptStatus.RETRYING: {
        AttemptStatus.TRANSFERRED,
        AttemptStatus.TRANSFER_FAILED,
        AttemptStatus.TRANSFER_UNKNOWN,
    },
    AttemptStatus.TRANSFERRED: {AttemptStatus.SETTLED},
    AttemptStatus.SETTLED: set(),
    AttemptStatus.TRANSFER_UNKNOWN: set(),
}

_MACHINES = {
    InvoiceStatus: ("invoice", INVOICE_ALLOWED),
    MilestoneStatus: ("milestone", MILESTONE_ALLOWED),
    PaymentStatus: ("payment", PAYMENT_ALLOWED),
    DisputeStatus: ("dispute", DISPUTE_ALLOWED),
    CredentialState: ("credential", CREDENTIAL_ALLOWED),
    AttemptStatus: ("settlement attempt", ATTEMPT_ALLOWED),
}


def assert_transition(old, new) -> None:
    """
    Validate `old -> new` against the table of the enum `new` belongs to.
    `old` may be a raw column value.
    """
    if not isinstance(new, Enum) or type(new) not in _MACHINES:
        raise TypeError(f"Unknown state type: {new!r}")

    state_cls = type(new)
    label, allowed = _MACHINES[state_cls]
    try:
        old_state = state_cls(old)
    except ValueError:
        raise InvalidTransition(f"Illegal {label} transition: {old} -> {new.value}")

    if new not in allowed.get(old_state, set()):
        raise InvalidTransition(f"Illegal {label} transition: {old_state.value} -> {new.value}")


def sources_for(new) -> tuple[str, ...]:
    """Every state value from which `new` is reachable; used for compare-and-set updates."""
    _, allowed = _MACHINES[type(new)]
    return tuple(sorted(old.value for old, targets in allowed.items() if new in targets))


def is_terminal(state) -> bool:
    _, allowed = _MACHINES[type(state)]
    return not allowed.get(state)
