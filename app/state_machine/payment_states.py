"""
Payment State Definitions - מטריצת מעברים של מצב תשלום הזמנה

המטריצה ממופה לפי ספק: לכל סטטוס יעד — רשימת הסטטוסים שמהם מותר להגיע אליו.
ה-guard עצמו רץ כ-UPDATE מותנה ב-payment_state_service.
"""
from enum import Enum

from app.db.models.order import PaymentProvider, PaymentStatus


class TransitionSource(str, Enum):
    """מי ביקש את המעבר — נרשם בלוג דחייה"""

    CHECKOUT = "checkout"
    MONOBANK_WEBHOOK = "monobank_webhook"
    ADMIN = "admin"
    JANITOR = "janitor"
    SYSTEM = "system"


class TransitionRejectReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    PROVIDER_MISMATCH = "PROVIDER_MISMATCH"
    ALREADY_IN_STATE = "ALREADY_IN_STATE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    BLOCKED = "BLOCKED"


_ALL_STATUSES = list(PaymentStatus)

# ספק חיצוני (monobank)
PSP_PAYMENT_TRANSITIONS: dict[PaymentStatus, list[PaymentStatus]] = {
    PaymentStatus.PENDING: [PaymentStatus.REQUIRES_PAYMENT],
    PaymentStatus.REQUIRES_PAYMENT: [PaymentStatus.PENDING],
    PaymentStatus.PAID: [PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT],
    PaymentStatus.FAILED: [PaymentStatus.PENDING, PaymentStatus.REQUIRES_PAYMENT],
    PaymentStatus.REFUNDED: [
        PaymentStatus.PAID,
        PaymentStatus.PENDING,
        PaymentStatus.REQUIRES_PAYMENT,
    ],
    PaymentStatus.NEEDS_REVIEW: _ALL_STATUSES,
}

# הזמנה ללא ספק תשלום (למשל הזמנה חינמית) — אין requires_payment / refunded
NONE_PAYMENT_TRANSITIONS: dict[PaymentStatus, list[PaymentStatus]] = {
    PaymentStatus.PENDING: [],
    PaymentStatus.REQUIRES_PAYMENT: [],
    PaymentStatus.PAID: [PaymentStatus.PAID],
    PaymentStatus.FAILED: [PaymentStatus.PAID, PaymentStatus.FAILED],
    PaymentStatus.REFUNDED: [],
    PaymentStatus.NEEDS_REVIEW: [],
}

# יעדים שספק none לא יכול להגיע אליהם בכלל — נדחים לפני SQL
NONE_PROVIDER_FORBIDDEN_TARGETS = frozenset({
    PaymentStatus.PENDING,
    PaymentStatus.REQUIRES_PAYMENT,
    PaymentStatus.REFUNDED,
    PaymentStatus.NEEDS_REVIEW,
})


def transitions_for(provider: PaymentProvider) -> dict[PaymentStatus, list[PaymentStatus]]:
    if provider == PaymentProvider.NONE:
        return NONE_PAYMENT_TRANSITIONS
    return PSP_PAYMENT_TRANSITIONS


def allowed_from(
    provider: PaymentProvider,
    to: PaymentStatus,
    allow_same_state: bool = False,
) -> list[PaymentStatus]:
    """הסטטוסים שמהם מותר לעבור ל-``to`` עבור ``provider``."""
    allowed = list(transitions_for(provider).get(to, []))
    if allow_same_state and to not in allowed:
        allowed.append(to)
    return allowed


def is_valid_transition(
    provider: PaymentProvider,
    current: PaymentStatus,
    to: PaymentStatus,
    allow_same_state: bool = False,
) -> bool:
    if provider == PaymentProvider.NONE and to in NONE_PROVIDER_FORBIDDEN_TARGETS:
        return False
    return current in allowed_from(provider, to, allow_same_state)
