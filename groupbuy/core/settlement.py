"""Settlement variants exchanged with the payment boundary.

Payment methods map onto a small closed set of settlement modes. The
gateway adapter dispatches on the mode; the core only ever calls one
``settle`` capability and interprets one of three outcomes.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from .models import PaymentKind, PaymentMethod


class SettlementMode(Enum):
    """How a payment method settles."""

    CASH_ON_DELIVERY = "cash_on_delivery"  # accepted locally, collected on delivery
    HOSTED_REDIRECT = "hosted_redirect"  # buyer completes payment on provider page
    WALLET = "wallet"  # debited synchronously from a stored balance


_MODE_BY_KIND = {
    PaymentKind.COD: SettlementMode.CASH_ON_DELIVERY,
    PaymentKind.VNPAY: SettlementMode.HOSTED_REDIRECT,
    PaymentKind.MOMO: SettlementMode.HOSTED_REDIRECT,
    PaymentKind.EVERYCOIN: SettlementMode.WALLET,
}


def mode_for(method: PaymentMethod) -> SettlementMode:
    """Select the settlement mode for a payment method."""
    return _MODE_BY_KIND[method.kind]


class SettlementStatus(Enum):
    ACCEPTED = "accepted"
    REDIRECT_REQUIRED = "redirect_required"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SettlementRequest:
    """Request to settle ``amount`` for one settled order."""

    order_ref: str
    method: PaymentMethod
    amount: Decimal
    user_id: str
    covers_group: bool = False

    @property
    def mode(self) -> SettlementMode:
        return mode_for(self.method)


@dataclass(frozen=True)
class SettlementResult:
    """Outcome reported by the payment boundary."""

    status: SettlementStatus
    redirect_url: str | None = None
    reason: str | None = None
    transaction_ref: str | None = None

    def __post_init__(self) -> None:
        if self.status == SettlementStatus.REDIRECT_REQUIRED and not self.redirect_url:
            raise ValueError("redirect_required outcome needs a redirect_url")
        if self.status == SettlementStatus.REJECTED and not self.reason:
            raise ValueError("rejected outcome needs a reason")

    @classmethod
    def accepted(cls, transaction_ref: str | None = None) -> "SettlementResult":
        return cls(SettlementStatus.ACCEPTED, transaction_ref=transaction_ref)

    @classmethod
    def redirect(cls, url: str) -> "SettlementResult":
        return cls(SettlementStatus.REDIRECT_REQUIRED, redirect_url=url)

    @classmethod
    def rejected(cls, reason: str) -> "SettlementResult":
        return cls(SettlementStatus.REJECTED, reason=reason)
