"""Core domain logic for the group-buy coordination service.

This package contains zero external dependencies and represents
the pure business logic of the application. All adapters and
external integrations are handled by the adapters package.
"""

from .errors import (
    AlreadyPaid,
    CapacityExceeded,
    GroupBuyError,
    InvalidRequest,
    InvalidState,
    NotFound,
    PaymentRejected,
    PermissionDenied,
    PersistenceFailed,
    SettlementFailed,
    StockInsufficient,
    VoucherInvalid,
)
from .models import (
    Address,
    CheckoutResult,
    DeliveryMode,
    GroupDiscount,
    GroupOrder,
    GroupState,
    LineItem,
    Member,
    MemberStatus,
    OrderStatus,
    PaymentKind,
    PaymentMethod,
    PriceQuote,
    SettledOrder,
    SettledOrderLine,
    StatusChange,
    SweepResult,
    Voucher,
    VoucherScope,
    VoucherValidation,
)

__all__ = [
    "Address",
    "AlreadyPaid",
    "CapacityExceeded",
    "CheckoutResult",
    "DeliveryMode",
    "GroupBuyError",
    "GroupDiscount",
    "GroupOrder",
    "GroupState",
    "InvalidRequest",
    "InvalidState",
    "LineItem",
    "Member",
    "MemberStatus",
    "NotFound",
    "OrderStatus",
    "PaymentKind",
    "PaymentMethod",
    "PaymentRejected",
    "PermissionDenied",
    "PersistenceFailed",
    "PriceQuote",
    "SettledOrder",
    "SettledOrderLine",
    "SettlementFailed",
    "StatusChange",
    "StockInsufficient",
    "SweepResult",
    "Voucher",
    "VoucherInvalid",
    "VoucherScope",
    "VoucherValidation",
]
