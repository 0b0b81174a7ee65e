"""Domain error taxonomy for the group-buy core.

Every rejection carries a human-readable ``reason`` suitable for user
feedback and a stable ``code`` that driving adapters use to build typed
failure payloads.
"""


class GroupBuyError(Exception):
    """Base class for all domain failures."""

    code = "error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.reason}


class NotFound(GroupBuyError):
    """Group, member, item or order is absent."""

    code = "not_found"


class InvalidState(GroupBuyError):
    """Operation is illegal for the group's current lifecycle state."""

    code = "invalid_state"


class PermissionDenied(GroupBuyError):
    """Caller is not the host or owner where that is required."""

    code = "permission_denied"


class CapacityExceeded(GroupBuyError):
    """Member or target limits reached."""

    code = "capacity_exceeded"


class StockInsufficient(GroupBuyError):
    code = "stock_insufficient"


class VoucherInvalid(GroupBuyError):
    """Voucher rejected: scope, type, store mismatch or boundary rejection."""

    code = "voucher_invalid"


class PaymentRejected(GroupBuyError):
    """Payment method ineligible or settlement refused by the gateway."""

    code = "payment_rejected"


class AlreadyPaid(GroupBuyError):
    code = "already_paid"


class InvalidRequest(GroupBuyError, ValueError):
    """Malformed input (bad quantity, past deadline, missing field)."""

    code = "invalid_request"


class SettlementFailed(GroupBuyError):
    """The payment boundary failed unexpectedly. Nothing was committed."""

    code = "settlement_failed"


class PersistenceFailed(GroupBuyError):
    """The persistence boundary failed unexpectedly."""

    code = "persistence_failed"


class ServiceUnavailable(GroupBuyError):
    """A commerce boundary (pricing, vouchers, addresses) failed unexpectedly."""

    code = "service_unavailable"


__all__ = [
    "AlreadyPaid",
    "CapacityExceeded",
    "GroupBuyError",
    "InvalidRequest",
    "InvalidState",
    "NotFound",
    "PaymentRejected",
    "PermissionDenied",
    "PersistenceFailed",
    "ServiceUnavailable",
    "SettlementFailed",
    "StockInsufficient",
    "VoucherInvalid",
]
