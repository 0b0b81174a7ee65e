"""Port interfaces for the group-buy coordination system.

These abstract base classes define the boundaries between core
domain logic and external adapters. Implementations live in the
adapters/ package.

Port Interface Categories:

1. **Driven Ports** (core calls out to adapters)
   - PricingPort: Unit prices and stock from the catalog
   - PaymentGatewayPort: Payment methods and settlement
   - VoucherPort: Voucher validation and redemption
   - AddressBookPort: Users' delivery addresses
   - NotificationPort: State-change events for connected clients
   - GroupOrderStorePort / SettledOrderStorePort: Persistence

2. **Driving Ports** (adapters/external systems call into core)
   - SweepPort: Entry point for time-driven expiry transitions
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from .models import (
    Address,
    GroupOrder,
    GroupState,
    LineItem,
    PaymentMethod,
    PriceQuote,
    SettledOrder,
    SweepResult,
    VoucherValidation,
)
from .settlement import SettlementRequest, SettlementResult


# ============================================================================
# DRIVEN PORTS (Core calls out to adapters)
# ============================================================================


class PricingPort(ABC):
    """Read-only pricing oracle backed by the product catalog.

    Implementations resolve the unit price with this precedence:
    explicit pricing-rule override > promotional rule matching the
    quantity and time window > variant price > product base price.
    """

    @abstractmethod
    async def price(
        self,
        product_id: str,
        variant_id: str | None,
        quantity: int,
        context: Mapping[str, Any] | None = None,
    ) -> PriceQuote:
        """Quote the pre-discount unit price for a product selection.

        Args:
            product_id: Catalog product identifier.
            variant_id: Optional variant of the product.
            quantity: Requested quantity (drives bulk/group rules).
            context: Discount context (store id, explicit pricing rule id,
                group id). Keys the adapter does not understand are ignored.

        Returns:
            PriceQuote with the unit price and the rule that produced it.

        Raises:
            NotFound: If the product or variant does not exist.
            Exception: If the catalog is unreachable.
        """

    @abstractmethod
    async def stock_available(self, product_id: str, variant_id: str | None) -> int:
        """Return the number of units currently available for sale."""


class PaymentGatewayPort(ABC):
    """Port for the payment settlement boundary.

    Gateway-specific protocols (signatures, redirect URLs, callback
    verification) stay inside the adapter. The core only sees the
    abstract settle contract.
    """

    @abstractmethod
    async def get_method(self, method_id: str) -> PaymentMethod | None:
        """Look up a payment method, including its COD flag.

        Returns:
            PaymentMethod if the id is known, None otherwise.
        """

    @abstractmethod
    async def settle(self, request: SettlementRequest) -> SettlementResult:
        """Settle a payment for one settled order.

        Args:
            request: Order reference, method and amount to settle.

        Returns:
            SettlementResult: accepted, redirect_required(url) or
            rejected(reason).

        Raises:
            Exception: If the gateway is unreachable or answers with an
                unexpected error. The caller rolls back its reservation.
        """


class VoucherPort(ABC):
    """Port for voucher validation and redemption."""

    @abstractmethod
    async def validate(
        self,
        code: str,
        user_id: str,
        items: Sequence[LineItem],
        store_id: str,
    ) -> VoucherValidation:
        """Validate a voucher code against a set of line items.

        Args:
            code: Voucher code entered by the user.
            user_id: User redeeming the voucher.
            items: Line items the discount is computed against.
            store_id: Store the items are bought from.

        Returns:
            VoucherValidation with the voucher and the discount amount.

        Raises:
            VoucherInvalid: If the code is unknown, expired, exhausted or
                the items do not qualify.
        """

    @abstractmethod
    async def apply(self, voucher_id: str, user_id: str, order_ref: str) -> None:
        """Record the redemption of a voucher for a settled order."""


class AddressBookPort(ABC):
    """Port for reading users' delivery addresses."""

    @abstractmethod
    async def get_address(self, address_id: str) -> Address | None:
        """Return the address, or None if it does not exist."""

    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[Address]:
        """Return a user's addresses, default address first."""


class NotificationPort(ABC):
    """Port for publishing state-change events to connected clients.

    Fire-and-forget from the core's perspective: delivery guarantees
    belong to the transport. Implementations should not raise for
    transient delivery problems; the core logs and ignores failures.
    """

    @abstractmethod
    async def publish(
        self, group_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        """Broadcast an event to everyone watching a group."""

    @abstractmethod
    async def notify_user(
        self, user_id: str, event_name: str, payload: dict[str, Any]
    ) -> None:
        """Send an event to a single user."""


class GroupOrderStorePort(ABC):
    """Port for persisting group aggregates.

    A group is saved and loaded as one unit: state, members and items.
    Implementations must make ``save`` atomic.
    """

    @abstractmethod
    async def get_by_id(self, group_id: str) -> GroupOrder | None:
        """Load a group by id, or None."""

    @abstractmethod
    async def get_by_join_code(self, join_code: str) -> GroupOrder | None:
        """Load a group by its (upper-case) join code, or None."""

    @abstractmethod
    async def get_by_invite_token(self, invite_token: str) -> GroupOrder | None:
        """Load a group by its shareable invite token, or None."""

    @abstractmethod
    async def save(self, group: GroupOrder) -> None:
        """Insert or replace the whole aggregate atomically."""

    @abstractmethod
    async def delete(self, group_id: str) -> None:
        """Delete a group and its members and items."""

    @abstractmethod
    async def query(
        self,
        states: Sequence[GroupState] | None = None,
        expires_before: datetime | None = None,
        user_id: str | None = None,
    ) -> list[GroupOrder]:
        """List groups matching all given filters.

        Args:
            states: Only groups in one of these states.
            expires_before: Only groups whose ``expires_at`` is set and
                earlier than or equal to this instant.
            user_id: Only groups where this user has a member record.

        Returns:
            Matching groups ordered by creation time, newest first.
        """


class SettledOrderStorePort(ABC):
    """Port for persisting settled purchase orders with their lines."""

    @abstractmethod
    async def get_by_id(self, order_id: str) -> SettledOrder | None:
        """Load a settled order, or None."""

    @abstractmethod
    async def save(self, order: SettledOrder) -> None:
        """Insert or replace an order together with all of its lines."""

    @abstractmethod
    async def delete(self, order_id: str) -> None:
        """Delete an order and its lines."""

    @abstractmethod
    async def list_for_group(self, group_id: str) -> list[SettledOrder]:
        """List the settled orders of a group, oldest first."""


# ============================================================================
# DRIVING PORTS (Adapters/external systems call into core)
# ============================================================================


class SweepPort(ABC):
    """Port for executing time-driven transitions.

    Driving port: the daemon scheduler or webhook trigger invokes these
    methods. Implementations live in the core (expiry_service.py).
    """

    @abstractmethod
    async def execute_sweep(self) -> SweepResult:
        """Inspect all open and locked groups and force due transitions.

        Should handle errors per group: one failing group is logged and
        counted, the sweep continues with the rest.
        """

    @abstractmethod
    async def expire_group(self, group_id: str) -> GroupState | None:
        """Apply the expiry rules to one group under its lock.

        Returns:
            The resulting state if a transition happened, None otherwise.
        """
