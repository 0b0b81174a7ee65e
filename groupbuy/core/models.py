"""Domain models for the group-buy coordination system.

All models in this module use only Python standard library types,
ensuring zero external dependencies in the core domain.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

MONEY_QUANTUM = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    """Round an amount to the currency quantum (half up)."""
    return Decimal(amount).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


class GroupState(Enum):
    """Lifecycle states for a group order.

    State transitions follow a directed workflow:
    - OPEN: accepting members and line items
    - LOCKED: membership and items frozen, awaiting payment
    - COMPLETED: settlement succeeded (terminal)
    - CANCELLED: expired or abandoned (terminal)

    The only reverse edge is LOCKED -> OPEN, legal while nobody has paid.
    """

    OPEN = "open"
    LOCKED = "locked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {GroupState.COMPLETED, GroupState.CANCELLED}


class DeliveryMode(Enum):
    """Where the settled goods are shipped."""

    HOST_ADDRESS = "host_address"
    MEMBER_ADDRESS = "member_address"


class MemberStatus(Enum):
    """Participation status of a member within one group."""

    JOINED = "joined"
    LEFT = "left"
    ORDERED = "ordered"
    REFUNDED = "refunded"


class OrderStatus(Enum):
    """Fulfillment status of settled orders, independent of GroupState."""

    DRAFT = "draft"
    WAITING_GROUP = "waiting_group"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentKind(Enum):
    """Payment method types offered by the gateway."""

    COD = "cod"
    VNPAY = "vnpay"
    MOMO = "momo"
    EVERYCOIN = "everycoin"


class VoucherScope(Enum):
    """Who funds a voucher and what it can be applied to."""

    PLATFORM = "platform"
    STORE = "store"
    SHIPPING = "shipping"


ACTIVE_MEMBER_STATUSES = frozenset({MemberStatus.JOINED, MemberStatus.ORDERED})


@dataclass
class Member:
    """A user's participation record within one group."""

    id: str
    user_id: str
    is_host: bool
    status: MemberStatus
    joined_at: datetime
    has_paid: bool = False
    address_id: str | None = None
    order_id: str | None = None
    pending_order_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_MEMBER_STATUSES

    def mark_paid(self, order_id: str) -> None:
        """Record a successful settlement for this member."""
        self.has_paid = True
        self.status = MemberStatus.ORDERED
        self.order_id = order_id
        self.pending_order_id = None

    def mark_left(self) -> None:
        """Mark the member as having left the group."""
        if self.is_host:
            raise ValueError("The host cannot leave the group")
        self.status = MemberStatus.LEFT

    def mark_refunded(self) -> None:
        """Flag a paid member for the external refund process."""
        if not self.has_paid:
            raise ValueError(f"Member {self.id} has not paid; nothing to refund")
        self.status = MemberStatus.REFUNDED

    def reactivate(self) -> None:
        self.status = MemberStatus.JOINED


@dataclass
class LineItem:
    """One member's selection of a product (optionally a variant).

    ``price`` is the line total (discounted unit price x quantity).
    ``base_unit_price`` is the pre-discount unit price quoted by the
    pricing oracle; tier recomputation always starts from it.
    """

    id: str
    member_id: str
    product_id: str
    variant_id: str | None
    quantity: int
    price: Decimal
    base_unit_price: Decimal | None = None
    note: str | None = None
    pricing_rule_id: str | None = None

    def __post_init__(self) -> None:
        """Validate line item invariants on creation."""
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {self.quantity}")
        if self.price < 0:
            raise ValueError(f"price must be non-negative, got {self.price}")

    def matches(self, member_id: str, product_id: str, variant_id: str | None) -> bool:
        return (
            self.member_id == member_id
            and self.product_id == product_id
            and self.variant_id == variant_id
        )


@dataclass
class GroupOrder:
    """A group-buy session: the per-group aggregate and unit of locking."""

    id: str
    join_code: str
    invite_token: str
    name: str
    store_id: str
    host_user_id: str
    state: GroupState
    created_at: datetime
    delivery_mode: DeliveryMode = DeliveryMode.HOST_ADDRESS
    expires_at: datetime | None = None
    join_expires_at: datetime | None = None
    target_member_count: int | None = None
    discount_percent: int = 0
    order_status: OrderStatus | None = None
    members: list[Member] = field(default_factory=list)
    items: list[LineItem] = field(default_factory=list)
    settled_order_ids: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Validate group invariants on creation or deserialization."""
        if not self.name or not self.name.strip():
            raise ValueError("name must be a non-empty string")
        hosts = [m for m in self.members if m.is_host]
        if len(hosts) > 1:
            raise ValueError(f"group {self.id} has {len(hosts)} hosts")
        if hosts and hosts[0].status == MemberStatus.LEFT:
            raise ValueError("the host member cannot be in 'left' status")

    @property
    def host_member(self) -> Member:
        for member in self.members:
            if member.is_host:
                return member
        raise ValueError(f"group {self.id} has no host member")

    def active_members(self) -> list[Member]:
        return [m for m in self.members if m.is_active]

    @property
    def active_member_count(self) -> int:
        return len(self.active_members())

    def member_for_user(self, user_id: str) -> Member | None:
        return next((m for m in self.members if m.user_id == user_id), None)

    def member_by_id(self, member_id: str) -> Member | None:
        return next((m for m in self.members if m.id == member_id), None)

    def items_for(self, member_id: str) -> list[LineItem]:
        return [item for item in self.items if item.member_id == member_id]

    def item_by_id(self, item_id: str) -> LineItem | None:
        return next((i for i in self.items if i.id == item_id), None)

    def members_without_items(self) -> list[Member]:
        with_items = {item.member_id for item in self.items}
        return [m for m in self.active_members() if m.id not in with_items]

    def members_without_address(self) -> list[Member]:
        return [m for m in self.active_members() if not m.address_id]

    def any_member_paid(self) -> bool:
        return any(m.has_paid for m in self.members)

    def paid_count(self) -> int:
        return sum(1 for m in self.active_members() if m.has_paid)

    def subtotal(self, member_id: str | None = None) -> Decimal:
        """Sum of line prices, for one member or for the whole group."""
        items = self.items if member_id is None else self.items_for(member_id)
        return sum((item.price for item in items), Decimal("0"))

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_join_window_closed(self, now: datetime) -> bool:
        if self.is_expired(now):
            return True
        return self.join_expires_at is not None and self.join_expires_at <= now


@dataclass(frozen=True)
class SettledOrderLine:
    """A line copied from a group LineItem into a settled order."""

    line_item_id: str
    product_id: str
    variant_id: str | None
    quantity: int
    price: Decimal
    note: str | None = None


@dataclass(frozen=True)
class StatusChange:
    """One entry in a settled order's fulfillment history."""

    old_status: OrderStatus
    new_status: OrderStatus
    changed_at: datetime
    note: str | None = None


@dataclass
class SettledOrder:
    """Purchase order produced by checkout.

    Created and referenced by this core; fulfillment and shipping are
    handled by external processes.
    """

    id: str
    group_id: str
    user_id: str
    store_id: str
    address_id: str
    lines: tuple[SettledOrderLine, ...]
    subtotal: Decimal
    discount_total: Decimal
    total_amount: Decimal
    status: OrderStatus
    payment_method_id: str
    created_at: datetime
    shipping_fee: Decimal = Decimal("0")
    voucher_id: str | None = None
    covers_group: bool = False
    transaction_ref: str | None = None
    status_history: tuple[StatusChange, ...] = ()

    def __post_init__(self) -> None:
        """Validate settled order invariants on creation."""
        if not self.lines:
            raise ValueError("a settled order needs at least one line")
        if self.discount_total < 0 or self.discount_total > self.subtotal:
            raise ValueError(
                f"discount_total {self.discount_total} must be within "
                f"[0, subtotal={self.subtotal}]"
            )

    def change_status(
        self, new_status: OrderStatus, changed_at: datetime, note: str | None = None
    ) -> None:
        """Move to a new fulfillment status, recording the change."""
        change = StatusChange(
            old_status=self.status,
            new_status=new_status,
            changed_at=changed_at,
            note=note,
        )
        self.status_history = self.status_history + (change,)
        self.status = new_status


@dataclass(frozen=True)
class Address:
    """A delivery address from the user's address book."""

    id: str
    user_id: str
    is_default: bool = False
    label: str | None = None


@dataclass(frozen=True)
class PriceQuote:
    """Unit price returned by the pricing oracle."""

    unit_price: Decimal
    applied_rule_id: str | None = None

    def __post_init__(self) -> None:
        if self.unit_price <= 0:
            raise ValueError(f"unit_price must be positive, got {self.unit_price}")


@dataclass(frozen=True)
class PaymentMethod:
    """A payment method as described by the gateway."""

    id: str
    kind: PaymentKind
    name: str = ""

    @property
    def is_cash_on_delivery(self) -> bool:
        return self.kind == PaymentKind.COD


@dataclass(frozen=True)
class Voucher:
    """A voucher resolved by the voucher boundary."""

    id: str
    code: str
    scope: VoucherScope
    store_id: str | None = None


@dataclass(frozen=True)
class VoucherValidation:
    """Result of validating a voucher code against a set of items."""

    voucher: Voucher
    discount_amount: Decimal


@dataclass(frozen=True)
class GroupDiscount:
    """Host-applied voucher discount shared by per-member checkouts."""

    group_id: str
    voucher_id: str
    code: str
    total_discount: Decimal
    group_subtotal: Decimal


@dataclass(frozen=True)
class CheckoutResult:
    """Outcome of a checkout call."""

    order: SettledOrder
    group_state: GroupState
    paid_count: int
    total_count: int
    redirect_url: str | None = None

    @property
    def awaiting_payment(self) -> bool:
        return self.redirect_url is not None


@dataclass(frozen=True)
class SweepResult:
    """Summary of an expiry sweep execution."""

    groups_examined: int
    groups_locked: int
    groups_cancelled: int
    members_removed: int
    members_refunded: int
    timestamp: datetime
    groups_failed: int = 0
