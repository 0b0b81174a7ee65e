"""Line items and member-count discount tiers.

The aggregator owns every line item contributed to a group and keeps item
prices consistent with the group's current discount tier. It mutates the
in-memory aggregate; the caller holds the group lock and persists.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal

from .errors import (
    InvalidRequest,
    InvalidState,
    NotFound,
    PermissionDenied,
    ServiceUnavailable,
    StockInsufficient,
)
from .events import GroupEvent
from .models import GroupOrder, GroupState, LineItem, Member, quantize_money
from .persistence import guarded
from .ports import PricingPort

logger = logging.getLogger(__name__)

# (minimum active members, discount percent), highest tier first
DISCOUNT_TIERS: tuple[tuple[int, int], ...] = ((8, 10), (5, 6), (3, 4), (2, 2))


def tier_discount_percent(active_count: int) -> int:
    """Return the discount percent earned by ``active_count`` active members."""
    for minimum, percent in DISCOUNT_TIERS:
        if active_count >= minimum:
            return percent
    return 0


def discounted_line_price(base_unit_price: Decimal, quantity: int, percent: int) -> Decimal:
    """Line total for ``quantity`` units at ``base_unit_price`` less ``percent``."""
    return quantize_money(
        base_unit_price * quantity * (Decimal(100) - percent) / Decimal(100)
    )


def recover_base_unit_price(item: LineItem, percent: int) -> Decimal:
    """Reverse ``percent`` out of a stored line price.

    Only needed for items persisted without a base price snapshot; the
    recovered value is stored so later recomputes start from it.
    """
    unit = item.price / item.quantity
    return quantize_money(unit * Decimal(100) / (Decimal(100) - percent))


def item_payload(item: LineItem) -> dict:
    return {
        "item_id": item.id,
        "member_id": item.member_id,
        "product_id": item.product_id,
        "variant_id": item.variant_id,
        "quantity": item.quantity,
        "price": str(item.price),
        "note": item.note,
    }


@dataclass
class TierChange:
    """Result of recomputing a group's discount tier."""

    group_id: str
    old_percent: int
    new_percent: int
    changed_items: list[LineItem] = field(default_factory=list)

    @property
    def tier_changed(self) -> bool:
        return self.old_percent != self.new_percent

    def events(self) -> list[GroupEvent]:
        events = [
            GroupEvent(self.group_id, "item-price-updated", item_payload(item))
            for item in self.changed_items
        ]
        if self.tier_changed:
            events.append(
                GroupEvent(
                    self.group_id,
                    "discount-updated",
                    {
                        "old_percent": self.old_percent,
                        "discount_percent": self.new_percent,
                    },
                )
            )
        return events


class ItemAggregator:
    """Owns add/update/remove of line items and tier recomputation."""

    def __init__(
        self,
        pricing: PricingPort,
        id_factory: Callable[[], str] | None = None,
    ):
        self.pricing = pricing
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    async def add_item(
        self,
        group: GroupOrder,
        member: Member,
        product_id: str,
        variant_id: str | None,
        quantity: int,
        note: str | None = None,
        pricing_rule_id: str | None = None,
    ) -> LineItem:
        """Add a product selection, merging with an existing line if present.

        Raises:
            InvalidState: If the group is not open or the member inactive.
            InvalidRequest: If quantity is below 1.
            StockInsufficient: If the merged quantity exceeds stock.
        """
        self._ensure_editable(group, member)
        if quantity < 1:
            raise InvalidRequest(f"Quantity must be at least 1, got {quantity}")

        existing = next(
            (i for i in group.items if i.matches(member.id, product_id, variant_id)),
            None,
        )
        total_quantity = quantity + (existing.quantity if existing else 0)
        await self._ensure_stock(product_id, variant_id, total_quantity)

        rule_id = pricing_rule_id or (existing.pricing_rule_id if existing else None)
        quote = await guarded(
            "price item",
            self.pricing.price(
                product_id, variant_id, total_quantity, self._context(group, rule_id)
            ),
            ServiceUnavailable,
        )
        price = discounted_line_price(
            quote.unit_price, total_quantity, group.discount_percent
        )

        if existing is not None:
            existing.quantity = total_quantity
            existing.base_unit_price = quote.unit_price
            existing.price = price
            existing.pricing_rule_id = quote.applied_rule_id
            if note is not None:
                existing.note = note
            logger.debug(
                f"Merged item into line {existing.id}",
                extra={"group_id": group.id, "quantity": total_quantity},
            )
            return existing

        item = LineItem(
            id=self._new_id(),
            member_id=member.id,
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            price=price,
            base_unit_price=quote.unit_price,
            note=note,
            pricing_rule_id=quote.applied_rule_id,
        )
        group.items.append(item)
        return item

    async def update_item(
        self,
        group: GroupOrder,
        member: Member,
        item_id: str,
        quantity: int | None = None,
        note: str | None = None,
    ) -> LineItem:
        """Change quantity and/or note of one of the member's own items."""
        self._ensure_editable(group, member)
        item = self._owned_item(group, member, item_id)
        if quantity is None and note is None:
            raise InvalidRequest("Nothing to update")

        if quantity is not None and quantity != item.quantity:
            if quantity < 1:
                raise InvalidRequest(f"Quantity must be at least 1, got {quantity}")
            await self._ensure_stock(item.product_id, item.variant_id, quantity)
            quote = await guarded(
                "price item",
                self.pricing.price(
                    item.product_id,
                    item.variant_id,
                    quantity,
                    self._context(group, item.pricing_rule_id),
                ),
                ServiceUnavailable,
            )
            item.quantity = quantity
            item.base_unit_price = quote.unit_price
            item.pricing_rule_id = quote.applied_rule_id
            item.price = discounted_line_price(
                quote.unit_price, quantity, group.discount_percent
            )
        if note is not None:
            item.note = note
        return item

    def remove_item(self, group: GroupOrder, member: Member, item_id: str) -> LineItem:
        """Delete one of the member's own items."""
        self._ensure_editable(group, member)
        item = self._owned_item(group, member, item_id)
        group.items.remove(item)
        return item

    def purge_member_items(self, group: GroupOrder, member_id: str) -> list[LineItem]:
        """Drop every item owned by ``member_id``. Returns the removed items."""
        removed = group.items_for(member_id)
        group.items = [i for i in group.items if i.member_id != member_id]
        return removed

    def on_tier_change(self, group: GroupOrder) -> TierChange:
        """Recompute the tier from the active member count and reprice items.

        Every price is recomputed from the item's base unit price, never
        from the previous discounted price, so repeated tier changes do not
        compound rounding. Calling this twice without a membership change
        leaves every price unchanged.
        """
        old_percent = group.discount_percent
        new_percent = tier_discount_percent(group.active_member_count)
        change = TierChange(group.id, old_percent, new_percent)

        for item in group.items:
            if item.base_unit_price is None:
                item.base_unit_price = recover_base_unit_price(item, old_percent)
            price = discounted_line_price(item.base_unit_price, item.quantity, new_percent)
            if price != item.price:
                item.price = price
                change.changed_items.append(item)

        group.discount_percent = new_percent
        if change.tier_changed:
            logger.info(
                f"Group {group.id} discount tier {old_percent}% -> {new_percent}%",
                extra={
                    "group_id": group.id,
                    "active_members": group.active_member_count,
                    "repriced_items": len(change.changed_items),
                },
            )
        return change

    def _ensure_editable(self, group: GroupOrder, member: Member) -> None:
        if group.state != GroupState.OPEN:
            raise InvalidState(
                f"Items can only be changed while the group is open (state: {group.state.value})"
            )
        if not member.is_active:
            raise InvalidState(f"Member {member.user_id} is no longer active in the group")

    def _owned_item(self, group: GroupOrder, member: Member, item_id: str) -> LineItem:
        item = group.item_by_id(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found in group {group.id}")
        if item.member_id != member.id:
            raise PermissionDenied("Only the member who added an item can change it")
        return item

    async def _ensure_stock(
        self, product_id: str, variant_id: str | None, quantity: int
    ) -> None:
        available = await guarded(
            "check stock",
            self.pricing.stock_available(product_id, variant_id),
            ServiceUnavailable,
        )
        if quantity > available:
            raise StockInsufficient(
                f"Only {available} units of product {product_id} available, "
                f"{quantity} requested"
            )

    @staticmethod
    def _context(group: GroupOrder, pricing_rule_id: str | None) -> dict:
        context = {"store_id": group.store_id, "group_id": group.id}
        if pricing_rule_id:
            context["pricing_rule_id"] = pricing_rule_id
        return context
