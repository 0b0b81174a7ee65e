"""Checkout orchestration: turning a locked group into settled orders.

Two settlement paths exist. In host-pays-all the host settles every line
item of the group in one order. In per-member checkout each member settles
their own items and the group completes once every active member has paid.

Both paths follow the same three-phase protocol so the group lock is never
held across the payment gateway call:

1. Reserve (under the group lock): validate, persist a ``draft`` settled
   order and mark the member's ``pending_order_id``.
2. Settle (no lock): call the payment gateway.
3. Finalize or roll back (under the group lock, group re-loaded): on
   acceptance mark members paid and complete the group when due; on
   rejection or failure delete the draft and clear the pending marker.
   A redirect leaves the reservation pending until the gateway callback
   reaches ``record_payment_result``.
"""

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal

from .cache import GroupDiscountCache
from .clock import Clock, utc_now
from .errors import (
    AlreadyPaid,
    InvalidRequest,
    InvalidState,
    NotFound,
    PaymentRejected,
    PermissionDenied,
    PersistenceFailed,
    ServiceUnavailable,
    SettlementFailed,
    VoucherInvalid,
)
from .events import EventPublisher, GroupEvent
from .locks import GroupLockRegistry
from .models import (
    CheckoutResult,
    DeliveryMode,
    GroupDiscount,
    GroupOrder,
    GroupState,
    LineItem,
    Member,
    OrderStatus,
    PaymentMethod,
    SettledOrder,
    SettledOrderLine,
    VoucherScope,
    quantize_money,
)
from .persistence import guarded
from .ports import (
    AddressBookPort,
    GroupOrderStorePort,
    PaymentGatewayPort,
    SettledOrderStorePort,
    VoucherPort,
)
from .settlement import SettlementRequest, SettlementResult, SettlementStatus
from .state_machine import GroupOrderStateMachine

logger = logging.getLogger(__name__)

DEFAULT_COD_MEMBER_LIMIT = 5
GROUP_VOUCHER_SCOPES = frozenset({VoucherScope.PLATFORM, VoucherScope.STORE})
WHOLE_UNIT = Decimal("1")


def prorate_discount(
    total_discount: Decimal, member_subtotal: Decimal, group_subtotal: Decimal
) -> Decimal:
    """Member's share of a group discount, rounded down to a whole currency unit.

    Rounding down means the sum of all shares never exceeds the total; any
    remainder stays with the platform.
    """
    if group_subtotal <= 0 or total_discount <= 0:
        return Decimal("0.00")
    share = (total_discount * member_subtotal / group_subtotal).quantize(
        WHOLE_UNIT, rounding=ROUND_FLOOR
    )
    return quantize_money(min(share, member_subtotal))


@dataclass(frozen=True)
class _Reservation:
    group_id: str
    order: SettledOrder
    method: PaymentMethod


class CheckoutOrchestrator:
    """Converts locked groups into settled orders via the payment boundary."""

    def __init__(
        self,
        groups: GroupOrderStorePort,
        orders: SettledOrderStorePort,
        payments: PaymentGatewayPort,
        vouchers: VoucherPort,
        addresses: AddressBookPort,
        state_machine: GroupOrderStateMachine,
        locks: GroupLockRegistry,
        discount_cache: GroupDiscountCache,
        publisher: EventPublisher,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
        cod_member_limit: int = DEFAULT_COD_MEMBER_LIMIT,
    ):
        self.groups = groups
        self.orders = orders
        self.payments = payments
        self.vouchers = vouchers
        self.addresses = addresses
        self.state_machine = state_machine
        self.locks = locks
        self.discount_cache = discount_cache
        self.publisher = publisher
        self.cod_member_limit = cod_member_limit
        self._clock = clock or utc_now
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    # ------------------------------------------------------------------
    # Host-pays-all
    # ------------------------------------------------------------------

    async def checkout_group(
        self,
        group_id: str,
        user_id: str,
        payment_method_id: str,
        address_id: str | None = None,
        voucher_code: str | None = None,
    ) -> CheckoutResult:
        """Host settles every line item of the group in a single order."""
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            host = self._require_host(group, user_id)
            if group.delivery_mode != DeliveryMode.HOST_ADDRESS:
                raise InvalidState(
                    "Groups delivering to member addresses are paid by each member"
                )
            self._ensure_locked(group)
            if group.any_member_paid() or any(m.pending_order_id for m in group.members):
                raise InvalidState("Members have already started paying individually")
            if not group.items:
                raise InvalidState("Group has no items")

            method = await self._eligible_method(group, payment_method_id)
            if not address_id:
                raise InvalidRequest("A delivery address is required")
            address_id = await self._owned_address(address_id, group.host_user_id)

            subtotal = group.subtotal()
            discount = Decimal("0.00")
            voucher_id = None
            if voucher_code:
                discount, voucher_id = await self._validate_voucher(
                    group, voucher_code, user_id, group.items, subtotal
                )

            order = self._build_order(
                group,
                user_id=user_id,
                address_id=address_id,
                items=group.items,
                discount=discount,
                method=method,
                voucher_id=voucher_id,
                covers_group=True,
            )
            reservation = await self._reserve(group, host, order, method)

        return await self._settle(reservation)

    # ------------------------------------------------------------------
    # Per-member checkout
    # ------------------------------------------------------------------

    async def checkout_member(
        self,
        group_id: str,
        user_id: str,
        payment_method_id: str,
        address_id: str | None = None,
        voucher_code: str | None = None,
    ) -> CheckoutResult:
        """A member settles only their own line items.

        Only the host may pass ``voucher_code``; the discount it grants is
        validated against the whole group once, cached, and shared with
        every member in proportion to their subtotal.
        """
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            self._ensure_locked(group)
            member = group.member_for_user(user_id)
            if member is None or not member.is_active:
                raise NotFound(f"User {user_id} is not a member of group {group.id}")
            if member.has_paid:
                raise AlreadyPaid("You have already paid for this group")
            if member.pending_order_id:
                raise InvalidState("A payment for this member is already in progress")
            if voucher_code and not member.is_host:
                raise PermissionDenied("Only the host can apply a voucher")

            items = group.items_for(member.id)
            if not items:
                raise InvalidState("You have not selected any items")

            method = await self._eligible_method(group, payment_method_id)
            delivery_address = await self._member_delivery_address(group, member, address_id)

            if voucher_code:
                await self._apply_group_voucher(group, voucher_code, user_id)

            member_subtotal = group.subtotal(member.id)
            discount = Decimal("0.00")
            voucher_id = None
            group_discount = self.discount_cache.lookup(group.id)
            if group_discount is not None:
                discount = prorate_discount(
                    group_discount.total_discount,
                    member_subtotal,
                    group_discount.group_subtotal,
                )
                if discount > 0:
                    voucher_id = group_discount.voucher_id

            order = self._build_order(
                group,
                user_id=user_id,
                address_id=delivery_address,
                items=items,
                discount=discount,
                method=method,
                voucher_id=voucher_id,
                covers_group=False,
            )
            reservation = await self._reserve(group, member, order, method)

        return await self._settle(reservation)

    async def apply_group_voucher(
        self, group_id: str, user_id: str, voucher_code: str
    ) -> GroupDiscount:
        """Host validates a voucher against the full group ahead of checkout."""
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            self._require_host(group, user_id)
            self._ensure_locked(group)
            discount = await self._apply_group_voucher(group, voucher_code, user_id)

        await self.publisher.publish(
            GroupEvent(
                group_id,
                "voucher-applied",
                {
                    "code": discount.code,
                    "total_discount": str(discount.total_discount),
                    "group_subtotal": str(discount.group_subtotal),
                },
            )
        )
        return discount

    # ------------------------------------------------------------------
    # Gateway callback
    # ------------------------------------------------------------------

    async def record_payment_result(
        self,
        order_id: str,
        success: bool,
        transaction_ref: str | None = None,
        reason: str | None = None,
    ) -> SettledOrder | None:
        """Finalize or roll back a settlement that required a redirect.

        Callbacks for orders that are already finalized or already rolled
        back are ignored, so the gateway may safely retry.

        Returns:
            The finalized order, or None when the payment failed or the
            callback was a duplicate for a rolled-back order.
        """
        order = await guarded("load settled order", self.orders.get_by_id(order_id))
        if order is None:
            logger.warning(
                f"Ignoring payment callback for unknown order {order_id}",
                extra={"order_id": order_id},
            )
            return None
        if order.status != OrderStatus.DRAFT:
            logger.info(
                f"Ignoring duplicate payment callback for order {order_id}",
                extra={"order_id": order_id, "status": order.status.value},
            )
            return order

        if success:
            _, events = await self._finalize(order.group_id, order_id, transaction_ref)
            await self.publisher.publish_all(events)
            return await guarded("load settled order", self.orders.get_by_id(order_id))

        await self._rollback(order.group_id, order_id, reason or "payment failed")
        return None

    # ------------------------------------------------------------------
    # Settlement protocol
    # ------------------------------------------------------------------

    async def _reserve(
        self,
        group: GroupOrder,
        member: Member,
        order: SettledOrder,
        method: PaymentMethod,
    ) -> _Reservation:
        await guarded("save draft order", self.orders.save(order))
        member.pending_order_id = order.id
        try:
            await guarded("save group", self.groups.save(group))
        except PersistenceFailed:
            member.pending_order_id = None
            await self._discard_draft(order.id)
            raise
        logger.info(
            f"Reserved order {order.id} for group {group.id}",
            extra={
                "group_id": group.id,
                "order_id": order.id,
                "user_id": order.user_id,
                "amount": str(order.total_amount),
                "covers_group": order.covers_group,
            },
        )
        return _Reservation(group_id=group.id, order=order, method=method)

    async def _settle(self, reservation: _Reservation) -> CheckoutResult:
        order = reservation.order
        request = SettlementRequest(
            order_ref=order.id,
            method=reservation.method,
            amount=order.total_amount,
            user_id=order.user_id,
            covers_group=order.covers_group,
        )
        try:
            result: SettlementResult = await self.payments.settle(request)
        except Exception as e:
            logger.error(
                f"Payment gateway failed for order {order.id}: {e}",
                extra={"group_id": reservation.group_id, "order_id": order.id},
                exc_info=True,
            )
            await self._rollback(reservation.group_id, order.id, "gateway failure")
            raise SettlementFailed(
                "Payment could not be processed; nothing was charged"
            ) from e

        if result.status == SettlementStatus.REJECTED:
            await self._rollback(reservation.group_id, order.id, result.reason or "")
            raise PaymentRejected(f"Payment rejected: {result.reason}")

        if result.status == SettlementStatus.REDIRECT_REQUIRED:
            group = await self._load(reservation.group_id)
            logger.info(
                f"Order {order.id} awaiting payment at gateway",
                extra={"group_id": group.id, "order_id": order.id},
            )
            return CheckoutResult(
                order=order,
                group_state=group.state,
                paid_count=group.paid_count(),
                total_count=group.active_member_count,
                redirect_url=result.redirect_url,
            )

        group, events = await self._finalize(
            reservation.group_id, order.id, result.transaction_ref
        )
        await self.publisher.publish_all(events)
        finalized = await guarded("load settled order", self.orders.get_by_id(order.id))
        return CheckoutResult(
            order=finalized or order,
            group_state=group.state,
            paid_count=group.paid_count(),
            total_count=group.active_member_count,
        )

    async def _finalize(
        self, group_id: str, order_id: str, transaction_ref: str | None
    ) -> tuple[GroupOrder, list[GroupEvent]]:
        """Apply an accepted settlement. Runs under the group lock."""
        events: list[GroupEvent] = []
        async with self.locks.hold(group_id):
            group = await self._load(group_id)
            order = await guarded("load settled order", self.orders.get_by_id(order_id))
            if order is None:
                raise NotFound(f"Settled order {order_id} not found")
            if order.status != OrderStatus.DRAFT:
                return group, events

            now = self._clock()
            payer = group.member_for_user(order.user_id)
            if payer is None:
                raise NotFound(f"User {order.user_id} is not a member of group {group.id}")

            if order.covers_group:
                for member in group.active_members():
                    member.mark_paid(order.id)
            else:
                payer.mark_paid(order.id)
            order.transaction_ref = transaction_ref
            if order.id not in group.settled_order_ids:
                group.settled_order_ids.append(order.id)

            changed_orders = [order]
            if group.state == GroupState.LOCKED:
                initial = (
                    OrderStatus.WAITING_GROUP
                    if group.delivery_mode == DeliveryMode.MEMBER_ADDRESS
                    and not order.covers_group
                    else OrderStatus.PENDING
                )
                order.change_status(initial, now, "payment accepted")
                events.append(
                    GroupEvent(
                        group.id,
                        "member-paid",
                        {
                            "user_id": payer.user_id,
                            "member_id": payer.id,
                            "order_id": order.id,
                        },
                    )
                )
                paid, total = group.paid_count(), group.active_member_count
                events.append(
                    GroupEvent(
                        group.id,
                        "payment-progress",
                        {
                            "paid_count": paid,
                            "total_count": total,
                            "progress": round(paid * 100 / total) if total else 0,
                        },
                    )
                )
                if order.covers_group or self._all_active_paid(group):
                    changed_orders.extend(await self._complete(group, order, now))
                    events.append(
                        GroupEvent(
                            group.id,
                            "group-completed",
                            {"order_status": group.order_status.value},
                        )
                    )
            else:
                # Group expired while the payment was in flight.
                logger.warning(
                    f"Payment accepted for order {order.id} after group {group.id} "
                    f"became {group.state.value}",
                    extra={"group_id": group.id, "order_id": order.id},
                )
                order.change_status(OrderStatus.CANCELLED, now, f"group {group.state.value}")
                if group.delivery_mode == DeliveryMode.MEMBER_ADDRESS:
                    payer.mark_refunded()

            await guarded("save group", self.groups.save(group))
            for changed in changed_orders:
                await guarded("save settled order", self.orders.save(changed))

            if order.voucher_id and order.user_id == group.host_user_id:
                await self._redeem_voucher(order)

        logger.info(
            f"Finalized order {order.id} for group {group.id}",
            extra={
                "group_id": group.id,
                "order_id": order.id,
                "paid_count": group.paid_count(),
                "group_state": group.state.value,
            },
        )
        return group, events

    async def _complete(
        self, group: GroupOrder, settled: SettledOrder, now: datetime
    ) -> list[SettledOrder]:
        """Complete the group and release orders waiting for the others."""
        self.state_machine.complete(group)
        self.discount_cache.pop(group.id)
        released: list[SettledOrder] = []
        for order_id in group.settled_order_ids:
            if order_id == settled.id:
                order = settled
            else:
                order = await guarded("load settled order", self.orders.get_by_id(order_id))
                if order is None:
                    continue
            if order.status == OrderStatus.WAITING_GROUP:
                order.change_status(OrderStatus.PENDING, now, "all members paid")
                if order is not settled:
                    released.append(order)
        return released

    async def _rollback(self, group_id: str, order_id: str, reason: str) -> None:
        """Undo a reservation: delete the draft and clear the pending marker."""
        try:
            async with self.locks.hold(group_id):
                group = await self.groups.get_by_id(group_id)
                if group is not None:
                    for member in group.members:
                        if member.pending_order_id == order_id:
                            member.pending_order_id = None
                    await self.groups.save(group)
                await self.orders.delete(order_id)
        except Exception as e:
            logger.error(
                f"Failed to roll back order {order_id} for group {group_id}: {e}",
                extra={"group_id": group_id, "order_id": order_id},
                exc_info=True,
            )
            raise PersistenceFailed("Could not roll back the payment reservation") from e
        logger.info(
            f"Rolled back order {order_id}: {reason}",
            extra={"group_id": group_id, "order_id": order_id},
        )

    async def _discard_draft(self, order_id: str) -> None:
        try:
            await self.orders.delete(order_id)
        except Exception as e:
            logger.error(f"Failed to discard draft order {order_id}: {e}", exc_info=True)

    async def _redeem_voucher(self, order: SettledOrder) -> None:
        try:
            await self.vouchers.apply(order.voucher_id, order.user_id, order.id)
        except Exception as e:
            # Payment is already settled; redemption is reconciled externally.
            logger.error(
                f"Failed to record voucher {order.voucher_id} for order {order.id}: {e}",
                extra={"order_id": order.id, "voucher_id": order.voucher_id},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    async def _eligible_method(self, group: GroupOrder, method_id: str) -> PaymentMethod:
        method = await guarded(
            "look up payment method", self.payments.get_method(method_id), SettlementFailed
        )
        if method is None:
            raise InvalidRequest(f"Unknown payment method {method_id}")
        active = group.active_member_count
        if method.is_cash_on_delivery and active > self.cod_member_limit:
            raise PaymentRejected(
                f"Cash on delivery is not available for groups of more than "
                f"{self.cod_member_limit} members ({active} active); "
                f"choose an online payment method"
            )
        return method

    async def _owned_address(self, address_id: str, owner_id: str) -> str:
        address = await guarded(
            "load address", self.addresses.get_address(address_id), ServiceUnavailable
        )
        if address is None or address.user_id != owner_id:
            raise InvalidRequest("Address not found or does not belong to the payer")
        return address.id

    async def _member_delivery_address(
        self, group: GroupOrder, member: Member, address_id: str | None
    ) -> str:
        if group.delivery_mode == DeliveryMode.MEMBER_ADDRESS:
            if not member.address_id:
                raise InvalidRequest("Please choose your delivery address first")
            return member.address_id
        if address_id:
            return await self._owned_address(address_id, group.host_user_id)
        host_addresses = await guarded(
            "list host addresses",
            self.addresses.list_for_user(group.host_user_id),
            ServiceUnavailable,
        )
        if not host_addresses:
            raise InvalidRequest("The host has no delivery address")
        return host_addresses[0].id

    async def _validate_voucher(
        self,
        group: GroupOrder,
        code: str,
        user_id: str,
        items: Sequence[LineItem],
        subtotal: Decimal,
    ) -> tuple[Decimal, str]:
        validation = await guarded(
            "validate voucher",
            self.vouchers.validate(code, user_id, list(items), group.store_id),
            ServiceUnavailable,
        )
        voucher = validation.voucher
        if voucher.scope not in GROUP_VOUCHER_SCOPES:
            raise VoucherInvalid(
                f"{voucher.scope.value} vouchers cannot be applied to group orders"
            )
        if voucher.scope == VoucherScope.STORE and voucher.store_id != group.store_id:
            raise VoucherInvalid("Voucher not applicable to this store")
        discount = quantize_money(min(validation.discount_amount, subtotal))
        if discount <= 0:
            raise VoucherInvalid("Voucher gives no discount for these items")
        return discount, voucher.id

    async def _apply_group_voucher(
        self, group: GroupOrder, code: str, user_id: str
    ) -> GroupDiscount:
        if group.any_member_paid() or any(m.pending_order_id for m in group.members):
            # Shares already charged were computed from the cached discount
            raise InvalidState(
                "The group voucher cannot change once members have started paying"
            )
        subtotal = group.subtotal()
        total, voucher_id = await self._validate_voucher(
            group, code, user_id, group.items, subtotal
        )
        discount = GroupDiscount(
            group_id=group.id,
            voucher_id=voucher_id,
            code=code,
            total_discount=total,
            group_subtotal=subtotal,
        )
        expires_at = self.discount_cache.remember(discount)
        logger.info(
            f"Group voucher {code} applied to group {group.id}",
            extra={
                "group_id": group.id,
                "total_discount": str(total),
                "expires_at": expires_at.isoformat(),
            },
        )
        return discount

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _build_order(
        self,
        group: GroupOrder,
        user_id: str,
        address_id: str,
        items: Sequence[LineItem],
        discount: Decimal,
        method: PaymentMethod,
        voucher_id: str | None,
        covers_group: bool,
    ) -> SettledOrder:
        subtotal = quantize_money(sum((i.price for i in items), Decimal("0")))
        shipping_fee = Decimal("0.00")
        return SettledOrder(
            id=self._new_id(),
            group_id=group.id,
            user_id=user_id,
            store_id=group.store_id,
            address_id=address_id,
            lines=tuple(
                SettledOrderLine(
                    line_item_id=i.id,
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    quantity=i.quantity,
                    price=i.price,
                    note=i.note,
                )
                for i in items
            ),
            subtotal=subtotal,
            discount_total=discount,
            shipping_fee=shipping_fee,
            total_amount=subtotal + shipping_fee - discount,
            status=OrderStatus.DRAFT,
            payment_method_id=method.id,
            created_at=self._clock(),
            voucher_id=voucher_id,
            covers_group=covers_group,
        )

    @staticmethod
    def _all_active_paid(group: GroupOrder) -> bool:
        active = group.active_members()
        return bool(active) and all(m.has_paid for m in active)

    @staticmethod
    def _require_host(group: GroupOrder, user_id: str) -> Member:
        member = group.member_for_user(user_id)
        if member is None or not member.is_host:
            raise PermissionDenied("Only the host can check out for the group")
        return member

    @staticmethod
    def _ensure_locked(group: GroupOrder) -> None:
        if group.state != GroupState.LOCKED:
            raise InvalidState(
                f"Group must be locked before checkout (state: {group.state.value})"
            )

    async def _load(self, group_id: str) -> GroupOrder:
        group = await guarded("load group", self.groups.get_by_id(group_id))
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        return group

