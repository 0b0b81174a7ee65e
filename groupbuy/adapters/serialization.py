"""JSON views of domain objects for the driving adapters.

The CLI and the webhook server both answer with plain dictionaries;
money is rendered as decimal strings and datetimes as ISO-8601.
"""

from datetime import datetime
from typing import Any

from groupbuy.core.models import (
    CheckoutResult,
    GroupDiscount,
    GroupOrder,
    LineItem,
    Member,
    SettledOrder,
    SweepResult,
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def member_view(member: Member) -> dict[str, Any]:
    return {
        "id": member.id,
        "user_id": member.user_id,
        "is_host": member.is_host,
        "status": member.status.value,
        "joined_at": _iso(member.joined_at),
        "has_paid": member.has_paid,
        "address_id": member.address_id,
        "order_id": member.order_id,
    }


def item_view(item: LineItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "member_id": item.member_id,
        "product_id": item.product_id,
        "variant_id": item.variant_id,
        "quantity": item.quantity,
        "price": str(item.price),
        "note": item.note,
    }


def group_view(group: GroupOrder, invite_link: str | None = None) -> dict[str, Any]:
    """Full group snapshot including members and items."""
    data = {
        "id": group.id,
        "name": group.name,
        "store_id": group.store_id,
        "host_user_id": group.host_user_id,
        "join_code": group.join_code,
        "state": group.state.value,
        "delivery_mode": group.delivery_mode.value,
        "created_at": _iso(group.created_at),
        "expires_at": _iso(group.expires_at),
        "join_expires_at": _iso(group.join_expires_at),
        "target_member_count": group.target_member_count,
        "discount_percent": group.discount_percent,
        "order_status": group.order_status.value if group.order_status else None,
        "active_member_count": group.active_member_count,
        "paid_count": group.paid_count(),
        "subtotal": str(group.subtotal()),
        "members": [member_view(m) for m in group.members],
        "items": [item_view(i) for i in group.items],
    }
    if invite_link is not None:
        data["invite_link"] = invite_link
    return data


def group_summary(group: GroupOrder) -> dict[str, Any]:
    """Compact listing entry."""
    return {
        "id": group.id,
        "name": group.name,
        "state": group.state.value,
        "active_member_count": group.active_member_count,
        "discount_percent": group.discount_percent,
        "expires_at": _iso(group.expires_at),
    }


def order_view(order: SettledOrder) -> dict[str, Any]:
    return {
        "id": order.id,
        "group_id": order.group_id,
        "user_id": order.user_id,
        "address_id": order.address_id,
        "status": order.status.value,
        "covers_group": order.covers_group,
        "subtotal": str(order.subtotal),
        "discount_total": str(order.discount_total),
        "shipping_fee": str(order.shipping_fee),
        "total_amount": str(order.total_amount),
        "payment_method_id": order.payment_method_id,
        "voucher_id": order.voucher_id,
        "transaction_ref": order.transaction_ref,
        "created_at": _iso(order.created_at),
        "lines": [
            {
                "product_id": line.product_id,
                "variant_id": line.variant_id,
                "quantity": line.quantity,
                "price": str(line.price),
            }
            for line in order.lines
        ],
    }


def checkout_view(result: CheckoutResult) -> dict[str, Any]:
    return {
        "order": order_view(result.order),
        "group_state": result.group_state.value,
        "paid_count": result.paid_count,
        "total_count": result.total_count,
        "awaiting_payment": result.awaiting_payment,
        "redirect_url": result.redirect_url,
    }


def discount_view(discount: GroupDiscount) -> dict[str, Any]:
    return {
        "group_id": discount.group_id,
        "voucher_id": discount.voucher_id,
        "code": discount.code,
        "total_discount": str(discount.total_discount),
        "group_subtotal": str(discount.group_subtotal),
    }


def sweep_view(result: SweepResult) -> dict[str, Any]:
    return {
        "groups_examined": result.groups_examined,
        "groups_locked": result.groups_locked,
        "groups_cancelled": result.groups_cancelled,
        "groups_failed": result.groups_failed,
        "members_removed": result.members_removed,
        "members_refunded": result.members_refunded,
        "timestamp": result.timestamp.isoformat(),
    }
