"""Conversion between domain aggregates and JSON-compatible records.

Both store backends persist members, line items and order lines as JSON
documents next to the indexed scalar columns. Money travels as decimal
strings so no precision is lost; datetimes as ISO-8601 in UTC.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from groupbuy.core.models import (
    DeliveryMode,
    GroupOrder,
    GroupState,
    LineItem,
    Member,
    MemberStatus,
    OrderStatus,
    SettledOrder,
    SettledOrderLine,
    StatusChange,
)


def to_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def dt_to_str(value: datetime | None) -> str | None:
    value = to_utc(value)
    return value.isoformat() if value is not None else None


def dt_from_str(value: str | None) -> datetime | None:
    return to_utc(datetime.fromisoformat(value)) if value else None


def _decimal_or_none(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def member_to_dict(member: Member) -> dict[str, Any]:
    return {
        "id": member.id,
        "user_id": member.user_id,
        "is_host": member.is_host,
        "status": member.status.value,
        "joined_at": dt_to_str(member.joined_at),
        "has_paid": member.has_paid,
        "address_id": member.address_id,
        "order_id": member.order_id,
        "pending_order_id": member.pending_order_id,
    }


def member_from_dict(data: dict[str, Any]) -> Member:
    return Member(
        id=data["id"],
        user_id=data["user_id"],
        is_host=bool(data["is_host"]),
        status=MemberStatus(data["status"]),
        joined_at=dt_from_str(data["joined_at"]),
        has_paid=bool(data.get("has_paid", False)),
        address_id=data.get("address_id"),
        order_id=data.get("order_id"),
        pending_order_id=data.get("pending_order_id"),
    )


def item_to_dict(item: LineItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "member_id": item.member_id,
        "product_id": item.product_id,
        "variant_id": item.variant_id,
        "quantity": item.quantity,
        "price": str(item.price),
        "base_unit_price": (
            str(item.base_unit_price) if item.base_unit_price is not None else None
        ),
        "note": item.note,
        "pricing_rule_id": item.pricing_rule_id,
    }


def item_from_dict(data: dict[str, Any]) -> LineItem:
    return LineItem(
        id=data["id"],
        member_id=data["member_id"],
        product_id=data["product_id"],
        variant_id=data.get("variant_id"),
        quantity=int(data["quantity"]),
        price=Decimal(data["price"]),
        base_unit_price=_decimal_or_none(data.get("base_unit_price")),
        note=data.get("note"),
        pricing_rule_id=data.get("pricing_rule_id"),
    )


def group_members_and_items(group: GroupOrder) -> dict[str, Any]:
    """The document part of a group row."""
    return {
        "members": [member_to_dict(m) for m in group.members],
        "items": [item_to_dict(i) for i in group.items],
        "settled_order_ids": list(group.settled_order_ids),
    }


def group_from_parts(columns: dict[str, Any], document: dict[str, Any]) -> GroupOrder:
    """Rebuild a GroupOrder from its scalar columns and JSON document.

    Datetime columns may arrive as ISO strings (SQLite) or datetimes
    (PostgreSQL).
    """

    def _dt(value: Any) -> datetime | None:
        if value is None or isinstance(value, datetime):
            return to_utc(value)
        return dt_from_str(value)

    order_status = columns.get("order_status")
    return GroupOrder(
        id=columns["id"],
        join_code=columns["join_code"],
        invite_token=columns["invite_token"],
        name=columns["name"],
        store_id=columns["store_id"],
        host_user_id=columns["host_user_id"],
        state=GroupState(columns["state"]),
        created_at=_dt(columns["created_at"]),
        delivery_mode=DeliveryMode(columns["delivery_mode"]),
        expires_at=_dt(columns.get("expires_at")),
        join_expires_at=_dt(columns.get("join_expires_at")),
        target_member_count=columns.get("target_member_count"),
        discount_percent=int(columns.get("discount_percent") or 0),
        order_status=OrderStatus(order_status) if order_status else None,
        members=[member_from_dict(m) for m in document.get("members", [])],
        items=[item_from_dict(i) for i in document.get("items", [])],
        settled_order_ids=list(document.get("settled_order_ids", [])),
    )


def order_to_dict(order: SettledOrder) -> dict[str, Any]:
    return {
        "id": order.id,
        "group_id": order.group_id,
        "user_id": order.user_id,
        "store_id": order.store_id,
        "address_id": order.address_id,
        "lines": [
            {
                "line_item_id": line.line_item_id,
                "product_id": line.product_id,
                "variant_id": line.variant_id,
                "quantity": line.quantity,
                "price": str(line.price),
                "note": line.note,
            }
            for line in order.lines
        ],
        "subtotal": str(order.subtotal),
        "discount_total": str(order.discount_total),
        "shipping_fee": str(order.shipping_fee),
        "total_amount": str(order.total_amount),
        "status": order.status.value,
        "payment_method_id": order.payment_method_id,
        "created_at": dt_to_str(order.created_at),
        "voucher_id": order.voucher_id,
        "covers_group": order.covers_group,
        "transaction_ref": order.transaction_ref,
        "status_history": [
            {
                "old_status": change.old_status.value,
                "new_status": change.new_status.value,
                "changed_at": dt_to_str(change.changed_at),
                "note": change.note,
            }
            for change in order.status_history
        ],
    }


def order_from_dict(data: dict[str, Any]) -> SettledOrder:
    return SettledOrder(
        id=data["id"],
        group_id=data["group_id"],
        user_id=data["user_id"],
        store_id=data["store_id"],
        address_id=data["address_id"],
        lines=tuple(
            SettledOrderLine(
                line_item_id=line["line_item_id"],
                product_id=line["product_id"],
                variant_id=line.get("variant_id"),
                quantity=int(line["quantity"]),
                price=Decimal(line["price"]),
                note=line.get("note"),
            )
            for line in data["lines"]
        ),
        subtotal=Decimal(data["subtotal"]),
        discount_total=Decimal(data["discount_total"]),
        shipping_fee=Decimal(data.get("shipping_fee", "0")),
        total_amount=Decimal(data["total_amount"]),
        status=OrderStatus(data["status"]),
        payment_method_id=data["payment_method_id"],
        created_at=dt_from_str(data["created_at"]),
        voucher_id=data.get("voucher_id"),
        covers_group=bool(data.get("covers_group", False)),
        transaction_ref=data.get("transaction_ref"),
        status_history=tuple(
            StatusChange(
                old_status=OrderStatus(change["old_status"]),
                new_status=OrderStatus(change["new_status"]),
                changed_at=dt_from_str(change["changed_at"]),
                note=change.get("note"),
            )
            for change in data.get("status_history", [])
        ),
    )
