"""Tests for domain model invariants."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from groupbuy.core.errors import GroupBuyError, InvalidRequest, NotFound
from groupbuy.core.models import (
    GroupOrder,
    GroupState,
    LineItem,
    Member,
    MemberStatus,
    OrderStatus,
    PriceQuote,
    SettledOrder,
    SettledOrderLine,
    quantize_money,
)

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _member(member_id: str, is_host: bool = False, status=MemberStatus.JOINED) -> Member:
    return Member(
        id=member_id, user_id=f"user-{member_id}", is_host=is_host, status=status, joined_at=NOW
    )


def _group(**overrides) -> GroupOrder:
    fields = dict(
        id="g1",
        join_code="ABC234",
        invite_token="tok",
        name="Snacks",
        store_id="s1",
        host_user_id="user-h",
        state=GroupState.OPEN,
        created_at=NOW,
        members=[_member("h", is_host=True), _member("a")],
    )
    fields.update(overrides)
    return GroupOrder(**fields)


def test_quantize_money_rounds_half_up() -> None:
    assert quantize_money(Decimal("1.005")) == Decimal("1.01")
    assert quantize_money(Decimal("1.004")) == Decimal("1.00")


def test_group_requires_name() -> None:
    with pytest.raises(ValueError, match="name must be a non-empty string"):
        _group(name="  ")


def test_group_allows_one_host_only() -> None:
    with pytest.raises(ValueError, match="2 hosts"):
        _group(members=[_member("h", is_host=True), _member("x", is_host=True)])


def test_host_cannot_be_left() -> None:
    with pytest.raises(ValueError, match="host member cannot be in 'left' status"):
        _group(members=[_member("h", is_host=True, status=MemberStatus.LEFT)])


def test_host_cannot_mark_left() -> None:
    group = _group()
    with pytest.raises(ValueError):
        group.host_member.mark_left()


def test_active_members_exclude_left_and_refunded() -> None:
    group = _group(
        members=[
            _member("h", is_host=True),
            _member("a"),
            _member("b", status=MemberStatus.LEFT),
            _member("c", status=MemberStatus.REFUNDED),
            _member("d", status=MemberStatus.ORDERED),
        ]
    )
    assert [m.id for m in group.active_members()] == ["h", "a", "d"]
    assert group.active_member_count == 3


def test_refund_requires_payment() -> None:
    member = _member("a")
    with pytest.raises(ValueError, match="has not paid"):
        member.mark_refunded()

    member.mark_paid("order-1")
    member.mark_refunded()
    assert member.status == MemberStatus.REFUNDED
    assert member.order_id == "order-1"


def test_line_item_rejects_zero_quantity() -> None:
    with pytest.raises(ValueError, match="quantity must be >= 1"):
        LineItem(
            id="i1",
            member_id="a",
            product_id="p",
            variant_id=None,
            quantity=0,
            price=Decimal("1"),
        )


def test_price_quote_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PriceQuote(unit_price=Decimal("0"))


def test_expiry_and_join_window() -> None:
    group = _group(expires_at=NOW + timedelta(hours=2), join_expires_at=NOW + timedelta(hours=1))

    assert not group.is_expired(NOW)
    assert not group.is_join_window_closed(NOW)
    assert group.is_join_window_closed(NOW + timedelta(hours=1))
    assert group.is_expired(NOW + timedelta(hours=2))


def test_settled_order_discount_bounded_by_subtotal() -> None:
    line = SettledOrderLine(
        line_item_id="i1", product_id="p", variant_id=None, quantity=1, price=Decimal("10")
    )
    with pytest.raises(ValueError, match="discount_total"):
        SettledOrder(
            id="o1",
            group_id="g1",
            user_id="u",
            store_id="s1",
            address_id="a1",
            lines=(line,),
            subtotal=Decimal("10"),
            discount_total=Decimal("11"),
            total_amount=Decimal("-1"),
            status=OrderStatus.DRAFT,
            payment_method_id="cod",
            created_at=NOW,
        )


def test_settled_order_records_status_history() -> None:
    line = SettledOrderLine(
        line_item_id="i1", product_id="p", variant_id=None, quantity=1, price=Decimal("10")
    )
    order = SettledOrder(
        id="o1",
        group_id="g1",
        user_id="u",
        store_id="s1",
        address_id="a1",
        lines=(line,),
        subtotal=Decimal("10"),
        discount_total=Decimal("0"),
        total_amount=Decimal("10"),
        status=OrderStatus.DRAFT,
        payment_method_id="cod",
        created_at=NOW,
    )
    order.change_status(OrderStatus.PENDING, NOW, "payment accepted")

    assert order.status == OrderStatus.PENDING
    assert len(order.status_history) == 1
    change = order.status_history[0]
    assert (change.old_status, change.new_status, change.note) == (
        OrderStatus.DRAFT,
        OrderStatus.PENDING,
        "payment accepted",
    )


def test_errors_carry_code_and_reason() -> None:
    error = NotFound("Group g1 not found")
    assert isinstance(error, GroupBuyError)
    assert error.to_dict() == {"code": "not_found", "message": "Group g1 not found"}

    invalid = InvalidRequest("bad quantity")
    assert isinstance(invalid, ValueError)
    assert invalid.code == "invalid_request"
