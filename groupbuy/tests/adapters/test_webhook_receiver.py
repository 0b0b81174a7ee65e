"""Tests for WebhookReceiver request handlers."""

from datetime import timedelta

import pytest

from groupbuy.adapters.webhook.receiver import WebhookReceiver
from groupbuy.core.errors import InvalidRequest, NotFound, PermissionDenied
from groupbuy.core.models import DeliveryMode, GroupState, MemberStatus
from groupbuy.core.settlement import SettlementResult
from groupbuy.tests.fakes import Harness, build_harness
from groupbuy.tests.fakes.harness import HOST, STORE_ID

# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def harness() -> Harness:
    return build_harness()


@pytest.fixture
def receiver(harness: Harness) -> WebhookReceiver:
    return WebhookReceiver(harness.service, harness.expiry)


# ============================================================================
# Group operations
# ============================================================================


class TestGroupHandlers:
    async def test_create_join_and_get(self, receiver: WebhookReceiver) -> None:
        created = await receiver.handle_create_group(
            {
                "user_id": HOST,
                "store_id": STORE_ID,
                "name": "Friday pizza",
                "target_member_count": 3,
                "delivery_mode": "member_address",
            }
        )
        group = created["group"]
        assert group["delivery_mode"] == DeliveryMode.MEMBER_ADDRESS.value
        assert group["target_member_count"] == 3

        token = group["invite_link"].rsplit("/", 1)[-1]
        joined = await receiver.handle_join({"user_id": "bob", "invite_token": token})
        fetched = await receiver.handle_get_group({"join_code": group["join_code"]})

        assert joined["member"]["status"] == MemberStatus.JOINED.value
        assert fetched["group"]["active_member_count"] == 2

    async def test_missing_fields(self, receiver: WebhookReceiver) -> None:
        with pytest.raises(InvalidRequest, match="Missing store_id, name"):
            await receiver.handle_create_group({"user_id": HOST})

    async def test_invalid_enum_and_datetime(self, receiver: WebhookReceiver) -> None:
        with pytest.raises(InvalidRequest, match="Invalid delivery_mode: drone"):
            await receiver.handle_create_group(
                {"user_id": HOST, "store_id": STORE_ID, "name": "x", "delivery_mode": "drone"}
            )
        with pytest.raises(InvalidRequest, match="Invalid expires_at: tomorrow"):
            await receiver.handle_create_group(
                {"user_id": HOST, "store_id": STORE_ID, "name": "x", "expires_at": "tomorrow"}
            )

    async def test_items_round_trip(self, harness: Harness, receiver: WebhookReceiver) -> None:
        group = await harness.open_group(["bob"])

        added = await receiver.handle_add_item(
            {"group_id": group.id, "user_id": "bob", "product_id": "prod-1", "quantity": "3"}
        )
        item_id = added["item"]["id"]
        updated = await receiver.handle_update_item(
            {"group_id": group.id, "user_id": "bob", "item_id": item_id, "quantity": 1}
        )
        removed = await receiver.handle_remove_item(
            {"group_id": group.id, "user_id": "bob", "item_id": item_id}
        )

        assert added["item"]["quantity"] == 3
        assert updated["item"]["quantity"] == 1
        assert removed["item_id"] == item_id
        assert harness.groups.stored(group.id).items == []

    async def test_invalid_quantity(self, harness: Harness, receiver: WebhookReceiver) -> None:
        group = await harness.open_group(["bob"])

        with pytest.raises(InvalidRequest, match="Invalid quantity: lots"):
            await receiver.handle_add_item(
                {"group_id": group.id, "user_id": "bob", "product_id": "p", "quantity": "lots"}
            )

    async def test_lock_by_member_propagates(
        self, harness: Harness, receiver: WebhookReceiver
    ) -> None:
        group = await harness.open_group(["bob"])

        with pytest.raises(PermissionDenied):
            await receiver.handle_lock({"group_id": group.id, "user_id": "bob"})

    async def test_unknown_group(self, receiver: WebhookReceiver) -> None:
        with pytest.raises(NotFound):
            await receiver.handle_get_group({"group_id": "missing"})


# ============================================================================
# Checkout and payment callbacks
# ============================================================================


class TestPaymentHandlers:
    async def test_redirect_then_successful_callback(
        self, harness: Harness, receiver: WebhookReceiver
    ) -> None:
        group = await harness.locked_group(["bob"], delivery_mode=DeliveryMode.MEMBER_ADDRESS)
        harness.payments.queue_result(SettlementResult.redirect("https://pay.example/r/1"))

        checkout = await receiver.handle_checkout(
            {"group_id": group.id, "user_id": "bob", "payment_method_id": "vnpay"}
        )
        order_id = checkout["checkout"]["order"]["id"]
        assert checkout["checkout"]["awaiting_payment"] is True
        assert checkout["checkout"]["redirect_url"] == "https://pay.example/r/1"

        callback = await receiver.handle_payment_callback(
            {"order_id": order_id, "status": "PAID", "transaction_ref": "vn-77"}
        )

        assert callback["order"]["transaction_ref"] == "vn-77"
        assert harness.groups.stored(group.id).member_for_user("bob").has_paid

    async def test_callback_requires_outcome(self, receiver: WebhookReceiver) -> None:
        with pytest.raises(InvalidRequest, match="Missing success or status"):
            await receiver.handle_payment_callback({"order_id": "o1"})

    async def test_invalid_checkout_scope(
        self, harness: Harness, receiver: WebhookReceiver
    ) -> None:
        group = await harness.locked_group(["bob"])

        with pytest.raises(InvalidRequest, match="Invalid scope: all"):
            await receiver.handle_checkout(
                {
                    "group_id": group.id,
                    "user_id": HOST,
                    "payment_method_id": "cod",
                    "scope": "all",
                }
            )

    async def test_order_status_after_completion(
        self, harness: Harness, receiver: WebhookReceiver
    ) -> None:
        group = await harness.locked_group(["bob"])
        await receiver.handle_checkout(
            {
                "group_id": group.id,
                "user_id": HOST,
                "payment_method_id": "cod",
                "address_id": "addr-host",
                "scope": "group",
            }
        )

        result = await receiver.handle_order_status(
            {"group_id": group.id, "status": "shipped"}
        )
        orders = await receiver.handle_list_orders({"group_id": group.id})

        assert result["updated_orders"] == 1
        assert orders["orders"][0]["status"] == "shipped"


# ============================================================================
# Sweep triggers
# ============================================================================


class TestSweepHandlers:
    async def test_sweep_trigger(self, harness: Harness, receiver: WebhookReceiver) -> None:
        result = await receiver.handle_sweep_trigger({})

        assert result["operation"] == "sweep"
        assert result["result"]["groups_examined"] == 0

    async def test_expire_request(self, harness: Harness, receiver: WebhookReceiver) -> None:
        group = await harness.locked_group(["bob"])
        harness.clock.advance(timedelta(hours=25))

        result = await receiver.handle_expire_request({"group_id": group.id})

        assert result["state"] == GroupState.CANCELLED.value
