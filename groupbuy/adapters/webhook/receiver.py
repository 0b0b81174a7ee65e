"""HTTP webhook receiver for external triggers.

Provides the request handlers behind the REST endpoints: group
operations for client applications, a manual sweep trigger, and the
payment gateway callback that finalizes hosted-redirect payments.

Handlers take the decoded JSON body, call GroupOrderService or SweepPort,
and return a JSON-serializable dictionary. Domain failures propagate as
GroupBuyError so the HTTP layer can map them onto status codes.
"""

import logging
from datetime import datetime
from typing import Any

from groupbuy.adapters.serialization import (
    checkout_view,
    discount_view,
    group_summary,
    group_view,
    item_view,
    member_view,
    order_view,
    sweep_view,
)
from groupbuy.core.errors import InvalidRequest
from groupbuy.core.group_service import GroupOrderService
from groupbuy.core.models import DeliveryMode, OrderStatus
from groupbuy.core.ports import SweepPort

logger = logging.getLogger(__name__)

# Gateway status strings that count as a successful payment.
_SUCCESS_STATUSES = frozenset({"success", "succeeded", "paid", "completed"})


def _require(data: dict[str, Any], *names: str) -> list[Any]:
    missing = [name for name in names if not data.get(name)]
    if missing:
        raise InvalidRequest(f"Missing {', '.join(missing)}")
    return [data[name] for name in names]


def _enum(enum_type: type, value: Any, field: str) -> Any:
    try:
        return enum_type(value)
    except ValueError as e:
        raise InvalidRequest(f"Invalid {field}: {value}") from e


class WebhookReceiver:
    """Request handlers for the webhook HTTP server."""

    def __init__(self, service: GroupOrderService, sweep_port: SweepPort):
        """Initialize the webhook receiver.

        Args:
            service: GroupOrderService executing group operations.
            sweep_port: SweepPort implementation for sweep triggers.
        """
        self.service = service
        self.sweep_port = sweep_port

    # ------------------------------------------------------------------
    # Triggers and callbacks
    # ------------------------------------------------------------------

    async def handle_sweep_trigger(self, data: dict[str, Any]) -> dict[str, Any]:
        """Run one expiry sweep now."""
        result = await self.sweep_port.execute_sweep()
        logger.info(
            "Expiry sweep triggered via webhook",
            extra={
                "groups_examined": result.groups_examined,
                "groups_cancelled": result.groups_cancelled,
            },
        )
        return {"status": "success", "operation": "sweep", "result": sweep_view(result)}

    async def handle_expire_request(self, data: dict[str, Any]) -> dict[str, Any]:
        (group_id,) = _require(data, "group_id")
        state = await self.sweep_port.expire_group(group_id)
        return {
            "status": "success",
            "operation": "expire",
            "group_id": group_id,
            "state": state.value if state else None,
        }

    async def handle_payment_callback(self, data: dict[str, Any]) -> dict[str, Any]:
        """Apply the outcome of a hosted payment to its pending order.

        Accepts either a boolean ``success`` or a gateway ``status`` string.
        Repeated callbacks for the same order are acknowledged without
        changing anything.
        """
        (order_id,) = _require(data, "order_id")
        if "success" in data:
            success = bool(data["success"])
        elif "status" in data:
            success = str(data["status"]).lower() in _SUCCESS_STATUSES
        else:
            raise InvalidRequest("Missing success or status")

        order = await self.service.record_payment_result(
            order_id,
            success,
            transaction_ref=data.get("transaction_ref"),
            reason=data.get("reason") or data.get("message"),
        )
        logger.info(
            f"Payment callback for order {order_id}: {'success' if success else 'failure'}",
            extra={"order_id": order_id, "recorded": order is not None},
        )
        return {
            "status": "success",
            "operation": "payment_callback",
            "order_id": order_id,
            "order": order_view(order) if order else None,
        }

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def handle_create_group(self, data: dict[str, Any]) -> dict[str, Any]:
        host_user_id, store_id, name = _require(data, "user_id", "store_id", "name")
        group = await self.service.create_group(
            host_user_id,
            store_id,
            name,
            expires_at=self._datetime(data, "expires_at"),
            join_expires_at=self._datetime(data, "join_expires_at"),
            target_member_count=data.get("target_member_count"),
            delivery_mode=_enum(
                DeliveryMode,
                data.get("delivery_mode", DeliveryMode.HOST_ADDRESS.value),
                "delivery_mode",
            ),
        )
        return {
            "status": "success",
            "operation": "create",
            "group": group_view(group, self.service.invite_link(group)),
        }

    async def handle_update_group(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id = _require(data, "group_id", "user_id")
        kwargs: dict[str, Any] = {}
        if "name" in data:
            kwargs["name"] = data["name"]
        if data.get("delivery_mode"):
            kwargs["delivery_mode"] = _enum(DeliveryMode, data["delivery_mode"], "delivery_mode")
        if "expires_at" in data:
            kwargs["expires_at"] = self._datetime(data, "expires_at")
        if "target_member_count" in data:
            kwargs["target_member_count"] = data["target_member_count"]
        group = await self.service.update_group(group_id, user_id, **kwargs)
        return {"status": "success", "operation": "update", "group": group_view(group)}

    async def handle_delete_group(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id = _require(data, "group_id", "user_id")
        await self.service.delete_group(group_id, user_id)
        return {"status": "success", "operation": "delete", "group_id": group_id}

    async def handle_get_group(self, data: dict[str, Any]) -> dict[str, Any]:
        if data.get("group_id"):
            group = await self.service.get_group(data["group_id"])
        elif data.get("join_code"):
            group = await self.service.get_group_by_join_code(data["join_code"])
        elif data.get("invite_token"):
            group = await self.service.get_group_by_invite_token(data["invite_token"])
        else:
            raise InvalidRequest("Missing group_id, join_code or invite_token")
        return {
            "status": "success",
            "operation": "get",
            "group": group_view(group, self.service.invite_link(group)),
        }

    async def handle_list_groups(self, data: dict[str, Any]) -> dict[str, Any]:
        (user_id,) = _require(data, "user_id")
        groups = await self.service.list_user_groups(user_id)
        logger.debug(
            "Groups listed via webhook",
            extra={"count": len(groups), "user_id": user_id},
        )
        return {
            "status": "success",
            "operation": "list",
            "groups": [group_summary(g) for g in groups],
        }

    async def handle_lock(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id = _require(data, "group_id", "user_id")
        group = await self.service.lock(group_id, user_id)
        return {"status": "success", "operation": "lock", "group": group_view(group)}

    async def handle_unlock(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id = _require(data, "group_id", "user_id")
        group = await self.service.unlock(group_id, user_id)
        return {"status": "success", "operation": "unlock", "group": group_view(group)}

    # ------------------------------------------------------------------
    # Membership and items
    # ------------------------------------------------------------------

    async def handle_join(self, data: dict[str, Any]) -> dict[str, Any]:
        (user_id,) = _require(data, "user_id")
        if data.get("group_id"):
            member = await self.service.join(data["group_id"], user_id, data.get("join_code"))
        elif data.get("join_code"):
            member = await self.service.join_by_code(data["join_code"], user_id)
        elif data.get("invite_token"):
            member = await self.service.join_by_invite(data["invite_token"], user_id)
        else:
            raise InvalidRequest("Missing group_id, join_code or invite_token")
        return {"status": "success", "operation": "join", "member": member_view(member)}

    async def handle_leave(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id = _require(data, "group_id", "user_id")
        await self.service.leave(group_id, user_id)
        return {"status": "success", "operation": "leave", "group_id": group_id}

    async def handle_assign_address(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id, address_id = _require(data, "group_id", "user_id", "address_id")
        member = await self.service.assign_address(group_id, user_id, address_id)
        return {"status": "success", "operation": "address", "member": member_view(member)}

    async def handle_add_item(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id, product_id = _require(data, "group_id", "user_id", "product_id")
        item = await self.service.add_item(
            group_id,
            user_id,
            product_id,
            variant_id=data.get("variant_id"),
            quantity=self._int(data, "quantity", default=1),
            note=data.get("note"),
            pricing_rule_id=data.get("pricing_rule_id"),
        )
        return {"status": "success", "operation": "add_item", "item": item_view(item)}

    async def handle_update_item(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id, item_id = _require(data, "group_id", "user_id", "item_id")
        item = await self.service.update_item(
            group_id,
            user_id,
            item_id,
            quantity=self._int(data, "quantity"),
            note=data.get("note"),
        )
        return {"status": "success", "operation": "update_item", "item": item_view(item)}

    async def handle_remove_item(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id, item_id = _require(data, "group_id", "user_id", "item_id")
        await self.service.remove_item(group_id, user_id, item_id)
        return {"status": "success", "operation": "remove_item", "item_id": item_id}

    # ------------------------------------------------------------------
    # Checkout and fulfillment
    # ------------------------------------------------------------------

    async def handle_apply_voucher(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id, code = _require(data, "group_id", "user_id", "code")
        discount = await self.service.apply_group_voucher(group_id, user_id, code)
        return {
            "status": "success",
            "operation": "voucher",
            "discount": discount_view(discount),
        }

    async def handle_checkout(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, user_id, method_id = _require(
            data, "group_id", "user_id", "payment_method_id"
        )
        scope = data.get("scope", "member")
        if scope == "group":
            checkout = self.service.checkout_group
        elif scope == "member":
            checkout = self.service.checkout_member
        else:
            raise InvalidRequest(f"Invalid scope: {scope}")
        result = await checkout(
            group_id,
            user_id,
            method_id,
            address_id=data.get("address_id"),
            voucher_code=data.get("voucher_code"),
        )
        logger.info(
            f"Checkout via webhook for group {group_id}",
            extra={
                "group_id": group_id,
                "user_id": user_id,
                "scope": scope,
                "awaiting_payment": result.awaiting_payment,
            },
        )
        return {"status": "success", "operation": "checkout", "checkout": checkout_view(result)}

    async def handle_list_orders(self, data: dict[str, Any]) -> dict[str, Any]:
        (group_id,) = _require(data, "group_id")
        orders = await self.service.list_group_orders(group_id)
        return {
            "status": "success",
            "operation": "orders",
            "orders": [order_view(o) for o in orders],
        }

    async def handle_order_status(self, data: dict[str, Any]) -> dict[str, Any]:
        group_id, status = _require(data, "group_id", "status")
        orders = await self.service.update_order_status(
            group_id, _enum(OrderStatus, status, "status"), data.get("note")
        )
        return {
            "status": "success",
            "operation": "order_status",
            "group_id": group_id,
            "updated_orders": len(orders),
        }

    @staticmethod
    def _datetime(data: dict[str, Any], field: str) -> datetime | None:
        value = data.get(field)
        if value is None:
            return None
        try:
            return datetime.fromisoformat(value)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"Invalid {field}: {value}") from e

    @staticmethod
    def _int(data: dict[str, Any], field: str, default: int | None = None) -> int | None:
        value = data.get(field)
        if value is None:
            return default
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise InvalidRequest(f"Invalid {field}: {value}") from e
