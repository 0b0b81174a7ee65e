"""CLI command implementations for group order management.

Provides human-initiated actions through a command-line interface.

This adapter maps CLI commands (create, join, add-item, lock, checkout,
sweep, ...) to GroupOrderService and SweepPort operations. It handles
CLI-specific argument parsing and error reporting: domain rejections come
back as ``{"status": "error", "code": ..., "message": ...}`` instead of
tracebacks.
"""

import logging
from collections.abc import Awaitable, Callable
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
from groupbuy.core.errors import GroupBuyError
from groupbuy.core.group_service import GroupOrderService
from groupbuy.core.models import DeliveryMode, OrderStatus
from groupbuy.core.ports import SweepPort

logger = logging.getLogger(__name__)


def _parse_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class CLICommandHandler:
    """Handles CLI commands by delegating to the group order service.

    Every public method returns a JSON-serializable dictionary with a
    ``status`` of ``success`` or ``error``.
    """

    def __init__(self, service: GroupOrderService, sweep_port: SweepPort):
        """Initialize the CLI command handler.

        Args:
            service: GroupOrderService executing group operations.
            sweep_port: SweepPort implementation for manual sweeps.
        """
        self.service = service
        self.sweep_port = sweep_port

    async def _execute(
        self,
        operation: str,
        action: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        try:
            payload = await action()
        except GroupBuyError as e:
            logger.warning(
                f"{operation} rejected: {e.reason}",
                extra={"operation": operation, "code": e.code},
            )
            return {"status": "error", "operation": operation, **e.to_dict()}
        except ValueError as e:
            logger.error(f"Failed to {operation}: {e}")
            return {
                "status": "error",
                "operation": operation,
                "code": "invalid_request",
                "message": str(e),
            }
        return {"status": "success", "operation": operation, **payload}

    # ------------------------------------------------------------------
    # Group lifecycle
    # ------------------------------------------------------------------

    async def create_group(
        self,
        host_user_id: str,
        store_id: str,
        name: str,
        expires_at: str | None = None,
        join_expires_at: str | None = None,
        target_member_count: int | None = None,
        delivery_mode: str = DeliveryMode.HOST_ADDRESS.value,
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            group = await self.service.create_group(
                host_user_id,
                store_id,
                name,
                expires_at=_parse_datetime(expires_at),
                join_expires_at=_parse_datetime(join_expires_at),
                target_member_count=target_member_count,
                delivery_mode=DeliveryMode(delivery_mode),
            )
            return {"group": group_view(group, self.service.invite_link(group))}

        return await self._execute("create", action)

    async def update_group(self, group_id: str, user_id: str, **changes: Any) -> dict[str, Any]:
        """Edit group settings; ``expires_at`` may be an ISO string or null."""

        async def action() -> dict[str, Any]:
            kwargs: dict[str, Any] = {}
            if "name" in changes:
                kwargs["name"] = changes["name"]
            if changes.get("delivery_mode"):
                kwargs["delivery_mode"] = DeliveryMode(changes["delivery_mode"])
            if "expires_at" in changes:
                kwargs["expires_at"] = _parse_datetime(changes["expires_at"])
            if "target_member_count" in changes:
                kwargs["target_member_count"] = changes["target_member_count"]
            group = await self.service.update_group(group_id, user_id, **kwargs)
            return {"group": group_view(group)}

        return await self._execute("update", action)

    async def delete_group(self, group_id: str, user_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            await self.service.delete_group(group_id, user_id)
            return {"group_id": group_id, "message": f"Group {group_id} deleted"}

        return await self._execute("delete", action)

    async def show_group(
        self,
        group_id: str | None = None,
        join_code: str | None = None,
        output_format: str = "json",
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            if group_id:
                group = await self.service.get_group(group_id)
            elif join_code:
                group = await self.service.get_group_by_join_code(join_code)
            else:
                raise ValueError("group_id or join_code is required")
            data = group_view(group, self.service.invite_link(group))
            if output_format == "text":
                return {"data": self._format_group_as_text(data)}
            return {"data": data}

        return await self._execute("show", action)

    async def list_groups(self, user_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            groups = await self.service.list_user_groups(user_id)
            return {"groups": [group_summary(g) for g in groups]}

        return await self._execute("list", action)

    async def lock_group(self, group_id: str, user_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            group = await self.service.lock(group_id, user_id)
            return {
                "group_id": group.id,
                "state": group.state.value,
                "expires_at": group.expires_at.isoformat() if group.expires_at else None,
            }

        return await self._execute("lock", action)

    async def unlock_group(self, group_id: str, user_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            group = await self.service.unlock(group_id, user_id)
            return {
                "group_id": group.id,
                "state": group.state.value,
                "expires_at": group.expires_at.isoformat() if group.expires_at else None,
            }

        return await self._execute("unlock", action)

    # ------------------------------------------------------------------
    # Membership and items
    # ------------------------------------------------------------------

    async def join_group(
        self,
        user_id: str,
        group_id: str | None = None,
        join_code: str | None = None,
        invite_token: str | None = None,
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            if group_id:
                member = await self.service.join(group_id, user_id, join_code)
            elif join_code:
                member = await self.service.join_by_code(join_code, user_id)
            elif invite_token:
                member = await self.service.join_by_invite(invite_token, user_id)
            else:
                raise ValueError("group_id, join_code or invite_token is required")
            return {"member": member_view(member)}

        return await self._execute("join", action)

    async def leave_group(self, group_id: str, user_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            await self.service.leave(group_id, user_id)
            return {"group_id": group_id, "message": f"{user_id} left group {group_id}"}

        return await self._execute("leave", action)

    async def assign_address(
        self, group_id: str, user_id: str, address_id: str
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            member = await self.service.assign_address(group_id, user_id, address_id)
            return {"member": member_view(member)}

        return await self._execute("address", action)

    async def add_item(
        self,
        group_id: str,
        user_id: str,
        product_id: str,
        variant_id: str | None = None,
        quantity: int = 1,
        note: str | None = None,
        pricing_rule_id: str | None = None,
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            item = await self.service.add_item(
                group_id,
                user_id,
                product_id,
                variant_id=variant_id,
                quantity=int(quantity),
                note=note,
                pricing_rule_id=pricing_rule_id,
            )
            return {"item": item_view(item)}

        return await self._execute("add-item", action)

    async def update_item(
        self,
        group_id: str,
        user_id: str,
        item_id: str,
        quantity: int | None = None,
        note: str | None = None,
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            item = await self.service.update_item(
                group_id,
                user_id,
                item_id,
                quantity=int(quantity) if quantity is not None else None,
                note=note,
            )
            return {"item": item_view(item)}

        return await self._execute("update-item", action)

    async def remove_item(self, group_id: str, user_id: str, item_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            await self.service.remove_item(group_id, user_id, item_id)
            return {"item_id": item_id}

        return await self._execute("remove-item", action)

    # ------------------------------------------------------------------
    # Checkout and fulfillment
    # ------------------------------------------------------------------

    async def apply_voucher(self, group_id: str, user_id: str, code: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            discount = await self.service.apply_group_voucher(group_id, user_id, code)
            return {"discount": discount_view(discount)}

        return await self._execute("voucher", action)

    async def checkout(
        self,
        group_id: str,
        user_id: str,
        payment_method_id: str,
        address_id: str | None = None,
        voucher_code: str | None = None,
        scope: str = "member",
    ) -> dict[str, Any]:
        """Check out for the caller, or for the whole group with ``scope="group"``."""

        async def action() -> dict[str, Any]:
            if scope == "group":
                result = await self.service.checkout_group(
                    group_id, user_id, payment_method_id, address_id, voucher_code
                )
            elif scope == "member":
                result = await self.service.checkout_member(
                    group_id, user_id, payment_method_id, address_id, voucher_code
                )
            else:
                raise ValueError(f"Unknown checkout scope: {scope}")
            return {"checkout": checkout_view(result)}

        return await self._execute("checkout", action)

    async def record_payment(
        self,
        order_id: str,
        success: bool,
        transaction_ref: str | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            order = await self.service.record_payment_result(
                order_id, bool(success), transaction_ref, reason
            )
            return {"order": order_view(order) if order else None}

        return await self._execute("payment-result", action)

    async def list_orders(self, group_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            orders = await self.service.list_group_orders(group_id)
            return {"orders": [order_view(o) for o in orders]}

        return await self._execute("orders", action)

    async def update_order_status(
        self, group_id: str, status: str, note: str | None = None
    ) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            orders = await self.service.update_order_status(
                group_id, OrderStatus(status), note
            )
            return {"group_id": group_id, "updated_orders": len(orders)}

        return await self._execute("order-status", action)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def run_sweep(self) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            result = await self.sweep_port.execute_sweep()
            return {"result": sweep_view(result)}

        return await self._execute("sweep", action)

    async def expire_group(self, group_id: str) -> dict[str, Any]:
        async def action() -> dict[str, Any]:
            state = await self.sweep_port.expire_group(group_id)
            return {"group_id": group_id, "state": state.value if state else None}

        return await self._execute("expire", action)

    def _format_group_as_text(self, data: dict[str, Any]) -> str:
        """Format a group snapshot as human-readable text."""
        lines = [
            f"Group: {data['name']} ({data['id']})",
            f"State: {data['state']}",
            f"Join code: {data['join_code']}",
            f"Delivery: {data['delivery_mode']}",
            f"Expires: {data['expires_at'] or 'never'}",
            f"Discount: {data['discount_percent']}%",
            f"Paid: {data['paid_count']} of {data['active_member_count']}",
            "",
            "Members:",
        ]
        for member in data["members"]:
            host = " (host)" if member["is_host"] else ""
            paid = " paid" if member["has_paid"] else ""
            lines.append(f"  - {member['user_id']}{host}: {member['status']}{paid}")
        lines.append("")
        lines.append("Items:")
        for item in data["items"]:
            lines.append(
                f"  - {item['product_id']} x{item['quantity']} = {item['price']}"
            )
        lines.append(f"Subtotal: {data['subtotal']}")
        return "\n".join(lines)


# Command name -> (handler method, required arguments)
COMMANDS: dict[str, tuple[str, tuple[str, ...]]] = {
    "create": ("create_group", ("host_user_id", "store_id", "name")),
    "update": ("update_group", ("group_id", "user_id")),
    "delete": ("delete_group", ("group_id", "user_id")),
    "show": ("show_group", ()),
    "list": ("list_groups", ("user_id",)),
    "lock": ("lock_group", ("group_id", "user_id")),
    "unlock": ("unlock_group", ("group_id", "user_id")),
    "join": ("join_group", ("user_id",)),
    "leave": ("leave_group", ("group_id", "user_id")),
    "address": ("assign_address", ("group_id", "user_id", "address_id")),
    "add-item": ("add_item", ("group_id", "user_id", "product_id")),
    "update-item": ("update_item", ("group_id", "user_id", "item_id")),
    "remove-item": ("remove_item", ("group_id", "user_id", "item_id")),
    "voucher": ("apply_voucher", ("group_id", "user_id", "code")),
    "checkout": ("checkout", ("group_id", "user_id", "payment_method_id")),
    "payment-result": ("record_payment", ("order_id", "success")),
    "orders": ("list_orders", ("group_id",)),
    "order-status": ("update_order_status", ("group_id", "status")),
    "sweep": ("run_sweep", ()),
    "expire": ("expire_group", ("group_id",)),
}


async def run_command(
    handler: CLICommandHandler,
    command: str,
    args: dict[str, Any],
) -> dict[str, Any]:
    """Run a CLI command.

    Entry point for executing CLI commands. Maps command names to handler
    methods; ``format`` is accepted as an alias of ``output_format``.

    Raises:
        ValueError: If the command is unknown or a required argument is missing.
    """
    if command not in COMMANDS:
        raise ValueError(f"Unknown command: {command}. Use 'help' for available commands.")
    method_name, required = COMMANDS[command]
    missing = [name for name in required if name not in args]
    if missing:
        raise ValueError(f"Missing required parameter: {', '.join(missing)}")

    kwargs = dict(args)
    if "format" in kwargs:
        kwargs["output_format"] = kwargs.pop("format")
    return await getattr(handler, method_name)(**kwargs)
