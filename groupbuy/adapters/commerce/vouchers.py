"""Voucher service adapter.

Implements VoucherPort. Validation failures reported by the service
(unknown, expired, exhausted or non-qualifying vouchers) become
VoucherInvalid carrying the service's message.
"""

import logging
from collections.abc import Sequence
from decimal import Decimal

import httpx

from groupbuy.core.errors import VoucherInvalid
from groupbuy.core.models import LineItem, Voucher, VoucherScope, VoucherValidation
from groupbuy.core.ports import VoucherPort

from .client import CommerceAPIClient

logger = logging.getLogger(__name__)


class VoucherServiceAdapter(CommerceAPIClient, VoucherPort):
    """Validates and redeems vouchers through the voucher HTTP API."""

    async def validate(
        self,
        code: str,
        user_id: str,
        items: Sequence[LineItem],
        store_id: str,
    ) -> VoucherValidation:
        response = await self.post(
            "/vouchers/validate",
            {
                "code": code,
                "user_id": user_id,
                "store_id": store_id,
                "items": [
                    {
                        "product_id": item.product_id,
                        "variant_id": item.variant_id,
                        "quantity": item.quantity,
                        "price": str(item.price),
                    }
                    for item in items
                ],
            },
        )
        if response.status_code in (400, 404, 409, 422):
            message = _error_message(response) or f"Voucher {code} is not valid"
            raise VoucherInvalid(message)
        response.raise_for_status()

        data = response.json()
        voucher = data["voucher"]
        try:
            scope = VoucherScope(voucher["scope"])
        except ValueError as e:
            raise VoucherInvalid(f"Unsupported voucher type {voucher['scope']}") from e
        return VoucherValidation(
            voucher=Voucher(
                id=str(voucher["id"]),
                code=voucher.get("code", code),
                scope=scope,
                store_id=voucher.get("store_id"),
            ),
            discount_amount=Decimal(str(data["discount_amount"])),
        )

    async def apply(self, voucher_id: str, user_id: str, order_ref: str) -> None:
        response = await self.post(
            f"/vouchers/{voucher_id}/redemptions",
            {"user_id": user_id, "order_ref": order_ref},
        )
        response.raise_for_status()
        logger.info(
            f"Voucher {voucher_id} redeemed for order {order_ref}",
            extra={"voucher_id": voucher_id, "order_ref": order_ref},
        )


def _error_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("message") or body.get("detail")
    return None
