"""Payment gateway adapter.

Implements PaymentGatewayPort. The core hands over one SettlementRequest;
this adapter dispatches on its SettlementMode:

- cash_on_delivery: accepted locally, the courier collects the money
- hosted_redirect: the provider returns a URL the buyer completes payment
  on; the outcome arrives later through the payment callback
- wallet: the balance is debited synchronously
"""

import logging
from typing import Any

import httpx

from groupbuy.adapters.commerce.client import CommerceAPIClient
from groupbuy.core.models import PaymentKind, PaymentMethod
from groupbuy.core.ports import PaymentGatewayPort
from groupbuy.core.settlement import (
    SettlementMode,
    SettlementRequest,
    SettlementResult,
)

logger = logging.getLogger(__name__)

# Statuses the gateway uses for business refusals rather than faults.
_REJECTION_STATUSES = frozenset({400, 402, 409, 422})


class PaymentGatewayAdapter(CommerceAPIClient, PaymentGatewayPort):
    """Settles payments through the payment service HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        return_url: str | None = None,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the gateway adapter.

        Args:
            base_url: Base URL of the payment service.
            api_key: Optional API key.
            return_url: Where hosted payment pages send the buyer back to.
            timeout_seconds: Per-request timeout.
            transport: Optional httpx transport (used by tests).
        """
        super().__init__(
            base_url,
            api_key=api_key,
            timeout_seconds=timeout_seconds,
            transport=transport,
        )
        self.return_url = return_url

    async def get_method(self, method_id: str) -> PaymentMethod | None:
        data = await self.get_json(f"/payment-methods/{method_id}")
        if data is None:
            return None
        try:
            kind = PaymentKind(str(data["type"]).lower())
        except ValueError:
            logger.warning(
                f"Payment method {method_id} has unsupported type {data.get('type')}",
                extra={"method_id": method_id},
            )
            return None
        return PaymentMethod(id=str(data["id"]), kind=kind, name=data.get("name", ""))

    async def settle(self, request: SettlementRequest) -> SettlementResult:
        mode = request.mode
        logger.info(
            f"Settling order {request.order_ref} via {mode.value}",
            extra={
                "order_ref": request.order_ref,
                "amount": str(request.amount),
                "covers_group": request.covers_group,
            },
        )
        if mode == SettlementMode.CASH_ON_DELIVERY:
            return SettlementResult.accepted(transaction_ref=f"cod-{request.order_ref}")
        if mode == SettlementMode.HOSTED_REDIRECT:
            return await self._hosted_redirect(request)
        return await self._wallet_debit(request)

    async def _hosted_redirect(self, request: SettlementRequest) -> SettlementResult:
        response = await self.post(
            "/payments",
            {
                **self._base_body(request),
                "provider": request.method.kind.value,
                "return_url": self.return_url,
            },
        )
        rejection = self._rejection(response)
        if rejection is not None:
            return rejection
        response.raise_for_status()
        data = response.json()
        if data.get("redirect_url"):
            return SettlementResult.redirect(data["redirect_url"])
        return SettlementResult.accepted(transaction_ref=data.get("transaction_id"))

    async def _wallet_debit(self, request: SettlementRequest) -> SettlementResult:
        response = await self.post(
            f"/wallets/{request.user_id}/debits", self._base_body(request)
        )
        rejection = self._rejection(response)
        if rejection is not None:
            return rejection
        response.raise_for_status()
        return SettlementResult.accepted(transaction_ref=response.json().get("transaction_id"))

    @staticmethod
    def _base_body(request: SettlementRequest) -> dict[str, Any]:
        return {
            "order_ref": request.order_ref,
            "method_id": request.method.id,
            "amount": str(request.amount),
            "is_group": request.covers_group,
        }

    @staticmethod
    def _rejection(response: httpx.Response) -> SettlementResult | None:
        if response.status_code not in _REJECTION_STATUSES:
            return None
        try:
            body = response.json()
        except ValueError:
            body = None
        reason = None
        if isinstance(body, dict):
            reason = body.get("message") or body.get("reason")
        return SettlementResult.rejected(reason or f"declined ({response.status_code})")
