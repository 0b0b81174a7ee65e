"""Address book adapter.

Implements AddressBookPort against the user service.
"""

from typing import Any

from groupbuy.core.models import Address
from groupbuy.core.ports import AddressBookPort

from .client import CommerceAPIClient


class AddressBookAdapter(CommerceAPIClient, AddressBookPort):
    """Reads users' delivery addresses over HTTP."""

    async def get_address(self, address_id: str) -> Address | None:
        data = await self.get_json(f"/addresses/{address_id}")
        return _to_address(data) if data else None

    async def list_for_user(self, user_id: str) -> list[Address]:
        data = await self.get_json(f"/users/{user_id}/addresses") or []
        addresses = [_to_address(entry) for entry in data]
        # Default first, otherwise keep the service's order.
        return sorted(addresses, key=lambda a: not a.is_default)


def _to_address(data: dict[str, Any]) -> Address:
    return Address(
        id=str(data["id"]),
        user_id=str(data["user_id"]),
        is_default=bool(data.get("is_default", False)),
        label=data.get("label"),
    )
