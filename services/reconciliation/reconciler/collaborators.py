"""
Reconciliation Service — outbound collaborators

Ports for the transactional email service and the courier's return-label
API, plus their HTTP adapters. Templating and the courier's internals
live on the other side of these calls.

Every HTTP call goes through one shared httpx.AsyncClient created with a
bounded timeout, so a slow provider cannot stall the acknowledgment.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from .aggregate import OrderAggregate, ReturnItem
from .exceptions import CollaboratorError
from .settings_cache import SettingsCache


@dataclass(frozen=True)
class SendResult:
    success: bool
    id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class LabelResult:
    label_url: str
    tracking_number: str | None = None
    tracking_url: str | None = None
    parcel_id: str | None = None


class EmailSender(ABC):
    @abstractmethod
    async def send(self, kind: str, recipient: str, context: dict) -> SendResult:
        """Send one templated email; report failure in the result."""
        ...


class LabelGenerator(ABC):
    @abstractmethod
    async def create_label(
        self,
        return_id: str,
        order: OrderAggregate,
        return_items: list[ReturnItem],
    ) -> LabelResult:
        """Create a return label at the courier. May raise."""
        ...


# ── HTTP adapters ────────────────────────────────


class HttpEmailSender(EmailSender):
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        api_key: str | None,
        sender: str,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.sender = sender

    async def send(self, kind: str, recipient: str, context: dict) -> SendResult:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = await self.client.post(
                f"{self.base_url}/emails",
                json={
                    "from": self.sender,
                    "to": [recipient],
                    "template": kind,
                    "data": context,
                },
                headers=headers,
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            return SendResult(success=False, error=f"{e.response.status_code}: {e.response.text}")
        except httpx.HTTPError as e:
            return SendResult(success=False, error=f"{type(e).__name__}: {e}")
        return SendResult(success=True, id=resp.json().get("id"))


class HttpLabelGenerator(LabelGenerator):
    """
    Courier return-label adapter.

    The return parcel travels from the customer (order shipping address)
    to the shop; the shop's address comes from site settings.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        public_key: str | None,
        secret_key: str | None,
        settings: SettingsCache,
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.auth = (public_key or "", secret_key or "")
        self.settings = settings

    async def create_label(
        self,
        return_id: str,
        order: OrderAggregate,
        return_items: list[ReturnItem],
    ) -> LabelResult:
        site = await self.settings.all()
        resp = await self.client.post(
            f"{self.base_url}/returns",
            json={
                "external_reference": return_id,
                "order_number": order.id,
                "from_name": order.customer_name,
                "from_email": order.email,
                "to_name": site.get("site_name", ""),
                "to_address": site.get("contact_address", ""),
                "to_email": site.get("contact_email", ""),
                "to_phone": site.get("contact_phone", ""),
                "items": [
                    {"variant_id": i.variant_id, "quantity": i.quantity}
                    for i in return_items
                ],
            },
            auth=self.auth,
        )
        resp.raise_for_status()
        data = resp.json()
        if not data.get("label_url"):
            raise CollaboratorError(f"Courier returned no label for return {return_id}")
        return LabelResult(
            label_url=data["label_url"],
            tracking_number=data.get("tracking_number"),
            tracking_url=data.get("tracking_url"),
            parcel_id=str(data["parcel_id"]) if data.get("parcel_id") is not None else None,
        )
