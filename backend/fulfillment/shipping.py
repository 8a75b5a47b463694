"""
Shipping Rate/Label Client
==========================
Quotes carrier rates and buys PDF labels through the Shippo REST API.

- httpx.AsyncClient with explicit timeouts, ShippoToken auth header
- Every request passes through a CircuitBreaker
- QUEUED transactions are re-read once after a short pause
- Missing provider tracking URLs are derived from the carrier
"""

import asyncio
import math
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

from config import Settings
from payments.errors import ShippingError
from pipeline.event_bus import CircuitBreaker
from schemas.orders import ShippingAddress, ShippingRate, to_money


# =============================================================================
# MODELS
# =============================================================================

class Parcel(BaseModel):
    length: float
    width: float
    height: float
    distance_unit: str = "in"
    weight: float
    mass_unit: str = "lb"


class LabelPurchase(BaseModel):
    """Result of a successful label purchase"""
    shipment_id: str
    tracking_number: str
    tracking_url: str
    label_url: Optional[str] = None
    carrier: str = ""
    service_name: str = ""
    amount: Optional[Decimal] = None


def default_parcel(item_count: int) -> Parcel:
    """Box sized from item count: 3 items per 4 inches of length, half a pound each"""
    count = max(1, item_count)
    return Parcel(
        length=math.ceil(count / 3) * 4 + 2,
        width=8,
        height=6,
        weight=max(1.0, count * 0.5),
    )


def tracking_url_for(carrier: Optional[str], tracking_number: str) -> str:
    carrier = (carrier or "").lower()
    if carrier == "usps":
        return f"https://tools.usps.com/go/TrackConfirmAction?qtc_tLabels1={tracking_number}"
    if carrier == "ups":
        return f"https://www.ups.com/track?track=yes&trackNums={tracking_number}"
    if carrier == "fedex":
        return f"https://www.fedex.com/fedextrack/?trknbr={tracking_number}"
    return f"https://goshippo.com/track/{tracking_number}"


# =============================================================================
# INTERFACE
# =============================================================================

class IShippingClient(ABC):

    @abstractmethod
    async def quote(self, address: ShippingAddress, parcels: list[Parcel]) -> list[ShippingRate]:
        pass

    @abstractmethod
    async def purchase(self, rate_id: str, shipment_meta: dict) -> LabelPurchase:
        """Buy a label for a previously quoted rate"""
        pass

    async def close(self) -> None:
        return None


# =============================================================================
# SHIPPO
# =============================================================================

class ShippoClient(IShippingClient):
    """
    Shippo REST client.

    Example:
        client = ShippoClient(settings)
        rates = await client.quote(order.shipping_address, [default_parcel(3)])
        label = await client.purchase(rates[0].rate_id, {"order_number": order.order_number})
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.SHIPPO_BASE_URL,
            timeout=httpx.Timeout(10.0, read=30.0),
        )
        self._headers = {
            "Authorization": f"ShippoToken {settings.SHIPPO_API_TOKEN}",
            "Content-Type": "application/json",
        }
        self._breaker = circuit_breaker or CircuitBreaker("shippo")
        self._logger = structlog.get_logger().bind(component="shippo_client")

    async def close(self) -> None:
        await self._client.aclose()

    @property
    def sender_address(self) -> dict:
        s = self.settings
        return {
            "name": s.SENDER_NAME,
            "company": s.SENDER_COMPANY,
            "email": s.SENDER_EMAIL,
            "phone": s.SENDER_PHONE,
            "street1": s.SENDER_STREET,
            "city": s.SENDER_CITY,
            "state": s.SENDER_STATE,
            "zip": s.SENDER_ZIP,
            "country": s.SENDER_COUNTRY,
        }

    @staticmethod
    def _recipient(address: ShippingAddress) -> dict:
        return {
            "name": address.name,
            "street1": address.street,
            "city": address.city,
            "state": address.state,
            "zip": address.zip,
            "country": address.country,
            "email": address.email or "",
            "phone": address.phone or "",
            "is_residential": True,
        }

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        if not await self._breaker.can_execute():
            raise ShippingError(f"Circuit breaker {self._breaker.name} is OPEN")

        try:
            response = await self._client.request(method, path, json=json, headers=self._headers)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            await self._breaker.record_failure(e)
            self._logger.error("shippo_http_error",
                               path=path,
                               status_code=e.response.status_code,
                               body=e.response.text[:500])
            raise ShippingError(f"Shippo {method} {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            await self._breaker.record_failure(e)
            self._logger.error("shippo_transport_error", path=path, error=str(e))
            raise ShippingError(f"Shippo {method} {path} failed: {e}") from e

        await self._breaker.record_success()
        return body

    # =========================================================================
    # RATES
    # =========================================================================

    async def quote(self, address: ShippingAddress, parcels: list[Parcel]) -> list[ShippingRate]:
        if not address.is_shippable:
            self._logger.warning("rates_skipped", reason="incomplete_address")
            return []

        shipment = await self._request("POST", "/shipments/", json={
            "address_from": self.sender_address,
            "address_to": self._recipient(address),
            "parcels": [p.model_dump() for p in parcels],
            "async": False,
        })

        rates = [self._parse_rate(r) for r in shipment.get("rates") or []]
        self._logger.info("rates_quoted",
                          shipment_id=shipment.get("object_id"),
                          rate_count=len(rates))
        return rates

    @staticmethod
    def _parse_rate(rate: dict) -> ShippingRate:
        servicelevel = rate.get("servicelevel") or {}
        return ShippingRate(
            rate_id=rate.get("object_id") or "",
            carrier=rate.get("provider") or "USPS",
            service_name=servicelevel.get("name") or "Standard Shipping",
            amount=to_money(rate.get("amount") or "0"),
            currency=rate.get("currency") or "USD",
            estimated_days=rate.get("estimated_days"),
        )

    # =========================================================================
    # LABELS
    # =========================================================================

    async def purchase(self, rate_id: str, shipment_meta: dict) -> LabelPurchase:
        reference = f"Order {shipment_meta.get('order_number') or shipment_meta.get('order_id', '')}".strip()

        transaction = await self._request("POST", "/transactions/", json={
            "rate": rate_id,
            "label_file_type": "PDF",
            "async": False,
            "metadata": reference,
        })

        if transaction.get("status") in ("QUEUED", "WAITING") and transaction.get("object_id"):
            self._logger.info("transaction_queued", transaction_id=transaction["object_id"])
            await asyncio.sleep(self.settings.SHIPPO_QUEUED_RETRY_SECONDS)
            transaction = await self._request("GET", f"/transactions/{transaction['object_id']}")

        status = transaction.get("status")
        if status == "ERROR":
            messages = "; ".join(
                f"{m.get('source')}: {m.get('text')}" for m in transaction.get("messages") or []
            ) or "Unknown error"
            raise ShippingError(f"Shippo transaction failed: {messages}")
        if status != "SUCCESS":
            raise ShippingError(f"Shippo transaction not successful: {status}")

        tracking_number = transaction.get("tracking_number")
        if not tracking_number:
            raise ShippingError("No tracking number provided by Shippo")

        rate = transaction.get("rate") if isinstance(transaction.get("rate"), dict) else {}
        carrier = shipment_meta.get("carrier") or rate.get("provider") or ""
        service = shipment_meta.get("service_name") or rate.get("servicelevel_name") or ""
        amount = shipment_meta.get("amount") or rate.get("amount")

        label = LabelPurchase(
            shipment_id=transaction.get("object_id") or "",
            tracking_number=tracking_number,
            tracking_url=transaction.get("tracking_url_provider") or tracking_url_for(carrier, tracking_number),
            label_url=transaction.get("label_url"),
            carrier=carrier,
            service_name=service,
            amount=to_money(amount) if amount is not None else None,
        )

        self._logger.info("label_purchased",
                          reference=reference,
                          transaction_id=label.shipment_id,
                          tracking_number=tracking_number,
                          carrier=carrier)
        return label
