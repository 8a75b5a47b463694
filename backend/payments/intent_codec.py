"""
Checkout Intent Codec
=====================
Packs a NewOrderIntent into the gateway's metadata channel and decodes any
metadata shape the gateway hands back into a single CheckoutIntent.

Wire format (one metadata key, compact JSON, short keys):

    {"v":1,"p":"p1:2:4.99,p2:1:3.50","e":"jane@x.com",
     "a":["Jane Doe","1 Main St","X","NY","10001","US","555-0100"],
     "r":["rate_abc","USPS","5.25","Priority Mail"],"n":"gift wrap"}

The encoded value must fit the metadata budget. It is never truncated;
oversize input raises MetadataTooLarge.

Also understood on decode:
- {"orderId": ..., "isRetry": "true"}       retry of an existing order
- flat legacy keys (products, addrName, shippingRateId, ...)
"""

import json
from decimal import Decimal, InvalidOperation
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from payments.errors import InvalidCheckoutRequest, InvalidWebhookPayload, MetadataTooLarge
from schemas.checkout import CheckoutIntent, ExistingOrderIntent, NewOrderIntent
from schemas.orders import CartLine, to_money


INTENT_KEY = "intent"
CODEC_VERSION = 1
DEFAULT_BUDGET = 500

_ADDRESS_FIELDS = ("name", "street", "city", "state", "zip", "country", "phone")
_LEGACY_ADDRESS_KEYS = {
    "name": "addrName",
    "street": "addrStreet",
    "city": "addrCity",
    "state": "addrState",
    "zip": "addrZip",
    "country": "addrCountry",
    "phone": "addrPhone",
}

_intent_adapter = TypeAdapter(CheckoutIntent)


# =============================================================================
# ENCODING
# =============================================================================

def _encode_lines(lines: list[CartLine]) -> str:
    parts = []
    for line in lines:
        if "," in line.product_id:
            raise InvalidCheckoutRequest(f"Product id {line.product_id!r} contains ','")
        parts.append(f"{line.product_id}:{line.quantity}:{to_money(line.price)}")
    return ",".join(parts)


def _compact(intent: NewOrderIntent) -> dict:
    payload: dict = {"v": CODEC_VERSION, "p": _encode_lines(intent.items)}
    if intent.user_id:
        payload["u"] = intent.user_id
    if intent.guest_email:
        payload["e"] = intent.guest_email
    if intent.shipping_address:
        fields = [getattr(intent.shipping_address, f) or "" for f in _ADDRESS_FIELDS]
        # Trailing empty values are implied
        while fields and not fields[-1]:
            fields.pop()
        payload["a"] = fields
    if intent.shipping_rate:
        rate = intent.shipping_rate
        payload["r"] = [rate.rate_id, rate.carrier, str(to_money(rate.amount)), rate.service_name]
    if intent.notes:
        payload["n"] = intent.notes
    if intent.discount_code:
        payload["dc"] = intent.discount_code
    if intent.discount_amount:
        payload["da"] = str(to_money(intent.discount_amount))
    return payload


def encode_intent(intent: NewOrderIntent, budget: int = DEFAULT_BUDGET) -> dict[str, str]:
    """Serialize a new-order intent into gateway metadata"""
    value = json.dumps(_compact(intent), separators=(",", ":"), ensure_ascii=False)
    if len(value) > budget:
        raise MetadataTooLarge(size=len(value), limit=budget)
    return {INTENT_KEY: value}


def encode_existing(order_id: str) -> dict[str, str]:
    return {"orderId": str(order_id), "isRetry": "true"}


# =============================================================================
# DECODING
# =============================================================================

def _parse_lines(products: str) -> list[dict]:
    lines = []
    for chunk in products.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        product_id, quantity, price = chunk.rsplit(":", 2)
        lines.append({
            "product_id": product_id,
            "quantity": max(1, int(quantity or 1)),
            "price": Decimal(price or "0"),
        })
    return lines


def _from_compact(raw: str) -> dict:
    data = json.loads(raw)
    if not isinstance(data, dict) or "p" not in data:
        raise ValueError("intent payload has no products")

    intent: dict = {
        "kind": "new",
        "items": _parse_lines(data["p"]),
        "user_id": data.get("u"),
        "guest_email": data.get("e"),
        "notes": data.get("n"),
        "discount_code": data.get("dc"),
        "discount_amount": Decimal(data.get("da") or "0"),
    }
    if data.get("a"):
        values = list(data["a"]) + [""] * (len(_ADDRESS_FIELDS) - len(data["a"]))
        address = dict(zip(_ADDRESS_FIELDS, values))
        address["country"] = address["country"] or "US"
        address["phone"] = address["phone"] or None
        address["email"] = data.get("e")
        intent["shipping_address"] = address
    if data.get("r"):
        rate_id, carrier, amount, service = (list(data["r"]) + ["", "", "0", ""])[:4]
        intent["shipping_rate"] = {
            "rate_id": rate_id,
            "carrier": carrier,
            "amount": Decimal(amount or "0"),
            "service_name": service,
        }
    return intent


def _from_legacy(metadata: dict) -> dict:
    intent: dict = {
        "kind": "new",
        "items": _parse_lines(metadata["products"]),
        "user_id": metadata.get("userId") or None,
        "guest_email": metadata.get("guestEmail") or None,
        "notes": metadata.get("notes") or None,
    }
    if metadata.get("addrName"):
        address = {field: metadata.get(key) or "" for field, key in _LEGACY_ADDRESS_KEYS.items()}
        address["country"] = address["country"] or "US"
        address["phone"] = address["phone"] or None
        address["email"] = metadata.get("guestEmail") or None
        intent["shipping_address"] = address
    if metadata.get("shippingRateId"):
        intent["shipping_rate"] = {
            "rate_id": metadata["shippingRateId"],
            "carrier": metadata.get("shippingCarrier") or "",
            "amount": Decimal(metadata.get("shippingAmount") or "0"),
            "service_name": metadata.get("shippingService") or "",
        }
    return intent


def decode_intent(metadata: Optional[dict]) -> CheckoutIntent:
    """
    Decode gateway metadata into ExistingOrderIntent or NewOrderIntent.

    Raises InvalidWebhookPayload when the metadata matches no known shape or
    cannot be parsed.
    """
    metadata = metadata or {}

    if metadata.get("orderId"):
        return ExistingOrderIntent(
            order_id=str(metadata["orderId"]),
            is_retry=metadata.get("isRetry") == "true",
        )

    try:
        if metadata.get(INTENT_KEY):
            raw = _from_compact(metadata[INTENT_KEY])
        elif metadata.get("products"):
            raw = _from_legacy(metadata)
        else:
            raise InvalidWebhookPayload("Missing order data in metadata")
        return _intent_adapter.validate_python(raw)
    except (ValueError, InvalidOperation, ValidationError, TypeError) as e:
        raise InvalidWebhookPayload(f"Unreadable checkout metadata: {e}") from e
