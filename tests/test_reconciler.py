"""Tests for webhook reconciliation of checkout, failure and refund events."""

import asyncio
import re
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import event_body, make_intent, make_order, sign_payload
from payments.errors import InvalidWebhookPayload, OrderNotFound, WebhookSignatureError
from pipeline.event_bus import EventType
from schemas.orders import OrderStatus, PaymentStatus, ShippingRate
from storage.repository import AuditEventType


async def deliver(reconciler, event_type, obj, event_id="evt_test_1"):
    body = event_body(event_type, obj, event_id=event_id)
    return await reconciler.handle(body, sign_payload(body))


async def paid_checkout(builder, gateway, intent=None, **complete):
    result = await builder.create(intent=intent or make_intent())
    complete.setdefault("amount_total", 998)
    gateway.complete(result.session_id, **complete)
    return result.session_id


def completed(session_id):
    return {"id": session_id, "object": "checkout.session"}


class TestNewOrderCheckout:
    @pytest.mark.asyncio
    async def test_example_cart_creates_one_confirmed_order(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway)

        outcome = await deliver(reconciler, "checkout.session.completed", completed(session_id))

        assert outcome.status == "processed"
        assert outcome.event_type == "checkout.session.completed"
        stored = await orders.all()
        assert len(stored) == 1
        order = stored[0]
        assert re.fullmatch(r"ORD-\d+-[A-Z0-9]+", order.order_number)
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_status == PaymentStatus.COMPLETED
        assert order.payment_id == "pi_123"
        assert order.checkout_session_id == session_id
        assert len(order.items) == 1
        assert order.items[0].total == Decimal("9.98")
        assert order.total_amount == Decimal("9.98")
        assert order.guest_email == "jane@example.com"
        assert order.shipping_address.name == "Jane Doe"

        [event] = outcome.events
        assert event.event_type == EventType.ORDER_CONFIRMED
        assert event.payload.order_id == order.id
        assert event.payload.is_new_order is True

    @pytest.mark.asyncio
    async def test_redelivery_does_not_create_second_order(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway)

        await deliver(reconciler, "checkout.session.completed", completed(session_id))
        second = await deliver(reconciler, "checkout.session.completed", completed(session_id), event_id="evt_test_2")

        assert second.status == "already_processed"
        assert second.events == []
        assert await orders.count() == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_create_one_order(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway)

        outcomes = await asyncio.gather(*[
            deliver(reconciler, "checkout.session.completed", completed(session_id), event_id=f"evt_{i}")
            for i in range(5)
        ])

        assert await orders.count() == 1
        statuses = sorted(o.status for o in outcomes)
        assert statuses == ["already_processed"] * 4 + ["processed"]

    @pytest.mark.asyncio
    async def test_async_payment_succeeded_is_handled_like_completion(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway)

        outcome = await deliver(reconciler, "checkout.session.async_payment_succeeded", completed(session_id))

        assert outcome.status == "processed"
        assert await orders.count() == 1

    @pytest.mark.asyncio
    async def test_unpaid_session_is_ignored(self, builder, gateway, reconciler, orders):
        result = await builder.create(intent=make_intent())

        outcome = await deliver(reconciler, "checkout.session.completed", completed(result.session_id))

        assert outcome.status == "ignored"
        assert await orders.count() == 0

    @pytest.mark.asyncio
    async def test_tax_is_derived_from_captured_total(self, builder, gateway, reconciler, orders):
        rate = ShippingRate(rate_id="rate_1", carrier="USPS", service_name="Priority", amount=Decimal("5.00"))
        session_id = await paid_checkout(builder, gateway, make_intent(shipping_rate=rate), amount_total=1600)

        await deliver(reconciler, "checkout.session.completed", completed(session_id))

        [order] = await orders.all()
        assert order.subtotal_amount == Decimal("9.98")
        assert order.shipping_amount == Decimal("5.00")
        assert order.tax_amount == Decimal("1.02")
        assert order.total_amount == Decimal("16.00")
        assert order.shipping_rate_id == "rate_1"
        assert order.shipping_cost == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_discount_is_not_booked_as_tax(self, builder, gateway, reconciler, orders):
        intent = make_intent(discount_code="SAVE2", discount_amount=Decimal("2.00"))
        session_id = await paid_checkout(builder, gateway, intent, amount_total=798)

        await deliver(reconciler, "checkout.session.completed", completed(session_id))

        [order] = await orders.all()
        assert order.subtotal_amount == Decimal("9.98")
        assert order.discount_amount == Decimal("2.00")
        assert order.discount_code == "SAVE2"
        assert order.total_amount == Decimal("7.98")
        assert order.tax_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_gateway_reported_tax_is_used(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway, amount_total=1078,
                                         total_details={"amount_tax": 80, "amount_discount": 0})

        await deliver(reconciler, "checkout.session.completed", completed(session_id))

        [order] = await orders.all()
        assert order.tax_amount == Decimal("0.80")
        assert order.discount_amount == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_address_collected_by_gateway(self, builder, gateway, reconciler, orders):
        intent = make_intent(shipping_address=None, guest_email=None)
        session_id = await paid_checkout(
            builder, gateway, intent,
            shipping_details={
                "name": "Sam Roe",
                "address": {"line1": "5 Elm St", "line2": "Apt 2", "city": "Y",
                            "state": "CA", "postal_code": "90001", "country": "US"},
            },
            customer_details={"email": "sam@example.com", "phone": "+15550100"},
        )

        await deliver(reconciler, "checkout.session.completed", completed(session_id))

        [order] = await orders.all()
        assert order.shipping_address.name == "Sam Roe"
        assert order.shipping_address.street == "5 Elm St, Apt 2"
        assert order.shipping_address.is_shippable
        assert order.guest_email == "sam@example.com"

    @pytest.mark.asyncio
    async def test_line_item_descriptions_name_the_items(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(
            builder, gateway,
            line_items={"data": [{"description": "Red Licorice Rope 12ft"}]},
        )

        await deliver(reconciler, "checkout.session.completed", completed(session_id))

        [order] = await orders.all()
        assert order.items[0].product_name == "Red Licorice Rope 12ft"

    @pytest.mark.asyncio
    async def test_audit_uses_event_id_as_correlation_id(self, builder, gateway, reconciler, audit):
        session_id = await paid_checkout(builder, gateway)

        await deliver(reconciler, "checkout.session.completed", completed(session_id), event_id="evt_abc")

        entries = await audit.get_by_correlation_id("evt_abc")
        assert [e.event_type for e in entries] == [AuditEventType.ORDER_CREATED]

    @pytest.mark.asyncio
    async def test_unreadable_metadata(self, gateway, reconciler, orders):
        gateway.add_session({"id": "cs_bad", "payment_status": "paid", "metadata": {"foo": "bar"}})

        with pytest.raises(InvalidWebhookPayload):
            await deliver(reconciler, "checkout.session.completed", completed("cs_bad"))
        assert await orders.count() == 0


class TestExistingOrderCheckout:
    @pytest.mark.asyncio
    async def test_retry_confirms_order_once(self, builder, gateway, reconciler, orders):
        order = await orders.save(make_order())
        result = await builder.create(order_id=order.id)
        gateway.complete(result.session_id, payment_intent="pi_777", amount_total=998)

        first = await deliver(reconciler, "checkout.session.completed", completed(result.session_id))
        after_first = await orders.get(order.id)
        second = await deliver(reconciler, "checkout.session.completed", completed(result.session_id),
                               event_id="evt_test_2")
        after_second = await orders.get(order.id)

        assert first.status == "processed"
        assert first.events[0].payload.is_new_order is False
        assert second.status == "already_processed"
        assert after_first.status == OrderStatus.CONFIRMED
        assert after_first.payment_status == PaymentStatus.COMPLETED
        assert after_first.payment_id == "pi_777"
        assert after_second == after_first

    @pytest.mark.asyncio
    async def test_captured_amount_overrides_stored_total(self, builder, gateway, reconciler, orders):
        order = await orders.save(make_order())
        result = await builder.create(order_id=order.id)
        gateway.complete(result.session_id, amount_total=1500)

        await deliver(reconciler, "checkout.session.completed", completed(result.session_id))

        assert (await orders.get(order.id)).total_amount == Decimal("15.00")

    @pytest.mark.asyncio
    async def test_second_payment_for_paid_order_is_flagged(self, gateway, reconciler, orders, audit):
        order = await orders.save(make_order(
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            payment_id="pi_first",
        ))
        gateway.add_session({
            "id": "cs_dup",
            "payment_status": "paid",
            "payment_intent": "pi_second",
            "metadata": {"orderId": order.id, "isRetry": "true"},
        })

        outcome = await deliver(reconciler, "checkout.session.completed", completed("cs_dup"))

        assert outcome.status == "duplicate_payment"
        assert (await orders.get(order.id)).payment_id == "pi_first"
        assert audit.entries[-1].metadata["duplicate_of"] == "pi_first"

    @pytest.mark.asyncio
    async def test_missing_order(self, gateway, reconciler):
        gateway.add_session({
            "id": "cs_orphan",
            "payment_status": "paid",
            "payment_intent": "pi_1",
            "metadata": {"orderId": "does-not-exist"},
        })

        with pytest.raises(OrderNotFound):
            await deliver(reconciler, "checkout.session.completed", completed("cs_orphan"))


class TestSignature:
    @pytest.mark.asyncio
    async def test_invalid_signature_rejected(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway)
        body = event_body("checkout.session.completed", completed(session_id))

        with pytest.raises(WebhookSignatureError):
            await reconciler.handle(body, sign_payload(body, secret="whsec_wrong"))
        assert await orders.count() == 0

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway)
        body = event_body("checkout.session.completed", completed(session_id))

        with pytest.raises(WebhookSignatureError):
            await reconciler.handle(body, None)
        assert await orders.count() == 0

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, builder, gateway, reconciler, orders):
        session_id = await paid_checkout(builder, gateway)
        body = event_body("checkout.session.completed", completed(session_id))
        signature = sign_payload(body)

        with pytest.raises(WebhookSignatureError):
            await reconciler.handle(body.replace(b"evt_test_1", b"evt_forged"), signature)
        assert await orders.count() == 0

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_ignored(self, reconciler):
        outcome = await deliver(reconciler, "customer.created", {"id": "cus_1"})
        assert outcome.status == "ignored"
        assert outcome.event_type == "customer.created"


class TestPaymentFailed:
    @pytest.mark.asyncio
    async def test_pending_retry_is_marked_failed(self, reconciler, orders, audit):
        order = await orders.save(make_order(payment_status=PaymentStatus.PENDING))
        intent = {
            "id": "pi_9",
            "metadata": {"orderId": order.id},
            "last_payment_error": {"code": "card_declined", "decline_code": "insufficient_funds"},
        }

        outcome = await deliver(reconciler, "payment_intent.payment_failed", intent)
        again = await deliver(reconciler, "payment_intent.payment_failed", intent, event_id="evt_test_2")

        stored = await orders.get(order.id)
        assert outcome.status == "processed"
        assert outcome.events == []
        entries = await audit.get_by_entity(order.id)
        [entry] = [e for e in entries if e.event_type == AuditEventType.PAYMENT_FAILED]
        assert entry.metadata["error_code"] == "card_declined"
        assert again.status == "already_processed"
        assert stored.payment_status == PaymentStatus.FAILED
        assert stored.status == OrderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_never_downgrades_completed_payment(self, reconciler, orders):
        order = await orders.save(make_order(
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            payment_id="pi_ok",
        ))

        outcome = await deliver(reconciler, "payment_intent.payment_failed",
                                {"id": "pi_late", "metadata": {"orderId": order.id}})

        assert outcome.status == "ignored"
        assert (await orders.get(order.id)) == order

    @pytest.mark.asyncio
    async def test_without_order_reference(self, reconciler, orders):
        outcome = await deliver(reconciler, "payment_intent.payment_failed", {"id": "pi_new", "metadata": {}})
        assert outcome.status == "ignored"
        assert await orders.count() == 0


class TestRefunds:
    @pytest.fixture
    def paid_order(self):
        return make_order(
            status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.COMPLETED,
            payment_id="pi_paid",
        )

    @pytest.mark.asyncio
    async def test_full_refund(self, reconciler, orders, paid_order):
        await orders.save(paid_order)
        charge = {"id": "ch_1", "payment_intent": "pi_paid", "refunded": True,
                  "amount": 998, "amount_refunded": 998}

        outcome = await deliver(reconciler, "charge.refunded", charge)
        again = await deliver(reconciler, "charge.refunded", charge, event_id="evt_test_2")

        stored = await orders.get(paid_order.id)
        assert outcome.status == "processed"
        assert outcome.events == []
        assert again.status == "already_processed"
        assert stored.status == OrderStatus.REFUNDED
        assert stored.payment_status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_partial_refund_is_audited_only(self, reconciler, orders, audit, paid_order):
        await orders.save(paid_order)
        charge = {"id": "ch_1", "payment_intent": "pi_paid", "refunded": False,
                  "amount": 998, "amount_refunded": 300}

        outcome = await deliver(reconciler, "charge.refunded", charge)

        assert outcome.status == "partial_refund"
        assert (await orders.get(paid_order.id)).payment_status == PaymentStatus.COMPLETED
        assert audit.entries[-1].event_type == AuditEventType.PARTIAL_REFUND

    @pytest.mark.asyncio
    async def test_unknown_payment(self, reconciler):
        outcome = await deliver(reconciler, "charge.refunded",
                                {"id": "ch_x", "payment_intent": "pi_unknown", "refunded": True})
        assert outcome.status == "ignored"


class TestVerifyPaymentStatus:
    @pytest.fixture
    def stale_order(self):
        return make_order(
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            updated_at=datetime.utcnow() - timedelta(hours=2),
        )

    @pytest.mark.asyncio
    async def test_recent_pending_order_is_left_alone(self, reconciler, orders):
        order = await orders.save(make_order(status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING))

        result = await reconciler.verify_payment_status(order.id)

        assert result.message == "Payment status is current"
        assert result.payment_status == "PENDING"
        assert result.fixed is False

    @pytest.mark.asyncio
    async def test_paid_session_completes_order(self, gateway, reconciler, orders, stale_order):
        await orders.save(stale_order)
        gateway.add_session({"id": "cs_v", "payment_status": "paid", "payment_intent": "pi_v",
                             "metadata": {"orderId": stale_order.id}})

        result = await reconciler.verify_payment_status(stale_order.id)

        stored = await orders.get(stale_order.id)
        assert result.message == "Payment status updated to paid"
        assert result.payment_status == "paid"
        assert result.fixed is True
        assert result.events[0].source == "payment_verifier"
        assert stored.payment_status == PaymentStatus.COMPLETED
        assert stored.status == OrderStatus.CONFIRMED
        assert stored.payment_id == "pi_v"

    @pytest.mark.asyncio
    async def test_unpaid_session_fails_order(self, gateway, reconciler, orders, stale_order):
        await orders.save(stale_order)
        gateway.add_session({"id": "cs_v", "payment_status": "unpaid",
                             "metadata": {"orderId": stale_order.id}})

        result = await reconciler.verify_payment_status(stale_order.id)

        assert result.message == "Payment status updated to failed"
        assert (await orders.get(stale_order.id)).payment_status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_no_session_fails_order(self, reconciler, orders, stale_order):
        await orders.save(stale_order)

        result = await reconciler.verify_payment_status(stale_order.id)

        assert result.message == "No payment session found, marked as failed"
        assert result.payment_status == "failed"
        assert result.events == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, reconciler):
        with pytest.raises(OrderNotFound):
            await reconciler.verify_payment_status("missing")
