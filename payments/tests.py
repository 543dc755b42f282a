import base64
import hashlib
import json
import uuid
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError
from django.test import TestCase, override_settings
from django.urls import reverse

from catalog.models import ProductKind, ProductRef, QuestionBank
from enrollments.models import QbankEnrollment
from enrollments.services import has_entitlement

from . import initiation, ledger
from .exceptions import (
    GatewayUnavailable,
    InstrumentGenerationFailed,
    InvalidState,
    NotFound,
    PriceMismatch,
    StorageFailure,
)
from .initiation import initiate_payment, render_payment_instrument
from .models import GatewaySetting, Order, PaymentAttempt
from .utils import generate_transaction_ref

QBANK_42 = ProductRef(ProductKind.QBANK, "qbank-42")
SALT_KEY = "test-salt-key"


def callback_body(transaction_ref, code="PAYMENT_SUCCESS", state="COMPLETED", gateway_ref="PG-T100"):
    document = {
        "success": code == "PAYMENT_SUCCESS",
        "code": code,
        "message": "Your payment is successful." if code == "PAYMENT_SUCCESS" else "Payment not completed.",
        "data": {
            "merchantId": "MERCHANT1",
            "merchantTransactionId": transaction_ref,
            "transactionId": gateway_ref,
            "amount": 49900,
            "state": state,
        },
    }
    encoded = base64.b64encode(json.dumps(document).encode("utf-8")).decode("ascii")
    return json.dumps({"response": encoded}).encode("utf-8")


def sign(raw_body, salt_key=SALT_KEY, salt_index="1", path="/pg/v1/status"):
    payload = base64.b64encode(raw_body).decode("ascii") + path + salt_key
    return hashlib.sha256(payload.encode("utf-8")).hexdigest() + "###" + salt_index


class PaymentFixtures:
    """Buyer, the qbank-42 product at 499.00 and an active ``upi-gw`` gateway."""

    def setUp(self):
        super().setUp()
        self.user = get_user_model().objects.create_user("asha", email="asha@example.com", password="pw")
        self.qbank = QuestionBank.objects.create(id="qbank-42", name="NEET PG Qbank", price=Decimal("499.00"))
        self.gateway = GatewaySetting.objects.create(
            gateway_name="upi-gw",
            merchant_id="MERCHANT1",
            merchant_upi_id="edupay@upi",
            merchant_name="EduPay Learning",
            salt_key=SALT_KEY,
            salt_index="1",
            api_base_url="https://gw.example.com/",
            is_active=True,
        )

    def make_order(self, price="499.00"):
        return ledger.create_order(self.user.pk, QBANK_42, price)

    def make_attempt(self):
        confirmation = self.make_order()
        instrument = initiate_payment(confirmation.order_id, "upi-gw")
        return PaymentAttempt.objects.get(pk=instrument.payment_attempt_id)


class CreateOrderTests(PaymentFixtures, TestCase):
    def test_creates_pending_order_at_catalog_price(self):
        confirmation = self.make_order()

        self.assertTrue(confirmation.created)
        self.assertEqual(confirmation.confirmed_price, Decimal("499.00"))
        order = Order.objects.get(pk=confirmation.order_id)
        self.assertEqual(order.status, Order.Status.PENDING)
        self.assertEqual(order.product_ref, QBANK_42)
        self.assertEqual(order.product_name, "NEET PG Qbank")

    def test_repeated_creation_returns_same_order(self):
        first = self.make_order()
        second = self.make_order("499.00")

        self.assertEqual(first.order_id, second.order_id)
        self.assertFalse(second.created)
        self.assertEqual(Order.objects.count(), 1)

    def test_price_within_tolerance_is_accepted(self):
        confirmation = self.make_order("499.01")
        self.assertEqual(confirmation.confirmed_price, Decimal("499.00"))

    def test_price_mismatch_rejected(self):
        with self.assertRaises(PriceMismatch) as cm:
            self.make_order("450.00")
        self.assertIn("Expected 499.00", str(cm.exception))
        self.assertFalse(Order.objects.exists())

    def test_garbage_price_rejected(self):
        for value in ("abc", "NaN", None):
            with self.assertRaises(PriceMismatch):
                self.make_order(value)

    def test_unknown_or_unpublished_product(self):
        with self.assertRaises(NotFound):
            ledger.create_order(self.user.pk, ProductRef("qbank", "missing"), "10.00")
        self.qbank.is_published = False
        self.qbank.save()
        with self.assertRaises(NotFound):
            self.make_order()

    def test_storage_fault_becomes_storage_failure(self):
        with patch.object(Order.objects, "create", side_effect=DatabaseError("disk full")):
            with self.assertRaises(StorageFailure):
                self.make_order()

    def test_lost_creation_race_returns_winning_order(self):
        rival = Order.objects.create(
            user=self.user, product_kind=QBANK_42.kind, product_id=QBANK_42.id, price=Decimal("499.00")
        )
        real_lookup = ledger._pending_order
        lookups = []

        def lookup_before_rival_commits(user_id, product_ref):
            lookups.append(product_ref)
            return None if len(lookups) == 1 else real_lookup(user_id, product_ref)

        with patch("payments.ledger._pending_order", side_effect=lookup_before_rival_commits):
            confirmation = self.make_order()

        self.assertEqual(len(lookups), 2)
        self.assertFalse(confirmation.created)
        self.assertEqual(confirmation.order_id, str(rival.pk))
        self.assertEqual(Order.objects.count(), 1)

    def test_unexplained_integrity_error_becomes_storage_failure(self):
        with patch.object(Order.objects, "create", side_effect=IntegrityError("constraint failed")):
            with self.assertRaises(StorageFailure):
                self.make_order()
        self.assertFalse(Order.objects.exists())

    @override_settings(PAYMENTS_PRICE_TOLERANCE="1.00")
    def test_tolerance_setting_applies_to_orders_and_attempts(self):
        confirmation = self.make_order("498.50")
        self.assertEqual(confirmation.confirmed_price, Decimal("499.00"))

        attempt = PaymentAttempt.objects.create(
            order_id=confirmation.order_id, user=self.user, amount=Decimal("498.50"),
            gateway_name="upi-gw", transaction_ref="TXN-WIDE",
        )
        self.assertTrue(attempt.is_pending)
        with self.assertRaises(PriceMismatch):
            self.make_order("497.90")


class TransitionTests(PaymentFixtures, TestCase):
    def test_success_grants_entitlement(self):
        order_id = self.make_order().order_id

        result = ledger.transition(order_id, "successful")

        self.assertTrue(result.applied)
        self.assertTrue(result.entitlement_created)
        self.assertEqual(Order.objects.get(pk=order_id).status, Order.Status.SUCCESSFUL)
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))

    def test_terminal_states_are_sticky(self):
        order_id = self.make_order().order_id
        ledger.transition(order_id, "successful")

        with self.assertLogs("payments.ledger", level="WARNING"):
            result = ledger.transition(order_id, "failed")

        self.assertFalse(result.applied)
        self.assertEqual(result.status, Order.Status.SUCCESSFUL)
        self.assertEqual(Order.objects.get(pk=order_id).status, Order.Status.SUCCESSFUL)

    def test_repeated_success_grants_once(self):
        order_id = self.make_order().order_id
        ledger.transition(order_id, "successful")
        result = ledger.transition(order_id, "successful")

        self.assertFalse(result.applied)
        self.assertEqual(QbankEnrollment.objects.filter(user=self.user).count(), 1)

    def test_pending_order_can_be_refunded(self):
        order_id = self.make_order().order_id
        result = ledger.transition(order_id, Order.Status.REFUNDED)
        self.assertTrue(result.applied)
        self.assertFalse(has_entitlement(self.user.pk, QBANK_42))

    def test_rejects_pending_and_unknown_outcomes(self):
        order_id = self.make_order().order_id
        with self.assertRaises(InvalidState):
            ledger.transition(order_id, "pending")
        with self.assertRaises(InvalidState):
            ledger.transition(order_id, "charged")

    def test_unknown_order(self):
        with self.assertRaises(NotFound):
            ledger.transition(uuid.uuid4(), "failed")
        with self.assertRaises(NotFound):
            ledger.transition("not-a-uuid", "failed")

    def test_grant_failure_rolls_back_transition(self):
        order_id = self.make_order().order_id
        with patch("payments.ledger.grant", side_effect=StorageFailure("enrollments down")):
            with self.assertRaises(StorageFailure):
                ledger.transition(order_id, "successful")
        self.assertEqual(Order.objects.get(pk=order_id).status, Order.Status.PENDING)

    def test_terminal_order_is_immutable(self):
        order_id = self.make_order().order_id
        ledger.transition(order_id, "successful")
        order = Order.objects.get(pk=order_id)

        order.price = Decimal("1.00")
        with self.assertRaises(InvalidState):
            order.save()

        order.refresh_from_db()
        order.product_id = "qbank-43"
        with self.assertRaises(InvalidState):
            order.save()

        order.refresh_from_db()
        order.status = Order.Status.PENDING
        with self.assertRaises(InvalidState):
            order.save()

    def test_bulk_update_cannot_touch_terminal_order(self):
        order_id = self.make_order().order_id
        ledger.transition(order_id, "successful")

        for changes in ({"price": Decimal("1.00")}, {"status": "pending"}, {"user": None}):
            with self.subTest(changes=changes):
                with self.assertRaises(InvalidState):
                    Order.objects.filter(pk=order_id).update(**changes)

        order = Order.objects.get(pk=order_id)
        self.assertEqual(order.status, Order.Status.SUCCESSFUL)
        self.assertEqual(order.price, Decimal("499.00"))
        self.assertEqual(Order.objects.filter(pk=order_id).update(gateway_transaction_ref="PG-9"), 1)
        with self.assertLogs("payments.ledger", level="WARNING"):
            self.assertFalse(ledger.transition(order_id, "failed").applied)

    def test_bulk_update_of_pending_order_is_allowed(self):
        order_id = self.make_order().order_id
        self.assertEqual(Order.objects.filter(pk=order_id).update(price=Decimal("450.00")), 1)
        self.assertEqual(Order.objects.get(pk=order_id).price, Decimal("450.00"))

    def test_pending_order_fields_can_change(self):
        order = Order.objects.get(pk=self.make_order().order_id)
        order.gateway_name = "upi-gw"
        order.save()


class TransactionRefTests(TestCase):
    def test_refs_are_unique_and_time_ordered(self):
        refs = [generate_transaction_ref() for _ in range(50)]
        self.assertEqual(len(set(refs)), 50)
        self.assertTrue(all(r.startswith("TXN") and len(r) <= 35 for r in refs))
        self.assertEqual([r[:23] for r in refs], sorted(r[:23] for r in refs))


class InitiatePaymentTests(PaymentFixtures, TestCase):
    def test_instrument_for_pending_order(self):
        order_id = self.make_order().order_id

        instrument = initiate_payment(order_id, "upi-gw")

        attempt = PaymentAttempt.objects.get(pk=instrument.payment_attempt_id)
        self.assertEqual(attempt.status, PaymentAttempt.Status.PENDING)
        self.assertEqual(attempt.amount, Decimal("499.00"))
        self.assertEqual(attempt.gateway_name, "upi-gw")
        self.assertEqual(instrument.transaction_ref, attempt.transaction_ref)
        self.assertTrue(instrument.deep_link.startswith("upi://pay?pa=edupay%40upi&pn=EduPay%20Learning&am=499.00&cu=INR"))
        self.assertIn(f"tr={attempt.transaction_ref}", instrument.deep_link)
        self.assertIn(order_id, instrument.deep_link)
        self.assertTrue(instrument.qr_code_data_url.startswith("data:image/png;base64,"))
        self.assertEqual(Order.objects.get(pk=order_id).gateway_name, "upi-gw")

    def test_second_initiation_reuses_pending_attempt(self):
        order_id = self.make_order().order_id
        first = initiate_payment(order_id, "upi-gw")
        second = initiate_payment(order_id, "upi-gw")

        self.assertEqual(first.transaction_ref, second.transaction_ref)
        self.assertEqual(PaymentAttempt.objects.count(), 1)

    def test_other_gateway_while_attempt_pending(self):
        GatewaySetting.objects.create(
            gateway_name="other-gw", merchant_upi_id="other@upi", merchant_name="Other", is_active=True
        )
        order_id = self.make_order().order_id
        initiate_payment(order_id, "upi-gw")
        with self.assertRaises(InvalidState):
            initiate_payment(order_id, "other-gw")

    def test_order_must_be_pending(self):
        order_id = self.make_order().order_id
        ledger.transition(order_id, "failed")
        with self.assertRaises(InvalidState):
            initiate_payment(order_id, "upi-gw")
        self.assertFalse(PaymentAttempt.objects.exists())

    def test_unknown_order(self):
        with self.assertRaises(NotFound):
            initiate_payment(uuid.uuid4(), "upi-gw")

    def test_inactive_or_incomplete_gateway(self):
        order_id = self.make_order().order_id
        with self.assertRaises(GatewayUnavailable):
            initiate_payment(order_id, "missing-gw")

        self.gateway.merchant_upi_id = ""
        self.gateway.save()
        with self.assertRaises(GatewayUnavailable) as cm:
            initiate_payment(order_id, "upi-gw")
        self.assertIn("merchant_upi_id", str(cm.exception))
        self.assertFalse(PaymentAttempt.objects.exists())

    def test_render_failure_keeps_attempt_and_can_retry(self):
        order_id = self.make_order().order_id
        with patch("payments.initiation.render_qr_data_url", side_effect=RuntimeError("encoder crashed")):
            with self.assertRaises(InstrumentGenerationFailed):
                initiate_payment(order_id, "upi-gw")

        attempt = PaymentAttempt.objects.get()
        self.assertEqual(attempt.status, PaymentAttempt.Status.PENDING)

        instrument = render_payment_instrument(attempt.pk)
        self.assertEqual(instrument.transaction_ref, attempt.transaction_ref)

    def test_attempt_amount_must_match_order_price(self):
        order = Order.objects.get(pk=self.make_order().order_id)
        with self.assertRaises(PriceMismatch):
            PaymentAttempt.objects.create(
                order=order, user=self.user, amount=Decimal("498.98"), gateway_name="upi-gw", transaction_ref="TXN1"
            )
        attempt = PaymentAttempt.objects.create(
            order=order, user=self.user, amount=Decimal("499.01"), gateway_name="upi-gw", transaction_ref="TXN2"
        )
        self.assertTrue(attempt.is_pending)

    def test_lost_initiation_race_returns_winning_attempt(self):
        order = Order.objects.get(pk=self.make_order().order_id)
        PaymentAttempt.objects.create(
            order=order, user=self.user, amount=order.price, gateway_name="upi-gw", transaction_ref="TXN-RIVAL"
        )
        real_lookup = initiation._pending_attempt_for
        lookups = []

        def lookup_before_rival_commits(order, config):
            lookups.append(order.pk)
            return None if len(lookups) == 1 else real_lookup(order, config)

        with patch("payments.initiation._pending_attempt_for", side_effect=lookup_before_rival_commits):
            instrument = initiate_payment(order.pk, "upi-gw")

        self.assertEqual(len(lookups), 2)
        self.assertEqual(instrument.transaction_ref, "TXN-RIVAL")
        self.assertEqual(PaymentAttempt.objects.count(), 1)

    def test_unexplained_attempt_integrity_error_becomes_storage_failure(self):
        order_id = self.make_order().order_id
        with patch.object(PaymentAttempt.objects, "create", side_effect=IntegrityError("constraint failed")):
            with self.assertRaises(StorageFailure):
                initiate_payment(order_id, "upi-gw")
        self.assertFalse(PaymentAttempt.objects.exists())


@override_settings(EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend')
class OrderViewTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.client.force_login(self.user)

    def _post(self, name, payload):
        return self.client.post(reverse(name), data=json.dumps(payload), content_type='application/json')

    def test_create_order(self):
        payload = {"productKind": "qbank", "productId": "qbank-42", "price": "499.00"}
        resp = self._post("payments:create_order", payload)
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertTrue(body["created"])
        self.assertEqual(body["confirmedPrice"], "499.00")

        again = self._post("payments:create_order", payload)
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.json()["orderId"], body["orderId"])

    def test_create_order_errors(self):
        resp = self._post("payments:create_order", {"productKind": "qbank", "productId": "qbank-42", "price": "1.00"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "price_mismatch")

        resp = self._post("payments:create_order", {"productKind": "ebook", "productId": "x", "price": "1.00"})
        self.assertEqual(resp.status_code, 400)

        resp = self._post("payments:create_order", {"productKind": "qbank", "productId": "nope", "price": "1.00"})
        self.assertEqual(resp.status_code, 404)

    def test_initiate_and_rerender(self):
        order_id = self.make_order().order_id
        resp = self._post("payments:initiate_payment", {"orderId": order_id, "gatewayName": "upi-gw"})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["amount"], "499.00")
        self.assertTrue(body["upiDeepLink"].startswith("upi://pay?"))

        resp = self.client.get(reverse("payments:payment_instrument", args=[body["paymentAttemptId"]]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["transactionRef"], body["transactionRef"])

    def test_cannot_initiate_someone_elses_order(self):
        other = get_user_model().objects.create_user("ravi", password="pw")
        order_id = ledger.create_order(other.pk, QBANK_42, "499.00").order_id
        resp = self._post("payments:initiate_payment", {"orderId": order_id, "gatewayName": "upi-gw"})
        self.assertEqual(resp.status_code, 404)

    def test_my_payments(self):
        order_id = self.make_order().order_id
        resp = self.client.get(reverse("payments:my_payments"))
        self.assertEqual(resp.status_code, 200)
        orders = resp.json()["orders"]
        self.assertEqual([o["orderId"] for o in orders], [order_id])
        self.assertEqual(orders[0]["status"], "pending")

    def test_order_detail(self):
        order_id = self.make_order().order_id
        resp = self.client.get(reverse("payments:order_detail", args=[order_id]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["price"], "499.00")

        other = get_user_model().objects.create_user("ravi", password="pw")
        self.client.force_login(other)
        resp = self.client.get(reverse("payments:order_detail", args=[order_id]))
        self.assertEqual(resp.status_code, 404)
        resp = self.client.get(reverse("payments:order_detail", args=["bogus"]))
        self.assertEqual(resp.status_code, 404)

    def test_requires_login(self):
        self.client.logout()
        resp = self.client.get(reverse("payments:my_payments"))
        self.assertEqual(resp.status_code, 302)
