import hashlib
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from requests import ConnectionError as RequestsConnectionError

from enrollments.services import has_entitlement

from .exceptions import GatewayError
from .gateways import get_active_config
from .integrations.phonepe import fetch_payment_status
from .models import Order, PaymentAttempt
from .tests import QBANK_42, SALT_KEY, PaymentFixtures


class FakeResponse:
    def __init__(self, status_code, data):
        self.status_code = status_code
        self._data = data
        self.text = str(data)

    def json(self):
        return self._data


def status_document(transaction_ref, code="PAYMENT_SUCCESS", state="COMPLETED"):
    return {
        "success": code == "PAYMENT_SUCCESS",
        "code": code,
        "message": "Your request has been successfully completed.",
        "data": {
            "merchantId": "MERCHANT1",
            "merchantTransactionId": transaction_ref,
            "transactionId": "PG-RECON-1",
            "amount": 49900,
            "state": state,
        },
    }


@override_settings(PAYMENTS_GATEWAY_TIMEOUT=12)
class FetchPaymentStatusTests(PaymentFixtures, TestCase):
    def test_signed_status_request(self):
        config = get_active_config("upi-gw")
        doc = status_document("TXN1")
        with patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(200, doc)) as get:
            self.assertEqual(fetch_payment_status(config, "TXN1"), doc)

        path = "/pg/v1/status/MERCHANT1/TXN1"
        get.assert_called_once()
        self.assertEqual(get.call_args.args[0], "https://gw.example.com" + path)
        headers = get.call_args.kwargs["headers"]
        expected = hashlib.sha256((path + SALT_KEY).encode()).hexdigest() + "###1"
        self.assertEqual(headers["X-VERIFY"], expected)
        self.assertEqual(headers["X-MERCHANT-ID"], "MERCHANT1")
        self.assertEqual(get.call_args.kwargs["timeout"], 12.0)

    def test_non_200_raises_gateway_error(self):
        config = get_active_config("upi-gw")
        with patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(401, {"code": "UNAUTHORIZED"})):
            with self.assertRaises(GatewayError) as cm:
                fetch_payment_status(config, "TXN1")
        self.assertIn("X-VERIFY", str(cm.exception))

    def test_network_error_raises_gateway_error(self):
        config = get_active_config("upi-gw")
        with patch("payments.integrations.phonepe.requests.get", side_effect=RequestsConnectionError("refused")):
            with self.assertRaises(GatewayError):
                fetch_payment_status(config, "TXN1")


class ReconcilePendingPaymentsTests(PaymentFixtures, TestCase):
    def _run(self, **extra):
        out = StringIO()
        call_command("reconcile_pending_payments", "--older-than-minutes", "0", "--sleep", "0", stdout=out, **extra)
        return out.getvalue()

    def test_nothing_to_do(self):
        self.assertIn("No pending payments", self._run())

    def test_completed_payment_is_applied(self):
        attempt = self.make_attempt()
        doc = status_document(attempt.transaction_ref)
        with patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(200, doc)):
            out = self._run()

        self.assertIn(f"{attempt.transaction_ref} -> successful", out)
        attempt.refresh_from_db()
        self.assertEqual(attempt.status, PaymentAttempt.Status.SUCCESSFUL)
        self.assertEqual(attempt.order.status, Order.Status.SUCCESSFUL)
        self.assertEqual(attempt.order.gateway_transaction_ref, "PG-RECON-1")
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))

    def test_still_pending_stays_pending(self):
        attempt = self.make_attempt()
        doc = status_document(attempt.transaction_ref, code="PAYMENT_PENDING", state="PENDING")
        with patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(200, doc)):
            self._run()
        attempt.refresh_from_db()
        self.assertTrue(attempt.is_pending)
        self.assertEqual(attempt.last_gateway_code, "PAYMENT_PENDING")

    def test_gateway_error_is_reported_and_skipped(self):
        attempt = self.make_attempt()
        with patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(500, {"code": "INTERNAL"})):
            out = self._run()
        self.assertIn(attempt.transaction_ref, out)
        self.assertIn("Gateway error 500", out)
        attempt.refresh_from_db()
        self.assertTrue(attempt.is_pending)

    def test_recent_attempts_are_left_alone(self):
        self.make_attempt()
        with patch("payments.integrations.phonepe.requests.get") as get:
            out = StringIO()
            call_command("reconcile_pending_payments", "--sleep", "0", stdout=out)
        get.assert_not_called()
        self.assertIn("No pending payments", out.getvalue())

    def test_document_for_another_transaction_is_skipped(self):
        attempt = self.make_attempt()
        doc = status_document("TXN-OTHER")
        with patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(200, doc)):
            out = self._run()

        self.assertIn(f"{attempt.transaction_ref}: status document is for TXN-OTHER; skipped", out)
        attempt.refresh_from_db()
        self.assertTrue(attempt.is_pending)
        self.assertEqual(attempt.last_gateway_code, "")
        self.assertEqual(attempt.order.status, Order.Status.PENDING)
        self.assertFalse(has_entitlement(self.user.pk, QBANK_42))
