import base64
import json
from unittest.mock import patch

from django.core import mail
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from enrollments.models import QbankEnrollment
from enrollments.services import has_entitlement

from .exceptions import MalformedPayload, StorageFailure
from .models import Order, PaymentAttempt
from .tests import QBANK_42, PaymentFixtures, callback_body, sign
from .webhook import CallbackOutcome, classify_outcome, decode_callback, process_webhook_callback


def outcome(code, state):
    return CallbackOutcome("TXN1", "PG1", code, state, "")


class ClassifyOutcomeTests(SimpleTestCase):
    def test_success_needs_code_and_state(self):
        self.assertEqual(classify_outcome(outcome("PAYMENT_SUCCESS", "COMPLETED")), "successful")
        self.assertEqual(classify_outcome(outcome("PAYMENT_SUCCESS", "PENDING")), "pending")

    def test_failure_codes_and_state(self):
        self.assertEqual(classify_outcome(outcome("PAYMENT_ERROR", "")), "failed")
        self.assertEqual(classify_outcome(outcome("PAYMENT_DECLINED", "PENDING")), "failed")
        self.assertEqual(classify_outcome(outcome("TIMED_OUT", "FAILED")), "failed")

    def test_anything_else_leaves_order_pending(self):
        self.assertEqual(classify_outcome(outcome("PAYMENT_PENDING", "PENDING")), "pending")
        self.assertEqual(classify_outcome(outcome("", "")), "pending")


class DecodeCallbackTests(SimpleTestCase):
    def test_decodes_envelope(self):
        result = decode_callback(callback_body("TXN9", gateway_ref="PG-77"))
        self.assertEqual(result.merchant_transaction_ref, "TXN9")
        self.assertEqual(result.gateway_transaction_ref, "PG-77")
        self.assertEqual(result.outcome_code, "PAYMENT_SUCCESS")
        self.assertEqual(result.outcome_state, "COMPLETED")

    def test_each_layer_can_be_malformed(self):
        bad_inner = base64.b64encode(b'{"code": "PAYMENT_SUCCESS", "data": {}}').decode()
        bodies = [
            b"not json",
            b'["response"]',
            b'{"payload": "x"}',
            b'{"response": 42}',
            b'{"response": "%%%not-base64%%%"}',
            json.dumps({"response": base64.b64encode(b"not json either").decode()}).encode(),
            json.dumps({"response": bad_inner}).encode(),
        ]
        for body in bodies:
            with self.subTest(body=body):
                with self.assertRaises(MalformedPayload):
                    decode_callback(body)


@override_settings(
    EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend',
    PAYMENTS_ADMIN_EMAILS="ops@example.com",
)
class PaymentWebhookTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.attempt = self.make_attempt()
        self.order = self.attempt.order

    def _post(self, body, signature=None, gateway="upi-gw"):
        return self.client.post(
            reverse('payments:payment_webhook', args=[gateway]),
            data=body,
            content_type='application/json',
            HTTP_X_VERIFY=sign(body) if signature is None else signature,
        )

    def test_successful_payment_grants_entitlement(self):
        body = callback_body(self.attempt.transaction_ref, gateway_ref="PG-T100")

        with self.captureOnCommitCallbacks(execute=True):
            resp = self._post(body)

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})
        self.order.refresh_from_db()
        self.attempt.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SUCCESSFUL)
        self.assertEqual(self.order.gateway_transaction_ref, "PG-T100")
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.SUCCESSFUL)
        self.assertEqual(self.attempt.last_gateway_code, "PAYMENT_SUCCESS")
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))
        self.assertEqual(QbankEnrollment.objects.get().payment_attempt_id, self.attempt.pk)

        self.assertEqual(len(mail.outbox), 2)
        self.assertEqual(mail.outbox[0].to, ["asha@example.com"])
        self.assertIn("Payment confirmed", mail.outbox[0].subject)
        self.assertIn(self.attempt.transaction_ref, mail.outbox[0].body)
        self.assertEqual(mail.outbox[1].to, ["ops@example.com"])

    def test_duplicate_deliveries_grant_once(self):
        body = callback_body(self.attempt.transaction_ref)
        with self.captureOnCommitCallbacks(execute=True):
            first = self._post(body)
            with self.assertLogs("payments.webhook", level="INFO") as cm:
                repeats = [self._post(body) for _ in range(2)]

        self.assertEqual([r.status_code for r in [first] + repeats], [200, 200, 200])
        self.assertEqual([r.json() for r in [first] + repeats], [{"success": True}] * 3)
        self.assertEqual(sum("already successful" in line for line in cm.output), 2)
        self.assertEqual(QbankEnrollment.objects.filter(user=self.user).count(), 1)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SUCCESSFUL)
        self.assertEqual(len([m for m in mail.outbox if m.to == ["asha@example.com"]]), 1)

    def test_bad_signature_rejected_before_decoding(self):
        body = callback_body(self.attempt.transaction_ref)
        with patch("payments.webhook.decode_callback") as decode:
            with self.assertLogs("payments.webhook", level="WARNING") as cm:
                resp = self._post(body, signature=sign(body, salt_key="wrong-salt"))

        decode.assert_not_called()
        self.assertIn("signature_invalid", cm.output[0])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})
        self.assertNotIn(b"signature", resp.content)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(PaymentAttempt.objects.get().last_gateway_code, "")

    def test_missing_signature(self):
        with self.assertLogs("payments.webhook", level="WARNING") as cm:
            resp = self._post(callback_body(self.attempt.transaction_ref), signature="")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})
        self.assertIn("signature_invalid", cm.output[0])
        self.assertFalse(QbankEnrollment.objects.exists())

    def test_signature_uses_configured_callback_path(self):
        self.gateway.callback_path = "/payments/webhook/upi-gw"
        self.gateway.save()
        body = callback_body(self.attempt.transaction_ref)

        with self.assertLogs("payments.webhook", level="WARNING") as cm:
            self._post(body)
        self.assertIn("signature_invalid", cm.output[0])
        self.assertFalse(has_entitlement(self.user.pk, QBANK_42))

        resp = self._post(body, signature=sign(body, path="/payments/webhook/upi-gw"))
        self.assertEqual(resp.json(), {"success": True})
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))

    def test_malformed_payload_is_acknowledged(self):
        body = b'{"response": "%%%"}'
        with self.assertLogs("payments.webhook", level="WARNING") as cm:
            resp = self._post(body)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})
        self.assertIn("malformed_payload", cm.output[0])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)

    def test_unknown_transaction_ref_is_acknowledged(self):
        with self.assertLogs("payments.webhook", level="WARNING") as cm:
            resp = self._post(callback_body("TXN-UNKNOWN"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})
        self.assertIn("not_found", cm.output[0])

    def test_unknown_gateway_is_acknowledged(self):
        with self.assertLogs("payments.webhook", level="WARNING") as cm:
            resp = self._post(callback_body(self.attempt.transaction_ref), gateway="nope-gw")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True})
        self.assertIn("gateway_unavailable", cm.output[0])

    def test_pending_outcome_only_records_observation(self):
        body = callback_body(self.attempt.transaction_ref, code="PAYMENT_PENDING", state="PENDING")
        resp = self._post(body)

        self.assertEqual(resp.json(), {"success": True})
        self.attempt.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.PENDING)
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.PENDING)
        self.assertEqual(self.attempt.last_gateway_code, "PAYMENT_PENDING")
        self.assertEqual(self.attempt.last_gateway_state, "PENDING")

    def test_declined_payment_fails_order_and_sticks(self):
        with self.captureOnCommitCallbacks(execute=True):
            self._post(callback_body(self.attempt.transaction_ref, code="PAYMENT_DECLINED", state="FAILED"))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.FAILED)
        self.assertIn("could not be verified", mail.outbox[0].subject)

        with self.assertLogs("payments.webhook", level="INFO") as cm:
            resp = self._post(callback_body(self.attempt.transaction_ref))
        self.assertEqual(resp.json(), {"success": True})
        self.assertTrue(any("already failed" in line for line in cm.output))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.FAILED)
        self.assertFalse(QbankEnrollment.objects.exists())

    def test_storage_failure_asks_gateway_to_retry(self):
        body = callback_body(self.attempt.transaction_ref)
        with patch("payments.webhook.transition", side_effect=StorageFailure("db down")):
            resp = self._post(body)

        self.assertEqual(resp.status_code, 500)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.PENDING)

        resp = self._post(body)
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))

    def test_header_lookup_is_case_insensitive(self):
        body = callback_body(self.attempt.transaction_ref)
        result = process_webhook_callback("upi-gw", body, {"x-verify": sign(body)})
        self.assertTrue(result.processed)
        self.assertEqual(result.outcome, "successful")
        self.assertEqual(result.order_id, str(self.order.pk))

    def test_get_not_allowed(self):
        resp = self.client.get(reverse('payments:payment_webhook', args=["upi-gw"]))
        self.assertEqual(resp.status_code, 405)
