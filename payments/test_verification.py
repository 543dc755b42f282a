import json
import uuid
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.test import TestCase, override_settings
from django.urls import reverse

from enrollments.models import QbankEnrollment
from enrollments.services import has_entitlement

from .exceptions import AlreadyResolved, InvalidState, NotFound
from .models import Order, PaymentAttempt
from .tests import QBANK_42, PaymentFixtures, callback_body, sign
from .verification import (
    get_payment_attempt_details,
    list_payment_attempts,
    list_pending_payment_attempts,
    verify_payment_manually,
)
from .webhook import process_webhook_callback


@override_settings(EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend', PAYMENTS_ADMIN_EMAILS="")
class ManualVerificationTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.operator = get_user_model().objects.create_user("ops", password="pw", is_staff=True)
        self.attempt = self.make_attempt()
        self.order = self.attempt.order

    def _webhook(self, code="PAYMENT_SUCCESS", state="COMPLETED"):
        body = callback_body(self.attempt.transaction_ref, code=code, state=state)
        return process_webhook_callback("upi-gw", body, {"X-VERIFY": sign(body)})

    def test_approve_grants_entitlement_and_notifies(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = verify_payment_manually(
                self.attempt.pk, self.operator, "successful", notes="UTR 4411 matched", gateway_reference="UTR4411"
            )

        self.assertEqual(result.status, "successful")
        self.assertTrue(result.entitlement_created)
        self.assertEqual(result.message, "Payment approved successfully.")
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.SUCCESSFUL)
        self.assertEqual(self.attempt.verified_by, self.operator)
        self.assertIsNotNone(self.attempt.verified_at)
        self.assertEqual(self.attempt.admin_notes, "UTR 4411 matched")
        self.assertEqual(self.attempt.gateway_transaction_ref, "UTR4411")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SUCCESSFUL)
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("Payment confirmed", mail.outbox[0].subject)

    def test_reject_fails_order_and_notifies(self):
        with self.captureOnCommitCallbacks(execute=True):
            verify_payment_manually(self.attempt.pk, self.operator, "failed", notes="No credit in bank statement")

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.FAILED)
        self.assertFalse(has_entitlement(self.user.pk, QBANK_42))
        self.assertIn("could not be verified", mail.outbox[0].subject)
        self.assertIn("No credit in bank statement", mail.outbox[0].body)

    def test_second_verification_is_already_resolved(self):
        verify_payment_manually(self.attempt.pk, self.operator, "successful")
        with self.assertRaises(AlreadyResolved):
            verify_payment_manually(self.attempt.pk, self.operator, "failed")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SUCCESSFUL)

    def test_webhook_wins_race_against_operator(self):
        self._webhook()
        with self.assertRaises(AlreadyResolved):
            verify_payment_manually(self.attempt.pk, self.operator, "failed")

        self.order.refresh_from_db()
        self.attempt.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SUCCESSFUL)
        self.assertIsNone(self.attempt.verified_by)
        self.assertEqual(QbankEnrollment.objects.count(), 1)

    def test_operator_wins_race_against_webhook(self):
        verify_payment_manually(self.attempt.pk, self.operator, "successful")
        result = self._webhook()

        self.assertFalse(result.processed)
        self.assertEqual(QbankEnrollment.objects.count(), 1)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.verified_by, self.operator)

    def test_late_failure_webhook_does_not_flip_approved_order(self):
        verify_payment_manually(self.attempt.pk, self.operator, "successful")
        self._webhook(code="PAYMENT_ERROR", state="FAILED")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SUCCESSFUL)

    def test_notification_failure_does_not_undo_verification(self):
        with patch("payments.emails._send", side_effect=ConnectionRefusedError("smtp down")):
            with self.assertLogs("payments.emails", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    verify_payment_manually(self.attempt.pk, self.operator, "successful")

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.SUCCESSFUL)
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))

    def test_unknown_attempt_and_outcome(self):
        with self.assertRaises(NotFound):
            verify_payment_manually(uuid.uuid4(), self.operator, "successful")
        with self.assertRaises(InvalidState):
            verify_payment_manually(self.attempt.pk, self.operator, "refunded")

    def test_listings(self):
        self.assertEqual(list_pending_payment_attempts(), [self.attempt])
        self.assertEqual(list_payment_attempts(status="pending"), [self.attempt])
        verify_payment_manually(self.attempt.pk, self.operator, "failed")
        self.assertEqual(list_payment_attempts(status="pending"), [])
        self.assertEqual(list_payment_attempts(status="failed", limit=10, offset=0), [self.attempt])
        self.assertEqual(list_payment_attempts(offset=1), [])
        with self.assertRaises(InvalidState):
            list_payment_attempts(status="charged")

        details = get_payment_attempt_details(self.attempt.pk)
        self.assertEqual(details.order, self.order)
        with self.assertRaises(NotFound):
            get_payment_attempt_details("nope")


@override_settings(EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend')
class VerificationViewTests(PaymentFixtures, TestCase):
    def setUp(self):
        super().setUp()
        self.operator = get_user_model().objects.create_user("ops", password="pw", is_staff=True)
        self.attempt = self.make_attempt()

    def _post(self, payload):
        return self.client.post(
            reverse('payments:verify_payment', args=[self.attempt.pk]),
            data=json.dumps(payload),
            content_type='application/json',
        )

    def test_staff_only(self):
        self.client.force_login(self.user)
        resp = self._post({"action": "approve"})
        self.assertEqual(resp.status_code, 302)
        self.attempt.refresh_from_db()
        self.assertTrue(self.attempt.is_pending)

    def test_approve_then_conflict(self):
        self.client.force_login(self.operator)
        resp = self._post({"action": "approve", "notes": "checked"})
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["entitlementCreated"])

        resp = self._post({"action": "reject"})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["error"], "already_resolved")

    def test_bad_action(self):
        self.client.force_login(self.operator)
        self.assertEqual(self._post({"action": "maybe"}).status_code, 400)

    def test_attempt_listing_and_detail(self):
        self.client.force_login(self.operator)
        resp = self.client.get(reverse('payments:payment_attempts'), {"status": "pending"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(
            [p["transactionRef"] for p in resp.json()["payments"]], [self.attempt.transaction_ref]
        )
        resp = self.client.get(reverse('payments:payment_attempt_detail', args=[self.attempt.pk]))
        self.assertEqual(resp.json()["order"]["orderId"], str(self.attempt.order_id))

    def test_admin_approve_action(self):
        admin_user = get_user_model().objects.create_superuser("root", "root@example.com", "pw")
        self.client.force_login(admin_user)
        resp = self.client.post(
            reverse('admin:payments_paymentattempt_changelist'),
            {"action": "approve_payments", "_selected_action": [str(self.attempt.pk)]},
        )
        self.assertEqual(resp.status_code, 302)
        self.attempt.refresh_from_db()
        self.assertEqual(self.attempt.status, PaymentAttempt.Status.SUCCESSFUL)
        self.assertEqual(self.attempt.verified_by, admin_user)
        self.assertTrue(has_entitlement(self.user.pk, QBANK_42))
