from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError
from django.db.models.query import QuerySet
from django.test import TestCase
from django.utils import timezone

from catalog.models import Course, ProductRef, QuestionBank, Webinar
from payments.exceptions import StorageFailure

from .models import CourseEnrollment, QbankEnrollment, WebinarEnrollment
from .services import grant, has_entitlement


class GrantTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user("meera", password="pw")
        self.qbank = QuestionBank.objects.create(id="qbank-42", name="Anatomy Qbank", price=Decimal("499.00"))
        self.ref = ProductRef("qbank", "qbank-42")

    def test_grant_creates_active_enrollment(self):
        self.assertFalse(has_entitlement(self.user.pk, self.ref))

        created = grant(self.user.pk, self.ref)

        self.assertTrue(created)
        enrollment = QbankEnrollment.objects.get(user=self.user, qbank=self.qbank)
        self.assertEqual(enrollment.status, "active")
        self.assertIsNotNone(enrollment.granted_at)
        self.assertTrue(has_entitlement(self.user.pk, self.ref))

    def test_grant_is_idempotent(self):
        self.assertTrue(grant(self.user.pk, self.ref))
        self.assertFalse(grant(self.user.pk, self.ref))
        self.assertFalse(grant(self.user.pk, self.ref))
        self.assertEqual(QbankEnrollment.objects.count(), 1)

    def test_existing_enrollment_counts_whatever_its_status(self):
        QbankEnrollment.objects.create(user=self.user, qbank=self.qbank, status="completed")
        self.assertFalse(grant(self.user.pk, self.ref))
        self.assertEqual(QbankEnrollment.objects.get().status, "completed")

    def test_lost_insert_race_counts_as_entitled(self):
        QbankEnrollment.objects.create(user=self.user, qbank=self.qbank)
        # First check misses the concurrent row; the insert then trips the unique constraint.
        with patch.object(QuerySet, "exists", side_effect=[False, True]):
            created = grant(self.user.pk, self.ref)
        self.assertFalse(created)
        self.assertEqual(QbankEnrollment.objects.count(), 1)

    def test_unexplained_integrity_error_is_storage_failure(self):
        with patch.object(QbankEnrollment.objects, "create", side_effect=IntegrityError("fk")):
            with self.assertRaises(StorageFailure):
                grant(self.user.pk, self.ref)

    def test_database_error_is_storage_failure(self):
        with patch.object(QbankEnrollment.objects, "create", side_effect=DatabaseError("disk I/O error")):
            with self.assertRaises(StorageFailure):
                grant(self.user.pk, self.ref)
        self.assertFalse(QbankEnrollment.objects.exists())

    def test_dispatch_by_product_kind(self):
        course = Course.objects.create(id="course-7", name="Pharmacology", price=Decimal("1999.00"))
        webinar = Webinar.objects.create(
            id="web-3", title="Exam strategy", price=Decimal("0.00"), starts_at=timezone.now() + timedelta(days=2)
        )

        self.assertTrue(grant(self.user.pk, ProductRef("course", course.pk)))
        self.assertTrue(grant(self.user.pk, ProductRef("webinar", webinar.pk)))

        self.assertTrue(CourseEnrollment.objects.filter(user=self.user, course=course).exists())
        self.assertTrue(WebinarEnrollment.objects.filter(user=self.user, webinar=webinar).exists())
        self.assertFalse(QbankEnrollment.objects.exists())
        self.assertFalse(has_entitlement(self.user.pk, ProductRef("test_series", "ts-1")))
