from django.conf import settings
from django.db import models
from django.utils import timezone

from catalog.models import ProductKind


class Enrollment(models.Model):
    """A user's access to one product. Exactly one row per (user, product)."""

    STATUS_CHOICES = [
        ("active", "Active"),
        ("completed", "Completed"),
        ("dropped", "Dropped"),
    ]

    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="%(class)ss")
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default="active")
    granted_at = models.DateTimeField(default=timezone.now)
    # Audit trail back to the payment that paid for the access.
    payment_attempt = models.ForeignKey(
        "payments.PaymentAttempt", on_delete=models.PROTECT, null=True, blank=True, related_name="+"
    )

    product_kind: ProductKind = None
    product_field: str = None

    class Meta:
        abstract = True

    def __str__(self):
        return f"{self.user_id} -> {self.product_kind.value}:{getattr(self, self.product_field + '_id')}"


class CourseEnrollment(Enrollment):
    course = models.ForeignKey("catalog.Course", on_delete=models.PROTECT, related_name="enrollments")

    product_kind = ProductKind.COURSE
    product_field = "course"

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "course"], name="uniq_course_enrollment"),
        ]


class TestSeriesEnrollment(Enrollment):
    test_series = models.ForeignKey("catalog.TestSeries", on_delete=models.PROTECT, related_name="enrollments")

    product_kind = ProductKind.TEST_SERIES
    product_field = "test_series"

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "test_series"], name="uniq_test_series_enrollment"),
        ]


class QbankEnrollment(Enrollment):
    qbank = models.ForeignKey("catalog.QuestionBank", on_delete=models.PROTECT, related_name="enrollments")

    product_kind = ProductKind.QBANK
    product_field = "qbank"

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "qbank"], name="uniq_qbank_enrollment"),
        ]


class WebinarEnrollment(Enrollment):
    webinar = models.ForeignKey("catalog.Webinar", on_delete=models.PROTECT, related_name="enrollments")

    product_kind = ProductKind.WEBINAR
    product_field = "webinar"

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["user", "webinar"], name="uniq_webinar_enrollment"),
        ]


ENROLLMENT_MODELS = {
    ProductKind.COURSE: CourseEnrollment,
    ProductKind.TEST_SERIES: TestSeriesEnrollment,
    ProductKind.QBANK: QbankEnrollment,
    ProductKind.WEBINAR: WebinarEnrollment,
}
