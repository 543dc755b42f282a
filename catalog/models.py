import uuid
from dataclasses import dataclass

from django.db import models


def _product_id() -> str:
    return uuid.uuid4().hex


class ProductKind(models.TextChoices):
    COURSE = "course", "Course"
    TEST_SERIES = "test_series", "Test series"
    QBANK = "qbank", "Question bank"
    WEBINAR = "webinar", "Webinar"


@dataclass(frozen=True)
class ProductRef:
    """Exactly one purchasable product: its kind plus its opaque id."""

    kind: ProductKind
    id: str

    def __post_init__(self):
        # Accept raw strings ("qbank") and normalise to the enum member.
        object.__setattr__(self, "kind", ProductKind(self.kind))
        if not self.id:
            raise ValueError("ProductRef requires a product id")
        object.__setattr__(self, "id", str(self.id))

    def __str__(self):
        return f"{self.kind.value}:{self.id}"


class Product(models.Model):
    id = models.CharField(primary_key=True, max_length=64, default=_product_id)
    price = models.DecimalField(max_digits=10, decimal_places=2)
    is_published = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    kind: ProductKind = None

    class Meta:
        abstract = True

    @property
    def display_name(self) -> str:
        return getattr(self, "name", "") or getattr(self, "title", "") or self.id

    @property
    def ref(self) -> ProductRef:
        return ProductRef(self.kind, self.id)

    def __str__(self):
        return self.display_name


class Course(Product):
    name = models.CharField(max_length=255)

    kind = ProductKind.COURSE


class TestSeries(Product):
    name = models.CharField(max_length=255)

    kind = ProductKind.TEST_SERIES

    class Meta:
        verbose_name_plural = "test series"


class QuestionBank(Product):
    name = models.CharField(max_length=255)

    kind = ProductKind.QBANK


class Webinar(Product):
    title = models.CharField(max_length=255)
    starts_at = models.DateTimeField(null=True, blank=True)

    kind = ProductKind.WEBINAR


PRODUCT_MODELS = {
    ProductKind.COURSE: Course,
    ProductKind.TEST_SERIES: TestSeries,
    ProductKind.QBANK: QuestionBank,
    ProductKind.WEBINAR: Webinar,
}
