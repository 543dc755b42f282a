from decimal import Decimal

from .models import PRODUCT_MODELS, ProductRef


class ProductNotFound(LookupError):
    pass


def get_product(product_ref: ProductRef):
    model = PRODUCT_MODELS[product_ref.kind]
    try:
        return model.objects.get(pk=product_ref.id, is_published=True)
    except model.DoesNotExist:
        raise ProductNotFound(f"{model._meta.verbose_name.capitalize()} not found: {product_ref.id}")


def lookup_price(product_ref: ProductRef) -> Decimal:
    """Current catalog price of a product; raises ProductNotFound."""
    return get_product(product_ref).price


def get_product_name(product_ref: ProductRef) -> str:
    return get_product(product_ref).display_name
