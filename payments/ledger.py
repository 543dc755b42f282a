"""Order lifecycle: creation against the catalog price and terminal transitions.

``transition`` is the only place an order leaves ``pending``. It is written
as a conditional UPDATE (``WHERE status = 'pending'``) so two racing
confirmations for the same order cannot both apply; the loser sees zero
updated rows and becomes a logged no-op. A successful transition grants the
entitlement inside the same database transaction.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from catalog.models import ProductRef
from catalog.services import ProductNotFound, get_product
from enrollments.services import grant

from .exceptions import InvalidState, NotFound, PriceMismatch, StorageFailure
from .models import Order, PaymentAttempt
from .utils import as_uuid, price_tolerance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderConfirmation:
    order_id: str
    confirmed_price: Decimal
    created: bool

    @property
    def message(self) -> str:
        return "Order created successfully." if self.created else "Order already exists for this product."


@dataclass(frozen=True)
class TransitionResult:
    order_id: str
    status: str
    applied: bool
    entitlement_created: bool = False


def _pending_order(user_id, product_ref: ProductRef):
    return Order.objects.filter(
        user_id=user_id,
        product_kind=product_ref.kind,
        product_id=product_ref.id,
        status=Order.Status.PENDING,
    ).first()


def create_order(user_id, product_ref: ProductRef, declared_price) -> OrderConfirmation:
    try:
        product = get_product(product_ref)
    except ProductNotFound as exc:
        raise NotFound(str(exc), product=str(product_ref)) from exc

    try:
        declared = Decimal(str(declared_price))
    except (InvalidOperation, TypeError, ValueError):
        raise PriceMismatch(f"Invalid price {declared_price!r}.", product=str(product_ref))
    if not declared.is_finite() or abs(declared - product.price) > price_tolerance():
        raise PriceMismatch(
            f"Price mismatch. Expected {product.price}, received {declared_price}.",
            product=str(product_ref),
        )

    try:
        existing = _pending_order(user_id, product_ref)
        if existing is not None:
            logger.info("Reusing pending order %s for user %s on %s", existing.pk, user_id, product_ref)
            return OrderConfirmation(str(existing.pk), existing.price, created=False)
        try:
            with transaction.atomic():
                order = Order.objects.create(
                    user_id=user_id,
                    product_kind=product_ref.kind,
                    product_id=product_ref.id,
                    product_name=product.display_name,
                    price=product.price,
                )
        except IntegrityError:
            # Lost the race against a concurrent create for the same product.
            existing = _pending_order(user_id, product_ref)
            if existing is None:
                raise
            return OrderConfirmation(str(existing.pk), existing.price, created=False)
    except DatabaseError as exc:
        logger.exception("Order creation failed for user %s on %s", user_id, product_ref)
        raise StorageFailure("Could not store order.") from exc

    logger.info("Order created: %s for user %s on %s at %s", order.pk, user_id, product_ref, order.price)
    return OrderConfirmation(str(order.pk), order.price, created=True)


def _originating_attempt_id(order: Order):
    return (
        order.payment_attempts.filter(
            status__in=[PaymentAttempt.Status.SUCCESSFUL, PaymentAttempt.Status.PENDING]
        )
        .order_by("-created_at")
        .values_list("pk", flat=True)
        .first()
    )


def transition(order_id, outcome, *, payment_attempt_id=None, gateway_name="",
               gateway_transaction_ref="") -> TransitionResult:
    """Move a pending order to ``outcome`` (successful, failed or refunded).

    Terminal states are sticky: if the order already left ``pending`` the
    call changes nothing and reports ``applied=False``.
    """
    try:
        outcome = Order.Status(outcome)
    except ValueError:
        raise InvalidState(f"Unknown order outcome {outcome!r}.", order_id=str(order_id))
    if outcome == Order.Status.PENDING:
        raise InvalidState("Orders cannot transition back to pending.", order_id=str(order_id))
    order_id = as_uuid(order_id)

    try:
        with transaction.atomic():
            changes = {"status": outcome, "updated_at": timezone.now()}
            if gateway_name:
                changes["gateway_name"] = gateway_name
            if gateway_transaction_ref:
                changes["gateway_transaction_ref"] = gateway_transaction_ref
            updated = Order.objects.filter(pk=order_id, status=Order.Status.PENDING).update(**changes)

            order = Order.objects.filter(pk=order_id).first()
            if order is None:
                raise NotFound("Order not found.", order_id=str(order_id))

            if not updated:
                if order.status != outcome:
                    logger.warning(
                        "Ignoring %s for order %s: already %s", outcome, order.pk, order.status
                    )
                else:
                    logger.info("Order %s already %s; nothing to do", order.pk, order.status)
                return TransitionResult(str(order.pk), order.status, applied=False)

            entitlement_created = False
            if outcome == Order.Status.SUCCESSFUL:
                attempt_id = payment_attempt_id or _originating_attempt_id(order)
                entitlement_created = grant(order.user_id, order.product_ref, attempt_id)
    except DatabaseError as exc:
        logger.exception("Transition of order %s to %s failed", order_id, outcome)
        raise StorageFailure(f"Could not update order {order_id}.") from exc

    logger.info("Order %s -> %s", order.pk, outcome)
    return TransitionResult(str(order.pk), outcome.value, applied=True, entitlement_created=entitlement_created)


def get_order_details(order_id) -> Order:
    try:
        return Order.objects.select_related("user").get(pk=as_uuid(order_id))
    except Order.DoesNotExist:
        raise NotFound("Order not found.", order_id=str(order_id))
