import base64
import io
import logging
from dataclasses import dataclass
from decimal import Decimal
from urllib.parse import quote, urlencode

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from django.db import DatabaseError, IntegrityError, transaction

from .exceptions import GatewayUnavailable, InstrumentGenerationFailed, InvalidState, NotFound, StorageFailure
from .gateways import GatewayConfig, get_active_config
from .models import Order, PaymentAttempt
from .utils import amount_str, as_uuid, generate_transaction_ref

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentInstrument:
    payment_attempt_id: str
    transaction_ref: str
    order_id: str
    amount: Decimal
    currency: str
    merchant_upi_id: str
    merchant_name: str
    deep_link: str
    qr_code_data_url: str

    def as_dict(self) -> dict:
        return {
            "paymentAttemptId": self.payment_attempt_id,
            "transactionRef": self.transaction_ref,
            "orderId": self.order_id,
            "amount": amount_str(self.amount),
            "currency": self.currency,
            "merchantUpiId": self.merchant_upi_id,
            "merchantName": self.merchant_name,
            "upiDeepLink": self.deep_link,
            "qrCodeDataUrl": self.qr_code_data_url,
        }


def build_payment_uri(config: GatewayConfig, attempt: PaymentAttempt) -> str:
    """UPI payment request: payee, payee name, exact amount, currency and a note."""
    params = [
        ("pa", config.merchant_upi_id),
        ("pn", config.merchant_name),
        ("am", amount_str(attempt.amount)),
        ("cu", attempt.currency),
        ("tn", f"Order {attempt.order_id} Ref {attempt.transaction_ref}"),
        ("tr", attempt.transaction_ref),
    ]
    return "upi://pay?" + urlencode(params, quote_via=quote)


def render_qr_data_url(uri: str) -> str:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=8, border=4)
    qr.add_data(uri)
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image().save(buf)
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def render_instrument(attempt: PaymentAttempt, config: GatewayConfig) -> PaymentInstrument:
    uri = build_payment_uri(config, attempt)
    try:
        qr_data_url = render_qr_data_url(uri)
    except Exception as exc:
        logger.exception("QR rendering failed for payment attempt %s", attempt.transaction_ref)
        raise InstrumentGenerationFailed(
            "Could not render the payment QR code; retry rendering for this attempt.",
            payment_attempt_id=str(attempt.pk),
        ) from exc
    return PaymentInstrument(
        payment_attempt_id=str(attempt.pk),
        transaction_ref=attempt.transaction_ref,
        order_id=str(attempt.order_id),
        amount=attempt.amount,
        currency=attempt.currency,
        merchant_upi_id=config.merchant_upi_id,
        merchant_name=config.merchant_name,
        deep_link=uri,
        qr_code_data_url=qr_data_url,
    )


def _pending_attempt_for(order: Order, config: GatewayConfig):
    existing = order.payment_attempts.filter(status=PaymentAttempt.Status.PENDING).first()
    if existing is None:
        return None
    if existing.gateway_name != config.name:
        raise InvalidState(
            f"A payment via '{existing.gateway_name}' is already in progress for this order.",
            order_id=str(order.pk),
        )
    return existing


def _open_attempt(order_id, config: GatewayConfig) -> PaymentAttempt:
    try:
        try:
            with transaction.atomic():
                order = Order.objects.select_for_update().get(pk=order_id)
                if order.status != Order.Status.PENDING:
                    raise InvalidState(f"Order status is '{order.status}'. Cannot process payment.", order_id=str(order_id))
                existing = _pending_attempt_for(order, config)
                if existing is not None:
                    logger.info("Reusing pending payment attempt %s for order %s", existing.transaction_ref, order.pk)
                    return existing
                attempt = PaymentAttempt.objects.create(
                    order=order,
                    user_id=order.user_id,
                    amount=order.price,
                    currency=config.currency,
                    gateway_name=config.name,
                    transaction_ref=generate_transaction_ref(),
                )
                Order.objects.filter(pk=order.pk, status=Order.Status.PENDING).update(gateway_name=config.name)
        except IntegrityError:
            # A concurrent initiation opened the pending attempt first.
            order = Order.objects.get(pk=order_id)
            existing = _pending_attempt_for(order, config)
            if existing is None:
                raise
            return existing
    except DatabaseError as exc:
        logger.exception("Could not open a payment attempt for order %s", order_id)
        raise StorageFailure("Could not store payment attempt.") from exc

    logger.info("Payment initiated: %s for order %s via %s", attempt.transaction_ref, order_id, config.name)
    return attempt


def initiate_payment(order_id, gateway_name: str, *, config_store=get_active_config) -> PaymentInstrument:
    """Open (or reuse) the pending payment attempt of an order and render its instrument.

    The attempt is committed before rendering starts, so an
    InstrumentGenerationFailed leaves a usable pending attempt behind;
    ``render_payment_instrument`` can be called again for it.
    """
    order_id = as_uuid(order_id)
    order = Order.objects.filter(pk=order_id).first()
    if order is None:
        raise NotFound("Order not found.", order_id=str(order_id))
    if order.status != Order.Status.PENDING:
        raise InvalidState(f"Order status is '{order.status}'. Cannot process payment.", order_id=str(order_id))

    config = config_store(gateway_name)
    missing = config.missing_payee_fields()
    if missing:
        raise GatewayUnavailable(
            f"Payment gateway '{gateway_name}' configuration is incomplete: missing {', '.join(missing)}.",
            gateway=gateway_name,
        )

    attempt = _open_attempt(order_id, config)
    return render_instrument(attempt, config)


def render_payment_instrument(payment_attempt_id, *, config_store=get_active_config) -> PaymentInstrument:
    attempt = PaymentAttempt.objects.filter(pk=as_uuid(payment_attempt_id, "Payment attempt")).first()
    if attempt is None:
        raise NotFound("Payment attempt not found.", payment_attempt_id=str(payment_attempt_id))
    if not attempt.is_pending:
        raise InvalidState(f"Payment attempt is already {attempt.status}.", payment_attempt_id=str(attempt.pk))
    return render_instrument(attempt, config_store(attempt.gateway_name))
