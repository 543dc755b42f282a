"""Gateway callback intake.

A callback is handled in a fixed order: authenticate the raw body against
the gateway's salt key, decode the base64-of-JSON envelope, find the payment
attempt by (merchant transaction reference, gateway), stop if the order is
already terminal, classify the outcome and apply it through the ledger.

``process_webhook_callback`` never raises for anything the gateway could fix
by resending; every typed failure is logged and reported in the returned
``WebhookResult`` so the transport can still acknowledge. Only
``StorageFailure`` escapes, so the gateway retries while storage is down.
"""
import base64
import binascii
import hmac
import json
import logging
from dataclasses import dataclass, field

from django.db import DatabaseError, transaction
from django.utils import timezone

from .emails import notify_payment_outcome
from .exceptions import GatewayUnavailable, MalformedPayload, NotFound, PaymentError, SignatureInvalid, StorageFailure
from .gateways import GatewayConfig, get_active_config
from .ledger import transition
from .models import Order, PaymentAttempt
from .utils import b64_body, x_verify

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-VERIFY"

SUCCESS_CODE = "PAYMENT_SUCCESS"
COMPLETED_STATE = "COMPLETED"
FAILURE_CODES = frozenset({"PAYMENT_ERROR", "PAYMENT_DECLINED"})
FAILED_STATE = "FAILED"

PENDING_UNCHANGED = "pending"


@dataclass(frozen=True)
class CallbackOutcome:
    merchant_transaction_ref: str
    gateway_transaction_ref: str
    outcome_code: str
    outcome_state: str
    message: str
    raw: dict = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class WebhookResult:
    processed: bool
    outcome: str = ""
    order_id: str = ""
    error: str = ""
    message: str = ""

    @property
    def success(self) -> bool:
        return not self.error


def _header(headers, name: str) -> str:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        value = next((v for k, v in headers.items() if k.lower() == lowered), "")
    return (value or "").strip()


def expected_signature(raw_body: bytes, config: GatewayConfig) -> str:
    return x_verify(b64_body(raw_body) + config.callback_path, config.salt_key, config.salt_index)


def verify_signature(raw_body: bytes, presented: str, config: GatewayConfig) -> None:
    if not config.salt_key:
        raise GatewayUnavailable(
            f"Payment gateway '{config.name}' has no salt key for webhook verification.", gateway=config.name
        )
    expected = expected_signature(raw_body, config)
    if not hmac.compare_digest(expected.encode("utf-8"), (presented or "").strip().encode("utf-8")):
        raise SignatureInvalid("Webhook signature verification failed.", gateway=config.name)


def outcome_from_document(document) -> CallbackOutcome:
    """Canonical outcome from a decoded gateway document (webhook or status API)."""
    if not isinstance(document, dict):
        raise MalformedPayload("Gateway document is not an object.")
    data = document.get("data")
    if not isinstance(data, dict):
        raise MalformedPayload("Gateway document has no data object.")
    merchant_ref = data.get("merchantTransactionId")
    if not merchant_ref:
        raise MalformedPayload("Gateway document has no merchantTransactionId.")
    return CallbackOutcome(
        merchant_transaction_ref=str(merchant_ref),
        gateway_transaction_ref=str(data.get("transactionId") or ""),
        outcome_code=str(document.get("code") or "").upper(),
        outcome_state=str(data.get("state") or "").upper(),
        message=str(document.get("message") or ""),
        raw=document,
    )


def decode_callback(raw_body: bytes) -> CallbackOutcome:
    try:
        envelope = json.loads(raw_body)
        encoded = envelope["response"]
        if not isinstance(encoded, str):
            raise MalformedPayload("Webhook 'response' field is not a string.")
        document = json.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
    except (ValueError, KeyError, TypeError, binascii.Error) as exc:
        raise MalformedPayload(f"Could not decode webhook payload: {exc}") from exc
    return outcome_from_document(document)


def classify_outcome(outcome: CallbackOutcome) -> str:
    if outcome.outcome_code == SUCCESS_CODE and outcome.outcome_state == COMPLETED_STATE:
        return Order.Status.SUCCESSFUL
    if outcome.outcome_code in FAILURE_CODES or outcome.outcome_state == FAILED_STATE:
        return Order.Status.FAILED
    return PENDING_UNCHANGED


def apply_outcome(outcome: CallbackOutcome, gateway_name: str, *, source: str = "webhook") -> WebhookResult:
    """Drive the order of the matching payment attempt forward by one outcome."""
    ref = outcome.merchant_transaction_ref
    observed = {
        "last_gateway_code": outcome.outcome_code,
        "last_gateway_state": outcome.outcome_state,
        "last_gateway_payload": outcome.raw,
        "updated_at": timezone.now(),
    }
    if outcome.gateway_transaction_ref:
        observed["gateway_transaction_ref"] = outcome.gateway_transaction_ref

    try:
        with transaction.atomic():
            attempt = (
                PaymentAttempt.objects.select_related("order")
                .filter(transaction_ref=ref, gateway_name=gateway_name)
                .first()
            )
            if attempt is None:
                raise NotFound(f"No payment attempt for {ref} from {gateway_name}.", transaction_ref=ref)
            order = attempt.order

            if order.is_terminal:
                logger.info("Order %s already %s; ignoring %s %s for %s",
                            order.pk, order.status, source, outcome.outcome_code, ref)
                return WebhookResult(processed=False, outcome=order.status, order_id=str(order.pk))

            classification = classify_outcome(outcome)
            if classification == PENDING_UNCHANGED:
                PaymentAttempt.objects.filter(pk=attempt.pk).update(**observed)
                logger.info("Payment %s is %s/%s; order %s stays pending",
                            ref, outcome.outcome_code, outcome.outcome_state, order.pk)
                return WebhookResult(processed=True, outcome=PENDING_UNCHANGED, order_id=str(order.pk))

            attempt_resolved = PaymentAttempt.objects.filter(
                pk=attempt.pk, status=PaymentAttempt.Status.PENDING
            ).update(status=classification, **observed)
            if not attempt_resolved and classification == Order.Status.FAILED:
                logger.warning("Ignoring failure for payment %s: attempt already %s", ref, attempt.status)
                return WebhookResult(processed=False, outcome=order.status, order_id=str(order.pk))

            result = transition(
                order.pk,
                classification,
                payment_attempt_id=attempt.pk,
                gateway_name=gateway_name,
                gateway_transaction_ref=outcome.gateway_transaction_ref,
            )
    except DatabaseError as exc:
        logger.exception("Storage failure while applying %s outcome for %s", source, ref)
        raise StorageFailure(f"Could not apply payment outcome for {ref}.") from exc

    if result.applied:
        logger.info("Payment %s via %s (%s): order %s -> %s. %s",
                    ref, gateway_name, source, order.pk, result.status, outcome.message)
        kind = "payment_approved" if result.status == Order.Status.SUCCESSFUL else "payment_rejected"
        order_id, attempt_id = order.pk, attempt.pk
        transaction.on_commit(lambda: notify_payment_outcome(order_id, attempt_id, kind, notes=outcome.message))
    return WebhookResult(processed=result.applied, outcome=result.status, order_id=str(order.pk))


def process_webhook_callback(gateway_name: str, raw_body: bytes, headers, *,
                             config_store=get_active_config) -> WebhookResult:
    """Authenticate, decode and apply one gateway callback."""
    logger.info("Processing webhook for %s", gateway_name)
    try:
        config = config_store(gateway_name)
        verify_signature(raw_body, _header(headers, SIGNATURE_HEADER), config)
        outcome = decode_callback(raw_body)
        return apply_outcome(outcome, config.name)
    except StorageFailure:
        raise
    except PaymentError as exc:
        logger.warning("Webhook from %s not applied: %s: %s", gateway_name, exc.code, exc)
        return WebhookResult(processed=False, error=exc.code, message=str(exc))
    except DatabaseError as exc:
        logger.exception("Storage failure while processing webhook from %s", gateway_name)
        raise StorageFailure("Could not process webhook.") from exc
