import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)

SUBJECTS = {
    "payment_approved": "Payment confirmed: {product_name} ({currency} {amount})",
    "payment_rejected": "Payment could not be verified: {product_name}",
    "payment_notification_admin": "New payment: {transaction_ref} - {currency} {amount} ({status})",
}


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _from_email():
    return getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)


def _admin_recipients() -> List[str]:
    raw = getattr(settings, "PAYMENTS_ADMIN_EMAILS", None) or ""
    if isinstance(raw, (list, tuple)):
        raw = ",".join(raw)
    seen = set()
    uniq: List[str] = []
    for e in (x.strip() for x in raw.split(",")):
        if e and e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def _send(template_kind: str, context: dict, recipients: List[str]) -> None:
    subject = SUBJECTS[template_kind].format(**context)
    text = render_to_string(f"emails/{template_kind}.txt", context)
    html = render_to_string(f"emails/{template_kind}.html", context)
    msg = EmailMultiAlternatives(subject, text, _from_email(), recipients)
    msg.attach_alternative(html, "text/html")
    msg.send(fail_silently=_fail_silently())


def send_notification(user, template_kind: str, context: dict) -> bool:
    """Mail ``user`` the ``template_kind`` message. Returns False if nothing was sent.

    Delivery problems are logged and swallowed: a notification never undoes
    the payment state change that triggered it.
    """
    email = getattr(user, "email", "") or ""
    if not email:
        logger.info("No email address for user %s; skipping %s", getattr(user, "pk", None), template_kind)
        return False
    try:
        _send(template_kind, {**context, "user": user}, [email])
    except Exception:
        logger.exception("Failed to send %s to %s", template_kind, email)
        return False
    return True


def notify_payment_outcome(order_id, payment_attempt_id, template_kind: str, notes: str = "") -> bool:
    """Tell the customer (and, for approvals, the admins) how a payment ended."""
    from .models import PaymentAttempt

    try:
        attempt = PaymentAttempt.objects.select_related("order", "user").get(pk=payment_attempt_id)
    except PaymentAttempt.DoesNotExist:
        logger.warning("Payment attempt %s vanished before notifying order %s", payment_attempt_id, order_id)
        return False

    order = attempt.order
    context = {
        "order_id": str(order.pk),
        "product_name": order.product_name or str(order.product_ref),
        "product_kind": order.get_product_kind_display(),
        "amount": attempt.amount,
        "currency": attempt.currency,
        "transaction_ref": attempt.transaction_ref,
        "gateway_transaction_ref": attempt.gateway_transaction_ref,
        "status": order.status,
        "notes": notes or attempt.admin_notes,
    }
    sent = send_notification(attempt.user, template_kind, context)

    if template_kind == "payment_approved":
        admins = _admin_recipients()
        if admins:
            try:
                _send("payment_notification_admin", {**context, "user": attempt.user}, admins)
            except Exception:
                logger.exception("Failed to send payment admin notification for %s", attempt.transaction_ref)
    return sent
