"""Operator-driven resolution of payment attempts, plus the listings the
admin screens are built on."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from .emails import notify_payment_outcome
from .exceptions import AlreadyResolved, InvalidState, NotFound, StorageFailure
from .ledger import transition
from .models import PaymentAttempt
from .utils import as_uuid

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

NOTIFICATIONS = {
    PaymentAttempt.Status.SUCCESSFUL: "payment_approved",
    PaymentAttempt.Status.FAILED: "payment_rejected",
}


@dataclass(frozen=True)
class VerificationResult:
    payment_attempt_id: str
    order_id: str
    status: str
    entitlement_created: bool
    verified_by: Optional[int]
    verified_at: datetime

    @property
    def message(self) -> str:
        if self.status == PaymentAttempt.Status.SUCCESSFUL:
            return "Payment approved successfully."
        return "Payment rejected successfully."


def verify_payment_manually(payment_attempt_id, operator, outcome, notes=None,
                            gateway_reference=None) -> VerificationResult:
    """Approve (``successful``) or reject (``failed``) a pending payment attempt.

    The attempt is claimed with a conditional update, so a webhook or a
    second operator that resolved it first makes this call raise
    AlreadyResolved with nothing changed. The order goes through the same
    ledger transition as webhook outcomes.
    """
    if outcome not in NOTIFICATIONS:
        raise InvalidState(f"Verification outcome must be 'successful' or 'failed', not {outcome!r}.")
    outcome = PaymentAttempt.Status(outcome)
    attempt_id = as_uuid(payment_attempt_id, "Payment attempt")
    operator_id = getattr(operator, "pk", operator)

    try:
        with transaction.atomic():
            attempt = PaymentAttempt.objects.filter(pk=attempt_id).first()
            if attempt is None:
                raise NotFound("Payment attempt not found.", payment_attempt_id=str(attempt_id))

            now = timezone.now()
            changes = {
                "status": outcome,
                "verified_by_id": operator_id,
                "verified_at": now,
                "admin_notes": notes or "",
                "updated_at": now,
            }
            if gateway_reference:
                changes["gateway_transaction_ref"] = gateway_reference
            claimed = PaymentAttempt.objects.filter(
                pk=attempt_id, status=PaymentAttempt.Status.PENDING
            ).update(**changes)
            if not claimed:
                attempt.refresh_from_db(fields=["status"])
                raise AlreadyResolved(
                    f"Payment has already been {attempt.status}.", payment_attempt_id=str(attempt_id)
                )

            result = transition(
                attempt.order_id,
                outcome,
                payment_attempt_id=attempt_id,
                gateway_transaction_ref=gateway_reference or "",
            )
            if not result.applied:
                # Order was settled through another attempt; undo the claim.
                raise AlreadyResolved(
                    f"Order has already been {result.status}.", payment_attempt_id=str(attempt_id)
                )
    except DatabaseError as exc:
        logger.exception("Manual verification of payment attempt %s failed", attempt_id)
        raise StorageFailure("Could not store verification.") from exc

    logger.info("Payment attempt %s marked %s by operator %s", attempt.transaction_ref, outcome, operator_id)
    order_id = attempt.order_id
    transaction.on_commit(lambda: notify_payment_outcome(order_id, attempt_id, NOTIFICATIONS[outcome], notes=notes or ""))

    return VerificationResult(
        payment_attempt_id=str(attempt_id),
        order_id=str(order_id),
        status=outcome.value,
        entitlement_created=result.entitlement_created,
        verified_by=operator_id,
        verified_at=now,
    )


def list_payment_attempts(status=None, limit=50, offset=0):
    qs = PaymentAttempt.objects.select_related("order", "user", "verified_by")
    if status:
        if status not in PaymentAttempt.Status.values:
            raise InvalidState(f"Unknown payment status {status!r}.")
        qs = qs.filter(status=status)
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    offset = max(0, int(offset))
    return list(qs.order_by("-created_at")[offset:offset + limit])


def list_pending_payment_attempts():
    return list(
        PaymentAttempt.objects.select_related("order", "user")
        .filter(status=PaymentAttempt.Status.PENDING)
        .order_by("created_at")
    )


def get_payment_attempt_details(payment_attempt_id) -> PaymentAttempt:
    try:
        return PaymentAttempt.objects.select_related("order", "user", "verified_by").get(
            pk=as_uuid(payment_attempt_id, "Payment attempt")
        )
    except PaymentAttempt.DoesNotExist:
        raise NotFound("Payment attempt not found.", payment_attempt_id=str(payment_attempt_id))
