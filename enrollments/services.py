import logging

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from catalog.models import ProductRef
from payments.exceptions import StorageFailure

from .models import ENROLLMENT_MODELS

logger = logging.getLogger(__name__)


def _lookup(model, user_id, product_id) -> dict:
    return {"user_id": user_id, f"{model.product_field}_id": product_id}


def has_entitlement(user_id, product_ref: ProductRef) -> bool:
    model = ENROLLMENT_MODELS[product_ref.kind]
    return model.objects.filter(**_lookup(model, user_id, product_ref.id)).exists()


def grant(user_id, product_ref: ProductRef, payment_attempt_id=None) -> bool:
    """Ensure ``user_id`` holds an enrollment for ``product_ref``.

    Returns True when a new enrollment row was written, False when the user
    was already entitled. A concurrent grant that wins the insert race shows
    up here as an IntegrityError from the unique constraint, which counts as
    "already entitled". Any other database fault raises StorageFailure.
    """
    model = ENROLLMENT_MODELS[product_ref.kind]
    lookup = _lookup(model, user_id, product_ref.id)

    try:
        if model.objects.filter(**lookup).exists():
            logger.info("User %s already entitled to %s", user_id, product_ref)
            return False
        try:
            # Savepoint so a lost race does not poison the caller's transaction.
            with transaction.atomic():
                model.objects.create(
                    **lookup,
                    granted_at=timezone.now(),
                    payment_attempt_id=payment_attempt_id,
                )
        except IntegrityError:
            if model.objects.filter(**lookup).exists():
                logger.info("Concurrent grant for user %s on %s resolved as existing", user_id, product_ref)
                return False
            raise
    except DatabaseError as exc:
        logger.exception("Could not grant %s to user %s", product_ref, user_id)
        raise StorageFailure(f"Could not store enrollment for {product_ref}") from exc

    logger.info("Granted %s to user %s (payment attempt %s)", product_ref, user_id, payment_attempt_id)
    return True
