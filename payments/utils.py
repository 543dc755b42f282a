import base64
import hashlib
import secrets
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings

from .exceptions import NotFound

SUFFIX_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_transaction_ref(prefix="TXN") -> str:
    """Time-ordered reference with a random tail, e.g. TXN20261019143015123456K7QX2M9A.

    The timestamp comes first so references sort lexically by creation time;
    the 8-character tail makes two references minted in the same microsecond
    distinct. Stays under the 35 character limit UPI gateways impose.
    """
    ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S%f")
    rand = "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(8))
    return f"{prefix}{ts}{rand}"


def price_tolerance() -> Decimal:
    """Largest accepted gap between a quoted and a catalog price."""
    return Decimal(str(getattr(settings, "PAYMENTS_PRICE_TOLERANCE", "0.01")))


def amount_str(amount) -> str:
    q = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return format(q, "f")


def x_verify(payload: str, salt_key: str, salt_index: str) -> str:
    """``sha256(payload + salt_key)`` in hex, suffixed with ``###<salt index>``."""
    digest = hashlib.sha256((payload + salt_key).encode("utf-8")).hexdigest()
    return f"{digest}###{salt_index}"


def b64_body(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def as_uuid(value, what="Order") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFound(f"{what} not found.", id=str(value))
