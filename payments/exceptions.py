class PaymentError(Exception):
    """Base class for failures raised by the payments core.

    ``status_code`` and ``code`` let the JSON views answer with a matching
    HTTP status without knowing each subclass.
    """

    status_code = 400
    code = "payment_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.context = context


class NotFound(PaymentError):
    status_code = 404
    code = "not_found"


class InvalidState(PaymentError):
    status_code = 409
    code = "invalid_state"


class PriceMismatch(PaymentError):
    status_code = 400
    code = "price_mismatch"


class SignatureInvalid(PaymentError):
    status_code = 403
    code = "signature_invalid"


class MalformedPayload(PaymentError):
    status_code = 400
    code = "malformed_payload"


class AlreadyResolved(PaymentError):
    status_code = 409
    code = "already_resolved"


class GatewayUnavailable(PaymentError):
    status_code = 503
    code = "gateway_unavailable"


class InstrumentGenerationFailed(PaymentError):
    status_code = 500
    code = "instrument_generation_failed"


class StorageFailure(PaymentError):
    status_code = 500
    code = "storage_failure"


class GatewayError(Exception):
    """Outbound call to a payment gateway failed (network or non-200)."""
