import json
import logging

from django.contrib.admin.views.decorators import staff_member_required
from django.contrib.auth.decorators import login_required
from django.db import DatabaseError
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from catalog.models import ProductRef

from . import ledger
from .exceptions import NotFound, PaymentError, StorageFailure
from .initiation import initiate_payment, render_payment_instrument
from .models import Order, PaymentAttempt
from .utils import amount_str, as_uuid
from .verification import get_payment_attempt_details, list_payment_attempts, verify_payment_manually
from .webhook import process_webhook_callback

logger = logging.getLogger(__name__)

WEBHOOK_ACK = {"success": True}

VERIFY_ACTIONS = {
    "approve": PaymentAttempt.Status.SUCCESSFUL,
    "reject": PaymentAttempt.Status.FAILED,
    PaymentAttempt.Status.SUCCESSFUL: PaymentAttempt.Status.SUCCESSFUL,
    PaymentAttempt.Status.FAILED: PaymentAttempt.Status.FAILED,
}


def _json_body(request):
    try:
        body = json.loads(request.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    return body if isinstance(body, dict) else None


def _bad_request(message):
    return JsonResponse({"success": False, "error": "bad_request", "message": message}, status=400)


def _error(exc: PaymentError):
    return JsonResponse(
        {"success": False, "error": exc.code, "message": str(exc)},
        status=exc.status_code,
    )


def _order_json(order: Order) -> dict:
    return {
        "orderId": str(order.pk),
        "productKind": order.product_kind,
        "productId": order.product_id,
        "productName": order.product_name,
        "price": amount_str(order.price),
        "status": order.status,
        "gatewayName": order.gateway_name,
        "gatewayTransactionRef": order.gateway_transaction_ref,
        "createdAt": order.created_at.isoformat(),
    }


def _attempt_json(attempt: PaymentAttempt) -> dict:
    return {
        "paymentAttemptId": str(attempt.pk),
        "orderId": str(attempt.order_id),
        "user": attempt.user.get_username(),
        "amount": amount_str(attempt.amount),
        "currency": attempt.currency,
        "gatewayName": attempt.gateway_name,
        "transactionRef": attempt.transaction_ref,
        "gatewayTransactionRef": attempt.gateway_transaction_ref,
        "status": attempt.status,
        "lastGatewayCode": attempt.last_gateway_code,
        "lastGatewayState": attempt.last_gateway_state,
        "verifiedBy": attempt.verified_by.get_username() if attempt.verified_by else None,
        "verifiedAt": attempt.verified_at.isoformat() if attempt.verified_at else None,
        "adminNotes": attempt.admin_notes,
        "createdAt": attempt.created_at.isoformat(),
    }


def _owned_order(request, order_id) -> Order:
    order = Order.objects.filter(pk=as_uuid(order_id), user=request.user).first()
    if order is None:
        raise NotFound("Order not found.", order_id=str(order_id))
    return order


@login_required
@require_POST
def create_order_view(request):
    body = _json_body(request)
    if not body:
        return _bad_request("Invalid JSON body")
    missing = [k for k in ("productKind", "productId", "price") if body.get(k) in (None, "")]
    if missing:
        return _bad_request(f"Missing fields: {', '.join(missing)}")
    try:
        product_ref = ProductRef(body["productKind"], body["productId"])
    except ValueError:
        return _bad_request(f"Unknown product kind {body['productKind']!r}")

    try:
        confirmation = ledger.create_order(request.user.pk, product_ref, body["price"])
    except PaymentError as exc:
        return _error(exc)
    return JsonResponse(
        {
            "success": True,
            "message": confirmation.message,
            "orderId": confirmation.order_id,
            "confirmedPrice": amount_str(confirmation.confirmed_price),
            "created": confirmation.created,
        },
        status=201 if confirmation.created else 200,
    )


@login_required
@require_POST
def initiate_payment_view(request):
    body = _json_body(request)
    if not body:
        return _bad_request("Invalid JSON body")
    if not body.get("orderId") or not body.get("gatewayName"):
        return _bad_request("orderId and gatewayName are required")
    try:
        order = _owned_order(request, body["orderId"])
        instrument = initiate_payment(order.pk, body["gatewayName"])
    except PaymentError as exc:
        return _error(exc)
    return JsonResponse({"success": True, "message": "Payment initiated successfully.", **instrument.as_dict()})


@login_required
@require_GET
def payment_instrument_view(request, attempt_id):
    try:
        attempt = PaymentAttempt.objects.filter(
            pk=as_uuid(attempt_id, "Payment attempt"), user=request.user
        ).first()
        if attempt is None:
            raise NotFound("Payment attempt not found.", payment_attempt_id=str(attempt_id))
        instrument = render_payment_instrument(attempt.pk)
    except PaymentError as exc:
        return _error(exc)
    return JsonResponse({"success": True, **instrument.as_dict()})


@csrf_exempt
@require_POST
def payment_webhook_view(request, gateway_name):
    """Gateway callback. Always the same 200 acknowledgment unless storage is failing.

    Rejections are reported in the logs only; the body never says why.
    """
    try:
        result = process_webhook_callback(gateway_name, request.body, request.headers)
    except (StorageFailure, DatabaseError):
        logger.exception("Webhook from %s could not be stored; asking gateway to retry", gateway_name)
        return JsonResponse({"success": False, "message": "Temporary failure"}, status=500)
    if result.error:
        logger.info("Acknowledged unapplied webhook from %s (%s)", gateway_name, result.error)
    return JsonResponse(WEBHOOK_ACK, status=200)


@staff_member_required
@require_POST
def verify_payment_view(request, attempt_id):
    body = _json_body(request)
    if not body:
        return _bad_request("Invalid JSON body")
    outcome = VERIFY_ACTIONS.get(str(body.get("action") or body.get("status") or "").lower())
    if outcome is None:
        return _bad_request("action must be 'approve' or 'reject'")
    try:
        result = verify_payment_manually(
            attempt_id,
            request.user,
            outcome,
            notes=body.get("notes"),
            gateway_reference=body.get("gatewayReference"),
        )
    except PaymentError as exc:
        return _error(exc)
    return JsonResponse({
        "success": True,
        "message": result.message,
        "paymentAttemptId": result.payment_attempt_id,
        "orderId": result.order_id,
        "status": result.status,
        "entitlementCreated": result.entitlement_created,
    })


@staff_member_required
@require_GET
def payment_attempts_view(request):
    try:
        limit = int(request.GET.get("limit", "50"))
        offset = int(request.GET.get("offset", "0"))
    except ValueError:
        return _bad_request("limit and offset must be integers")
    try:
        attempts = list_payment_attempts(request.GET.get("status") or None, limit, offset)
    except PaymentError as exc:
        return _error(exc)
    return JsonResponse({"success": True, "payments": [_attempt_json(a) for a in attempts]})


@staff_member_required
@require_GET
def payment_attempt_detail_view(request, attempt_id):
    try:
        attempt = get_payment_attempt_details(attempt_id)
    except PaymentError as exc:
        return _error(exc)
    return JsonResponse({"success": True, "payment": _attempt_json(attempt), "order": _order_json(attempt.order)})


@login_required
@require_GET
def order_detail_view(request, order_id):
    try:
        order = ledger.get_order_details(order_id)
    except PaymentError as exc:
        return _error(exc)
    if order.user_id != request.user.pk and not request.user.is_staff:
        return _error(NotFound("Order not found.", order_id=str(order_id)))
    return JsonResponse({"success": True, "order": _order_json(order)})


@login_required
@require_GET
def my_payments_view(request):
    """Orders of the signed-in user, newest first."""
    qs = Order.objects.filter(user=request.user).order_by("-created_at")

    try:
        page = max(1, int(request.GET.get("page", "1")))
    except ValueError:
        page = 1
    page_size = 10
    start = (page - 1) * page_size
    end = start + page_size
    total = qs.count()
    return JsonResponse({
        "success": True,
        "orders": [_order_json(o) for o in qs[start:end]],
        "page": page,
        "hasNext": end < total,
        "hasPrev": start > 0,
    })
