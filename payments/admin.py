from django.contrib import admin, messages

from .exceptions import PaymentError
from .models import GatewaySetting, Order, PaymentAttempt
from .verification import verify_payment_manually


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "user", "product_kind", "product_id", "product_name", "price", "status", "gateway_name", "created_at")
    search_fields = ("id", "product_id", "product_name", "gateway_transaction_ref", "user__username", "user__email")
    list_filter = ("status", "product_kind", "gateway_name", "created_at")
    readonly_fields = ("id", "user", "product_kind", "product_id", "price", "status", "gateway_transaction_ref", "created_at", "updated_at")


@admin.register(PaymentAttempt)
class PaymentAttemptAdmin(admin.ModelAdmin):
    list_display = ("transaction_ref", "user", "amount", "currency", "gateway_name", "status", "last_gateway_code", "verified_by", "created_at")
    search_fields = ("transaction_ref", "gateway_transaction_ref", "order__id", "user__username", "user__email")
    list_filter = ("status", "gateway_name", "created_at")
    readonly_fields = (
        "id", "order", "user", "amount", "currency", "gateway_name", "transaction_ref", "status",
        "last_gateway_code", "last_gateway_state", "last_gateway_payload", "verified_by", "verified_at",
        "created_at", "updated_at",
    )
    actions = ("approve_payments", "reject_payments")

    def _verify(self, request, queryset, outcome, verb):
        done = 0
        for attempt in queryset:
            try:
                verify_payment_manually(attempt.pk, request.user, outcome, notes=attempt.admin_notes or None)
            except PaymentError as e:
                self.message_user(request, f"{attempt.transaction_ref}: {e}", level=messages.WARNING)
            else:
                done += 1
        if done:
            self.message_user(request, f"{done} payment(s) {verb}.", level=messages.SUCCESS)

    @admin.action(description="Approve selected pending payments")
    def approve_payments(self, request, queryset):
        self._verify(request, queryset, PaymentAttempt.Status.SUCCESSFUL, "approved")

    @admin.action(description="Reject selected pending payments")
    def reject_payments(self, request, queryset):
        self._verify(request, queryset, PaymentAttempt.Status.FAILED, "rejected")


@admin.register(GatewaySetting)
class GatewaySettingAdmin(admin.ModelAdmin):
    list_display = ("gateway_name", "merchant_id", "merchant_upi_id", "currency", "test_mode", "is_active", "updated_at")
    list_filter = ("is_active", "test_mode")
    search_fields = ("gateway_name", "merchant_id", "merchant_upi_id")
