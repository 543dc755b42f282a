from django.urls import path
from . import views
app_name = "payments"
urlpatterns = [
    path("orders", views.create_order_view, name="create_order"),
    path("orders/<str:order_id>", views.order_detail_view, name="order_detail"),
    path("initiate", views.initiate_payment_view, name="initiate_payment"),
    path("my", views.my_payments_view, name="my_payments"),
    path("attempts", views.payment_attempts_view, name="payment_attempts"),
    path("attempts/<str:attempt_id>", views.payment_attempt_detail_view, name="payment_attempt_detail"),
    path("attempts/<str:attempt_id>/instrument", views.payment_instrument_view, name="payment_instrument"),
    path("attempts/<str:attempt_id>/verify", views.verify_payment_view, name="verify_payment"),
    # Configured in the gateway dashboard as https://<domain>/payments/webhook/<gateway>
    path("webhook/<str:gateway_name>", views.payment_webhook_view, name="payment_webhook"),
]
