from django.urls import path

from . import views, webhook

app_name = "payments"
urlpatterns = [
    path("pagos", views.create_payment_view, name="create_payment"),
    path("pagos/stripe/create-intent", views.create_payment_view, name="create_intent"),
    path("pagos/stripe/confirmar", views.client_confirm_view, name="client_confirm"),
    path("pagos/config", views.gateway_config_view, name="gateway_config"),
    path("pagos/pedido/<int:order_id>", views.order_payments_view, name="order_payments"),
    path("pagos/<int:attempt_id>", views.payment_detail_view, name="payment_detail"),
    # processor-initiated; configure this URL in the gateway dashboard
    path("pagos/webhook", webhook.stripe_webhook, name="webhook"),
    path("pagos/webhook/", webhook.stripe_webhook),
]
