from django.urls import path

from . import affiliate_views, views

app_name = "billing"

urlpatterns = [
    path("checkout/", views.create_checkout_session, name="create_checkout_session"),
    path("product/", views.public_get_product, name="public_get_product"),
    path("stripe/webhook/<int:owner_id>/", views.StripeWebhookView.as_view(), name="stripe_webhook"),
    path("refund/", views.stripe_refund, name="stripe_refund"),
    path("subscription/cancel/", views.stripe_cancel_subscription, name="stripe_cancel_subscription"),
    path("success/", views.payment_success, name="success"),
    path("cancel/", views.payment_cancel, name="cancel"),

    path("affiliate/earnings/", affiliate_views.get_affiliate_earnings, name="affiliate_earnings"),
    path("affiliate/rank/", affiliate_views.admin_set_affiliate_rank, name="admin_set_affiliate_rank"),
    path("affiliate/payout-settings/", affiliate_views.affiliate_payout_settings, name="affiliate_payout_settings"),
]
