from django.contrib import admin
from .models import (
    AffiliateCommission,
    AffiliatePayoutSettings,
    AffiliateRank,
    AffiliateReferral,
    Order,
    Product,
    ProductAction,
    StripeCredential,
    StripeEvent,
)


@admin.register(StripeCredential)
class StripeCredentialAdmin(admin.ModelAdmin):
    list_display = ('owner', 'updated_at')
    # シークレットは暗号化済みのため管理画面では扱わない
    exclude = StripeCredential.SECRET_FIELDS


class ProductActionInline(admin.TabularInline):
    model = ProductAction
    extra = 0


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ('name', 'owner', 'product_type', 'price', 'currency', 'is_active')
    list_filter = ('product_type', 'is_active')
    search_fields = ('name', 'stripe_price_id')
    inlines = [ProductActionInline]


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ('id', 'product', 'owner', 'amount', 'status', 'livemode', 'created_at')
    list_filter = ('status', 'livemode')
    search_fields = ('stripe_session_id', 'stripe_payment_intent_id', 'stripe_customer_id', 'friend_uid')
    ordering = ('-created_at',)
    date_hierarchy = 'created_at'


@admin.register(StripeEvent)
class StripeEventAdmin(admin.ModelAdmin):
    list_display = ('event_id', 'event_type', 'owner', 'livemode', 'processed_at')
    list_filter = ('event_type', 'livemode')
    ordering = ('-processed_at',)


@admin.register(AffiliateRank)
class AffiliateRankAdmin(admin.ModelAdmin):
    list_display = ('name', 'commission_rate', 'sort_order')
    ordering = ('sort_order',)


@admin.register(AffiliateReferral)
class AffiliateReferralAdmin(admin.ModelAdmin):
    list_display = ('referrer', 'referred_user', 'created_at')


@admin.register(AffiliateCommission)
class AffiliateCommissionAdmin(admin.ModelAdmin):
    list_display = ('affiliate', 'source_event', 'amount', 'status', 'created_at')
    list_filter = ('status',)
    ordering = ('-created_at',)


@admin.register(AffiliatePayoutSettings)
class AffiliatePayoutSettingsAdmin(admin.ModelAdmin):
    list_display = ('affiliate', 'payout_method', 'updated_at')
    exclude = ('account_number',)
