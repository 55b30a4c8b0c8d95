import uuid

from django.conf import settings
from django.db import models

from step_linebot.models import StepScenario


class StripeCredential(models.Model):
	"""
	オーナーごとの Stripe キー. シークレットキーと Webhook シークレットは暗号化して保存する
	"""
	SECRET_FIELDS = ("test_secret_key", "live_secret_key", "test_webhook_secret", "live_webhook_secret")

	owner = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="stripe_credential")
	test_secret_key = models.TextField(blank=True, default="")
	live_secret_key = models.TextField(blank=True, default="")
	test_publishable_key = models.CharField(max_length=255, blank=True, default="")
	live_publishable_key = models.CharField(max_length=255, blank=True, default="")
	test_webhook_secret = models.TextField(blank=True, default="")
	live_webhook_secret = models.TextField(blank=True, default="")
	updated_at = models.DateTimeField(auto_now=True)

	def get_secret(self, field: str) -> str:
		from step_linebot.utils.crypto import decrypt_credential
		return decrypt_credential(self.owner_id, getattr(self, field))

	def set_secret(self, field: str, value: str):
		from step_linebot.utils.crypto import encrypt_credential
		setattr(self, field, encrypt_credential(self.owner_id, value) if value else "")


class Product(models.Model):
	PRODUCT_TYPES = [("one_time", "one_time"), ("subscription", "subscription")]

	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="products")
	name = models.CharField(max_length=255)
	description = models.TextField(blank=True, default="")
	stripe_price_id = models.CharField(max_length=255)
	product_type = models.CharField(max_length=16, choices=PRODUCT_TYPES, default="one_time")
	price = models.IntegerField(default=0)
	currency = models.CharField(max_length=8, default="jpy")
	trial_period_days = models.IntegerField(null=True, blank=True)
	is_active = models.BooleanField(default=True)

	# ランディングページ
	landing_page_title = models.CharField(max_length=255, blank=True, default="")
	landing_page_content = models.TextField(blank=True, default="")
	landing_page_image_url = models.URLField(max_length=2048, blank=True, default="")
	button_text = models.CharField(max_length=64, blank=True, default="")
	button_color = models.CharField(max_length=16, blank=True, default="")
	success_redirect_url = models.URLField(max_length=2048, blank=True, default="")
	cancel_redirect_url = models.URLField(max_length=2048, blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.name


class ProductAction(models.Model):
	"""
	決済の成功/失敗時に購入者 (uid の友だち) に対して行う処理
	"""
	ACTION_TYPES = [("success", "success"), ("failure", "failure")]
	ACTION_NAMES = [("add_tag", "add_tag"), ("remove_tag", "remove_tag"), ("start_scenario", "start_scenario")]

	product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="actions")
	action_type = models.CharField(max_length=16, choices=ACTION_TYPES)
	action_name = models.CharField(max_length=32, choices=ACTION_NAMES)
	tag_name = models.CharField(max_length=100, blank=True, default="")
	scenario = models.ForeignKey(StepScenario, null=True, blank=True, on_delete=models.SET_NULL)


class Order(models.Model):
	PENDING = "pending"
	PAID = "paid"
	FAILED = "failed"
	EXPIRED = "expired"
	REFUNDED = "refunded"
	SUBSCRIPTION_CANCELED = "subscription_canceled"
	STATUS_CHOICES = [(s, s) for s in (PENDING, PAID, FAILED, EXPIRED, REFUNDED, SUBSCRIPTION_CANCELED)]

	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="orders")
	product = models.ForeignKey(Product, null=True, blank=True, on_delete=models.SET_NULL, related_name="orders")
	stripe_session_id = models.CharField(max_length=255, blank=True, default="", db_index=True)
	stripe_payment_intent_id = models.CharField(max_length=255, blank=True, default="", db_index=True)
	stripe_customer_id = models.CharField(max_length=255, blank=True, default="", db_index=True)
	amount = models.IntegerField(default=0)
	currency = models.CharField(max_length=8, default="jpy")
	status = models.CharField(max_length=32, choices=STATUS_CHOICES, default=PENDING)
	livemode = models.BooleanField(default=False)
	friend_uid = models.CharField(max_length=6, blank=True, default="")
	metadata = models.JSONField(default=dict, blank=True)
	created_at = models.DateTimeField(auto_now_add=True)
	updated_at = models.DateTimeField(auto_now=True)


class StripeEvent(models.Model):
	event_id = models.CharField(max_length=255, unique=True)
	event_type = models.CharField(max_length=64)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL)
	livemode = models.BooleanField(default=False)
	processed_at = models.DateTimeField(auto_now_add=True)


class AffiliateRank(models.Model):
	name = models.CharField(max_length=100)
	commission_rate = models.DecimalField(max_digits=5, decimal_places=2, default=0)   # %
	sort_order = models.IntegerField(default=0)

	def __str__(self):
		return self.name


class AffiliateReferral(models.Model):
	referrer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="affiliate_referrals")
	referred_user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="referred_by")
	created_at = models.DateTimeField(auto_now_add=True)


class AffiliateCommission(models.Model):
	STATUS_CHOICES = [("pending", "pending"), ("approved", "approved"), ("paid", "paid")]

	affiliate = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="affiliate_commissions")
	referral = models.ForeignKey(AffiliateReferral, null=True, blank=True, on_delete=models.SET_NULL)
	source_event = models.CharField(max_length=64, blank=True, default="")
	amount = models.IntegerField(default=0)
	status = models.CharField(max_length=16, choices=STATUS_CHOICES, default="pending")
	created_at = models.DateTimeField(auto_now_add=True)


class AffiliatePayoutSettings(models.Model):
	# 更新を受け付けるフィールド
	EDITABLE_FIELDS = (
		"payout_method", "bank_name", "branch_name", "account_type",
		"account_number", "account_holder", "paypal_email",
	)

	affiliate = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="affiliate_payout_settings")
	payout_method = models.CharField(max_length=16, choices=[("bank", "bank"), ("paypal", "paypal")], default="bank")
	bank_name = models.CharField(max_length=100, blank=True, default="")
	branch_name = models.CharField(max_length=100, blank=True, default="")
	account_type = models.CharField(max_length=16, blank=True, default="")
	account_number = models.TextField(blank=True, default="")   # 暗号化済みの値をそのまま保存
	account_holder = models.CharField(max_length=100, blank=True, default="")
	paypal_email = models.CharField(max_length=254, blank=True, default="")
	updated_at = models.DateTimeField(auto_now=True)
