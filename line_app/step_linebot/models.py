import secrets
import string
import uuid

from django.conf import settings
from django.db import models


SHORT_UID_CHARS = string.ascii_uppercase + string.digits


class Setting(models.Model):
	key = models.CharField(max_length=255, primary_key=True)
	value = models.TextField()


class Profile(models.Model):
	"""
	LINE公式アカウントのオーナー情報 (Djangoユーザと1対1)
	channel_secret / channel_access_token / login_channel_secret は "enc:" 付きで暗号化して保存する
	"""
	ROLE_CHOICES = [("user", "user"), ("admin", "admin"), ("developer", "developer")]

	user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="profile")
	display_name = models.CharField(max_length=255, blank=True, default="")
	user_role = models.CharField(max_length=16, choices=ROLE_CHOICES, default="user")

	line_bot_id = models.CharField(max_length=64, blank=True, default="")    # "@" を除いたボットID
	line_channel_id = models.CharField(max_length=64, blank=True, default="")
	line_channel_secret = models.TextField(blank=True, default="")
	line_channel_access_token = models.TextField(blank=True, default="")
	line_login_channel_id = models.CharField(max_length=64, blank=True, default="")
	line_login_channel_secret = models.TextField(blank=True, default="")
	liff_id = models.CharField(max_length=64, blank=True, default="")
	add_friend_url = models.URLField(blank=True, default="")

	monthly_message_limit = models.IntegerField(default=200)
	monthly_message_used = models.IntegerField(default=0)
	quota_updated_at = models.DateTimeField(null=True, blank=True)
	delivery_count = models.IntegerField(default=0)

	affiliate_rank = models.ForeignKey("billing.AffiliateRank", null=True, blank=True, on_delete=models.SET_NULL)

	def __str__(self):
		return self.display_name or self.user.get_username()

	def get_credential(self, field: str) -> str:
		from step_linebot.utils.crypto import decrypt_credential
		return decrypt_credential(self.user_id, getattr(self, field))

	def set_credential(self, field: str, value: str):
		from step_linebot.utils.crypto import encrypt_credential
		setattr(self, field, encrypt_credential(self.user_id, value) if value else "")


class SecurityEvent(models.Model):
	user = models.ForeignKey(settings.AUTH_USER_MODEL, null=True, blank=True, on_delete=models.SET_NULL)
	event_type = models.CharField(max_length=64)
	details = models.JSONField(default=dict)
	ip_address = models.CharField(max_length=64, blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)


class Tag(models.Model):
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="tags")
	name = models.CharField(max_length=100)

	class Meta:
		unique_together = ("owner", "name")

	def __str__(self):
		return self.name


def generate_short_uid():
	return "".join(secrets.choice(SHORT_UID_CHARS) for _ in range(6))


class LineFriend(models.Model):
	"""
	short_uid: フォームやページのURLに付与する6桁の英大文字+数字 (オーナー内で一意)
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="line_friends")
	line_user_id = models.CharField(max_length=64)
	display_name = models.CharField(max_length=100, blank=True, default="")
	picture_url = models.URLField(max_length=2048, blank=True, default="")
	short_uid = models.CharField(max_length=6, blank=True, default="")
	tags = models.ManyToManyField(Tag, blank=True, related_name="friends")
	campaign_id = models.CharField(max_length=255, blank=True, default="")
	registration_source = models.CharField(max_length=64, blank=True, default="")
	scenario_name = models.CharField(max_length=255, blank=True, default="")
	is_blocked = models.BooleanField(default=False)
	added_at = models.DateTimeField(auto_now_add=True)

	class Meta:
		unique_together = [("owner", "line_user_id"), ("owner", "short_uid")]

	def __str__(self):
		return f"{self.display_name} ({self.short_uid})"

	def save(self, *args, **kwargs):
		if not self.short_uid:
			uid = generate_short_uid()
			while LineFriend.objects.filter(owner_id=self.owner_id, short_uid=uid).exists():
				uid = generate_short_uid()
			self.short_uid = uid
		super().save(*args, **kwargs)


class ChatMessage(models.Model):
	friend = models.ForeignKey(LineFriend, on_delete=models.CASCADE, related_name="chat_messages")
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
	message_type = models.CharField(max_length=16, choices=[("incoming", "incoming"), ("outgoing", "outgoing")])
	message_text = models.TextField()
	line_message_id = models.CharField(max_length=64, blank=True, default="")
	sent_at = models.DateTimeField(auto_now_add=True)


class StepScenario(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="step_scenarios")
	name = models.CharField(max_length=255)
	description = models.TextField(blank=True, default="")
	is_active = models.BooleanField(default=True)
	scenario_order = models.IntegerField(default=0)
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.name


class Step(models.Model):
	"""
	delivery_type:
		immediately          : 登録直後
		relative             : 登録時刻からの経過時間
		relative_to_previous : 前ステップの配信時刻からの経過時間
		specific_time        : 指定日時
		time_of_day          : 指定日数後の指定時刻
	"""
	DELIVERY_TYPES = [
		("immediately", "immediately"),
		("relative", "relative"),
		("relative_to_previous", "relative_to_previous"),
		("specific_time", "specific_time"),
		("time_of_day", "time_of_day"),
	]

	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name="steps")
	name = models.CharField(max_length=255, blank=True, default="")
	step_order = models.IntegerField(default=0)
	delivery_type = models.CharField(max_length=32, choices=DELIVERY_TYPES, default="relative")
	delivery_days = models.IntegerField(default=0)
	delivery_hours = models.IntegerField(default=0)
	delivery_minutes = models.IntegerField(default=0)
	delivery_seconds = models.IntegerField(default=0)
	specific_time = models.DateTimeField(null=True, blank=True)
	delivery_time_of_day = models.TimeField(null=True, blank=True)

	class Meta:
		unique_together = ("scenario", "step_order")
		ordering = ["step_order"]

	def __str__(self):
		return f"{self.scenario.name} #{self.step_order} {self.name}"


class FlexTemplate(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="flex_templates")
	name = models.CharField(max_length=255)
	content = models.JSONField(default=dict)
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.name


class StepMessage(models.Model):
	"""
	restore_config: {"type": "button"|"image", "text": str, "image_url": str, "target_scenario_id": str}
	"""
	MESSAGE_TYPES = [
		("text", "text"),
		("image", "image"),
		("media", "media"),
		("flex", "flex"),
		("restore_access", "restore_access"),
	]

	step = models.ForeignKey(Step, on_delete=models.CASCADE, related_name="messages")
	message_order = models.IntegerField(default=0)
	message_type = models.CharField(max_length=32, choices=MESSAGE_TYPES, default="text")
	content = models.TextField(blank=True, default="")
	media_url = models.URLField(max_length=2048, blank=True, default="")
	flex_template = models.ForeignKey(FlexTemplate, null=True, blank=True, on_delete=models.SET_NULL)
	restore_config = models.JSONField(null=True, blank=True)

	class Meta:
		ordering = ["message_order"]


class ScenarioInviteCode(models.Model):
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE)
	scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name="invite_codes")
	invite_code = models.CharField(max_length=32, unique=True)
	is_active = models.BooleanField(default=True)
	max_usage = models.IntegerField(null=True, blank=True)
	usage_count = models.IntegerField(default=0)
	allow_re_registration = models.BooleanField(default=True)
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.invite_code


class InviteClick(models.Model):
	invite_code = models.CharField(max_length=32)
	ip_address = models.CharField(max_length=64, blank=True, default="")
	user_agent = models.TextField(blank=True, default="")
	referer = models.TextField(blank=True, default="")
	clicked_at = models.DateTimeField(auto_now_add=True)


class ScenarioTransition(models.Model):
	from_scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name="transitions_out")
	to_scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name="transitions_in")
	condition_type = models.CharField(max_length=32, default="completed")
	created_at = models.DateTimeField(auto_now_add=True)


class StepDeliveryTracking(models.Model):
	"""
	status: waiting -> ready -> delivering -> delivered
	        (途中で exited / failed に遷移することがある)
	"""
	WAITING = "waiting"
	READY = "ready"
	DELIVERING = "delivering"
	DELIVERED = "delivered"
	EXITED = "exited"
	FAILED = "failed"
	STATUS_CHOICES = [(s, s) for s in (WAITING, READY, DELIVERING, DELIVERED, EXITED, FAILED)]

	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name="trackings")
	step = models.ForeignKey(Step, on_delete=models.CASCADE, related_name="trackings")
	friend = models.ForeignKey(LineFriend, on_delete=models.CASCADE, related_name="trackings")
	status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=WAITING)
	scheduled_delivery_at = models.DateTimeField(null=True, blank=True)
	next_check_at = models.DateTimeField(null=True, blank=True)
	delivered_at = models.DateTimeField(null=True, blank=True)
	error_count = models.IntegerField(default=0)
	last_error = models.TextField(blank=True, default="")
	campaign_id = models.CharField(max_length=255, blank=True, default="")
	registration_source = models.CharField(max_length=64, blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		unique_together = ("step", "friend")
		indexes = [models.Index(fields=["status", "scheduled_delivery_at"])]


class StepDeliveryLog(models.Model):
	scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE)
	step = models.ForeignKey(Step, on_delete=models.CASCADE)
	friend = models.ForeignKey(LineFriend, on_delete=models.CASCADE)
	delivery_status = models.CharField(max_length=16)
	delivered_at = models.DateTimeField(null=True, blank=True)
	error_message = models.TextField(blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)


class ScenarioFriendLog(models.Model):
	scenario = models.ForeignKey(StepScenario, on_delete=models.CASCADE, related_name="friend_logs")
	friend = models.ForeignKey(LineFriend, on_delete=models.CASCADE)
	line_user_id = models.CharField(max_length=64)
	invite_code = models.CharField(max_length=32)
	added_at = models.DateTimeField(auto_now_add=True)


class GreetingSetting(models.Model):
	owner = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="greeting_setting")
	greeting_type = models.CharField(max_length=16, choices=[("message", "message"), ("scenario", "scenario")])
	greeting_message = models.TextField(blank=True, default="")
	scenario = models.ForeignKey(StepScenario, null=True, blank=True, on_delete=models.SET_NULL)
	scenario_invite_code = models.CharField(max_length=32, blank=True, default="")
	updated_at = models.DateTimeField(auto_now=True)


class RichMenu(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="rich_menus")
	name = models.CharField(max_length=300)
	background_image_url = models.URLField(max_length=2048)
	chat_bar_text = models.CharField(max_length=14, default="メニュー")
	size = models.CharField(max_length=8, choices=[("full", "full"), ("half", "half")], default="full")
	selected = models.BooleanField(default=False)
	is_default = models.BooleanField(default=False)
	is_active = models.BooleanField(default=True)
	line_rich_menu_id = models.CharField(max_length=64, blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.name


class RichMenuArea(models.Model):
	"""
	x / y / width / height はメニュー画像に対する割合 (0-100)
	"""
	rich_menu = models.ForeignKey(RichMenu, on_delete=models.CASCADE, related_name="areas")
	x_percent = models.FloatField()
	y_percent = models.FloatField()
	width_percent = models.FloatField()
	height_percent = models.FloatField()
	action_type = models.CharField(max_length=32)
	action_value = models.TextField(blank=True, default="")
