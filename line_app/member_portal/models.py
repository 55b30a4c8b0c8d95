import uuid

from django.conf import settings
from django.db import models

from step_linebot.models import LineFriend, Step, StepScenario, Tag


class CmsPage(models.Model):
	"""
	timer_mode:
		absolute      : timer_deadline までの公開
		per_access    : 友だちの初回アクセスから timer_duration_seconds 秒
		step_delivery : timer_step の配信時刻から timer_duration_seconds 秒
	internal_timer が True の場合は友だちごとのアクセス記録 (FriendPageAccess) を期限の基準にする
	"""
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="cms_pages")
	title = models.CharField(max_length=255)
	share_code = models.CharField(max_length=64, unique=True)
	content = models.TextField(blank=True, default="")
	content_blocks = models.JSONField(default=list, blank=True)
	visibility = models.CharField(max_length=16, choices=[("public", "public"), ("friends_only", "friends_only")], default="friends_only")
	is_published = models.BooleanField(default=False)
	require_passcode = models.BooleanField(default=False)
	passcode = models.CharField(max_length=64, blank=True, default="")
	allowed_tags = models.ManyToManyField(Tag, blank=True, related_name="pages_allowed")
	blocked_tags = models.ManyToManyField(Tag, blank=True, related_name="pages_blocked")

	timer_enabled = models.BooleanField(default=False)
	timer_mode = models.CharField(
		max_length=16,
		choices=[("absolute", "absolute"), ("per_access", "per_access"), ("step_delivery", "step_delivery")],
		default="absolute",
	)
	timer_deadline = models.DateTimeField(null=True, blank=True)
	timer_duration_seconds = models.IntegerField(default=0)
	internal_timer = models.BooleanField(default=False)
	expire_action = models.CharField(
		max_length=16, choices=[("keep_public", "keep_public"), ("hide_page", "hide_page")], default="keep_public",
	)
	timer_scenario = models.ForeignKey(StepScenario, null=True, blank=True, on_delete=models.SET_NULL, related_name="timer_pages")
	timer_step = models.ForeignKey(Step, null=True, blank=True, on_delete=models.SET_NULL, related_name="timer_pages")
	timer_text = models.CharField(max_length=255, blank=True, default="")
	timer_display = models.JSONField(default=dict, blank=True)   # 表示スタイル (フロントにそのまま渡す)
	updated_at = models.DateTimeField(auto_now=True)

	def __str__(self):
		return self.title


class FriendPageAccess(models.Model):
	friend = models.ForeignKey(LineFriend, on_delete=models.CASCADE, related_name="page_accesses")
	page = models.ForeignKey(CmsPage, on_delete=models.CASCADE, related_name="accesses")
	access_enabled = models.BooleanField(default=True)
	access_source = models.CharField(max_length=32, default="direct")   # direct / step_delivery / restore / manual
	scenario = models.ForeignKey(StepScenario, null=True, blank=True, on_delete=models.SET_NULL)
	step = models.ForeignKey(Step, null=True, blank=True, on_delete=models.SET_NULL)
	timer_start_at = models.DateTimeField(null=True, blank=True)
	timer_end_at = models.DateTimeField(null=True, blank=True)
	first_access_at = models.DateTimeField(null=True, blank=True)
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		unique_together = ("friend", "page")


class MemberSite(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="member_sites")
	name = models.CharField(max_length=255)
	slug = models.SlugField(max_length=100, unique=True)
	description = models.TextField(blank=True, default="")
	is_published = models.BooleanField(default=False)
	require_passcode = models.BooleanField(default=False)
	passcode = models.CharField(max_length=64, blank=True, default="")
	allowed_tags = models.ManyToManyField(Tag, blank=True, related_name="sites_allowed")
	blocked_tags = models.ManyToManyField(Tag, blank=True, related_name="sites_blocked")
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.name


class MemberSiteCategory(models.Model):
	site = models.ForeignKey(MemberSite, on_delete=models.CASCADE, related_name="categories")
	name = models.CharField(max_length=255)
	sort_order = models.IntegerField(default=0)


class MemberSiteContent(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	site = models.ForeignKey(MemberSite, on_delete=models.CASCADE, related_name="contents")
	category = models.ForeignKey(MemberSiteCategory, null=True, blank=True, on_delete=models.SET_NULL)
	title = models.CharField(max_length=255)
	body = models.TextField(blank=True, default="")
	content_type = models.CharField(max_length=32, default="page")
	is_published = models.BooleanField(default=True)
	sort_order = models.IntegerField(default=0)


class MemberSiteContentProgress(models.Model):
	content = models.ForeignKey(MemberSiteContent, on_delete=models.CASCADE, related_name="progress")
	friend = models.ForeignKey(LineFriend, on_delete=models.CASCADE)
	status = models.CharField(max_length=16, default="incomplete")
	progress_percentage = models.IntegerField(default=0)
	completed_at = models.DateTimeField(null=True, blank=True)
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		unique_together = ("content", "friend")


class Form(models.Model):
	id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
	owner = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name="forms")
	name = models.CharField(max_length=255)
	description = models.TextField(blank=True, default="")
	fields = models.JSONField(default=list, blank=True)
	is_public = models.BooleanField(default=True)
	success_message = models.TextField(blank=True, default="")
	created_at = models.DateTimeField(auto_now_add=True)

	def __str__(self):
		return self.name


class FormSubmission(models.Model):
	form = models.ForeignKey(Form, on_delete=models.CASCADE, related_name="submissions")
	friend = models.ForeignKey(LineFriend, null=True, blank=True, on_delete=models.SET_NULL)
	data = models.JSONField(default=dict)
	submitted_at = models.DateTimeField(auto_now_add=True)
