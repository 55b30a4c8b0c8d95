from datetime import datetime

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.db import transaction
from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from logger.set_logger import start_logger
from logger.ansi import *
from member_portal.models import (
	CmsPage,
	Form,
	FriendPageAccess,
	MemberSite,
	MemberSiteContent,
	MemberSiteContentProgress,
)
from member_portal.utils.page_access import open_page_access, serialize_access, timer_end
from step_linebot.models import LineFriend, Step, StepScenario
from step_linebot.utils.security import secure_compare, validate_short_uid
from step_linebot.utils.tool import parse_json_body

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

UID_PLACEHOLDER = "[UID]"


def page_error(error, message, status=403):
	return JsonResponse({"error": error, "message": message}, status=status)


def site_error(message, status, error_code):
	return JsonResponse({"success": False, "error": message, "errorCode": error_code}, status=status)


def find_friend(owner_id, uid):
	if not uid:
		return None
	return LineFriend.objects.filter(owner_id=owner_id, short_uid=uid.upper()).first()


def tag_ids(queryset):
	return set(queryset.values_list("id", flat=True))


def iso(value):
	return value.isoformat() if value else None


def serialize_page(page):
	return {
		"id": str(page.id),
		"title": page.title,
		"content": page.content,
		"content_blocks": page.content_blocks,
		"visibility": page.visibility,
		"require_passcode": page.require_passcode,
		"timer_enabled": page.timer_enabled,
		"timer_mode": page.timer_mode,
		"timer_deadline": iso(page.timer_deadline),
		"timer_duration_seconds": page.timer_duration_seconds,
		"internal_timer": page.internal_timer,
		"expire_action": page.expire_action,
		"timer_scenario_id": str(page.timer_scenario_id) if page.timer_scenario_id else None,
		"timer_step_id": str(page.timer_step_id) if page.timer_step_id else None,
		"timer_text": page.timer_text,
		"timer_display": page.timer_display,
		"allowed_tag_ids": sorted(tag_ids(page.allowed_tags)),
		"blocked_tag_ids": sorted(tag_ids(page.blocked_tags)),
	}


@csrf_exempt
@require_POST
def cms_page_view(request):
	"""
	公開ページの閲覧. 公開状態・パスコード・友だち・タグ・タイマーの順に確認する
	"""
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return page_error("bad_request", str(e), 400)

	share_code = data.get("shareCode")
	uid = data.get("uid")
	passcode = data.get("passcode") or ""
	is_preview = bool(data.get("isPreview", False))

	# プレビューはページの所有者のみ
	page = None
	if is_preview and data.get("pageId"):
		if request.user.is_authenticated:
			try:
				page = CmsPage.objects.filter(id=data["pageId"], owner=request.user).first()
			except ValidationError:
				page = None
	elif share_code:
		page = CmsPage.objects.filter(share_code=share_code).first()
		is_preview = False

	if page is None:
		return page_error("not_found", "Page not found", 404)
	logger.debug(f"[CMS Page] share_code: {page.share_code}, uid: {uid}, preview: {is_preview}")

	if not is_preview and not page.is_published:
		return page_error("not_published", "Page is not published", 423)

	if page.require_passcode and not is_preview:
		if not passcode or not secure_compare(passcode, page.passcode):
			return page_error("passcode_required", "Passcode is required", 401)

	friend = None
	if uid and uid != UID_PLACEHOLDER:
		if not validate_short_uid(uid):
			return page_error("access_denied", "Invalid UID format", 403)
		friend = find_friend(page.owner_id, uid)
		if friend is None and page.visibility == "friends_only":
			return page_error("access_denied", "Friend not found or unauthorized access", 403)

	if page.visibility == "friends_only" and not is_preview and friend is None:
		return page_error("access_denied", "UID is required to view this page", 403)

	if friend is not None:
		friend_tags = tag_ids(friend.tags)
		blocked = tag_ids(page.blocked_tags)
		allowed = tag_ids(page.allowed_tags)
		if blocked & friend_tags:
			logger.info(f"\t[CMS Page] friend {friend.short_uid} blocked by tag")
			return page_error("tag_blocked", "Access denied due to tag restrictions")
		if allowed and not (allowed & friend_tags):
			logger.info(f"\t[CMS Page] friend {friend.short_uid} missing required tag")
			return page_error("tag_required", "Required tag not found")

	if not is_preview and page.timer_enabled:
		deadline = None
		if page.internal_timer:
			if friend is None:
				return page_error("timer_internal_no_friend", "Internal timer requires friend information.")
			access = FriendPageAccess.objects.filter(friend=friend, page=page).first()
			if access is None or not access.access_enabled or access.timer_start_at is None:
				return page_error("timer_not_started", "Timer has not started for this page.")
			deadline = timer_end(page, access.timer_start_at)
		elif page.timer_deadline:
			deadline = page.timer_deadline

		if deadline and timezone.now() > deadline and page.expire_action == "hide_page":
			logger.info(f"\t[CMS Page] {page.share_code} expired at {deadline}")
			return page_error("page_expired", "This page has expired and is no longer accessible.")

	return JsonResponse(serialize_page(page))


@csrf_exempt
@require_POST
def get_timer_info(request):
	"""
	友だちごとのタイマー情報. 初回アクセス時にアクセス記録を作る
	"""
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return JsonResponse({"success": False, "error": str(e)}, status=400)

	share_code = data.get("pageShareCode")
	uid = data.get("uid")
	if not share_code:
		return JsonResponse({"success": False, "error": "Page share code is required"}, status=400)

	now = timezone.now()
	if not uid:
		return JsonResponse({"success": True, "timer_start_at": iso(now), "access_enabled": False, "expired": False})

	page = CmsPage.objects.filter(share_code=share_code).first()
	if page is None:
		return JsonResponse({"success": False, "error": "Page not found"}, status=404)
	friend = find_friend(page.owner_id, uid) if validate_short_uid(uid) else None
	if friend is None:
		return JsonResponse({"success": False, "error": "Friend not found for provided UID"}, status=404)

	per_access = page.timer_mode == "per_access"
	access = FriendPageAccess.objects.filter(friend=friend, page=page).first()
	if access is None:
		access = FriendPageAccess.objects.create(
			friend=friend,
			page=page,
			access_enabled=True,
			access_source="direct",
			timer_start_at=now,
			timer_end_at=timer_end(page, now) if per_access else None,
			first_access_at=now,
		)
		logger.info(f"[Timer Start] page: {share_code}, friend: {friend.short_uid}")
		expired = False
	else:
		if access.first_access_at is None:
			access.first_access_at = now
		if access.timer_start_at is None:
			access.timer_start_at = now
		if access.timer_end_at is None and per_access:
			access.timer_end_at = timer_end(page, access.timer_start_at)
		access.save()
		expired = access.timer_end_at is not None and access.timer_end_at <= now

	return JsonResponse({
		"success": True,
		"timer_start_at": iso(access.timer_start_at),
		"timer_end_at": iso(access.timer_end_at),
		"access_enabled": access.access_enabled and not expired,
		"expired": expired,
	})


def _parse_start(value):
	if not value:
		return None
	parsed = parse_datetime(value) if isinstance(value, str) else value
	if not isinstance(parsed, datetime):
		raise ValueError("timer_start_at must be an ISO 8601 datetime")
	if timezone.is_naive(parsed):
		parsed = timezone.make_aware(parsed)
	return parsed


@login_required
@require_POST
def manage_friend_page_access(request):
	"""
	action:
		grant       : アクセスを有効化 (タイマー未開始なら開始)
		revoke      : アクセスを無効化
		reset_timer : タイマーを再スタート
		start_timer : タイマー未開始の場合のみ開始
	"""
	try:
		data = parse_json_body(request)
		start_at = _parse_start(data.get("timer_start_at"))
	except ValueError as e:
		return JsonResponse({"error": str(e)}, status=400)

	friend_id = data.get("friend_id")
	share_code = data.get("page_share_code")
	action = data.get("action")
	if not friend_id or not share_code or not action:
		return JsonResponse({"error": "friend_id, page_share_code, and action are required"}, status=400)

	try:
		friend = LineFriend.objects.filter(id=friend_id, owner=request.user).first()
		scenario = StepScenario.objects.filter(id=data["scenario_id"], owner=request.user).first() if data.get("scenario_id") else None
		step = Step.objects.filter(id=data["step_id"], scenario__owner=request.user).first() if data.get("step_id") else None
	except ValidationError:
		return JsonResponse({"error": "Invalid id"}, status=400)
	if friend is None:
		return JsonResponse({"error": "Friend not found"}, status=404)
	if not CmsPage.objects.filter(share_code=share_code, owner=request.user).exists():
		return JsonResponse({"error": "Page not found"}, status=404)

	if action == "grant":
		access = open_page_access(friend, share_code, source="manual", scenario=scenario, step=step, start_at=start_at, tabs=1)
	elif action == "reset_timer":
		access = open_page_access(friend, share_code, source="manual", restart_timer=True,
								  scenario=scenario, step=step, start_at=start_at, tabs=1)
	elif action == "start_timer":
		access = FriendPageAccess.objects.filter(friend=friend, page__share_code=share_code).first()
		if access is None or access.timer_start_at is None:
			access = open_page_access(friend, share_code, source="manual", restart_timer=True,
									  scenario=scenario, step=step, start_at=start_at, tabs=1)
	elif action == "revoke":
		access = FriendPageAccess.objects.filter(friend=friend, page__share_code=share_code).first()
		if access is not None:
			access.access_enabled = False
			access.save(update_fields=["access_enabled", "updated_at"])
	else:
		return JsonResponse({"error": f"Unknown action: {action}"}, status=400)

	logger.info(f"[Page Access] action: {action}, page: {share_code}, friend: {friend.short_uid}")
	return JsonResponse({"success": True, "action": action, "access": serialize_access(access)})


@login_required
@require_POST
def update_page_timer_settings(request):
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return JsonResponse({"success": False, "error": str(e)}, status=400)

	share_code = data.get("pageShareCode")
	duration = data.get("timerDurationSeconds")
	if not share_code or duration is None:
		return JsonResponse({
			"success": False,
			"error": "Missing required parameters: pageShareCode and timerDurationSeconds",
		}, status=400)
	try:
		duration = int(duration)
	except (TypeError, ValueError):
		return JsonResponse({"success": False, "error": "timerDurationSeconds must be an integer"}, status=400)

	page = CmsPage.objects.filter(share_code=share_code, owner=request.user).first()
	if page is None:
		return JsonResponse({"success": False, "error": "Page not found"}, status=404)

	with transaction.atomic():
		page.timer_duration_seconds = duration
		page.save(update_fields=["timer_duration_seconds", "updated_at"])
		accesses = FriendPageAccess.objects.select_for_update().filter(
			page=page, access_enabled=True, timer_start_at__isnull=False
		)
		updated = 0
		for access in accesses:
			access.timer_end_at = timer_end(page, access.timer_start_at)
			access.save(update_fields=["timer_end_at", "updated_at"])
			updated += 1

	logger.info(f"[Timer Settings] page: {share_code}, duration: {duration}s, updated: {updated}")
	return JsonResponse({"success": True, "updatedCount": updated})


def serialize_content(content, progress):
	status, percentage = progress.get(content.id, ("incomplete", 0))
	return {
		"id": str(content.id),
		"category_id": content.category_id,
		"title": content.title,
		"body": content.body,
		"content_type": content.content_type,
		"sort_order": content.sort_order,
		"progress_status": status,
		"progress_percentage": percentage,
	}


@csrf_exempt
@require_GET
def member_site_view(request):
	slug = request.GET.get("slug")
	uid = request.GET.get("uid")
	passcode = request.GET.get("passcode")
	if not slug:
		return site_error("Site slug is required", 400, "BAD_REQUEST")

	site = MemberSite.objects.filter(slug=slug, is_published=True).first()
	if site is None:
		return site_error("Site not found or not published", 404, "NOT_FOUND")

	if not uid:
		return site_error("UID is required for this site", 401, "UID_AUTH_FAILED")
	friend = find_friend(site.owner_id, uid)
	if friend is None:
		return site_error("Invalid UID", 401, "UID_AUTH_FAILED")

	friend_tags = tag_ids(friend.tags)
	allowed = tag_ids(site.allowed_tags)
	if (allowed and not (allowed & friend_tags)) or (tag_ids(site.blocked_tags) & friend_tags):
		return site_error("Access denied by tag policy", 403, "TAG_AUTH_FAILED")

	if site.require_passcode:
		if not passcode:
			return site_error("Passcode required", 401, "PASSCODE_REQUIRED")
		if not secure_compare(passcode, site.passcode):
			return site_error("Invalid passcode", 403, "INVALID_PASSCODE")

	progress = {
		row.content_id: (row.status, row.progress_percentage)
		for row in MemberSiteContentProgress.objects.filter(content__site=site, friend=friend)
	}
	contents = site.contents.filter(is_published=True).order_by("sort_order")
	categories = site.categories.order_by("sort_order")

	return JsonResponse({
		"success": True,
		"site": {
			"id": str(site.id),
			"name": site.name,
			"slug": site.slug,
			"description": site.description,
			"require_passcode": site.require_passcode,
		},
		"categories": [{"id": c.id, "name": c.name, "sort_order": c.sort_order} for c in categories],
		"content": [serialize_content(content, progress) for content in contents],
	})


@csrf_exempt
def member_site_progress(request):
	if request.method != "POST":
		return site_error("Method not allowed", 405, "METHOD_NOT_ALLOWED")
	try:
		data = parse_json_body(request)
	except ValueError:
		return site_error("Invalid JSON body", 400, "BAD_REQUEST")

	slug = data.get("slug")
	uid = data.get("uid")
	content_id = data.get("contentId")
	completed = data.get("completed")
	if not slug or not isinstance(slug, str):
		return site_error("Site slug is required", 400, "BAD_REQUEST")
	if not uid or not isinstance(uid, str):
		return site_error("UID is required for this request", 400, "BAD_REQUEST")
	if not content_id or not isinstance(content_id, str):
		return site_error("Content ID is required", 400, "BAD_REQUEST")
	if not isinstance(completed, bool):
		return site_error("Completed flag must be boolean", 400, "BAD_REQUEST")

	site = MemberSite.objects.filter(slug=slug, is_published=True).first()
	if site is None:
		return site_error("Site not found or not published", 404, "NOT_FOUND")
	friend = find_friend(site.owner_id, uid)
	if friend is None:
		return site_error("Invalid UID", 401, "UID_AUTH_FAILED")

	try:
		content = MemberSiteContent.objects.filter(id=content_id, site=site).first()
	except ValidationError:
		content = None
	if content is None:
		return site_error("Content not found for site", 404, "CONTENT_NOT_FOUND")

	status = "completed" if completed else "incomplete"
	percentage = 100 if completed else 0
	MemberSiteContentProgress.objects.update_or_create(
		content=content,
		friend=friend,
		defaults={
			"status": status,
			"progress_percentage": percentage,
			"completed_at": timezone.now() if completed else None,
		},
	)
	logger.debug(f"[Member Progress] site: {slug}, friend: {friend.short_uid}, content: {content_id}, {status}")
	return JsonResponse({"success": True, "status": status, "progress_percentage": percentage})


@login_required
@require_POST
def delete_form(request):
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return JsonResponse({"error": str(e)}, status=400)

	form_id = data.get("form_id")
	if not form_id:
		return JsonResponse({"error": "form_id is required"}, status=400)

	try:
		form = Form.objects.filter(id=form_id, owner=request.user).first()
	except ValidationError:
		form = None
	if form is None:
		return JsonResponse({"error": "Form not found or not owned"}, status=404)

	with transaction.atomic():
		deleted, _ = form.submissions.all().delete()
		form.delete()
	logger.info(f"[Form Deleted] form: {form_id}, submissions: {deleted}")
	return JsonResponse({"success": True})
