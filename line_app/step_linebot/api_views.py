"""
管理画面から呼ばれるオーナー向けAPI (ログイン必須)
"""
import json

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.core.exceptions import ValidationError
from django.db import transaction
from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST
from linebot.v3.messaging.exceptions import ApiException

from logger.set_logger import start_logger
from logger.ansi import *
from step_linebot.models import GreetingSetting, LineFriend, Profile, RichMenu, RichMenuArea, ScenarioInviteCode, StepScenario
from step_linebot.utils import richmenu
from step_linebot.utils.crypto import decrypt_credential, encrypt_credential, is_encrypted
from step_linebot.utils.db_handler import increment_usage, save_chat_message, update_quota
from step_linebot.utils.errors import CredentialError, DeliveryError, LineApiError
from step_linebot.utils.flex import add_uid_to_form_links, name_tokens, normalize_flex, replace_tokens, to_flex_message
from step_linebot.utils.scenario import upsert_friend
from step_linebot.utils.security import (
	RateLimiter,
	apply_secure_headers,
	get_client_ip,
	log_security_event,
	sanitize_text_input,
	validate_line_user_id,
	validate_url,
)
from step_linebot.utils.template_message import (
	check_message_quota,
	get_configuration,
	get_follower_ids,
	get_line_profile,
	push_messages,
	push_to_line_user,
)
from step_linebot.utils.tool import generate_invite_code, parse_json_body
from step_linebot.views import error_response

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

DEFAULT_MESSAGE_LIMIT = 200
GREETING_MAX_LENGTH = 500

# update_line_api_settings で受け付けるキー -> (フィールド名, 暗号化するか)
LINE_API_FIELDS = {
	"botId": ("line_bot_id", False),
	"channelId": ("line_channel_id", False),
	"channelSecret": ("line_channel_secret", True),
	"channelAccessToken": ("line_channel_access_token", True),
	"loginChannelId": ("line_login_channel_id", False),
	"loginChannelSecret": ("line_login_channel_secret", True),
	"liffId": ("liff_id", False),
	"addFriendUrl": ("add_friend_url", False),
}


def get_owned(model, user, obj_id):
	if not obj_id:
		return None
	try:
		return model.objects.filter(id=obj_id, owner=user).first()
	except (ValidationError, ValueError):
		return None


def owner_profile(user):
	profile, _ = Profile.objects.get_or_create(user=user)
	return profile


def read_body(request):
	try:
		return parse_json_body(request), None
	except ValueError as e:
		return None, error_response(str(e), 400)


def serialize_menu(menu):
	return {
		"id": str(menu.id),
		"name": menu.name,
		"chat_bar_text": menu.chat_bar_text,
		"size": menu.size,
		"is_default": menu.is_default,
		"line_rich_menu_id": menu.line_rich_menu_id,
		"areas": [
			{
				"x": area.x_percent,
				"y": area.y_percent,
				"width": area.width_percent,
				"height": area.height_percent,
				"action_type": area.action_type,
				"action_value": area.action_value,
			}
			for area in menu.areas.all()
		],
	}


@login_required
@require_POST
def upsert_rich_menu(request):
	data, error = read_body(request)
	if error:
		return error

	menu_data = data.get("menuData")
	tap_areas = data.get("tapAreas") or []
	if not isinstance(menu_data, dict) or not menu_data.get("name"):
		return error_response("menuData is required", 400)
	image_url = menu_data.get("background_image_url")
	if not image_url:
		return error_response("background_image_url is required", 400)

	profile = owner_profile(request.user)
	access_token = profile.get_credential("line_channel_access_token")
	if not access_token:
		return error_response("LINE access token not found", 400)

	try:
		line_menu = richmenu.build_line_richmenu(menu_data, tap_areas)
	except (KeyError, ValueError, TypeError) as e:
		return error_response(f"Invalid rich menu: {e}", 400)

	try:
		line_rich_menu_id = richmenu.create_richmenu(access_token, line_menu, tabs=1)
		image, content_type = richmenu.fetch_image(image_url, tabs=1)
		richmenu.upload_richmenu_image(access_token, line_rich_menu_id, image, content_type, tabs=1)
	except LineApiError as e:
		return error_response(str(e), 502)

	with transaction.atomic():
		menu = get_owned(RichMenu, request.user, menu_data.get("id"))
		old_line_id = menu.line_rich_menu_id if menu else ""
		if menu is None:
			menu = RichMenu(owner=request.user)
		menu.name = line_menu["name"]
		menu.chat_bar_text = line_menu["chatBarText"]
		menu.size = menu_data.get("size", "full")
		menu.selected = line_menu["selected"]
		menu.background_image_url = image_url
		menu.line_rich_menu_id = line_rich_menu_id
		menu.is_default = bool(menu_data.get("is_default", False))
		menu.save()

		menu.areas.all().delete()
		RichMenuArea.objects.bulk_create([
			RichMenuArea(
				rich_menu=menu,
				x_percent=float(area["x"]),
				y_percent=float(area["y"]),
				width_percent=float(area["width"]),
				height_percent=float(area["height"]),
				action_type=area["action_type"],
				action_value=area.get("action_value", ""),
			)
			for area in tap_areas
		])
		if menu.is_default:
			RichMenu.objects.filter(owner=request.user).exclude(id=menu.id).update(is_default=False)

	try:
		if menu.is_default:
			richmenu.set_default_richmenu(access_token, line_rich_menu_id, tabs=1)
		if old_line_id and old_line_id != line_rich_menu_id:
			richmenu.delete_richmenu(access_token, old_line_id, tabs=1)
	except LineApiError as e:
		logger.warning(f"\t[RichMenu] post-save operation failed: {e}")

	logger.info(f"[RichMenu Saved] owner: {request.user.pk}, menu: {menu.id}, default: {menu.is_default}")
	return JsonResponse({"success": True, "richMenu": serialize_menu(menu)})


@login_required
@require_POST
def set_default_rich_menu(request):
	data, error = read_body(request)
	if error:
		return error

	menu = get_owned(RichMenu, request.user, data.get("richMenuId"))
	if menu is None or not menu.line_rich_menu_id:
		return error_response("Rich menu not found", 404)

	try:
		access_token = owner_profile(request.user).get_credential("line_channel_access_token")
		richmenu.set_default_richmenu(access_token, menu.line_rich_menu_id, tabs=1)
	except LineApiError as e:
		return error_response(str(e), 502)

	RichMenu.objects.filter(owner=request.user).update(is_default=False)
	RichMenu.objects.filter(id=menu.id).update(is_default=True)
	return JsonResponse({"success": True, "richMenuId": str(menu.id)})


@login_required
@require_POST
def link_rich_menu_to_user(request):
	data, error = read_body(request)
	if error:
		return error

	line_user_id = data.get("lineUserId")
	if not validate_line_user_id(line_user_id):
		return error_response("Invalid lineUserId", 400)

	# richMenuId が null ならユーザのリッチメニューを解除する
	if "richMenuId" in data and data["richMenuId"] is None:
		try:
			access_token = owner_profile(request.user).get_credential("line_channel_access_token")
			richmenu.cancel_richmenu(access_token, line_user_id, tabs=1)
		except LineApiError as e:
			return error_response(str(e), 502)
		return JsonResponse({"success": True, "unlinked": True})

	menu = get_owned(RichMenu, request.user, data.get("richMenuId"))
	if menu is None or not menu.line_rich_menu_id:
		return error_response("Rich menu not found", 404)

	try:
		access_token = owner_profile(request.user).get_credential("line_channel_access_token")
		richmenu.apply_richmenu(access_token, menu.line_rich_menu_id, line_user_id, tabs=1)
	except LineApiError as e:
		return error_response(str(e), 502)
	return JsonResponse({"success": True})


@login_required
@require_GET
def get_user_rich_menu(request):
	line_user_id = request.GET.get("lineUserId")
	if not validate_line_user_id(line_user_id):
		return error_response("Invalid lineUserId", 400)

	try:
		access_token = owner_profile(request.user).get_credential("line_channel_access_token")
		line_rich_menu_id = richmenu.get_user_richmenu(access_token, line_user_id, tabs=1)
	except LineApiError as e:
		return error_response(str(e), 502)

	if line_rich_menu_id is None:
		return JsonResponse({"message": "No rich menu linked to this user."}, status=404)

	menu = RichMenu.objects.filter(owner=request.user, line_rich_menu_id=line_rich_menu_id).first()
	return JsonResponse({
		"success": True,
		"richMenuId": line_rich_menu_id,
		"richMenu": serialize_menu(menu) if menu else None,
	})


@login_required
@require_POST
def send_flex_message(request):
	"""
	全友だちに Flex メッセージを送信する ([UID] 等は友だちごとに置換)
	"""
	data, error = read_body(request)
	if error:
		return error

	flex = data.get("flexMessage")
	if isinstance(flex, str):
		try:
			flex = json.loads(flex)
		except json.JSONDecodeError:
			return error_response("flexMessage is not valid JSON", 400)
	if normalize_flex(flex) is None:
		return error_response("flexMessage must be a flex message, bubble or carousel", 400)
	# LINE のモデルとして組み立てられない Flex は送信しない
	try:
		to_flex_message(normalize_flex(flex))
	except ValueError as e:
		logger.warning(f"[Flex Send] invalid flex: {e}")
		return error_response("flexMessage is not a valid flex container", 400)

	try:
		configuration = get_configuration(owner_profile(request.user))
	except DeliveryError as e:
		return error_response(str(e), 400)

	results = []
	friends = LineFriend.objects.filter(owner=request.user, is_blocked=False)
	for friend in friends:
		line_name, line_name_san = name_tokens(friend.display_name)
		normalized = normalize_flex(replace_tokens(flex, friend.short_uid, line_name, line_name_san))
		try:
			push_messages(configuration, friend.line_user_id, [to_flex_message(normalized)], tabs=1)
			results.append({"friend_id": str(friend.id), "success": True})
		except ApiException as e:
			logger.error(f"\t[Flex Send Failed] friend: {friend.short_uid}, status: {e.status}")
			results.append({"friend_id": str(friend.id), "success": False, "error": str(e.reason)})

	succeeded = sum(1 for r in results if r["success"])
	summary = f"送信 成功{succeeded} 失敗{len(results) - succeeded}"
	logger.info(f"[Flex Broadcast] owner: {request.user.pk}, {summary}")
	return JsonResponse({"success": True, "results": results, "summary": summary})


def _send_text(request, replace_links):
	data, error = read_body(request)
	if error:
		return None, error

	to = data.get("to") or ""
	message = data.get("message") or ""
	if to.startswith("test_"):
		return None, error_response("Test user ids cannot receive messages", 400)
	if not validate_line_user_id(to) or not message:
		return None, error_response("to and message are required", 400)

	profile = owner_profile(request.user)
	friend = LineFriend.objects.filter(owner=request.user, line_user_id=to).first()
	if friend is not None:
		message = add_uid_to_form_links(message, friend.short_uid) if replace_links else message.replace("[UID]", friend.short_uid)

	try:
		push_to_line_user(get_configuration(profile), to, message, split=False, tabs=1)
	except DeliveryError as e:
		return None, error_response(str(e), 400)
	except ApiException as e:
		logger.error(f"[Send Message Failed] to: {to}, status: {e.status}")
		return None, error_response("LINE API error", 502)

	if friend is not None:
		save_chat_message(friend, "outgoing", message, tabs=1)
	return (profile, message), None


@login_required
@require_POST
def send_line_message(request):
	sent, error = _send_text(request, replace_links=True)
	if error:
		return error
	profile, message = sent
	increment_usage(profile, tabs=1)
	return JsonResponse({"success": True, "message": message})


@login_required
@require_POST
def send_test_message(request):
	sent, error = _send_text(request, replace_links=False)
	if error:
		return error
	return JsonResponse({"success": True, "message": sent[1]})


@login_required
@require_GET
def get_message_quota(request):
	profile = owner_profile(request.user)
	try:
		used, limit = check_message_quota(get_configuration(profile))
	except DeliveryError as e:
		return error_response(str(e), 400)
	except ApiException as e:
		logger.error(f"[Quota Failed] owner: {request.user.pk}, status: {e.status}")
		return error_response("LINE API error", 502)

	limit = limit if limit is not None else DEFAULT_MESSAGE_LIMIT
	update_quota(profile, used, limit, tabs=1)
	return JsonResponse({"success": True, "limit": limit, "used": used, "remaining": max(0, limit - used)})


@login_required
@require_POST
def get_line_friends(request):
	"""
	LINE の友だち一覧を取り込み，登録済みの友だちを返す
	"""
	profile = owner_profile(request.user)
	try:
		configuration = get_configuration(profile)
		user_ids = get_follower_ids(configuration, tabs=1)
	except DeliveryError as e:
		return error_response(str(e), 400)
	except ApiException as e:
		logger.error(f"[Followers Failed] owner: {request.user.pk}, status: {e.status}")
		return error_response("LINE API error", 502)

	friends = []
	for user_id in user_ids:
		try:
			display_name, picture_url = get_line_profile(configuration, user_id)
		except ApiException:
			display_name, picture_url = "", ""
		friend = upsert_friend(request.user, user_id, display_name, picture_url, tabs=1)
		friends.append({
			"id": str(friend.id),
			"line_user_id": friend.line_user_id,
			"display_name": friend.display_name,
			"picture_url": friend.picture_url,
			"short_uid": friend.short_uid,
		})
	return JsonResponse({"success": True, "friends": friends, "total": len(friends)})


@login_required
@require_POST
def update_line_settings(request):
	"""
	友だち追加時のあいさつ設定 (メッセージ or シナリオ)
	"""
	data, error = read_body(request)
	if error:
		return error

	greeting_type = data.get("greetingType")
	if greeting_type not in ("message", "scenario"):
		return error_response("greetingType must be message or scenario", 400)

	defaults = {"greeting_type": greeting_type, "greeting_message": "", "scenario": None, "scenario_invite_code": ""}
	if greeting_type == "message":
		message = (data.get("greetingMessage") or "").strip()
		if not message:
			return error_response("greetingMessage is required", 400)
		if len(message) > GREETING_MAX_LENGTH:
			return error_response(f"greetingMessage must be {GREETING_MAX_LENGTH} characters or less", 400)
		defaults["greeting_message"] = message
	else:
		scenario = get_owned(StepScenario, request.user, data.get("scenarioId"))
		if scenario is None:
			return error_response("Scenario not found", 404)
		invite = scenario.invite_codes.filter(is_active=True).order_by("created_at").first()
		if invite is None:
			invite = ScenarioInviteCode.objects.create(
				owner=request.user, scenario=scenario, invite_code=generate_invite_code()
			)
		defaults.update(scenario=scenario, scenario_invite_code=invite.invite_code)

	setting, _ = GreetingSetting.objects.update_or_create(owner=request.user, defaults=defaults)
	logger.info(f"[Greeting Saved] owner: {request.user.pk}, type: {greeting_type}")
	return JsonResponse({
		"success": True,
		"greetingType": setting.greeting_type,
		"scenarioInviteCode": setting.scenario_invite_code,
	})


@login_required
@require_POST
def update_line_api_settings(request):
	data, error = read_body(request)
	if error:
		return error

	add_friend_url = str(data.get("addFriendUrl") or "").strip()
	if add_friend_url and not validate_url(add_friend_url):
		return error_response("addFriendUrl must be an https URL", 400)

	profile = owner_profile(request.user)
	updated = []
	for key, (field, secret) in LINE_API_FIELDS.items():
		if key not in data:
			continue
		value = str(data[key] or "").strip()
		if secret:
			profile.set_credential(field, value)
		else:
			setattr(profile, field, value.lstrip("@") if field == "line_bot_id" else value)
		updated.append(key)
	profile.save()

	log_security_event("line_settings_updated", user=request.user, details={"fields": updated}, request=request)
	return JsonResponse({"success": True, "updated": updated})


@login_required
@require_POST
def encrypt_credential_view(request):
	if not RateLimiter.from_config("ENCRYPT").is_allowed(get_client_ip(request)):
		return error_response("Too many requests", 429)

	data, error = read_body(request)
	if error:
		return error
	value = sanitize_text_input(data.get("value"), max_length=4096)
	if not value:
		return error_response("value is required", 400)

	encrypted = encrypt_credential(request.user.pk, value)
	log_security_event("credential_encrypted", user=request.user, request=request)
	return apply_secure_headers(JsonResponse({"success": True, "encryptedValue": encrypted}))


@login_required
@require_POST
def decrypt_credential_view(request):
	if not RateLimiter.from_config("DECRYPT").is_allowed(get_client_ip(request)):
		return error_response("Too many requests", 429)

	data, error = read_body(request)
	if error:
		return error
	value = data.get("encryptedValue")
	if not is_encrypted(value):
		return error_response("Invalid encrypted value format", 400)

	try:
		decrypted = decrypt_credential(request.user.pk, value)
	except CredentialError as e:
		log_security_event("credential_decrypt_failed", user=request.user, request=request)
		return error_response(str(e), 400)

	log_security_event("credential_decrypted", user=request.user, request=request)
	return apply_secure_headers(JsonResponse({"success": True, "decryptedValue": decrypted}))
