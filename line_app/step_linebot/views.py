import json
from urllib.parse import parse_qs, quote, urlencode, urlparse

from django.conf import settings
from django.core.exceptions import ValidationError
from django.http import HttpResponse, JsonResponse
from django.shortcuts import redirect
from django.urls import reverse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST
from linebot.v3.exceptions import InvalidSignatureError
from linebot.v3.messaging.exceptions import ApiException
from linebot.v3.webhook import WebhookHandler
from linebot.v3.webhooks import (
	FollowEvent,
	MessageEvent,
	PostbackEvent,
	TextMessageContent,
	UnfollowEvent,
)

from logger.set_logger import start_logger
from logger.ansi import *
from step_linebot.models import GreetingSetting, InviteClick, LineFriend, ScenarioInviteCode
from step_linebot.utils.db_handler import (
	get_maintenance_mode,
	get_profile,
	mark_friend_blocked,
	save_chat_message,
)
from step_linebot.utils.delivery import run_scheduled_delivery
from step_linebot.utils.errors import CredentialError, DeliveryError, LineApiError, RegistrationError
from step_linebot.utils.flex import name_tokens, replace_text_tokens
from step_linebot.utils.line_login import build_authorize_url, exchange_code, get_login_profile
from step_linebot.utils.links import resolve_rich_menu_target
from step_linebot.utils.scenario import (
	apply_transition_to_completed,
	get_delivery_stats,
	register_friend_to_scenario,
	register_friend_with_scenario,
	restore_scenario,
	trigger_scenario_delivery_for_friend,
	upsert_friend,
)
from step_linebot.utils.security import (
	RateLimiter,
	get_client_ip,
	sanitize_display_name,
	secure_compare,
	validate_display_name,
	validate_invite_code,
	validate_line_user_id,
	validate_url,
)
from step_linebot.utils.template_message import get_configuration, get_line_profile, reply_to_line_user
from step_linebot.utils.tool import extract_event_info, get_public_url, parse_json_body

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

WEBHOOK_CONF = conf["WEBHOOK"]
INVITE_PLACEHOLDER = "YOUR_INVITE_CODE"

# オーナーごとの WebhookHandler (owner_id -> (channel_secret, handler))
handlers = {}


def error_response(message, status=400, **extra):
	return JsonResponse({"error": message, **extra}, status=status)


def get_handler(profile) -> WebhookHandler:
	"""
	オーナーのチャネルシークレットで署名検証する WebhookHandler を返す
	"""
	secret = profile.get_credential("line_channel_secret")
	cached = handlers.get(profile.user_id)
	if cached and cached[0] == secret:
		return cached[1]

	owner_id = profile.user_id
	handler = WebhookHandler(secret)

	def bind(func):
		def handle(event):
			func(owner_id, event)
		return handle

	handler.add(FollowEvent)(bind(handle_follow))
	handler.add(UnfollowEvent)(bind(handle_unfollow))
	handler.add(MessageEvent, message=TextMessageContent)(bind(handle_text_message))
	handler.add(PostbackEvent)(bind(handle_postback))

	handlers[owner_id] = (secret, handler)
	return handler


# LINE Messaging APIのコールバックエンドポイント（オーナーごとにURLが異なる）
@csrf_exempt
def callback(request, owner_id):
	if request.method != "POST":
		return HttpResponse(status=405)

	profile = get_profile(owner_id)
	if profile is None or not profile.line_channel_secret:
		logger.warning(f"[Webhook] owner not configured: {owner_id}")
		return HttpResponse(status=404)

	body = request.body.decode("utf-8")
	try:
		payload = json.loads(body) if body else {}
	except json.JSONDecodeError:
		payload = {}
	logger.debug(f"\n[Webhook Received] owner: {owner_id} {extract_event_info(payload)}", extra={"C": "webhook"})

	signature = request.headers.get("X-Line-Signature", "")
	try:
		get_handler(profile).handle(body, signature)
	except InvalidSignatureError:
		logger.debug("[Webhook] Invalid signature. Please check your channel secret.")
		return HttpResponse(status=400)
	except CredentialError as e:
		logger.error(f"[Webhook] failed to decrypt channel secret. owner: {owner_id}, {e}")
		return HttpResponse(status=500)

	return HttpResponse("OK")


# --- Followイベントハンドラ（友だち追加時） ---
def handle_follow(owner_id, event):
	user_id = event.source.user_id
	logger.info(f"[Follow Event] owner: {owner_id}, user: {user_id}")

	profile = get_profile(owner_id)
	configuration = get_configuration(profile)
	try:
		display_name, picture_url = get_line_profile(configuration, user_id)
	except ApiException as e:
		logger.warning(f"\t[Profile Error] user: {user_id}, {e.status}")
		display_name, picture_url = "", ""

	friend = upsert_friend(profile.user, user_id, display_name, picture_url, tabs=1)

	if get_maintenance_mode(tabs=1):
		logger.info(f"\t[Maintenance Mode] user: {user_id} followed during maintenance mode.")
		reply_to_line_user(configuration, event.reply_token, WEBHOOK_CONF["MAINTENANCE_MESSAGE"], split=False, tabs=1)
		return

	greeting = GreetingSetting.objects.filter(owner_id=owner_id).first()
	if greeting is None:
		return

	if greeting.greeting_type == "message" and greeting.greeting_message:
		line_name, line_name_san = name_tokens(friend.display_name)
		msg = replace_text_tokens(greeting.greeting_message, friend.short_uid, line_name, line_name_san)
		logger.debug(f"\t[Send Message] user: {user_id}\n\t\t{repr(msg)}")
		reply_to_line_user(configuration, event.reply_token, msg, tabs=1)

	elif greeting.greeting_type == "scenario" and greeting.scenario_invite_code:
		try:
			register_friend_to_scenario(
				user_id, greeting.scenario_invite_code, display_name, picture_url,
				registration_source="follow", tabs=1,
			)
		except RegistrationError as e:
			logger.warning(f"\t[Greeting Scenario] registration skipped: {e.code}")
			return
		run_scheduled_delivery(friend_id=friend.id, tabs=1)


# --- Unfollowイベントハンドラ（ブロック時） ---
def handle_unfollow(owner_id, event):
	logger.info(f"[Unfollow Event] owner: {owner_id}, user: {event.source.user_id}")
	mark_friend_blocked(owner_id, event.source.user_id, tabs=1)


def handle_text_message(owner_id, event):
	user_id = event.source.user_id
	text = event.message.text
	logger.info(f"[Message Event] owner: {owner_id}, user: {user_id}\n\t{repr(text)}")

	profile = get_profile(owner_id)
	configuration = get_configuration(profile)
	friend = LineFriend.objects.filter(owner_id=owner_id, line_user_id=user_id).first()
	if friend is None:
		friend = upsert_friend(profile.user, user_id, tabs=1)
	save_chat_message(friend, "incoming", text, event.message.id, tabs=1)

	if get_maintenance_mode(tabs=1):
		reply_to_line_user(configuration, event.reply_token, WEBHOOK_CONF["MAINTENANCE_MESSAGE"], split=False, tabs=1)
		return

	if WEBHOOK_CONF["ECHO_REPLY"]:
		msg = WEBHOOK_CONF["ECHO_TEMPLATE"].format(text=text)
		reply_to_line_user(configuration, event.reply_token, msg, split=False, tabs=1)


# ユーザがボタンを押したときのハンドラ
def handle_postback(owner_id, event):
	user_id = event.source.user_id
	data = {key: values[0] for key, values in parse_qs(event.postback.data).items()}
	logger.debug(f"[Postback Event] owner: {owner_id}, user: {user_id}, data: {event.postback.data}")

	if data.get("action") != "restore_access":
		return

	configuration = get_configuration(get_profile(owner_id))
	try:
		result = restore_scenario(user_id, data.get("scenario_id"), data.get("page_share_code"), tabs=1)
	except (RegistrationError, ValidationError) as e:
		logger.warning(f"\t[Restore Failed] user: {user_id}, {getattr(e, 'code', e)}")
		reply_to_line_user(configuration, event.reply_token, "アクセスの復活に失敗しました。", split=False, tabs=1)
		return

	reply_to_line_user(configuration, event.reply_token, "アクセスを復活しました。", split=False, tabs=1)
	run_scheduled_delivery(friend_id=result["friend_id"], tabs=1)


def find_invite(code):
	return (
		ScenarioInviteCode.objects.select_related("scenario")
		.filter(invite_code=code, is_active=True, scenario__is_active=True)
		.first()
	)


@require_GET
def scenario_invite(request):
	"""
	招待リンク. 友だち追加画面へリダイレクトし，クリックを記録する
	"""
	code = request.GET.get("code", "")
	if not code:
		return HttpResponse(status=204)

	invite = find_invite(code)
	if invite is None:
		logger.debug(f"[Invite] invalid code: {code}")
		return error_response("Invalid invite code", 404)

	profile = get_profile(invite.owner_id)
	if profile is None or not profile.line_bot_id:
		logger.error(f"[Invite] bot id not configured. owner: {invite.owner_id}")
		return error_response("LINE bot is not configured", 500)

	InviteClick.objects.create(
		invite_code=code,
		ip_address=get_client_ip(request),
		user_agent=request.headers.get("User-Agent", "")[:1000],
		referer=request.headers.get("Referer", "")[:2048],
	)
	bot_id = profile.line_bot_id.lstrip("@")
	logger.info(f"[Invite Click] code: {code}, scenario: {invite.scenario.name}")
	return redirect(f"https://line.me/R/ti/p/@{bot_id}?state={quote(code)}")


@require_GET
def liff_scenario_invite(request):
	code = request.GET.get("code") or request.GET.get("inviteCode")
	if not code and request.GET.get("liff.state"):
		state = parse_qs(urlparse(request.GET["liff.state"]).query or request.GET["liff.state"].lstrip("?"))
		code = (state.get("inviteCode") or state.get("code") or [None])[0]

	if not code or code == INVITE_PLACEHOLDER:
		return error_response("Invite code is required", 400)

	invite = find_invite(code)
	if invite is None:
		return error_response("Invalid invite code", 404)

	profile = get_profile(invite.owner_id)
	if profile is None or not profile.liff_id:
		return error_response("LIFF is not configured", 404)

	query = urlencode({"inviteCode": code, "scenarioId": str(invite.scenario_id)})
	return redirect(f"https://liff.line.me/{profile.liff_id}?{query}")


def login_redirect_uri():
	return get_public_url() + reverse("step_linebot:login_callback")


@require_GET
def scenario_login(request):
	"""
	LINEログインでシナリオ登録を開始する (state に招待コードを載せる)
	"""
	if not RateLimiter.from_config("SCENARIO_LOGIN").is_allowed(get_client_ip(request)):
		return error_response("Too many requests", 429)

	code = request.GET.get("scenario") or request.GET.get("code")
	if not validate_invite_code(code):
		return error_response("Invalid invite code format", 400)

	invite = find_invite(code)
	if invite is None:
		return error_response("Invalid invite code", 404)

	profile = get_profile(invite.owner_id)
	if profile is None or not profile.line_login_channel_id:
		logger.error(f"[Scenario Login] login channel not configured. owner: {invite.owner_id}")
		return error_response("LINE login is not configured", 500)

	authorize_url = build_authorize_url(profile.line_login_channel_id, login_redirect_uri(), code)
	logger.debug(f"[Scenario Login] code: {code}, scenario: {invite.scenario.name}")

	if request.GET.get("format") == "json":
		return JsonResponse({
			"success": True,
			"authorizeUrl": authorize_url,
			"scenario": {"id": str(invite.scenario_id), "name": invite.scenario.name, "inviteCode": code},
		})
	return redirect(authorize_url)


@require_GET
def login_callback(request):
	if request.GET.get("error"):
		logger.warning(f"[Login Callback] {request.GET.get('error')}: {request.GET.get('error_description', '')}")
		return error_response("LINE login was cancelled or failed", 400)

	code = request.GET.get("code")
	state = request.GET.get("state")
	if not code or not state:
		return error_response("code and state are required", 400)

	invite = find_invite(state)
	if invite is None:
		return error_response("Invalid invite code", 404)

	profile = get_profile(invite.owner_id)
	if profile is None or not profile.line_login_channel_id:
		return error_response("LINE login is not configured", 500)

	try:
		token = exchange_code(
			code, login_redirect_uri(),
			profile.line_login_channel_id,
			profile.get_credential("line_login_channel_secret"),
			tabs=1,
		)
		line_profile = get_login_profile(token["access_token"], tabs=1)
	except (LineApiError, CredentialError) as e:
		return error_response(str(e), 400)

	line_user_id = line_profile.get("userId")
	if not validate_line_user_id(line_user_id):
		return error_response("Invalid LINE user id", 400)

	display_name = sanitize_display_name(line_profile.get("displayName", ""))
	try:
		register_friend_to_scenario(
			line_user_id, state, display_name, line_profile.get("pictureUrl", ""),
			registration_source="line_login", tabs=1,
		)
	except RegistrationError as e:
		if e.code != "already_registered":
			return error_response(e.code, e.status)

	run_scheduled_delivery(scenario_id=invite.scenario_id, line_user_id=line_user_id, recent_only=True, tabs=1)
	return redirect(f"{conf['LINE_LOGIN']['SUCCESS_URL']}?ok=1")


def login_complete(request):
	return HttpResponse("登録が完了しました。LINEアプリに戻ってメッセージをご確認ください。")


@csrf_exempt
@require_POST
def liff_handler(request):
	"""
	LIFF から送られたアクセストークンでプロフィールを取得し，シナリオ登録と配信を行う
	"""
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return error_response(str(e), 400)

	invite_code = data.get("inviteCode")
	scenario_id = data.get("scenarioId")
	access_token = data.get("accessToken")
	if not invite_code or not scenario_id or not access_token:
		return error_response("inviteCode, scenarioId and accessToken are required", 400)

	invite = find_invite(invite_code)
	if invite is None or str(invite.scenario_id) != str(scenario_id):
		return error_response("Invalid invite code", 404)

	try:
		line_profile = get_login_profile(access_token, tabs=1)
	except LineApiError:
		return error_response("Invalid access token", 401)

	line_user_id = line_profile.get("userId")
	try:
		registration = register_friend_to_scenario(
			line_user_id, invite_code,
			line_profile.get("displayName", ""), line_profile.get("pictureUrl", ""),
			registration_source="liff", tabs=1,
		)
	except RegistrationError as e:
		if e.code != "already_registered":
			return error_response(e.code, e.status)
		registration = {"success": True, "already_registered": True}

	trigger = trigger_scenario_delivery_for_friend(line_user_id, scenario_id, tabs=1)
	delivery = run_scheduled_delivery(scenario_id=scenario_id, line_user_id=line_user_id, tabs=1)
	return JsonResponse({
		"success": True,
		"registration": registration,
		"trigger": trigger,
		"delivered": delivery["delivered"],
	})


@require_GET
def trigger_scenario(request):
	line_user_id = request.GET.get("line_user_id")
	invite_code = request.GET.get("invite_code")
	if not line_user_id or not invite_code:
		return error_response("line_user_id and invite_code are required", 400)

	invite = find_invite(invite_code)
	if invite is None:
		return error_response("Invalid invite code", 404)

	result = trigger_scenario_delivery_for_friend(line_user_id, invite.scenario_id)
	return JsonResponse(result, status=200 if result["success"] else 404)


@csrf_exempt
@require_POST
def check_friend_status(request):
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return error_response(str(e), 400)

	line_user_id = data.get("lineUserId")
	invite_code = data.get("inviteCode")
	if not line_user_id or not invite_code:
		return error_response("lineUserId and inviteCode are required", 400)

	invite = find_invite(invite_code)
	if invite is None:
		return error_response("Invalid invite code", 404)

	friend = LineFriend.objects.filter(owner_id=invite.owner_id, line_user_id=line_user_id, is_blocked=False).first()
	if friend is None:
		profile = get_profile(invite.owner_id)
		return JsonResponse({
			"isFriend": False,
			"action": "add_friend_required",
			"addFriendUrl": profile.add_friend_url if profile else "",
		})

	trigger = trigger_scenario_delivery_for_friend(line_user_id, invite.scenario_id, tabs=1)
	return JsonResponse({"isFriend": True, "action": "scenario_started", "trigger": trigger})


@csrf_exempt
@require_POST
def scenario_restore(request):
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return error_response(str(e), 400)

	line_user_id = data.get("line_user_id")
	target_scenario_id = data.get("target_scenario_id")
	if not validate_line_user_id(line_user_id) or not target_scenario_id:
		return error_response("line_user_id and target_scenario_id are required", 400)

	try:
		result = restore_scenario(line_user_id, target_scenario_id, data.get("page_share_code"))
	except RegistrationError as e:
		return error_response(e.code, e.status)
	except ValidationError:
		return error_response("Invalid target_scenario_id", 400)
	return JsonResponse(result)


def has_delivery_token(request) -> bool:
	auth = request.headers.get("Authorization", "")
	token = auth[len("Bearer "):] if auth.startswith("Bearer ") else ""
	return bool(token) and secure_compare(token, conf["DELIVERY"]["API_TOKEN"])


@csrf_exempt
@require_POST
def scheduled_step_delivery(request):
	if not has_delivery_token(request):
		return error_response("Unauthorized", 401)
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return error_response(str(e), 400)

	try:
		result = run_scheduled_delivery(
			scenario_id=data.get("scenario_id"),
			friend_id=data.get("friend_id"),
			line_user_id=data.get("line_user_id"),
			recent_only=data.get("trigger") == "login_success",
		)
	except ValidationError:
		return error_response("Invalid scenario_id or friend_id", 400)
	return JsonResponse(result)


@csrf_exempt
@require_POST
def enhanced_step_delivery(request):
	"""
	action ごとの配信操作. オーナー単位の集計と一括遷移はログインが必要
	"""
	authenticated = request.user.is_authenticated
	if not authenticated and not has_delivery_token(request):
		return error_response("Unauthorized", 401)
	try:
		body = parse_json_body(request)
	except ValueError as e:
		return error_response(str(e), 400)

	action = body.get("action")
	data = body.get("data") or {}
	logger.debug(f"[Enhanced Delivery] action: {action}")

	try:
		if action == "process_ready_steps":
			result = run_scheduled_delivery(scenario_id=data.get("scenarioId"), promote_waiting=False)

		elif action == "register_scenario_friend":
			display_name = data.get("displayName", "")
			if display_name and not validate_display_name(display_name):
				return error_response("Invalid displayName", 400)
			picture_url = data.get("pictureUrl", "")
			if picture_url and not validate_url(picture_url):
				return error_response("Invalid pictureUrl", 400)
			result = register_friend_with_scenario(
				data.get("lineUserId"),
				data.get("scenarioName"),
				campaign_id=data.get("campaignId", ""),
				registration_source=data.get("registrationSource", ""),
				display_name=display_name,
				picture_url=picture_url,
				owner=request.user if authenticated else None,
			)

		elif action == "trigger_scenario_delivery":
			result = trigger_scenario_delivery_for_friend(data.get("lineUserId"), data.get("scenarioId"))

		elif action == "get_delivery_stats":
			if not authenticated:
				return error_response("Login required", 401)
			result = {"success": True, "stats": get_delivery_stats(request.user, data.get("scenarioId"))}

		elif action == "apply_transition_to_completed":
			if not authenticated:
				return error_response("Login required", 401)
			result = apply_transition_to_completed(request.user, data.get("fromScenarioId"), data.get("toScenarioId"))

		else:
			return error_response("Invalid action", 500)

	except RegistrationError as e:
		return error_response(e.code, e.status)
	except ValidationError:
		return error_response("Invalid id", 400)
	except DeliveryError as e:
		logger.error(f"[Enhanced Delivery] {action} failed: {e}")
		return error_response(str(e), 500)

	return JsonResponse(result)


@csrf_exempt
@require_POST
def liff_rich_menu_redirect(request):
	try:
		data = parse_json_body(request)
	except ValueError as e:
		return error_response(str(e), 400)

	target = data.get("target")
	if not target:
		return error_response("target is required", 400)

	friend = None
	if str(data.get("ownerUserId", "")).isdigit() and data.get("lineUserId"):
		friend = LineFriend.objects.filter(owner_id=data["ownerUserId"], line_user_id=data["lineUserId"]).first()

	public = urlparse(get_public_url())
	result = resolve_rich_menu_target(target, friend, app_origins=(f"{public.scheme}://{public.netloc}",))
	return JsonResponse({"success": True, **result})
