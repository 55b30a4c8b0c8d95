from linebot.v3.messaging.exceptions import ApiException

from django.contrib import messages
from django.contrib.auth import authenticate, login as auth_login, logout as auth_logout
from django.contrib.auth.decorators import login_required
from django.shortcuts import render, redirect, get_object_or_404
from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.http import require_POST
from django.utils.http import url_has_allowed_host_and_scheme
from django.db.models import Count

from step_linebot.models import ChatMessage, LineFriend, Profile, StepDeliveryTracking, StepScenario
from step_linebot.utils.db_handler import increment_usage, save_chat_message
from step_linebot.utils.errors import DeliveryError
from step_linebot.utils.template_message import get_configuration, push_to_line_user

from logger.set_logger import start_logger
from logger.ansi import * 

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

STATUSES = [s for s, _ in StepDeliveryTracking.STATUS_CHOICES]


def latest_message_id(friend):
    return (
        ChatMessage.objects.filter(friend=friend)
        .order_by("-id")   # 新しいレコード順
        .values_list("id", flat=True)
        .first()
        or 0
    )


@login_required
def monitor(request):
    """
    ログイン中オーナーのシナリオごとの配信状況を表示
    """
    scenarios = StepScenario.objects.filter(owner=request.user).order_by("scenario_order", "created_at")
    counts = (
        StepDeliveryTracking.objects.filter(scenario__owner=request.user)
        .values("scenario_id", "status")
        .annotate(count=Count("id"))
    )
    table = {}
    for row in counts:
        table.setdefault(row["scenario_id"], dict.fromkeys(STATUSES, 0))[row["status"]] = row["count"]

    rows = []
    for scenario in scenarios:
        status_counts = table.get(scenario.id, dict.fromkeys(STATUSES, 0))
        rows.append({
            "scenario": scenario,
            "counts": [status_counts[s] for s in STATUSES],
            "total": sum(status_counts.values()),
        })

    friends = LineFriend.objects.filter(owner=request.user).order_by("-added_at")[:50]
    context = {
        "statuses": STATUSES,
        "rows": rows,
        "friends": friends,
    }
    return render(request, "monitor.html", context)


@login_required
def friend_detail(request, friend_id):
    """
    友だちとのトーク履歴
    """
    friend = get_object_or_404(LineFriend, id=friend_id, owner=request.user)
    logs = ChatMessage.objects.filter(friend=friend).order_by("sent_at")
    trackings = (
        StepDeliveryTracking.objects.filter(friend=friend)
        .select_related("scenario", "step")
        .order_by("scenario__name", "step__step_order")
    )
    context = {
        "friend": friend,
        "logs": logs,
        "trackings": trackings,
        "latest_log_id": latest_message_id(friend),
    }
    return render(request, "friend_detail.html", context)


@login_required
def chat_history_status(request, friend_id):
    friend = get_object_or_404(LineFriend, id=friend_id, owner=request.user)
    return JsonResponse({"latest_id": latest_message_id(friend)})


def login_view(request):
    """
    簡易ログイン画面
    """
    if request.user.is_authenticated:
        return redirect("/")

    if request.method == "POST":
        username = request.POST.get("username", "")
        password = request.POST.get("password", "")
        user = authenticate(request, username=username, password=password)
        if user is not None:
            auth_login(request, user)
            next_url = request.GET.get("next") or "/"
            # 自サイト以外への遷移は許可しない
            if not url_has_allowed_host_and_scheme(next_url, allowed_hosts={request.get_host()}, require_https=request.is_secure()):
                next_url = "/"
            return redirect(next_url)
        messages.error(request, "ユーザー名またはパスワードが正しくありません。")

    return render(request, "login.html")


def logout_view(request):
    """
    ログアウト
    """
    if request.method == "POST":
        auth_logout(request)
    return redirect("/")


@login_required
@require_POST
def send_reply(request, friend_id):
    """
    モニター画面から友だちにプッシュ送信する
    """
    friend = get_object_or_404(LineFriend, id=friend_id, owner=request.user)
    message = request.POST.get('message', '').strip()
    if not message:
        messages.error(request, "メッセージを入力してください。")
        return redirect('monitor:friend_detail', friend_id=friend.id)
    logger.info(f"[Monitor Reply] friend: {friend.short_uid}, message: {repr(message[:50])}")

    profile = Profile.objects.filter(user=request.user).first()
    try:
        push_to_line_user(get_configuration(profile), friend.line_user_id, message, tabs=1)
        save_chat_message(friend, "outgoing", message, tabs=1)
        increment_usage(profile, tabs=1)
    except DeliveryError as e:
        logger.error(f"\t[Monitor Reply] {e}")
        messages.error(request, "LINEのアクセストークンが設定されていません。")
    except ApiException as e:
        logger.error(f"Failed to send reply: {e.status} {e.reason}")
        messages.error(request, "送信に失敗しました。")

    return redirect('monitor:friend_detail', friend_id=friend.id)
