"""
ステップ配信エンジン

waiting (配信時刻前) -> ready (配信可能) -> delivering (送信中) -> delivered
配信の取得は条件付き UPDATE で1行ずつ確保するため，複数プロセスから同時に実行しても二重送信しない
"""
import math
import time
from datetime import timedelta

from django.conf import settings
from django.db.models import F, Min, Q
from django.utils import timezone

# 自作モジュールのインポート
from logger.set_logger import start_logger
from logger.ansi import *
from member_portal.utils.page_access import sync_step_delivery_timers
from step_linebot.models import (
    Profile,
    ScenarioTransition,
    Step,
    StepDeliveryLog,
    StepDeliveryTracking,
)
from step_linebot.utils.errors import DeliveryError
from step_linebot.utils.flex import build_line_messages
from step_linebot.utils.scenario import NEXT_CHECK_LEAD, start_scenario_for_friend
from step_linebot.utils.schedule import schedule_for_step
from step_linebot.utils.template_message import get_configuration, push_messages

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

DELIVERY_CONF = conf["DELIVERY"]
RECENT_WINDOW = timedelta(minutes=2)


def calculate_batch_size(waiting_count: int) -> int:
    return min(int(DELIVERY_CONF["BATCH_MAX"]), max(int(DELIVERY_CONF["BATCH_MIN"]), waiting_count // 10))


def _filtered(scenario_id=None, friend_id=None, line_user_id=None):
    rows = StepDeliveryTracking.objects.all()
    if scenario_id:
        rows = rows.filter(scenario_id=scenario_id)
    if friend_id:
        rows = rows.filter(friend_id=friend_id)
    if line_user_id:
        rows = rows.filter(friend__line_user_id=line_user_id)
    return rows


def run_scheduled_delivery(scenario_id=None, friend_id=None, line_user_id=None,
                           recent_only=False, promote_waiting=True, tabs=0):
    """
    配信時刻に達した行を1バッチ分配信し，次回チェックまでの秒数を返す
    """
    indent = "\t" * tabs
    started = time.monotonic()
    now = timezone.now()

    rows = _filtered(scenario_id, friend_id, line_user_id)
    if recent_only:
        rows = rows.filter(updated_at__gte=now - RECENT_WINDOW)

    waiting_due = rows.filter(status=StepDeliveryTracking.WAITING, scheduled_delivery_at__lte=now)
    waiting_count = waiting_due.count()
    batch_size = calculate_batch_size(waiting_count)

    if promote_waiting and waiting_count:
        promoted = waiting_due.update(status=StepDeliveryTracking.READY, updated_at=now)
        logger.debug(f"{indent}[Promote] waiting -> ready: {promoted}")

    candidates = list(
        rows.filter(status=StepDeliveryTracking.READY)
        .filter(Q(scheduled_delivery_at__lte=now) | Q(scheduled_delivery_at__isnull=True))
        .order_by(F("scheduled_delivery_at").asc(nulls_first=True))
        .values_list("id", flat=True)[:batch_size]
    )

    delivered = errors = claimed_count = 0
    for tracking_id in candidates:
        # 他のプロセスが確保済みなら0件更新になる
        claimed = StepDeliveryTracking.objects.filter(
            id=tracking_id, status=StepDeliveryTracking.READY
        ).update(status=StepDeliveryTracking.DELIVERING, updated_at=timezone.now())
        if not claimed:
            continue
        claimed_count += 1

        tracking = StepDeliveryTracking.objects.select_related("step", "scenario", "friend").get(id=tracking_id)
        try:
            if deliver_tracking(tracking, tabs=tabs + 1):
                delivered += 1
        except Exception as e:
            errors += 1
            handle_delivery_failure(tracking, e, tabs=tabs + 1)

    if claimed_count and claimed_count >= batch_size:
        delay = 1
    else:
        delay = next_check_delay(scenario_id, friend_id, line_user_id)

    elapsed_ms = int((time.monotonic() - started) * 1000)
    result = {
        "success": True,
        "delivered": delivered,
        "errors": errors,
        "totalChecked": claimed_count,
        "batchSize": batch_size,
        "waitingCount": waiting_count,
        "processingTimeMs": elapsed_ms,
        "successRate": round(delivered / claimed_count * 100, 1) if claimed_count else 100.0,
        "nextCheckScheduled": (timezone.now() + timedelta(seconds=delay)).isoformat(),
        "nextCheckDelaySeconds": delay,
        "timestamp": now.isoformat(),
    }
    if claimed_count:
        logger.info(f"{indent}{BG}[Delivery Batch]{R} delivered: {delivered}, errors: {errors}, "
                    f"checked: {claimed_count}/{batch_size}, {elapsed_ms}ms, next: {delay}s")
    return result


def next_check_delay(scenario_id=None, friend_id=None, line_user_id=None) -> int:
    now = timezone.now()
    upcoming = (
        _filtered(scenario_id, friend_id, line_user_id)
        .filter(
            status=StepDeliveryTracking.WAITING,
            scheduled_delivery_at__gt=now,
            scheduled_delivery_at__lte=now + timedelta(seconds=DELIVERY_CONF["LOOKAHEAD_SECONDS"]),
        )
        .aggregate(next_at=Min("scheduled_delivery_at"))["next_at"]
    )
    if upcoming is None:
        return int(DELIVERY_CONF["IDLE_SECONDS"])
    return max(1, math.ceil((upcoming - now).total_seconds()))


def deliver_tracking(tracking, tabs=0) -> bool:
    """
    1ステップ分のメッセージを順に送信する. 途中でシナリオから離脱した場合は False
    """
    indent = "\t" * tabs
    friend = tracking.friend
    if friend.is_blocked:
        raise DeliveryError("Friend not found")

    profile = Profile.objects.filter(user_id=tracking.scenario.owner_id).first()
    configuration = get_configuration(profile)

    messages = list(tracking.step.messages.select_related("flex_template").order_by("message_order"))
    logger.debug(f"{indent}[Deliver Step] step: {tracking.step.step_order}, friend: {friend.short_uid}, messages: {len(messages)}")

    for index, step_message in enumerate(messages):
        status = StepDeliveryTracking.objects.filter(id=tracking.id).values_list("status", flat=True).first()
        if status != StepDeliveryTracking.DELIVERING:
            logger.info(f"{indent}[Delivery Stopped] tracking: {tracking.id}, status: {status}")
            return False

        line_messages = build_line_messages(step_message, friend, tabs=tabs + 1)
        if line_messages:
            push_messages(configuration, friend.line_user_id, line_messages, tabs=tabs + 1)

        if index < len(messages) - 1:
            time.sleep(float(DELIVERY_CONF["MESSAGE_INTERVAL"]))

    mark_step_delivered(tracking, tabs=tabs)
    return True


def handle_delivery_failure(tracking, error, tabs=0):
    indent = "\t" * tabs
    now = timezone.now()
    message = str(error) or error.__class__.__name__
    error_count = tracking.error_count + 1

    if message == "Friend not found" or error_count >= int(DELIVERY_CONF["MAX_RETRIES"]):
        updates = {"status": StepDeliveryTracking.FAILED, "next_check_at": None}
        logger.error(f"{indent}[Delivery Failed] tracking: {tracking.id}, errors: {error_count}, {message}")
    else:
        retry_at = now + timedelta(seconds=DELIVERY_CONF["RETRY_SECONDS"])
        updates = {
            "status": StepDeliveryTracking.READY,
            "scheduled_delivery_at": retry_at,
            "next_check_at": retry_at - NEXT_CHECK_LEAD,
        }
        logger.warning(f"{indent}[Delivery Retry] tracking: {tracking.id}, errors: {error_count}, retry_at: {retry_at}, {message}")

    # 配信中に離脱した行は戻さない
    StepDeliveryTracking.objects.filter(id=tracking.id, status=StepDeliveryTracking.DELIVERING).update(
        error_count=error_count, last_error=message[:1000], updated_at=now, **updates
    )
    StepDeliveryLog.objects.create(
        scenario_id=tracking.scenario_id,
        step_id=tracking.step_id,
        friend_id=tracking.friend_id,
        delivery_status="failed",
        error_message=message[:1000],
    )


def mark_step_delivered(tracking, delivered_at=None, tabs=0):
    indent = "\t" * tabs
    delivered_at = delivered_at or timezone.now()

    StepDeliveryTracking.objects.filter(id=tracking.id).update(
        status=StepDeliveryTracking.DELIVERED,
        delivered_at=delivered_at,
        next_check_at=None,
        last_error="",
        updated_at=delivered_at,
    )
    StepDeliveryLog.objects.create(
        scenario_id=tracking.scenario_id,
        step_id=tracking.step_id,
        friend_id=tracking.friend_id,
        delivery_status="delivered",
        delivered_at=delivered_at,
    )
    logger.info(f"{indent}[Step Delivered] tracking: {tracking.id}, friend: {tracking.friend.short_uid}, step: {tracking.step.step_order}")

    sync_step_delivery_timers(tracking.friend, tracking.scenario_id, tracking.step_id, delivered_at, tabs=tabs + 1)
    schedule_next_step(tracking, delivered_at, tabs=tabs + 1)


def schedule_next_step(tracking, delivered_at, tabs=0):
    indent = "\t" * tabs
    next_step = (
        Step.objects.filter(scenario_id=tracking.scenario_id, step_order__gt=tracking.step.step_order)
        .order_by("step_order")
        .first()
    )
    if next_step is None:
        return apply_scenario_transition(tracking, delivered_at, tabs=tabs)

    now = timezone.now()
    registered_at = (
        StepDeliveryTracking.objects.filter(friend_id=tracking.friend_id, scenario_id=tracking.scenario_id)
        .aggregate(first=Min("created_at"))["first"]
        or delivered_at
    )
    try:
        scheduled = schedule_for_step(next_step, registered_at, previous_delivered_at=delivered_at)
    except (ValueError, TypeError) as e:
        logger.warning(f"{indent}[Schedule Error] step: {next_step.id} {e}")
        scheduled = now + timedelta(seconds=DELIVERY_CONF["RETRY_SECONDS"])

    if scheduled <= now:
        values = {"status": StepDeliveryTracking.READY, "scheduled_delivery_at": now, "next_check_at": None}
    else:
        values = {
            "status": StepDeliveryTracking.WAITING,
            "scheduled_delivery_at": scheduled,
            "next_check_at": scheduled - NEXT_CHECK_LEAD,
        }

    row, created = StepDeliveryTracking.objects.get_or_create(
        step=next_step,
        friend_id=tracking.friend_id,
        defaults={
            "scenario_id": tracking.scenario_id,
            "campaign_id": tracking.campaign_id,
            "registration_source": tracking.registration_source,
            **values,
        },
    )
    if not created:
        if row.status not in (StepDeliveryTracking.WAITING, StepDeliveryTracking.READY):
            logger.debug(f"{indent}[Next Step Skipped] tracking: {row.id}, status: {row.status}")
            return None
        StepDeliveryTracking.objects.filter(id=row.id).update(updated_at=now, **values)

    logger.debug(f"{indent}[Next Step] step: {next_step.step_order}, status: {values['status']}, at: {values['scheduled_delivery_at']}")
    return row


def apply_scenario_transition(tracking, delivered_at, tabs=0):
    """
    最終ステップ配信後，遷移設定があれば次のシナリオを開始する
    """
    indent = "\t" * tabs
    transition = (
        ScenarioTransition.objects.select_related("to_scenario")
        .filter(from_scenario_id=tracking.scenario_id)
        .order_by("created_at")
        .first()
    )
    if transition is None:
        logger.debug(f"{indent}[Scenario Completed] friend: {tracking.friend.short_uid}")
        return None

    StepDeliveryTracking.objects.filter(
        friend_id=tracking.friend_id,
        scenario_id=tracking.scenario_id,
        status__in=(StepDeliveryTracking.WAITING, StepDeliveryTracking.READY),
    ).update(status=StepDeliveryTracking.EXITED, updated_at=timezone.now())

    start_scenario_for_friend(
        tracking.friend,
        transition.to_scenario,
        invite_code="system_transition",
        base_time=delivered_at,
        campaign_id=tracking.campaign_id,
        registration_source=tracking.registration_source,
        tabs=tabs + 1,
    )
    logger.info(f"{indent}[Scenario Transition] -> {transition.to_scenario.name}, friend: {tracking.friend.short_uid}")
    return transition
