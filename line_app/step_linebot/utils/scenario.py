from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import Count, F, Q
from django.utils import timezone

# 自作モジュールのインポート
from logger.set_logger import start_logger
from logger.ansi import *
from step_linebot.models import (
    LineFriend,
    ScenarioFriendLog,
    ScenarioInviteCode,
    StepDeliveryTracking,
    StepScenario,
)
from step_linebot.utils.errors import RegistrationError
from step_linebot.utils.schedule import schedule_for_step
from step_linebot.utils.security import sanitize_display_name

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

ACTIVE_STATUSES = (StepDeliveryTracking.WAITING, StepDeliveryTracking.READY, StepDeliveryTracking.DELIVERING)
NEXT_CHECK_LEAD = timedelta(seconds=5)


def upsert_friend(owner, line_user_id, display_name="", picture_url="", tabs=0):
    indent = "\t" * tabs
    friend, created = LineFriend.objects.get_or_create(owner=owner, line_user_id=line_user_id)

    changed = created
    display_name = sanitize_display_name(display_name)
    if display_name and friend.display_name != display_name:
        friend.display_name = display_name
        changed = True
    if picture_url and friend.picture_url != picture_url:
        friend.picture_url = picture_url
        changed = True
    if friend.is_blocked:
        friend.is_blocked = False
        changed = True
    if changed:
        friend.save()

    logger.debug(f"{indent}[Upsert Friend] {'created' if created else 'updated'} user: {line_user_id}, uid: {friend.short_uid}")
    return friend


def build_trackings(friend, scenario, base_time=None, first_ready=False, campaign_id="", registration_source="", tabs=0):
    """
    シナリオの全ステップ分の配信行を作り直す (既存行は初期状態に戻す)
    先頭ステップのみ配信予定時刻を計算し，残りは前ステップ配信時に計算する
    """
    indent = "\t" * tabs
    now = timezone.now()
    base_time = base_time or now
    steps = list(scenario.steps.order_by("step_order"))

    for index, step in enumerate(steps):
        status = StepDeliveryTracking.WAITING
        scheduled = None
        next_check = None
        if index == 0:
            if first_ready:
                scheduled = now
            else:
                try:
                    scheduled = schedule_for_step(step, base_time)
                except (ValueError, TypeError) as e:
                    logger.warning(f"{indent}[Schedule Error] step: {step.id} {e}")
                    scheduled = now + timedelta(seconds=conf["DELIVERY"]["RETRY_SECONDS"])
            if scheduled <= now:
                status = StepDeliveryTracking.READY
                scheduled = now
            else:
                next_check = scheduled - NEXT_CHECK_LEAD

        StepDeliveryTracking.objects.update_or_create(
            step=step,
            friend=friend,
            defaults={
                "scenario": scenario,
                "status": status,
                "scheduled_delivery_at": scheduled,
                "next_check_at": next_check,
                "delivered_at": None,
                "error_count": 0,
                "last_error": "",
                "campaign_id": campaign_id or "",
                "registration_source": registration_source or "",
            },
        )

    logger.debug(f"{indent}[Build Trackings] scenario: {scenario.name}, friend: {friend.short_uid}, steps: {len(steps)}")
    return len(steps)


def start_scenario_for_friend(friend, scenario, invite_code="", base_time=None, first_ready=False,
                              campaign_id="", registration_source="", tabs=0):
    indent = "\t" * tabs
    logger.info(f"{indent}[Start Scenario] scenario: {scenario.name}, friend: {friend.short_uid}, code: {invite_code}")
    with transaction.atomic():
        steps_registered = build_trackings(
            friend, scenario,
            base_time=base_time,
            first_ready=first_ready,
            campaign_id=campaign_id,
            registration_source=registration_source,
            tabs=tabs + 1,
        )
        ScenarioFriendLog.objects.create(
            scenario=scenario,
            friend=friend,
            line_user_id=friend.line_user_id,
            invite_code=invite_code or "",
        )
        LineFriend.objects.filter(pk=friend.pk).update(scenario_name=scenario.name)
    return steps_registered


def register_friend_to_scenario(line_user_id, invite_code, display_name="", picture_url="",
                                registration_source="invite", tabs=0):
    """
    招待コード経由でシナリオに登録する

    Raises:
        RegistrationError: invalid_invite_code / usage_limit_reached / already_registered
    """
    indent = "\t" * tabs
    invite = (
        ScenarioInviteCode.objects.select_related("scenario")
        .filter(invite_code=invite_code, is_active=True, scenario__is_active=True)
        .first()
    )
    if invite is None:
        raise RegistrationError("invalid_invite_code", status=404)
    if invite.max_usage is not None and invite.usage_count >= invite.max_usage:
        raise RegistrationError("usage_limit_reached", status=409)

    scenario = invite.scenario
    friend = upsert_friend(scenario.owner, line_user_id, display_name, picture_url, tabs=tabs + 1)

    already = StepDeliveryTracking.objects.filter(friend=friend, scenario=scenario).exists()
    if already and not invite.allow_re_registration:
        logger.info(f"{indent}[Registration Rejected] already registered. friend: {friend.short_uid}, code: {invite_code}")
        raise RegistrationError("already_registered", status=409)

    steps_registered = start_scenario_for_friend(
        friend, scenario,
        invite_code=invite_code,
        registration_source=registration_source,
        tabs=tabs + 1,
    )
    ScenarioInviteCode.objects.filter(pk=invite.pk).update(usage_count=F("usage_count") + 1)
    LineFriend.objects.filter(pk=friend.pk).update(registration_source=registration_source)

    logger.info(f"{indent}[Registered] scenario: {scenario.name}, friend: {friend.short_uid}, re_registration: {already}")
    return {
        "success": True,
        "friend_id": str(friend.id),
        "scenario_id": str(scenario.id),
        "steps_registered": steps_registered,
        "re_registration": already,
    }


def register_friend_with_scenario(line_user_id, scenario_name, campaign_id="", registration_source="",
                                  display_name="", picture_url="", owner=None, tabs=0):
    scenarios = StepScenario.objects.filter(name=scenario_name, is_active=True)
    if owner is not None:
        scenarios = scenarios.filter(owner=owner)
    scenario = scenarios.order_by("created_at").first()
    if scenario is None:
        raise RegistrationError("scenario_not_found", status=404)

    friend = upsert_friend(scenario.owner, line_user_id, display_name, picture_url, tabs=tabs + 1)
    LineFriend.objects.filter(pk=friend.pk).update(
        campaign_id=campaign_id or "",
        registration_source=registration_source or "",
    )
    steps_registered = start_scenario_for_friend(
        friend, scenario,
        campaign_id=campaign_id,
        registration_source=registration_source,
        tabs=tabs + 1,
    )
    return {
        "success": True,
        "friend_id": str(friend.id),
        "scenario_id": str(scenario.id),
        "steps_registered": steps_registered,
    }


def trigger_scenario_delivery_for_friend(line_user_id, scenario_id, tabs=0):
    """
    友だちのシナリオ配信行を揃え，配信時刻に達したステップを ready にする
    """
    indent = "\t" * tabs
    scenario = StepScenario.objects.filter(id=scenario_id).first()
    if scenario is None:
        return {"success": False, "error": "Scenario not found"}

    friend = LineFriend.objects.filter(owner=scenario.owner, line_user_id=line_user_id).first()
    if friend is None:
        return {"success": False, "error": "Friend not found"}

    now = timezone.now()
    with transaction.atomic():
        rows = StepDeliveryTracking.objects.filter(friend=friend, scenario=scenario)
        if not rows.exists():
            start_scenario_for_friend(friend, scenario, invite_code="trigger", tabs=tabs + 1)
        else:
            # 後から追加されたステップの行を補う
            existing = set(rows.values_list("step_id", flat=True))
            for step in scenario.steps.exclude(id__in=existing):
                StepDeliveryTracking.objects.create(step=step, friend=friend, scenario=scenario)

            first = rows.select_related("step").order_by("step__step_order").first()
            if first and first.status == StepDeliveryTracking.WAITING and first.scheduled_delivery_at is None:
                try:
                    scheduled = schedule_for_step(first.step, now)
                except (ValueError, TypeError) as e:
                    logger.warning(f"{indent}[Schedule Error] step: {first.step_id} {e}")
                    scheduled = now + timedelta(seconds=conf["DELIVERY"]["RETRY_SECONDS"])
                first.scheduled_delivery_at = max(scheduled, now)
                first.next_check_at = first.scheduled_delivery_at - NEXT_CHECK_LEAD
                first.save(update_fields=["scheduled_delivery_at", "next_check_at", "updated_at"])

        StepDeliveryTracking.objects.filter(
            friend=friend,
            scenario=scenario,
            status=StepDeliveryTracking.WAITING,
            scheduled_delivery_at__lte=now,
        ).update(status=StepDeliveryTracking.READY, updated_at=now)
        steps_triggered = StepDeliveryTracking.objects.filter(
            friend=friend, scenario=scenario, status=StepDeliveryTracking.READY,
        ).count()

    logger.info(f"{indent}[Trigger Scenario] scenario: {scenario.name}, friend: {friend.short_uid}, ready: {steps_triggered}")
    return {"success": True, "steps_triggered": steps_triggered, "friend_id": str(friend.id)}


def exit_trackings(friend, statuses=ACTIVE_STATUSES, scenario=None, tabs=0):
    indent = "\t" * tabs
    rows = StepDeliveryTracking.objects.filter(friend=friend, status__in=statuses)
    if scenario is not None:
        rows = rows.filter(scenario=scenario)
    count = rows.update(status=StepDeliveryTracking.EXITED, next_check_at=None, updated_at=timezone.now())
    logger.debug(f"{indent}[Exit Trackings] friend: {friend.short_uid}, rows: {count}")
    return count


def restore_scenario(line_user_id, target_scenario_id, page_share_code=None, tabs=0):
    """
    友だちの配信を止めて対象シナリオを最初から配信し直す (アクセス復活)
    """
    from member_portal.utils.page_access import open_page_access

    indent = "\t" * tabs
    scenario = StepScenario.objects.filter(id=target_scenario_id).first()
    if scenario is None:
        raise RegistrationError("scenario_not_found", status=404)
    friend = LineFriend.objects.filter(owner=scenario.owner, line_user_id=line_user_id).first()
    if friend is None:
        raise RegistrationError("friend_not_found", status=404)

    with transaction.atomic():
        exited = exit_trackings(
            friend,
            statuses=(StepDeliveryTracking.WAITING, StepDeliveryTracking.READY, StepDeliveryTracking.DELIVERED),
            tabs=tabs + 1,
        )
        steps_registered = start_scenario_for_friend(
            friend, scenario,
            invite_code="restore_access",
            first_ready=True,
            registration_source="restore",
            tabs=tabs + 1,
        )
        page_access = None
        if page_share_code:
            page_access = open_page_access(friend, page_share_code, source="restore", restart_timer=True, tabs=tabs + 1)

    logger.info(f"{indent}[Scenario Restored] scenario: {scenario.name}, friend: {friend.short_uid}, exited: {exited}")
    return {
        "success": True,
        "friend_id": str(friend.id),
        "scenario_id": str(scenario.id),
        "exited": exited,
        "steps_registered": steps_registered,
        "page_access_restored": page_access is not None,
    }


def apply_transition_to_completed(owner, from_scenario_id, to_scenario_id, tabs=0):
    """
    元シナリオを最後まで受け取り，配信待ちが残っていない友だちを移動先シナリオへ移す
    """
    indent = "\t" * tabs
    from_scenario = StepScenario.objects.filter(id=from_scenario_id, owner=owner).first()
    to_scenario = StepScenario.objects.filter(id=to_scenario_id, owner=owner).first()
    if from_scenario is None or to_scenario is None:
        raise RegistrationError("scenario_not_found", status=404)

    step_count = from_scenario.steps.count()
    rows = (
        StepDeliveryTracking.objects.filter(scenario=from_scenario)
        .values("friend_id")
        .annotate(
            delivered=Count("id", filter=Q(status=StepDeliveryTracking.DELIVERED)),
            pending=Count("id", filter=Q(status__in=(StepDeliveryTracking.WAITING, StepDeliveryTracking.READY))),
        )
    )
    completed_ids = [row["friend_id"] for row in rows if row["delivered"] >= step_count and row["pending"] == 0]

    moved = skipped = 0
    for friend in LineFriend.objects.filter(id__in=completed_ids):
        if StepDeliveryTracking.objects.filter(friend=friend, scenario=to_scenario).exists():
            skipped += 1
            continue
        with transaction.atomic():
            StepDeliveryTracking.objects.filter(friend=friend, scenario=from_scenario).update(
                status=StepDeliveryTracking.EXITED, updated_at=timezone.now()
            )
            start_scenario_for_friend(friend, to_scenario, invite_code="system_transition", tabs=tabs + 1)
        moved += 1

    logger.info(f"{indent}[Transition Applied] {from_scenario.name} -> {to_scenario.name}, moved: {moved}, skipped: {skipped}")
    return {"success": True, "moved": moved, "skipped": skipped}


def get_delivery_stats(owner, scenario_id):
    rows = StepDeliveryTracking.objects.filter(scenario_id=scenario_id, scenario__owner=owner)

    def _group(field, empty_label):
        result = {}
        for row in rows.values(field).annotate(count=Count("id")):
            key = row[field] or empty_label
            result[key] = result.get(key, 0) + row["count"]
        return result

    return {
        "total": rows.count(),
        "byStatus": _group("status", "unknown"),
        "byCampaign": _group("campaign_id", "none"),
        "bySource": _group("registration_source", "unknown"),
    }
