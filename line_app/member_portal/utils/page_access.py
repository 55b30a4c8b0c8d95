from datetime import timedelta

from django.conf import settings
from django.utils import timezone

# 自作モジュールのインポート
from logger.set_logger import start_logger
from member_portal.models import CmsPage, FriendPageAccess

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])


def timer_end(page, start):
    if start is None or page.timer_duration_seconds <= 0:
        return None
    return start + timedelta(seconds=page.timer_duration_seconds)


def sync_step_delivery_timers(friend, scenario_id, step_id, delivered_at, tabs=0):
    """
    ステップ配信をタイマー起点にしているページのアクセス記録を開始する
    """
    indent = "\t" * tabs
    pages = CmsPage.objects.filter(
        owner_id=friend.owner_id,
        timer_enabled=True,
        timer_mode="step_delivery",
        timer_scenario_id=scenario_id,
        timer_step_id=step_id,
    )
    count = 0
    for page in pages:
        FriendPageAccess.objects.update_or_create(
            friend=friend,
            page=page,
            defaults={
                "access_enabled": True,
                "access_source": "step_delivery",
                "scenario_id": scenario_id,
                "step_id": step_id,
                "timer_start_at": delivered_at,
                "timer_end_at": timer_end(page, delivered_at),
            },
        )
        count += 1

    if count:
        logger.debug(f"{indent}[Timer Sync] friend: {friend.short_uid}, pages: {count}")
    return count


def open_page_access(friend, page_share_code, source="manual", restart_timer=False,
                     scenario=None, step=None, start_at=None, tabs=0):
    """
    友だちのページアクセスを有効にする. 対象ページがなければ None
    """
    indent = "\t" * tabs
    page = CmsPage.objects.filter(share_code=page_share_code, owner_id=friend.owner_id).first()
    if page is None:
        logger.warning(f"{indent}[Page Access] page not found: {page_share_code}")
        return None

    access, created = FriendPageAccess.objects.get_or_create(
        friend=friend, page=page, defaults={"access_source": source}
    )
    access.access_enabled = True
    access.access_source = source
    if scenario is not None:
        access.scenario = scenario
    if step is not None:
        access.step = step
    if restart_timer or access.timer_start_at is None:
        access.timer_start_at = start_at or timezone.now()
        access.timer_end_at = timer_end(page, access.timer_start_at)
    if restart_timer:
        access.first_access_at = None
    access.save()

    logger.info(f"{indent}[Page Access] {'created' if created else 'updated'} page: {page_share_code}, "
                f"friend: {friend.short_uid}, source: {source}")
    return access


def serialize_access(access):
    if access is None:
        return None
    return {
        "friend_id": str(access.friend_id),
        "page_share_code": access.page.share_code,
        "access_enabled": access.access_enabled,
        "access_source": access.access_source,
        "timer_start_at": access.timer_start_at.isoformat() if access.timer_start_at else None,
        "timer_end_at": access.timer_end_at.isoformat() if access.timer_end_at else None,
        "first_access_at": access.first_access_at.isoformat() if access.first_access_at else None,
    }
