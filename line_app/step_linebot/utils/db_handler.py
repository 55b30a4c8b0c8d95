from django.conf import settings
from django.db.models import F
from django.utils import timezone

# 自作モジュールのインポート
from logger.set_logger import start_logger
from logger.ansi import *
from step_linebot.models import ChatMessage, LineFriend, Profile, Setting, StepDeliveryTracking

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])


def set_maintenance_mode(enabled: bool, tabs=0):
    indent = "\t" * tabs
    logger.info(f"{indent}[Setting Maintenance Mode] {enabled}")
    Setting.objects.update_or_create(
        key="maintenance",
        defaults={"value": str(int(enabled))},
    )


def get_maintenance_mode(tabs=0) -> bool:
    setting = Setting.objects.filter(key="maintenance").first()
    value = bool(int(setting.value)) if setting else False

    indent = "\t" * tabs
    logger.debug(f"{indent}[Getting Maintenance Mode] {value}")
    return value


def get_profile(owner_id):
    return Profile.objects.select_related("user").filter(user_id=owner_id).first()


def get_all_profiles(owner_ids=None):
    """
    アクセストークンが登録されているオーナーのプロフィールを返す
    """
    profiles = Profile.objects.exclude(line_channel_access_token="")
    if owner_ids:
        profiles = profiles.filter(user_id__in=owner_ids)
    return list(profiles)


def save_chat_message(friend, message_type, text, line_message_id="", tabs=0):
    indent = "\t" * tabs
    logger.debug(f"{indent}[Save Chat] friend: {friend.short_uid}, {message_type}: {repr(text[:50])}")
    return ChatMessage.objects.create(
        friend=friend,
        owner_id=friend.owner_id,
        message_type=message_type,
        message_text=text,
        line_message_id=line_message_id or "",
    )


def mark_friend_blocked(owner_id, line_user_id, tabs=0):
    """
    ブロックされた友だちの配信待ちを全て離脱扱いにする
    """
    indent = "\t" * tabs
    friend = LineFriend.objects.filter(owner_id=owner_id, line_user_id=line_user_id).first()
    if friend is None:
        logger.warning(f"{indent}[Not Found] friend: {line_user_id}")
        return None

    friend.is_blocked = True
    friend.save(update_fields=["is_blocked"])
    exited = StepDeliveryTracking.objects.filter(
        friend=friend,
        status__in=(StepDeliveryTracking.WAITING, StepDeliveryTracking.READY, StepDeliveryTracking.DELIVERING),
    ).update(status=StepDeliveryTracking.EXITED, next_check_at=None, updated_at=timezone.now())
    logger.info(f"{indent}[Friend Blocked] friend: {friend.short_uid}, exited: {exited}")
    return friend


def increment_usage(profile, count=1, tabs=0):
    indent = "\t" * tabs
    Profile.objects.filter(pk=profile.pk).update(
        delivery_count=F("delivery_count") + count,
        monthly_message_used=F("monthly_message_used") + count,
    )
    logger.debug(f"{indent}[Usage] owner: {profile.user_id} +{count}")


def update_quota(profile, used, limit, tabs=0):
    indent = "\t" * tabs
    profile.monthly_message_used = used
    profile.monthly_message_limit = limit if limit is not None else profile.monthly_message_limit
    profile.quota_updated_at = timezone.now()
    profile.save(update_fields=["monthly_message_used", "monthly_message_limit", "quota_updated_at"])
    logger.debug(f"{indent}[Quota] owner: {profile.user_id} {used}/{profile.monthly_message_limit}")
