from datetime import datetime, timedelta

from django.utils import timezone

TYPE_ALIASES = {
    "immediate": "immediately",
    "specific": "specific_time",
}


def normalize_delivery_type(delivery_type, step_order=0) -> str:
    """
    別名を正規化する. 2通目以降の relative は前ステップ基準として扱う
    """
    delivery_type = TYPE_ALIASES.get(delivery_type, delivery_type)
    if delivery_type == "relative" and step_order > 0:
        return "relative_to_previous"
    return delivery_type


def step_offset(step) -> timedelta:
    return timedelta(
        days=step.delivery_days or 0,
        hours=step.delivery_hours or 0,
        minutes=step.delivery_minutes or 0,
        seconds=step.delivery_seconds or 0,
    )


def calculate_scheduled_delivery_time(
    friend_added_at,
    delivery_type,
    offset=timedelta(0),
    specific_time=None,
    previous_delivered_at=None,
    time_of_day=None,
):
    """
    配信予定時刻を計算する

    Parameters:
        friend_added_at: シナリオ登録時刻 (基準時刻)
        delivery_type: immediately / relative / relative_to_previous / specific_time / time_of_day
        offset: 日・時・分・秒のオフセット
        specific_time: specific_time の場合の指定日時
        previous_delivered_at: 前ステップの配信時刻
        time_of_day: time_of_day の場合の時刻 (datetime.time)
    """
    delivery_type = TYPE_ALIASES.get(delivery_type, delivery_type)

    if delivery_type == "immediately":
        return friend_added_at

    if delivery_type == "relative":
        return friend_added_at + offset

    if delivery_type == "relative_to_previous":
        return (previous_delivered_at or friend_added_at) + offset

    if delivery_type == "specific_time":
        return specific_time or friend_added_at

    if delivery_type == "time_of_day":
        if time_of_day is None:
            raise ValueError("time_of_day is required")
        reference = timezone.localtime(previous_delivered_at or friend_added_at)
        target_date = (reference + timedelta(days=offset.days)).date()
        candidate = timezone.make_aware(
            datetime.combine(target_date, time_of_day),
            timezone.get_current_timezone(),
        )
        # 基準時刻以前なら翌日の同時刻
        if candidate <= reference:
            candidate += timedelta(days=1)
        return candidate

    raise ValueError(f"Unknown delivery type: {delivery_type}")


def schedule_for_step(step, base_time, previous_delivered_at=None):
    return calculate_scheduled_delivery_time(
        friend_added_at=base_time,
        delivery_type=normalize_delivery_type(step.delivery_type, step.step_order),
        offset=step_offset(step),
        specific_time=step.specific_time,
        previous_delivered_at=previous_delivered_at,
        time_of_day=step.delivery_time_of_day,
    )
