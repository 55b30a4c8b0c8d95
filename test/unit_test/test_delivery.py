"""
Unit tests for the step delivery engine.

push_messages is patched so no request reaches the LINE API.
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from django.utils import timezone

from member_portal.models import CmsPage, FriendPageAccess
from step_linebot.models import (
    LineFriend,
    ScenarioTransition,
    Step,
    StepDeliveryLog,
    StepDeliveryTracking,
    StepScenario,
)
from step_linebot.utils.delivery import (
    calculate_batch_size,
    deliver_tracking,
    run_scheduled_delivery,
)
from step_linebot.utils.scenario import register_friend_to_scenario

pytestmark = pytest.mark.django_db

LINE_USER_ID = "U" + "0123456789abcdef" * 2


@pytest.fixture
def registered(invite):
    register_friend_to_scenario(LINE_USER_ID, invite.invite_code, display_name="太郎")
    return LineFriend.objects.get(line_user_id=LINE_USER_ID)


@pytest.fixture
def push():
    with patch("step_linebot.utils.delivery.push_messages") as mocked:
        yield mocked


def tracking_for(friend, order):
    return StepDeliveryTracking.objects.get(friend=friend, step__step_order=order)


class TestBatchSize:

    @pytest.mark.parametrize("waiting, expected", [(0, 100), (999, 100), (5000, 500), (50000, 1000)])
    def test_clamped(self, waiting, expected):
        assert calculate_batch_size(waiting) == expected


class TestRunScheduledDelivery:
    """One batch of the scheduled delivery loop."""

    def test_delivers_ready_step_and_schedules_next(self, registered, push):
        result = run_scheduled_delivery()

        assert result["delivered"] == 1
        assert result["errors"] == 0
        assert result["totalChecked"] == 1
        assert result["batchSize"] == 100
        assert result["nextCheckDelaySeconds"] == 60

        push.assert_called_once()
        _, user_id, messages = push.call_args.args
        assert user_id == LINE_USER_ID
        assert messages[0].text == "1通目 太郎さん"

        first = tracking_for(registered, 0)
        assert first.status == StepDeliveryTracking.DELIVERED
        second = tracking_for(registered, 1)
        assert second.status == StepDeliveryTracking.WAITING
        # 2通目は前ステップ配信の1時間後
        assert second.scheduled_delivery_at - first.delivered_at == timedelta(hours=1)
        assert StepDeliveryLog.objects.filter(delivery_status="delivered").count() == 1

    def test_nothing_due(self, registered, push):
        StepDeliveryTracking.objects.filter(step__step_order=0).update(
            status=StepDeliveryTracking.WAITING, scheduled_delivery_at=timezone.now() + timedelta(seconds=30)
        )
        result = run_scheduled_delivery()

        assert result["totalChecked"] == 0
        assert 1 <= result["nextCheckDelaySeconds"] <= 30
        push.assert_not_called()

    def test_due_waiting_rows_are_promoted(self, registered, push):
        StepDeliveryTracking.objects.filter(step__step_order=0).update(status=StepDeliveryTracking.DELIVERED)
        StepDeliveryTracking.objects.filter(step__step_order=1).update(
            scheduled_delivery_at=timezone.now() - timedelta(minutes=1)
        )
        result = run_scheduled_delivery()

        assert result["waitingCount"] == 1
        assert result["delivered"] == 1
        assert tracking_for(registered, 1).status == StepDeliveryTracking.DELIVERED

    def test_rows_claimed_elsewhere_are_skipped(self, registered, push):
        StepDeliveryTracking.objects.filter(step__step_order=0).update(status=StepDeliveryTracking.DELIVERING)
        result = run_scheduled_delivery()

        assert result["totalChecked"] == 0
        push.assert_not_called()

    def test_filter_by_other_friend(self, registered, push):
        other = LineFriend.objects.create(owner=registered.owner, line_user_id="U" + "f" * 32)
        result = run_scheduled_delivery(friend_id=other.id)
        assert result["totalChecked"] == 0

    def test_failure_is_retried(self, registered, push):
        push.side_effect = RuntimeError("boom")
        result = run_scheduled_delivery()

        assert result["errors"] == 1
        assert result["successRate"] == 0.0
        row = tracking_for(registered, 0)
        assert row.status == StepDeliveryTracking.READY
        assert row.error_count == 1
        assert row.last_error == "boom"
        assert row.scheduled_delivery_at > timezone.now()
        assert StepDeliveryLog.objects.filter(delivery_status="failed").count() == 1

    def test_failure_after_max_retries(self, registered, push):
        push.side_effect = RuntimeError("boom")
        StepDeliveryTracking.objects.filter(step__step_order=0).update(error_count=4)
        run_scheduled_delivery()
        assert tracking_for(registered, 0).status == StepDeliveryTracking.FAILED

    def test_blocked_friend_fails_immediately(self, registered, push):
        LineFriend.objects.filter(pk=registered.pk).update(is_blocked=True)
        run_scheduled_delivery()

        push.assert_not_called()
        row = tracking_for(registered, 0)
        assert row.status == StepDeliveryTracking.FAILED
        assert row.last_error == "Friend not found"


class TestStepCompletion:

    def test_last_step_starts_transition(self, owner, registered, scenario, push):
        follow_up = StepScenario.objects.create(owner=owner, name="フォロー")
        Step.objects.create(scenario=follow_up, step_order=0, delivery_type="immediately")
        ScenarioTransition.objects.create(from_scenario=scenario, to_scenario=follow_up)
        StepDeliveryTracking.objects.filter(step__step_order__in=(0, 1)).update(status=StepDeliveryTracking.DELIVERED)
        StepDeliveryTracking.objects.filter(step__step_order=2).update(
            status=StepDeliveryTracking.READY, scheduled_delivery_at=timezone.now() - timedelta(seconds=1)
        )

        run_scheduled_delivery(scenario_id=scenario.id)

        assert tracking_for(registered, 2).status == StepDeliveryTracking.DELIVERED
        follow_row = StepDeliveryTracking.objects.get(friend=registered, scenario=follow_up)
        assert follow_row.status == StepDeliveryTracking.READY
        registered.refresh_from_db()
        assert registered.scenario_name == "フォロー"

    def test_step_delivery_timer_started(self, owner, registered, scenario, push):
        first_step = scenario.steps.get(step_order=0)
        page = CmsPage.objects.create(
            owner=owner, title="特典", share_code="gift", timer_enabled=True, timer_mode="step_delivery",
            timer_duration_seconds=3600, timer_scenario=scenario, timer_step=first_step,
        )
        run_scheduled_delivery()

        access = FriendPageAccess.objects.get(friend=registered, page=page)
        assert access.access_source == "step_delivery"
        assert access.timer_end_at - access.timer_start_at == timedelta(hours=1)

    def test_exited_row_is_not_sent(self, registered, push):
        row = tracking_for(registered, 0)
        StepDeliveryTracking.objects.filter(pk=row.pk).update(status=StepDeliveryTracking.EXITED)

        assert deliver_tracking(row) is False
        push.assert_not_called()
