"""
Unit tests for scenario registration, triggering, restore and transitions.
"""
from datetime import timedelta

import pytest
from django.utils import timezone

from step_linebot.models import (
    LineFriend,
    ScenarioFriendLog,
    Step,
    StepDeliveryTracking,
    StepScenario,
)
from step_linebot.utils.errors import RegistrationError
from step_linebot.utils.scenario import (
    apply_transition_to_completed,
    get_delivery_stats,
    register_friend_to_scenario,
    register_friend_with_scenario,
    restore_scenario,
    trigger_scenario_delivery_for_friend,
    upsert_friend,
)

pytestmark = pytest.mark.django_db

LINE_USER_ID = "U" + "0123456789abcdef" * 2


def statuses(friend, scenario):
    rows = StepDeliveryTracking.objects.filter(friend=friend, scenario=scenario).order_by("step__step_order")
    return list(rows.values_list("status", flat=True))


class TestUpsertFriend:

    def test_creates_friend_with_short_uid(self, owner):
        friend = upsert_friend(owner, LINE_USER_ID, "<b>太郎</b>")
        assert friend.display_name == "太郎"
        assert len(friend.short_uid) == 6

    def test_unblocks_existing_friend(self, friend):
        LineFriend.objects.filter(pk=friend.pk).update(is_blocked=True)
        upsert_friend(friend.owner, LINE_USER_ID)
        friend.refresh_from_db()
        assert friend.is_blocked is False
        assert friend.display_name == "太郎"


class TestRegisterFriendToScenario:
    """Registration through an invite code."""

    def test_first_step_ready_rest_waiting(self, invite, scenario):
        result = register_friend_to_scenario(LINE_USER_ID, invite.invite_code, display_name="太郎")

        assert result["success"] is True
        assert result["steps_registered"] == 3
        assert result["re_registration"] is False
        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert statuses(friend, scenario) == ["ready", "waiting", "waiting"]
        assert friend.scenario_name == scenario.name
        assert friend.registration_source == "invite"
        invite.refresh_from_db()
        assert invite.usage_count == 1
        assert ScenarioFriendLog.objects.filter(friend=friend, invite_code=invite.invite_code).count() == 1

    def test_unknown_code(self, invite):
        with pytest.raises(RegistrationError) as exc:
            register_friend_to_scenario(LINE_USER_ID, "UNKNOWN0000")
        assert exc.value.code == "invalid_invite_code"
        assert exc.value.status == 404

    def test_inactive_scenario(self, invite, scenario):
        StepScenario.objects.filter(pk=scenario.pk).update(is_active=False)
        with pytest.raises(RegistrationError) as exc:
            register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        assert exc.value.code == "invalid_invite_code"

    def test_usage_limit(self, invite):
        invite.max_usage = 1
        invite.usage_count = 1
        invite.save()
        with pytest.raises(RegistrationError) as exc:
            register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        assert exc.value.code == "usage_limit_reached"

    def test_re_registration_resets_rows(self, invite, scenario):
        register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        StepDeliveryTracking.objects.update(status=StepDeliveryTracking.DELIVERED)

        result = register_friend_to_scenario(LINE_USER_ID, invite.invite_code)

        assert result["re_registration"] is True
        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert statuses(friend, scenario) == ["ready", "waiting", "waiting"]
        assert StepDeliveryTracking.objects.count() == 3

    def test_re_registration_disabled(self, invite):
        invite.allow_re_registration = False
        invite.save()
        register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        with pytest.raises(RegistrationError) as exc:
            register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        assert exc.value.code == "already_registered"
        assert exc.value.status == 409


class TestRegisterFriendWithScenario:

    def test_by_scenario_name(self, owner, scenario):
        result = register_friend_with_scenario(
            LINE_USER_ID, scenario.name, campaign_id="spring", registration_source="ad", owner=owner
        )
        assert result["steps_registered"] == 3
        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert friend.campaign_id == "spring"
        assert set(StepDeliveryTracking.objects.values_list("campaign_id", flat=True)) == {"spring"}

    def test_unknown_scenario(self, owner):
        with pytest.raises(RegistrationError) as exc:
            register_friend_with_scenario(LINE_USER_ID, "none", owner=owner)
        assert exc.value.code == "scenario_not_found"


class TestTriggerScenario:

    def test_creates_rows_for_new_friend(self, friend, scenario):
        result = trigger_scenario_delivery_for_friend(LINE_USER_ID, scenario.id)
        assert result == {"success": True, "steps_triggered": 1, "friend_id": str(friend.id)}
        assert statuses(friend, scenario) == ["ready", "waiting", "waiting"]

    def test_adds_rows_for_new_steps(self, friend, scenario):
        trigger_scenario_delivery_for_friend(LINE_USER_ID, scenario.id)
        Step.objects.create(scenario=scenario, step_order=3, delivery_type="relative", delivery_days=2)

        trigger_scenario_delivery_for_friend(LINE_USER_ID, scenario.id)

        assert StepDeliveryTracking.objects.filter(friend=friend, scenario=scenario).count() == 4

    def test_unknown_friend(self, scenario):
        result = trigger_scenario_delivery_for_friend("U" + "f" * 32, scenario.id)
        assert result == {"success": False, "error": "Friend not found"}

    def test_unschedulable_first_step_is_retried_later(self, owner, friend):
        scenario = StepScenario.objects.create(owner=owner, name="朝の配信")
        step = Step.objects.create(scenario=scenario, name="朝", step_order=0, delivery_type="time_of_day")
        row = StepDeliveryTracking.objects.create(step=step, friend=friend, scenario=scenario)
        before = timezone.now()

        result = trigger_scenario_delivery_for_friend(LINE_USER_ID, scenario.id)

        assert result["success"] is True
        assert result["steps_triggered"] == 0
        row.refresh_from_db()
        assert row.status == StepDeliveryTracking.WAITING
        assert row.scheduled_delivery_at >= before + timedelta(seconds=30)


class TestRestoreScenario:

    def test_restarts_from_first_step(self, invite, scenario):
        register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        StepDeliveryTracking.objects.update(status=StepDeliveryTracking.DELIVERED)

        result = restore_scenario(LINE_USER_ID, scenario.id)

        assert result["exited"] == 3
        assert result["steps_registered"] == 3
        assert result["page_access_restored"] is False
        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert statuses(friend, scenario) == ["ready", "waiting", "waiting"]
        assert friend.registration_source == "invite"
        assert set(StepDeliveryTracking.objects.values_list("registration_source", flat=True)) == {"restore"}

    def test_unknown_friend(self, scenario):
        with pytest.raises(RegistrationError) as exc:
            restore_scenario(LINE_USER_ID, scenario.id)
        assert exc.value.code == "friend_not_found"


class TestTransitionsAndStats:

    def test_completed_friends_are_moved(self, owner, invite, scenario):
        register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        StepDeliveryTracking.objects.update(status=StepDeliveryTracking.DELIVERED)
        follow_up = StepScenario.objects.create(owner=owner, name="フォロー")
        Step.objects.create(scenario=follow_up, step_order=0, delivery_type="immediately")

        result = apply_transition_to_completed(owner, scenario.id, follow_up.id)

        assert result == {"success": True, "moved": 1, "skipped": 0}
        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert set(statuses(friend, scenario)) == {"exited"}
        assert statuses(friend, follow_up) == ["ready"]

        # 移動済みの友だちは二重に登録しない
        StepDeliveryTracking.objects.filter(scenario=scenario).update(status=StepDeliveryTracking.DELIVERED)
        assert apply_transition_to_completed(owner, scenario.id, follow_up.id)["skipped"] == 1

    def test_incomplete_friends_stay(self, owner, invite, scenario):
        register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        follow_up = StepScenario.objects.create(owner=owner, name="フォロー")
        assert apply_transition_to_completed(owner, scenario.id, follow_up.id)["moved"] == 0

    def test_other_owner_scenario(self, other_owner, scenario):
        with pytest.raises(RegistrationError):
            apply_transition_to_completed(other_owner, scenario.id, scenario.id)

    def test_delivery_stats(self, owner, invite, scenario):
        register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        stats = get_delivery_stats(owner, scenario.id)
        assert stats == {
            "total": 3,
            "byStatus": {"ready": 1, "waiting": 2},
            "byCampaign": {"none": 3},
            "bySource": {"invite": 3},
        }
