"""
共通フィクスチャ

オーナー (Django ユーザ + Profile), 友だち, 3ステップのシナリオを用意する
"""
import pytest
from django.contrib.auth import get_user_model
from django.core.cache import cache

from step_linebot.models import (
    LineFriend,
    Profile,
    ScenarioInviteCode,
    Step,
    StepMessage,
    StepScenario,
)

LINE_USER_ID = "U" + "0123456789abcdef" * 2


@pytest.fixture(autouse=True)
def clear_cache():
    # レート制限の回数をテストごとにリセット
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def owner(db):
    user = get_user_model().objects.create_user(username="owner", password="pass1234")
    profile = Profile.objects.create(user=user, display_name="Owner", line_bot_id="stepbot", liff_id="1234-abcd")
    profile.set_credential("line_channel_secret", "channel-secret")
    profile.set_credential("line_channel_access_token", "access-token")
    profile.save()
    return user


@pytest.fixture
def other_owner(db):
    user = get_user_model().objects.create_user(username="other", password="pass1234")
    Profile.objects.create(user=user, display_name="Other")
    return user


@pytest.fixture
def owner_client(client, owner):
    client.force_login(owner)
    return client


@pytest.fixture
def friend(owner):
    return LineFriend.objects.create(owner=owner, line_user_id=LINE_USER_ID, display_name="太郎")


@pytest.fixture
def scenario(owner):
    scenario = StepScenario.objects.create(owner=owner, name="ウェルカム")
    first = Step.objects.create(scenario=scenario, name="1通目", step_order=0, delivery_type="immediately")
    second = Step.objects.create(scenario=scenario, name="2通目", step_order=1, delivery_type="relative", delivery_hours=1)
    third = Step.objects.create(scenario=scenario, name="3通目", step_order=2, delivery_type="relative", delivery_days=1)
    for step in (first, second, third):
        StepMessage.objects.create(step=step, message_type="text", content=f"{step.name} [LINE_NAME_SAN]")
    return scenario


@pytest.fixture
def invite(owner, scenario):
    return ScenarioInviteCode.objects.create(owner=owner, scenario=scenario, invite_code="WELCOME2024")
