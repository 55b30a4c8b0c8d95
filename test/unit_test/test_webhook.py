"""
Unit tests for the LINE webhook endpoint and its event handlers.

Event handlers are called directly with lightweight event objects; LINE API
calls are patched at step_linebot.views.
"""
import base64
import hashlib
import hmac
import json
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from django.urls import reverse

from step_linebot.models import ChatMessage, GreetingSetting, LineFriend, StepDeliveryTracking
from step_linebot.utils.db_handler import set_maintenance_mode
from step_linebot.views import (
    handle_follow,
    handle_postback,
    handle_text_message,
    handle_unfollow,
)

pytestmark = pytest.mark.django_db

LINE_USER_ID = "U" + "0123456789abcdef" * 2


def sign(body: str, secret="channel-secret") -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def event(**kwargs):
    return SimpleNamespace(source=SimpleNamespace(user_id=LINE_USER_ID), reply_token="reply-token", **kwargs)


class TestCallback:
    """Signature verification on /line/callback/<owner_id>/."""

    def test_valid_signature(self, client, owner):
        body = json.dumps({"destination": "Uxxxxxxxx", "events": []})
        response = client.post(
            reverse("step_linebot:line_callback", args=[owner.pk]),
            data=body, content_type="application/json", HTTP_X_LINE_SIGNATURE=sign(body),
        )
        assert response.status_code == 200
        assert response.content == b"OK"

    def test_invalid_signature(self, client, owner):
        body = json.dumps({"destination": "Uxxxxxxxx", "events": []})
        response = client.post(
            reverse("step_linebot:line_callback", args=[owner.pk]),
            data=body, content_type="application/json", HTTP_X_LINE_SIGNATURE=sign(body, "wrong-secret"),
        )
        assert response.status_code == 400

    def test_unknown_owner(self, client, db):
        response = client.post(reverse("step_linebot:line_callback", args=[999]), data="{}", content_type="application/json")
        assert response.status_code == 404

    def test_get_not_allowed(self, client, owner):
        assert client.get(reverse("step_linebot:line_callback", args=[owner.pk])).status_code == 405


@patch("step_linebot.views.run_scheduled_delivery")
@patch("step_linebot.views.reply_to_line_user")
@patch("step_linebot.views.get_line_profile", return_value=("太郎", "https://example.com/p.png"))
class TestFollow:

    def test_greeting_message(self, get_profile, reply, run, owner):
        GreetingSetting.objects.create(owner=owner, greeting_type="message", greeting_message="[LINE_NAME_SAN]、ようこそ")

        handle_follow(owner.pk, event())

        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert friend.display_name == "太郎"
        assert reply.call_args.args[2] == "太郎さん、ようこそ"
        run.assert_not_called()

    def test_greeting_scenario(self, get_profile, reply, run, owner, scenario, invite):
        GreetingSetting.objects.create(
            owner=owner, greeting_type="scenario", scenario=scenario, scenario_invite_code=invite.invite_code,
        )

        handle_follow(owner.pk, event())

        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert StepDeliveryTracking.objects.filter(friend=friend).count() == 3
        assert friend.registration_source == "follow"
        assert run.call_args.kwargs["friend_id"] == friend.id
        reply.assert_not_called()

    def test_maintenance_mode(self, get_profile, reply, run, owner):
        GreetingSetting.objects.create(owner=owner, greeting_type="message", greeting_message="hello")
        set_maintenance_mode(True)

        handle_follow(owner.pk, event())

        assert "メンテナンス" in reply.call_args.args[2]
        assert LineFriend.objects.filter(line_user_id=LINE_USER_ID).exists()


class TestOtherEvents:

    def test_unfollow_exits_pending_rows(self, owner, scenario, invite):
        from step_linebot.utils.scenario import register_friend_to_scenario

        register_friend_to_scenario(LINE_USER_ID, invite.invite_code)
        handle_unfollow(owner.pk, event())

        friend = LineFriend.objects.get(line_user_id=LINE_USER_ID)
        assert friend.is_blocked is True
        assert set(StepDeliveryTracking.objects.values_list("status", flat=True)) == {"exited"}

    @patch("step_linebot.views.reply_to_line_user")
    def test_text_message_saved_and_echoed(self, reply, owner, friend):
        handle_text_message(owner.pk, event(message=SimpleNamespace(text="こんにちは", id="m-1")))

        chat = ChatMessage.objects.get(friend=friend)
        assert (chat.message_type, chat.message_text, chat.line_message_id) == ("incoming", "こんにちは", "m-1")
        assert reply.call_args.args[2] == "受信しました: こんにちは"

    @patch("step_linebot.views.run_scheduled_delivery")
    @patch("step_linebot.views.reply_to_line_user")
    def test_restore_postback(self, reply, run, owner, friend, scenario):
        data = f"action=restore_access&scenario_id={scenario.id}"
        handle_postback(owner.pk, event(postback=SimpleNamespace(data=data)))

        assert reply.call_args.args[2] == "アクセスを復活しました。"
        assert StepDeliveryTracking.objects.filter(friend=friend, status="ready").count() == 1
        run.assert_called_once()

    @patch("step_linebot.views.reply_to_line_user")
    def test_restore_postback_unknown_scenario(self, reply, owner, friend):
        data = "action=restore_access&scenario_id=00000000-0000-0000-0000-000000000000"
        handle_postback(owner.pk, event(postback=SimpleNamespace(data=data)))
        assert reply.call_args.args[2] == "アクセスの復活に失敗しました。"

    @patch("step_linebot.views.reply_to_line_user")
    def test_other_postback_ignored(self, reply, owner):
        handle_postback(owner.pk, event(postback=SimpleNamespace(data="action=other")))
        reply.assert_not_called()
