"""
Unit tests for rich menu link resolution and rich menu payload building.
"""
from types import SimpleNamespace

import pytest

from step_linebot.utils.links import append_query, normalize_uid, resolve_rich_menu_target
from step_linebot.utils.richmenu import MENU_WIDTH, build_action, build_line_richmenu

APP_ORIGINS = ("https://app.example.com",)


class TestNormalizeUid:

    @pytest.mark.parametrize("value", [None, "", "[UID]", "UID", "undefined", "null", "  "])
    def test_placeholders(self, value):
        assert normalize_uid(value) == ""

    def test_real_uid(self):
        assert normalize_uid(" ABC123 ") == "ABC123"


class TestAppendQuery:

    def test_adds_missing_key(self):
        assert append_query("https://x.test/a?b=1", uid="ABC123") == "https://x.test/a?b=1&uid=ABC123"

    def test_keeps_existing_value(self):
        assert append_query("https://x.test/a?uid=ZZZ999", uid="ABC123") == "https://x.test/a?uid=ZZZ999"


class TestResolveRichMenuTarget:
    """Rich menu targets are expanded per friend."""

    friend = SimpleNamespace(short_uid="ABC123", display_name="太郎")

    def test_uid_added_to_member_site(self):
        result = resolve_rich_menu_target("https://app.example.com/member-site/abc", self.friend, APP_ORIGINS)
        assert result == {"url": "https://app.example.com/member-site/abc?uid=ABC123", "openExternal": False}

    def test_tokens_replaced_and_external(self):
        result = resolve_rich_menu_target("https://other.test/hello?name=[LINE_NAME_SAN]", self.friend, APP_ORIGINS)
        assert result["url"] == "https://other.test/hello?name=太郎さん"
        assert result["openExternal"] is True

    def test_path_without_uid_support(self):
        result = resolve_rich_menu_target("https://app.example.com/blog/1", self.friend, APP_ORIGINS)
        assert result["url"] == "https://app.example.com/blog/1"

    def test_without_friend(self):
        result = resolve_rich_menu_target("https://app.example.com/form/x", None, APP_ORIGINS)
        assert result["url"] == "https://app.example.com/form/x"

    def test_relative_url_is_internal(self):
        assert resolve_rich_menu_target("/cms/f/abc", self.friend, APP_ORIGINS) == {
            "url": "/cms/f/abc?uid=ABC123",
            "openExternal": False,
        }


class TestBuildRichMenu:

    def test_percentages_converted_to_pixels(self):
        menu = build_line_richmenu(
            {"name": "main", "size": "half", "chat_bar_text": "メニューを開いてください"},
            [{"x": 0, "y": 0, "width": 50, "height": 100, "action_type": "uri", "action_value": "https://x.test"},
             {"x": 50, "y": 0, "width": 60, "height": 100, "action_type": "message", "action_value": "hi"}],
        )
        assert menu["size"] == {"width": MENU_WIDTH, "height": 843}
        assert menu["chatBarText"] == "メニューを開いてください"[:14]
        assert menu["areas"][0]["bounds"] == {"x": 0, "y": 0, "width": 1250, "height": 843}
        # 画像の右端でクランプされる
        assert menu["areas"][1]["bounds"]["width"] == 1250
        assert menu["areas"][1]["action"] == {"type": "message", "text": "hi"}

    def test_unknown_size(self):
        with pytest.raises(ValueError):
            build_line_richmenu({"name": "x", "size": "huge"}, [])

    def test_richmenuswitch_action(self):
        assert build_action("richmenuswitch", "alias-b") == {
            "type": "richmenuswitch", "richMenuAliasId": "alias-b", "data": "switch=alias-b",
        }
        assert build_action("richmenuswitch", "alias-b|tab=2")["data"] == "tab=2"

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            build_action("camera", "")
