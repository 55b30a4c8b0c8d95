"""
Unit tests for flex message normalization and token replacement.
"""
from linebot.v3.messaging import TemplateMessage, TextMessage

from step_linebot.utils.flex import (
    DEFAULT_ALT_TEXT,
    RESTORE_DEFAULT_TEXT,
    add_uid_to_form_links,
    build_restore_message,
    name_tokens,
    normalize_flex,
    replace_text_tokens,
    replace_tokens,
    sanitize_flex,
)

FORM_ID = "0b9d6c1e-1f2a-4c3b-9d8e-7f6a5b4c3d2e"
BUBBLE = {"type": "bubble", "body": {"type": "box", "layout": "vertical", "contents": []}}


class TestNameTokens:
    """Display name to [LINE_NAME] / [LINE_NAME_SAN] values."""

    def test_empty_name_falls_back_without_honorific(self):
        assert name_tokens("") == ("あなた", "あなた")
        assert name_tokens(None) == ("あなた", "あなた")

    def test_name_gets_san(self):
        assert name_tokens(" 太郎 ") == ("太郎", "太郎さん")


class TestReplaceTokens:

    def test_san_token_replaced_before_plain_name(self):
        text = "[LINE_NAME_SAN]、こんにちは。[LINE_NAME] / [UID]"
        assert replace_text_tokens(text, "ABC123", "太郎", "太郎さん") == "太郎さん、こんにちは。太郎 / ABC123"

    def test_nested_structures(self):
        node = {"type": "text", "text": "[LINE_NAME]", "contents": [{"text": "[UID]"}, 3]}
        result = replace_tokens(node, "ABC123", "花子", "花子さん")
        assert result == {"type": "text", "text": "花子", "contents": [{"text": "ABC123"}, 3]}


class TestSanitizeFlex:

    def test_text_component_drops_box_only_keys(self):
        node = {"type": "text", "text": "hi", "backgroundColor": "#fff", "padding": "4px", "color": "#000"}
        assert sanitize_flex(node) == {"type": "text", "text": "hi", "color": "#000"}

    def test_box_keeps_background(self):
        node = {"type": "box", "backgroundColor": "#fff", "className": "x", "contents": [
            {"type": "text", "text": "a", "borderRadius": "4px"},
        ]}
        assert sanitize_flex(node) == {"type": "box", "backgroundColor": "#fff", "contents": [{"type": "text", "text": "a"}]}


class TestNormalizeFlex:
    """Stored flex payloads come in several shapes."""

    def test_flex_wrapper(self):
        result = normalize_flex({"type": "flex", "altText": "案内", "contents": BUBBLE})
        assert result["altText"] == "案内"
        assert result["contents"]["type"] == "bubble"

    def test_bare_container_uses_default_alt_text(self):
        result = normalize_flex(BUBBLE)
        assert result["altText"] == DEFAULT_ALT_TEXT

    def test_alt_text_and_contents_pair(self):
        carousel = {"type": "carousel", "contents": [BUBBLE]}
        result = normalize_flex({"altText": "", "contents": carousel}, alt_text="fallback")
        assert result["altText"] == "fallback"
        assert result["contents"]["type"] == "carousel"

    def test_json_string_input(self):
        assert normalize_flex('{"type": "bubble"}') == {"altText": DEFAULT_ALT_TEXT, "contents": {"type": "bubble"}}

    def test_invalid_input(self):
        assert normalize_flex("not json") is None
        assert normalize_flex({"type": "text", "text": "hi"}) is None
        assert normalize_flex(["bubble"]) is None

    def test_alt_text_truncated(self):
        result = normalize_flex({"altText": "a" * 500, "contents": BUBBLE})
        assert len(result["altText"]) == 400

    def test_body_background_from_styles(self):
        bubble = {"type": "bubble", "styles": {"body": {"backgroundColor": "#123456"}},
                  "body": {"type": "box", "layout": "vertical", "contents": []}}
        result = normalize_flex(bubble)
        assert result["contents"]["body"]["backgroundColor"] == "#123456"
        # 入力は変更しない
        assert "backgroundColor" not in bubble["body"]


class TestFormLinks:

    def test_uid_token_is_replaced(self):
        assert add_uid_to_form_links("https://x.test/form/[UID]", "ABC123") == "https://x.test/form/ABC123"

    def test_uid_appended_to_form_link(self):
        text = f"回答はこちら https://x.test/form/{FORM_ID}"
        assert add_uid_to_form_links(text, "ABC123") == f"回答はこちら https://x.test/form/{FORM_ID}?uid=ABC123"

    def test_uid_appended_with_ampersand(self):
        text = f"https://x.test/form/{FORM_ID}?ref=line"
        assert add_uid_to_form_links(text, "ABC123") == f"https://x.test/form/{FORM_ID}?ref=line&uid=ABC123"

    def test_existing_uid_kept(self):
        text = f"https://x.test/form/{FORM_ID}?uid=ZZZ999"
        assert add_uid_to_form_links(text, "ABC123") == text

    def test_other_links_untouched(self):
        text = "https://x.test/blog/1"
        assert add_uid_to_form_links(text, "ABC123") == text


class TestRestoreMessage:

    def test_button_with_target_scenario(self):
        message = build_restore_message({"text": "復活しますか", "target_scenario_id": "abc"})
        assert isinstance(message, TemplateMessage)
        assert message.template.actions[0].data == "action=restore_access&scenario_id=abc"

    def test_text_without_target(self):
        message = build_restore_message({})
        assert isinstance(message, TextMessage)
        assert message.text == RESTORE_DEFAULT_TEXT
