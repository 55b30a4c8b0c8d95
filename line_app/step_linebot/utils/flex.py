"""
Flex メッセージの整形とステップメッセージからの LINE メッセージ生成

- replace_tokens        : [UID] / [LINE_NAME] / [LINE_NAME_SAN] を再帰的に置換
- sanitize_flex         : LINE が受け付けないキーをコンポーネント種別ごとに除去
- normalize_flex        : 保存形式の揺れを吸収して {type: flex, altText, contents} に揃える
- add_uid_to_form_links : フォームURLに uid を付与
"""
import copy
import json
import re

from django.conf import settings
from linebot.v3.messaging import (
    ButtonsTemplate,
    FlexContainer,
    FlexMessage,
    ImageMessage,
    PostbackAction,
    TemplateMessage,
    TextMessage,
)

from logger.set_logger import start_logger

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

DEFAULT_ALT_TEXT = "お知らせ"
DEFAULT_NAME = "あなた"
RESTORE_DEFAULT_TEXT = "アクセスを復活しますか？"
EMPTY_MESSAGE_TEXT = "メッセージが設定されていません"

INVALID_KEYS = {
    "text": {"backgroundColor", "padding", "borderRadius", "borderWidth", "borderColor", "className"},
    "image": {"className"},
    "box": {"className"},
    "button": {"className"},
}

FORM_LINK_PATTERN = re.compile(r"(https?://[^\s\"'<>]+/form/[0-9a-fA-F-]{36}[^\s\"'<>]*)")


def clone(obj):
    return copy.deepcopy(obj)


def name_tokens(display_name):
    """
    (line_name, line_name_san) を返す. 名前がない場合は "あなた" (敬称なし)
    """
    name = (display_name or "").strip()
    if not name:
        return DEFAULT_NAME, DEFAULT_NAME
    return name, f"{name}さん"


def replace_text_tokens(text: str, uid="", line_name=DEFAULT_NAME, line_name_san=DEFAULT_NAME) -> str:
    # [LINE_NAME_SAN] は [LINE_NAME] より先に置換する
    return (
        text.replace("[UID]", uid or "")
        .replace("[LINE_NAME_SAN]", line_name_san)
        .replace("[LINE_NAME]", line_name)
    )


def replace_tokens(node, uid="", line_name=DEFAULT_NAME, line_name_san=DEFAULT_NAME):
    if isinstance(node, str):
        return replace_text_tokens(node, uid, line_name, line_name_san)
    if isinstance(node, list):
        return [replace_tokens(item, uid, line_name, line_name_san) for item in node]
    if isinstance(node, dict):
        return {key: replace_tokens(value, uid, line_name, line_name_san) for key, value in node.items()}
    return node


def sanitize_flex(node):
    if isinstance(node, list):
        return [sanitize_flex(item) for item in node]
    if not isinstance(node, dict):
        return node

    invalid = INVALID_KEYS.get(node.get("type"), set())
    return {key: sanitize_flex(value) for key, value in node.items() if key not in invalid}


def _is_container(node) -> bool:
    return isinstance(node, dict) and node.get("type") in ("bubble", "carousel")


def _apply_body_background(container):
    """
    エディタ独自の styles.body.backgroundColor をバブルの body に反映する
    """
    if container.get("type") != "bubble":
        return container
    color = (container.get("styles") or {}).get("body", {}).get("backgroundColor")
    body = container.get("body")
    if color and isinstance(body, dict) and not body.get("backgroundColor"):
        body["backgroundColor"] = color
    return container


def normalize_flex(data, alt_text=None):
    """
    {"altText": str, "contents": bubble|carousel} を返す. 解釈できない場合は None
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return None
    if not isinstance(data, dict):
        return None

    if data.get("type") == "flex" and _is_container(data.get("contents")):
        alt = (data.get("altText") or "").strip() or alt_text or DEFAULT_ALT_TEXT
        contents = data["contents"]
    elif _is_container(data):
        alt = alt_text or DEFAULT_ALT_TEXT
        contents = data
    elif _is_container(data.get("contents")):
        alt = (data.get("altText") or "").strip() or alt_text or DEFAULT_ALT_TEXT
        contents = data["contents"]
    else:
        return None

    contents = _apply_body_background(sanitize_flex(clone(contents)))
    return {"altText": alt[:400], "contents": contents}


def to_flex_message(normalized) -> FlexMessage:
    return FlexMessage(
        alt_text=normalized["altText"],
        contents=FlexContainer.from_dict(normalized["contents"]),
    )


def add_uid_to_form_links(text: str, uid: str) -> str:
    """
    [UID] を置換する. トークンがなければ /form/<uuid> 形式のリンクに uid= を付与する
    """
    if not text or not uid:
        return text
    if "[UID]" in text:
        return text.replace("[UID]", uid)

    def _append(match):
        url = match.group(1)
        if re.search(r"[?&]uid=", url):
            return url
        return url + ("&" if "?" in url else "?") + f"uid={uid}"

    return FORM_LINK_PATTERN.sub(_append, text)


def build_line_messages(step_message, friend, tabs=0):
    """
    ステップメッセージ1件から送信用のメッセージリストを作る
    """
    indent = "\t" * tabs
    uid = friend.short_uid
    line_name, line_name_san = name_tokens(friend.display_name)
    message_type = step_message.message_type

    if message_type == "text":
        text = replace_text_tokens(step_message.content, uid, line_name, line_name_san)
        return [TextMessage(text=add_uid_to_form_links(text, uid) or EMPTY_MESSAGE_TEXT)]

    if message_type in ("media", "image"):
        if not step_message.media_url:
            logger.warning(f"{indent}[Build Message] media_url is empty. message: {step_message.pk}")
            return []
        return [ImageMessage(original_content_url=step_message.media_url, preview_image_url=step_message.media_url)]

    if message_type == "flex":
        if step_message.flex_template is not None:
            source = step_message.flex_template.content
        else:
            source = step_message.content
        if isinstance(source, str):
            try:
                source = json.loads(source)
            except json.JSONDecodeError:
                source = None
        normalized = normalize_flex(replace_tokens(source, uid, line_name, line_name_san))
        if normalized is None:
            logger.warning(f"{indent}[Build Message] invalid flex content. message: {step_message.pk}")
            return []
        return [to_flex_message(normalized)]

    if message_type == "restore_access":
        return [build_restore_message(step_message.restore_config or {})]

    return [TextMessage(text=step_message.content or EMPTY_MESSAGE_TEXT)]


def build_restore_message(config):
    """
    アクセス復活メッセージ. 復活先シナリオが設定されていればボタンから復活できる
    """
    if config.get("type") == "image" and config.get("image_url"):
        url = config["image_url"]
        return ImageMessage(original_content_url=url, preview_image_url=url)

    text = config.get("text") or RESTORE_DEFAULT_TEXT
    target = config.get("target_scenario_id")
    if not target:
        return TextMessage(text=text)

    return TemplateMessage(
        alt_text=text[:400],
        template=ButtonsTemplate(
            text=text[:160],
            actions=[
                PostbackAction(
                    label=config.get("button_label", "復活する")[:20],
                    data=f"action=restore_access&scenario_id={target}",
                    display_text=config.get("button_label", "復活する"),
                )
            ],
        ),
    )
