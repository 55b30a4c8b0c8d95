import json
import secrets
import string
import sys
from functools import lru_cache
from typing import Any, Dict

from django.conf import settings
from linebot.v3.messaging import TextMessage

# 自作モジュールのインポート
from logger.set_logger import start_logger
from logger.ansi import *

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

INVITE_CODE_CHARS = string.ascii_letters + string.digits


@lru_cache(maxsize=1)
def get_public_url() -> str:
    """
    公開URLを返す. NGROK が有効で runserver 中ならトンネルを開設する
    """
    if conf["NGROK"] and "runserver" in sys.argv:
        from pyngrok import ngrok

        url = ngrok.connect(conf["PORT"], "http").public_url
    else:
        url = str(conf["PUBLIC_URL"])
    logger.info(f"{BG}[Public URL]{R} {url}")
    return url.rstrip("/")


def split_message(message: str) -> list:
    """
    "\\n\\n" でメッセージを分割し、TextMessageのリストを返す (1回の送信は最大5件)
    """
    return [TextMessage(text=msg) for msg in message.split("\n\n") if msg][:5]


def generate_invite_code(length: int = 10) -> str:
    from step_linebot.models import ScenarioInviteCode

    while True:
        code = "".join(secrets.choice(INVITE_CODE_CHARS) for _ in range(length))
        if not ScenarioInviteCode.objects.filter(invite_code=code).exists():
            return code


def parse_json_body(request) -> Dict[str, Any]:
    """
    リクエストボディをJSONとして読み込む. 空または不正な場合は ValueError
    """
    if not request.body:
        return {}
    try:
        data = json.loads(request.body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError("Invalid JSON body") from e
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data


def extract_event_info(data: Dict[str, Any]) -> str:
    """
    Webhook のペイロードからログ用の要約を作る (先頭イベントのみ)
    """
    events = data.get("events") or []
    if not events or not isinstance(events[0], dict):
        return "空のeventsを取得"

    event = events[0]
    event_type = event.get("type", "unknown")
    user_id = event.get("source", {}).get("userId", "Unknown")
    summary = f"user: {user_id}\n  type: {event_type}"

    if event_type == "postback":
        summary += f"\n  data: {event.get('postback', {}).get('data', '')}"
    elif event_type == "message":
        message = event.get("message", {})
        summary += f"\n  message_type: {message.get('type')}"
        if message.get("type") == "text":
            summary += f"\n  text: {message.get('text', '')}"
    return summary
