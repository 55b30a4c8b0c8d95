import requests
from django.conf import settings

# 自作モジュールのインポート
from logger.set_logger import start_logger
from logger.ansi import *
from step_linebot.utils.errors import LineApiError

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

API_BASE = "https://api.line.me/v2/bot"
DATA_API_BASE = "https://api-data.line.me/v2/bot"
MENU_WIDTH = 2500
MENU_HEIGHTS = {"full": 1686, "half": 843}
TIMEOUT = 10


def _headers(access_token, content_type=None):
    headers = {"Authorization": f"Bearer {access_token}"}
    if content_type:
        headers["Content-Type"] = content_type
    return headers


def _check(response, action, tabs=0):
    if response.status_code // 100 != 2:
        indent = "\t" * tabs
        logger.error(f"{indent}[RichMenu {action} Failed] status: {response.status_code}, error: {response.text}")
        raise LineApiError(f"{action} failed: {response.status_code} {response.text}", response.status_code)
    return response


def build_action(action_type, value, label=""):
    """
    タップ領域のアクション. richmenuswitch の value は "エイリアスID" または "エイリアスID|data"
    """
    if action_type == "uri":
        return {"type": "uri", "uri": value}
    if action_type == "message":
        return {"type": "message", "text": value}
    if action_type == "postback":
        return {"type": "postback", "data": value}
    if action_type == "richmenuswitch":
        alias_id, _, data = value.partition("|")
        return {"type": "richmenuswitch", "richMenuAliasId": alias_id, "data": data or f"switch={alias_id}"}
    raise ValueError(f"Unknown action type: {action_type}")


def build_line_richmenu(menu_data, tap_areas):
    """
    割合指定のタップ領域を LINE のピクセル指定に変換する

    Parameters:
        menu_data: {"name", "chat_bar_text", "size": "full"|"half", "selected"}
        tap_areas: [{"x", "y", "width", "height" (0-100), "action_type", "action_value"}]
    """
    size = menu_data.get("size", "full")
    if size not in MENU_HEIGHTS:
        raise ValueError(f"Unknown rich menu size: {size}")
    height = MENU_HEIGHTS[size]

    areas = []
    for area in tap_areas:
        x = round(float(area["x"]) / 100 * MENU_WIDTH)
        y = round(float(area["y"]) / 100 * height)
        areas.append({
            "bounds": {
                "x": x,
                "y": y,
                "width": min(round(float(area["width"]) / 100 * MENU_WIDTH), MENU_WIDTH - x),
                "height": min(round(float(area["height"]) / 100 * height), height - y),
            },
            "action": build_action(area["action_type"], area.get("action_value", "")),
        })

    return {
        "size": {"width": MENU_WIDTH, "height": height},
        "selected": bool(menu_data.get("selected", False)),
        "name": menu_data["name"][:300],
        "chatBarText": (menu_data.get("chat_bar_text") or "メニュー")[:14],
        "areas": areas,
    }


def create_richmenu(access_token, richmenu_data, tabs=0) -> str:
    indent = "\t" * tabs
    response = requests.post(
        f"{API_BASE}/richmenu",
        headers=_headers(access_token, "application/json"),
        json=richmenu_data,
        timeout=TIMEOUT,
    )
    richmenu_id = _check(response, "Creation", tabs).json()["richMenuId"]
    logger.info(f"{indent}[RichMenu Created] richmenu_id: {richmenu_id}, name: {richmenu_data['name']}")
    return richmenu_id


def upload_richmenu_image(access_token, richmenu_id, image, content_type="image/png", tabs=0):
    indent = "\t" * tabs
    response = requests.post(
        f"{DATA_API_BASE}/richmenu/{richmenu_id}/content",
        headers=_headers(access_token, content_type),
        data=image,
        timeout=30,
    )
    _check(response, "Image Upload", tabs)
    logger.info(f"{indent}[RichMenu Image Upload Success] richmenu_id: {richmenu_id}")


def fetch_image(url, tabs=0):
    """
    背景画像を取得し (bytes, content_type) を返す
    """
    response = requests.get(url, timeout=30)
    if response.status_code != 200:
        raise LineApiError(f"Failed to fetch image: {response.status_code}", response.status_code)
    content_type = response.headers.get("Content-Type", "image/png").split(";")[0]
    if content_type not in ("image/png", "image/jpeg"):
        content_type = "image/png"
    return response.content, content_type


def set_default_richmenu(access_token, richmenu_id, tabs=0):
    indent = "\t" * tabs
    response = requests.post(f"{API_BASE}/user/all/richmenu/{richmenu_id}", headers=_headers(access_token), timeout=TIMEOUT)
    _check(response, "Set Default", tabs)
    logger.info(f"{indent}[RichMenu Default] richmenu_id: {richmenu_id}")


def apply_richmenu(access_token, richmenu_id, user_id, tabs=0):
    indent = "\t" * tabs
    response = requests.post(
        f"{API_BASE}/user/{user_id}/richmenu/{richmenu_id}", headers=_headers(access_token), timeout=TIMEOUT
    )
    _check(response, "Apply", tabs)
    logger.debug(f"{indent}[RichMenu Applied] richmenu_id: {richmenu_id}, user: {user_id}")


def get_user_richmenu(access_token, user_id, tabs=0):
    """
    ユーザに紐づくリッチメニューIDを返す. 未設定なら None
    """
    response = requests.get(f"{API_BASE}/user/{user_id}/richmenu", headers=_headers(access_token), timeout=TIMEOUT)
    if response.status_code == 404:
        return None
    return _check(response, "Get User", tabs).json().get("richMenuId")


def cancel_richmenu(access_token, user_id, tabs=0):
    indent = "\t" * tabs
    response = requests.delete(f"{API_BASE}/user/{user_id}/richmenu", headers=_headers(access_token), timeout=TIMEOUT)
    _check(response, "Cancel", tabs)
    logger.debug(f"{indent}[RichMenu Canceled] user: {user_id}")


def list_richmenus(access_token, tabs=0):
    response = requests.get(f"{API_BASE}/richmenu/list", headers=_headers(access_token), timeout=TIMEOUT)
    return _check(response, "List", tabs).json().get("richmenus", [])


def delete_richmenu(access_token, richmenu_id, tabs=0):
    indent = "\t" * tabs
    response = requests.delete(f"{API_BASE}/richmenu/{richmenu_id}", headers=_headers(access_token), timeout=TIMEOUT)
    _check(response, "Delete", tabs)
    logger.info(f"{indent}[RichMenu Deleted] richmenu_id: {richmenu_id}")
