from urllib.parse import urlencode

import requests
from django.conf import settings

# 自作モジュールのインポート
from logger.set_logger import start_logger
from step_linebot.utils.errors import LineApiError

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

AUTHORIZE_URL = "https://access.line.me/oauth2/v2.1/authorize"
TOKEN_URL = "https://api.line.me/oauth2/v2.1/token"
PROFILE_URL = "https://api.line.me/v2/profile"


def build_authorize_url(channel_id, redirect_uri, state) -> str:
    params = {
        "response_type": "code",
        "client_id": channel_id,
        "redirect_uri": redirect_uri,
        "state": state,
        "scope": "profile openid",
        "bot_prompt": "aggressive",
        "prompt": "consent",
        "ui_locales": "ja-JP",
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code(code, redirect_uri, channel_id, channel_secret, tabs=0) -> dict:
    indent = "\t" * tabs
    response = requests.post(
        TOKEN_URL,
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": channel_id,
            "client_secret": channel_secret,
        },
        headers={"Content-Type": "application/x-www-form-urlencoded"},
        timeout=10,
    )
    if response.status_code != 200:
        logger.error(f"{indent}[Login Token Failed] status: {response.status_code}, error: {response.text}")
        raise LineApiError("Token exchange failed", response.status_code)
    return response.json()


def get_login_profile(access_token, tabs=0) -> dict:
    """
    {"userId", "displayName", "pictureUrl"} を返す (LIFF のアクセストークンでも可)
    """
    indent = "\t" * tabs
    response = requests.get(PROFILE_URL, headers={"Authorization": f"Bearer {access_token}"}, timeout=10)
    if response.status_code != 200:
        logger.error(f"{indent}[Login Profile Failed] status: {response.status_code}, error: {response.text}")
        raise LineApiError("Profile fetch failed", response.status_code)
    return response.json()
