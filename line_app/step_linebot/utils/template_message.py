from django.conf import settings
from linebot.v3.messaging import (
    ApiClient,
    BroadcastRequest,
    Configuration,
    MessagingApi,
    PushMessageRequest,
    ReplyMessageRequest,
    TextMessage,
)

# 自作モジュールのインポート
from logger.set_logger import start_logger
from step_linebot.utils.errors import DeliveryError
from step_linebot.utils.tool import split_message

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

MAX_MESSAGES_PER_REQUEST = 5


def get_configuration(profile) -> Configuration:
    """
    オーナーごとのアクセストークンから Configuration を作る
    """
    access_token = profile.get_credential("line_channel_access_token") if profile else ""
    if not access_token:
        raise DeliveryError("LINE access token not found")
    return Configuration(access_token=access_token)


def _limit(messages, tabs=0):
    # LINE Messaging APIの仕様では、1回のリクエストで送信できるメッセージは最大5つまで
    if len(messages) > MAX_MESSAGES_PER_REQUEST:
        indent = "\t" * tabs
        logger.warning(f"{indent}[Too Many Message] num_msgs:{len(messages)}. Only the first 5 will be sent.")
        return messages[:MAX_MESSAGES_PER_REQUEST]
    return messages


def reply_messages(configuration, reply_token, messages, tabs=0):
    with ApiClient(configuration) as api_client:
        line_bot_api = MessagingApi(api_client)
        line_bot_api.reply_message_with_http_info(
            ReplyMessageRequest(reply_token=reply_token, messages=_limit(messages, tabs))
        )


def reply_to_line_user(configuration, reply_token, message: str, split=True, tabs=0):
    msgs = split_message(message) if split else [TextMessage(text=message)]
    reply_messages(configuration, reply_token, msgs, tabs=tabs)


def push_messages(configuration, user_id, messages, tabs=0):
    indent = "\t" * tabs
    logger.info(f"{indent}[Push Message] user_id: {user_id}, num_msgs: {len(messages)}")
    with ApiClient(configuration) as api_client:
        line_bot_api = MessagingApi(api_client)
        line_bot_api.push_message_with_http_info(
            PushMessageRequest(to=user_id, messages=_limit(messages, tabs))
        )


def push_to_line_user(configuration, user_id, message: str, split=True, tabs=0):
    """
    指定されたユーザにテキストをプッシュ送信する
    """
    msgs = split_message(message) if split else [TextMessage(text=message)]
    push_messages(configuration, user_id, msgs, tabs=tabs)


def broadcast_message(configuration, message: str, tabs=0):
    indent = "\t" * tabs
    current_usage, quota = check_message_quota(configuration)
    with ApiClient(configuration) as api_client:
        line_bot_api = MessagingApi(api_client)
        line_bot_api.broadcast_with_http_info(BroadcastRequest(messages=split_message(message)))

    updated_usage, _ = check_message_quota(configuration)
    logger.info(f"{indent}[Broadcast Usage] {current_usage}/{quota} -> {updated_usage}/{quota}")


def check_message_quota(configuration):
    """
    今月の送信数と上限を返す. 上限なしの場合 quota は None
    """
    with ApiClient(configuration) as api_client:
        messaging_api = MessagingApi(api_client)
        quota = messaging_api.get_message_quota()
        consumption = messaging_api.get_message_quota_consumption()
        limit = quota.value if quota.type == "limited" else None
        return consumption.total_usage, limit


def get_line_profile(configuration, user_id):
    """
    (display_name, picture_url) を返す
    """
    with ApiClient(configuration) as api_client:
        profile = MessagingApi(api_client).get_profile(user_id)
        return profile.display_name, profile.picture_url or ""


def get_follower_ids(configuration, tabs=0):
    indent = "\t" * tabs
    user_ids = []
    start = None
    with ApiClient(configuration) as api_client:
        line_bot_api = MessagingApi(api_client)
        while True:
            response = line_bot_api.get_followers(start=start, limit=1000)
            user_ids.extend(response.user_ids)
            start = response.next
            if not start:
                break
    logger.debug(f"{indent}[Followers] {len(user_ids)} users")
    return user_ids
