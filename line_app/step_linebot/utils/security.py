import hmac
import re
from urllib.parse import urlparse

from django.conf import settings
from django.core.cache import cache

from logger.set_logger import start_logger

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])

LINE_USER_ID_PATTERN = re.compile(r"^U[0-9a-fA-F]{32}$")
INVITE_CODE_PATTERN = re.compile(r"^[a-zA-Z0-9]{8,32}$")
SHORT_UID_PATTERN = re.compile(r"^[A-Z0-9]{6}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

TAG_PATTERN = re.compile(r"<[^>]*>")
SCRIPT_SCHEMES = re.compile(r"(javascript|data|vbscript):", re.IGNORECASE)
EVENT_HANDLER = re.compile(r"on\w+\s*=", re.IGNORECASE)


def validate_line_user_id(user_id) -> bool:
    return isinstance(user_id, str) and bool(LINE_USER_ID_PATTERN.match(user_id))


def validate_invite_code(code) -> bool:
    return isinstance(code, str) and bool(INVITE_CODE_PATTERN.match(code))


def validate_short_uid(uid) -> bool:
    return isinstance(uid, str) and bool(SHORT_UID_PATTERN.match(uid))


def validate_email(email) -> bool:
    return isinstance(email, str) and len(email) <= 254 and bool(EMAIL_PATTERN.match(email))


def validate_url(url) -> bool:
    if not isinstance(url, str) or len(url) > 2048:
        return False
    parsed = urlparse(url)
    return parsed.scheme == "https" and bool(parsed.netloc)


def sanitize_text_input(text, max_length=1000) -> str:
    if not isinstance(text, str):
        return ""
    text = TAG_PATTERN.sub("", text)
    text = SCRIPT_SCHEMES.sub("", text)
    text = EVENT_HANDLER.sub("", text)
    return text.strip()[:max_length]


def sanitize_display_name(name) -> str:
    # タグだけ除去して100文字に丸める
    if not isinstance(name, str):
        return ""
    return TAG_PATTERN.sub("", name).strip()[:100]


def validate_display_name(name) -> bool:
    sanitized = sanitize_text_input(name, max_length=101)
    return 1 <= len(sanitized) <= 100


def secure_compare(a, b) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(str(a).encode("utf-8"), str(b).encode("utf-8"))


def get_client_ip(request) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("HTTP_X_REAL_IP") or request.META.get("REMOTE_ADDR", "unknown")


class RateLimiter:
    """
    固定ウィンドウ方式のレート制限 (Django のキャッシュに回数を保存する)
    """

    def __init__(self, prefix, max_attempts, window_seconds):
        self.prefix = prefix
        self.max_attempts = int(max_attempts)
        self.window_seconds = int(window_seconds)

    @classmethod
    def from_config(cls, name):
        max_attempts, window = conf["RATE_LIMIT"][name]
        return cls(name.lower(), max_attempts, window)

    def is_allowed(self, key) -> bool:
        cache_key = f"ratelimit:{self.prefix}:{key}"
        # 初回はウィンドウ長の期限付きで 0 を登録
        cache.add(cache_key, 0, timeout=self.window_seconds)
        try:
            count = cache.incr(cache_key)
        except ValueError:
            cache.set(cache_key, 1, timeout=self.window_seconds)
            count = 1

        if count > self.max_attempts:
            logger.warning(f"[Rate Limit] {self.prefix} key: {key} ({count}/{self.max_attempts})")
            return False
        return True


def apply_secure_headers(response):
    response["X-Content-Type-Options"] = "nosniff"
    response["X-Frame-Options"] = "DENY"
    response["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response["Cache-Control"] = "no-store"
    return response


def log_security_event(event_type, user=None, details=None, request=None, tabs=0):
    from step_linebot.models import SecurityEvent

    indent = "\t" * tabs
    ip = get_client_ip(request) if request is not None else ""
    logger.info(f"{indent}[Security Event] {event_type} user: {getattr(user, 'pk', None)}, ip: {ip}")
    SecurityEvent.objects.create(
        user=user if getattr(user, "pk", None) else None,
        event_type=event_type,
        details=details or {},
        ip_address=ip,
    )
