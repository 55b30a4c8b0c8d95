import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from step_linebot.utils.flex import name_tokens, replace_text_tokens

UID_PLACEHOLDERS = {"", "[UID]", "UID", "undefined", "null"}
UID_PATHS = re.compile(r"/(form|liff-form|liff-form-secure|cms/f|member-site|product-landing|ewp)/")


def normalize_uid(uid):
    if uid is None:
        return ""
    uid = str(uid).strip()
    return "" if uid in UID_PLACEHOLDERS else uid


def append_query(url, **params):
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))
    for key, value in params.items():
        if not query.get(key):
            query[key] = value
    return urlunparse(parsed._replace(query=urlencode(query)))


def resolve_rich_menu_target(target, friend=None, app_origins=()):
    """
    リッチメニューのリンク先を友だち用に展開する

    Returns:
        {"url": str, "openExternal": bool}
    """
    uid = normalize_uid(friend.short_uid if friend else "")
    line_name, line_name_san = name_tokens(friend.display_name if friend else "")
    url = replace_text_tokens(target, uid, line_name, line_name_san)

    parsed = urlparse(url)
    if uid and UID_PATHS.search(parsed.path or ""):
        url = append_query(url, uid=uid)

    origin = f"{parsed.scheme}://{parsed.netloc}" if parsed.netloc else ""
    open_external = bool(origin) and origin not in app_origins
    return {"url": url, "openExternal": open_external}
