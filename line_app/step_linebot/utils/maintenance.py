import os

import yaml
from django.conf import settings
from watchdog.events import FileSystemEventHandler

# 自作モジュールのインポート
from logger.set_logger import start_logger
from logger.ansi import *
from step_linebot.utils.db_handler import get_all_profiles, get_maintenance_mode, set_maintenance_mode
from step_linebot.utils.template_message import broadcast_message, get_configuration

# ロガーと設定の読み込み
conf = settings.MAIN_CONFIG
logger = start_logger(conf["LOGGER"]["SYSTEM"])


def read_flags(filepath):
    with open(filepath, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return {
        "maintenance": bool(data.get("MAINTENANCE_FLAG", False)),
        "push": bool(data.get("PUSH_FLAG", False)),
        "message": data.get("PUSH_MESSAGE", ""),
        "owner_ids": data.get("OWNER_IDS") or [],
    }


class FileChangeHandler(FileSystemEventHandler):
    """
    メンテナンス設定ファイルを監視する
        MAINTENANCE_FLAG : 変化したらメンテナンスモードを切り替える
        PUSH_FLAG        : False -> True になったら PUSH_MESSAGE を一斉送信する
    """

    def __init__(self, filepath):
        self.filepath = filepath
        self.last_push_flag, self.last_maintenance_flag = self._load_initial_flag()

    def _load_initial_flag(self):
        if not os.path.exists(self.filepath):
            logger.error(f"[Initialization Error] File not found: {self.filepath}")
            return False, get_maintenance_mode()
        try:
            flags = read_flags(self.filepath)
        except yaml.YAMLError as e:
            logger.error(f"[Initialization Error] Failed to read YAML: {e}")
            return False, get_maintenance_mode()
        logger.debug(f"[Initial Load] PUSH_FLAG: {flags['push']}, MAINTENANCE_FLAG: {flags['maintenance']}")
        return flags["push"], flags["maintenance"]

    def on_modified(self, event):
        if not event.src_path.endswith(os.path.basename(self.filepath)):
            return
        try:
            flags = read_flags(event.src_path)
        except yaml.YAMLError as e:
            # 編集途中の保存で発生することがある
            logger.debug(f"[Load Yaml] Failed to read YAML: {repr(e)}")
            return
        self.apply(flags)

    def apply(self, flags):
        if flags["maintenance"] != self.last_maintenance_flag:
            logger.info(f"[File Change] MAINTENANCE_FLAG: {flags['maintenance']}")
            set_maintenance_mode(flags["maintenance"], tabs=1)

        if flags["push"] and not self.last_push_flag:
            logger.info(f"[File Change] PUSH_FLAG: {flags['push']}")
            broadcast_to_owners(flags["message"], flags["owner_ids"], tabs=1)

        self.last_maintenance_flag = flags["maintenance"]
        self.last_push_flag = flags["push"]


def broadcast_to_owners(message, owner_ids=None, tabs=0):
    indent = "\t" * tabs
    if not message:
        logger.warning(f"{indent}[Broadcast Skipped] PUSH_MESSAGE is empty")
        return 0

    sent = 0
    for profile in get_all_profiles(owner_ids):
        try:
            broadcast_message(get_configuration(profile), message, tabs=tabs + 1)
            sent += 1
        except Exception as e:
            logger.error(f"{indent}[Broadcast Failed] owner: {profile.user_id}, {e}")
    logger.info(f"{indent}[Broadcast] owners: {sent}")
    return sent
