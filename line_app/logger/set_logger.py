import logging
import logging.handlers
import os
import re
import socket

import yaml

from logger.ansi import *

ANSI_PATTERN = re.compile(r'\033\[[0-9;]*m')


class CategoryFilter(logging.Filter):
    def __init__(self, allowed_categories):
        """
        allowed_categories の形式:
            DEBUG:
                - 'delivery'
                - 'webhook'
        extra={'C': <カテゴリ>} 付きのログだけを絞り込み対象とする
        """
        super().__init__()
        self.allowed_categories = allowed_categories or {}

    def filter(self, record):
        category = getattr(record, 'C', None)
        if category is None:
            return True   # カテゴリ指定なしのログは常に出力

        allowed = self.allowed_categories.get(record.levelname)
        if allowed is None:
            return True   # このレベルに制限がない
        return category in allowed


# --- カスタムログレベルを登録 ---
def register_custom_levels(custom_levels):
    for level in custom_levels:
        name = level.get("NAME")
        value = level.get("VALUE")
        if name is None or value is None:
            continue

        logging.addLevelName(value, name)

        def make_log_method(level_value):
            def log_method(self, message, *args, **kwargs):
                if self.isEnabledFor(level_value):
                    self._log(level_value, message, args, **kwargs)
            return log_method

        # logger.ddebug(...) のように呼び出せるようにする
        setattr(logging.Logger, name.lower(), make_log_method(value))
        setattr(logging, name.upper(), value)


def set_logger_level(logger, custom_levels, logger_level_name):
    standard_levels = dict(logging._nameToLevel)
    if logger_level_name in standard_levels:
        logger.setLevel(standard_levels[logger_level_name])
        return logger

    match = next((lvl for lvl in (custom_levels or []) if lvl.get("NAME") == logger_level_name), None)
    if match is None:
        raise ValueError(f"Unknown log level: {logger_level_name}")
    logger.setLevel(match["VALUE"])
    return logger


def parse_size(value) -> int:
    """
    "10 * 1024 * 1024" のような掛け算表記をバイト数に変換する
    """
    if isinstance(value, int):
        return value
    size = 1
    for part in str(value).split('*'):
        size *= int(part.strip())
    return size


# ─── インデント付きフォーマッタ ─────────────────────────────
class IndentFormatter(logging.Formatter):
    """
    改行後の行頭にプレフィックス幅分の空白を入れて揃えるFormatter
    """
    def __init__(self, fmt, datefmt=None, use_color=False, color_config=None):
        super().__init__(fmt=fmt, datefmt=datefmt, style='%')

        # %(filename)-20s のような幅指定を読み取る
        widths = {field: int(width) for field, width in re.findall(r'%\((\w+)\)-(\d+)s', fmt)}
        self.filename_width = widths.get('filename', 30)
        self.funcname_width = widths.get('funcName', 30)
        self.lineno_width = widths.get('lineno', 4)
        self.levelname_width = widths.get('levelname', 8)

        self.use_color = use_color
        self.color_config = color_config or {}

    def format(self, record):
        # 他のハンドラと共有するレコードは書き換えず，コピーを整形する
        record = logging.makeLogRecord(record.__dict__)
        record.filename = record.filename[:self.filename_width]
        record.funcName = record.funcName[:self.funcname_width]
        record.lineno = str(record.lineno).rjust(self.lineno_width)
        record.levelname = record.levelname[:self.levelname_width]

        log = super().format(record)
        prefix_length = len(log) - len(record.getMessage())
        if prefix_length > 0:
            log = log.replace('\n', '\n' + ' ' * prefix_length)

        if self.use_color:
            return highlight_log(log, self.color_config)
        return ANSI_PATTERN.sub('', log)


class ColorFormatter(logging.Formatter):
    """
    コンソール用に色付けするフォーマッタ
    """
    def __init__(self, fmt, color_config=None):
        super().__init__(fmt=fmt)
        self.color_config = color_config or {}

    def format(self, record):
        return highlight_log(super().format(record), self.color_config)


# ─── ログの色付け関数 ──────────────────────────────────────
def highlight_log(log, color_config):
    for color, patterns in color_config.items():
        color_code = COLOR_DICT[color]
        for value in patterns or []:
            if isinstance(value, dict):
                pattern, group = value['pattern'], value.get('group', 0)
            else:
                pattern, group = value, 0
            if pattern is None:
                continue
            log = re.sub(
                pattern,
                lambda m: m.group(0).replace(m.group(group), f"{color_code}{m.group(group)}{R}"),
                log,
            )
    return log


# ─── ロガー設定関数 ──────────────────────────────────────────
def setting_logger(config, base_dir=None) -> logging.Logger:
    """
    base_dir: 相対パスの LOG_DIR の基準ディレクトリ (省略時はカレントディレクトリ)
    """
    logger_level = config['LOGGER_LEVEL'].upper()
    module_name = config['MODULE_NAME']
    color_config = config.get('COLOR_CONFIG') or {}
    custom_levels = config.get('CUSTOM_LEVELS') or []
    enabled_categories = config.get('ENABLED_CATEGORIES') or {}

    log_dir = config.get('LOG_DIR', 'log')
    if base_dir and not os.path.isabs(log_dir):
        log_dir = os.path.normpath(os.path.join(base_dir, log_dir))
    if config.get('USE_PC_NAME', False):
        log_dir = os.path.join(log_dir, socket.gethostname())
    os.makedirs(log_dir, exist_ok=True)
    log_file_path = os.path.join(log_dir, config['LOG_FILE_NAME'] + config['LOG_EXTENSION'])

    register_custom_levels(custom_levels)

    logger = logging.getLogger(module_name) if module_name else logging.getLogger()
    logger = set_logger_level(logger, custom_levels, logger_level)

    # ファイルハンドラ (サイズ・世代管理)
    fh = logging.handlers.RotatingFileHandler(
        filename=log_file_path,
        maxBytes=parse_size(config['MAX_LOG_FILE_SIZE']),
        backupCount=config['BACKUP_COUNT'],
        encoding='utf-8',
    )
    fh.setFormatter(IndentFormatter(config['LOG_FORMAT'] + '%(message)s', config['DATE_FORMAT'],
                                    use_color=False, color_config=color_config))
    fh.addFilter(CategoryFilter(enabled_categories))
    logger.addHandler(fh)

    # コンソールハンドラ
    if config.get('USE_CONSOLE', True):
        ch = logging.StreamHandler()
        if config.get('USE_COLOR', False):
            ch.setFormatter(ColorFormatter('%(message)s', color_config=color_config))
        else:
            ch.setFormatter(logging.Formatter('%(message)s'))
        ch.addFilter(CategoryFilter(enabled_categories))
        logger.addHandler(ch)

    return logger


# ─── 起動用ラッパー ──────────────────────────────────────────
def start_logger(config_path) -> logging.Logger:
    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)
    module_name = config.get('MODULE_NAME', 'main')

    # 既存のloggerがあれば再利用
    logger = logging.getLogger(module_name)
    if logger.handlers:
        return logger

    # LOG_DIR は設定ファイルの置き場所を基準に解決する
    logger = setting_logger(config, base_dir=os.path.dirname(os.path.abspath(config_path)))
    logger.info('#' * 30 + ' Starting the program ' + '#' * 30)
    return logger
