"""
Unit tests for the YAML-configured logger.
"""
import logging

import yaml

from logger.set_logger import start_logger


def write_config(path, module_name, log_dir):
    config = {
        "MODULE_NAME": module_name,
        "LOGGER_LEVEL": "DEBUG",
        "USE_CONSOLE": False,
        "LOG_DIR": log_dir,
        "LOG_FILE_NAME": "system",
        "LOG_EXTENSION": ".log",
        "MAX_LOG_FILE_SIZE": "1024 * 1024",
        "BACKUP_COUNT": 1,
        "DATE_FORMAT": "%Y-%m-%d %H:%M:%S",
        "LOG_FORMAT": "%(levelname)-8s | %(filename)-10s:%(lineno)-4s | ",
        "ENABLED_CATEGORIES": {"DEBUG": ["delivery"]},
    }
    path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return str(path)


class CaptureHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestStartLogger:

    def test_other_handlers_see_original_record(self, tmp_path):
        logger = start_logger(write_config(tmp_path / "logger.yaml", "test-shared-record", "log"))
        capture = CaptureHandler()
        capture.setFormatter(logging.Formatter("%(filename)s:%(lineno)d %(levelname)s %(message)s"))
        logger.addHandler(capture)
        try:
            logger.info("[Test] line one\nline two")
        finally:
            logger.removeHandler(capture)

        record = capture.records[0]
        assert isinstance(record.lineno, int)
        assert record.levelname == "INFO"
        assert record.filename == "test_logger.py"
        assert capture.format(record).startswith("test_logger.py:")

    def test_log_dir_relative_to_config_file(self, tmp_path, monkeypatch):
        config_dir = tmp_path / "config" / "logger"
        config_dir.mkdir(parents=True)
        monkeypatch.chdir(tmp_path / "config")

        logger = start_logger(write_config(config_dir / "system.yaml", "test-log-dir", "../../log"))
        logger.info("[Test] written")
        for handler in logger.handlers:
            handler.flush()

        log_file = tmp_path / "log" / "system.log"
        assert log_file.exists()
        assert "[Test] written" in log_file.read_text(encoding="utf-8")

    def test_category_filter(self, tmp_path):
        logger = start_logger(write_config(tmp_path / "logger.yaml", "test-category", "log"))
        logger.debug("[Test] allowed", extra={"C": "delivery"})
        logger.debug("[Test] dropped", extra={"C": "webhook"})
        logger.debug("[Test] plain")
        for handler in logger.handlers:
            handler.flush()

        text = (tmp_path / "log" / "system.log").read_text(encoding="utf-8")
        assert "[Test] allowed" in text
        assert "[Test] plain" in text
        assert "[Test] dropped" not in text
