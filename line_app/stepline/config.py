from pathlib import Path

from ruamel.yaml import YAML


# 設定の読み込み
def load_config(file_path):
    yaml = YAML()
    yaml.preserve_quotes = True  # コメントを保持
    with open(file_path, 'r', encoding='utf-8') as file:
        config = yaml.load(file)
    return config


def resolve_paths(conf, base_dir: Path):
    """
    設定ファイル内の相対パスを line_app/ 基準の絶対パスに置き換える
    """
    for key in conf["LOGGER"]:
        conf["LOGGER"][key] = str(base_dir / conf["LOGGER"][key])
    conf["MAINTENANCE_PATH"] = str(base_dir / conf["MAINTENANCE_PATH"])
    if not str(conf["DATABASE"]).startswith("/"):
        conf["DATABASE"] = str(base_dir / conf["DATABASE"])
    return conf
