# oneshotsg_config.py
import json
import logging
import os

from models import AnalysisConfig

logger = logging.getLogger("OneShotSG.config")

CONFIG_FILE = "config.json"


def default_config() -> dict:
    return AnalysisConfig().to_dict()


def load_config(path: str = CONFIG_FILE) -> dict:
    conf = default_config()

    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                saved = json.load(f)
            if not isinstance(saved, dict):
                raise ValueError("top level is not an object")

            # Legacy: threshold list saved as a single number
            if "threshold_list_db" in saved and not isinstance(saved["threshold_list_db"], list):
                saved["threshold_list_db"] = [saved["threshold_list_db"]]

            conf.update(saved)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable config {path}: {e}")

    return conf


def save_config(data: dict, path: str = CONFIG_FILE) -> None:
    clean_data = {k: v for k, v in (data or {}).items() if not str(k).startswith("file_")}
    with open(path, "w", encoding="utf-8") as f:
        json.dump(clean_data, f, indent=4)
