"""Canonical data-directory paths used throughout matrix_sed."""

from pathlib import Path

DATA_DIR = Path("data")
CONFIG_FILE = Path("config.yaml")

SESSION_FILE_NAME = "session.json"
LOG_DIR_NAME = "logs"
STORE_DIR_NAME = "store"
STATE_DB_NAME = "state.db"
CRYPTO_DB_NAME = "crypto.db"


def session_file(data_dir: Path = DATA_DIR) -> Path:
    return data_dir / SESSION_FILE_NAME


def log_dir(data_dir: Path = DATA_DIR) -> Path:
    return data_dir / LOG_DIR_NAME


def store_root(data_dir: Path = DATA_DIR) -> Path:
    return data_dir / STORE_DIR_NAME
