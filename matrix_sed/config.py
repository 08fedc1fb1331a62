"""
Configuration loading.

Sources, lowest to highest precedence:
  1. config.yaml (optional)
  2. environment: MATRIX_SERVER, MATRIX_USERNAME, MATRIX_PASSWORD
  3. command-line flags

config.yaml layout::

    data_dir: data
    logging:
      level: INFO
    matrix:
      homeserver: https://matrix.example.org
      username: sedbot
      password: ""                      # empty -> prompt on first login
      device_name: matrix-sed
      delete_other_devices: false
      tolerate_device_cleanup_failure: false
"""

import argparse
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

import yaml

from matrix_sed.core.types import ConfigError
from matrix_sed.infra.paths import CONFIG_FILE, DATA_DIR
from matrix_sed.interfaces.connection import DEFAULT_DEVICE_NAME


@dataclass
class BotConfig:
    homeserver: str
    username: str
    password: str = ""
    device_name: str = DEFAULT_DEVICE_NAME
    delete_other_devices: bool = False
    tolerate_device_cleanup_failure: bool = False
    data_dir: Path = DATA_DIR
    log_level: str = "INFO"

    def __repr__(self) -> str:
        masked = "***" if self.password else ""
        return (
            f"BotConfig(homeserver={self.homeserver!r}, username={self.username!r}, "
            f"password={masked!r}, data_dir={str(self.data_dir)!r})"
        )


def load_config(path: Path = CONFIG_FILE, required: bool = False) -> dict:
    """Read *path* as YAML.  A missing file yields ``{}`` unless *required*."""
    if not path.exists():
        if required:
            raise ConfigError(f"{path} not found")
        return {}
    try:
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"cannot parse {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} does not contain a YAML mapping at root")
    return data


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="matrix-sed",
        description="Matrix bot that applies sed-style corrections to messages",
    )
    p.add_argument("-s", "--server", help="URL of the homeserver to connect to")
    p.add_argument("-u", "--username", help="username of the bot")
    p.add_argument("-p", "--password", help="password of the bot (prompted if omitted)")
    p.add_argument("-c", "--config", type=Path, default=CONFIG_FILE,
                   help="path to config.yaml (default: %(default)s)")
    p.add_argument("--data-dir", type=Path, help="directory for session, store and logs")
    p.add_argument("--delete-other-devices", action="store_true", default=None,
                   help="log out every other session of the bot account at startup")
    return p.parse_args(argv)


def _as_bool(value, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    raise ConfigError(f"matrix.{name} must be true or false")


def build_config(
    raw: dict,
    env: Mapping[str, str] = os.environ,
    args: Optional[argparse.Namespace] = None,
) -> BotConfig:
    """Merge file, environment and CLI values into a :class:`BotConfig`."""
    matrix = raw.get("matrix") or {}
    if not isinstance(matrix, dict):
        raise ConfigError("'matrix' section must be a mapping")

    homeserver = matrix.get("homeserver") or ""
    username = matrix.get("username") or matrix.get("user_id") or ""
    password = matrix.get("password") or ""
    data_dir = Path(raw.get("data_dir") or DATA_DIR)
    delete_other_devices = _as_bool(matrix.get("delete_other_devices"), "delete_other_devices")

    homeserver = env.get("MATRIX_SERVER") or homeserver
    username = env.get("MATRIX_USERNAME") or username
    password = env.get("MATRIX_PASSWORD") or password

    if args is not None:
        homeserver = args.server or homeserver
        username = args.username or username
        password = args.password or password
        if args.data_dir is not None:
            data_dir = args.data_dir
        if args.delete_other_devices:
            delete_other_devices = True

    if not homeserver:
        raise ConfigError("no homeserver configured (matrix.homeserver, MATRIX_SERVER or --server)")
    if not username:
        raise ConfigError("no username configured (matrix.username, MATRIX_USERNAME or --username)")

    return BotConfig(
        homeserver=homeserver,
        username=username,
        password=password,
        device_name=matrix.get("device_name") or DEFAULT_DEVICE_NAME,
        delete_other_devices=delete_other_devices,
        tolerate_device_cleanup_failure=_as_bool(
            matrix.get("tolerate_device_cleanup_failure"), "tolerate_device_cleanup_failure",
        ),
        data_dir=data_dir,
        log_level=str((raw.get("logging") or {}).get("level", "INFO")).upper(),
    )
