"""Settings storage for build configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


SETTINGS_PATH = Path(
    os.environ.get(
        "BOARD_IMAGER_SETTINGS_PATH",
        Path.home() / ".config" / "board-imager" / "settings.json",
    )
)

STATE_DIR = Path(
    os.environ.get(
        "BOARD_IMAGER_STATE_DIR",
        Path.home() / ".local" / "state" / "board-imager",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_IMAGE_SIZE_BYTES = 8 * 1024**3
DEFAULT_DEVICE_WAIT_ATTEMPTS = 10
DEFAULT_DEVICE_WAIT_INTERVAL = 1.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "model": "orangepi-rv2",
    "board": "orangepi-rv2",
    "architecture": "riscv64",
    "suite": "trixie",
    "bootstrap_suite": "unstable",
    "mirror": "http://mirrors.tuna.tsinghua.edu.cn/debian",
    "sources_mirror": "https://ports.debian.org/debian-ports/",
    "populator": "debootstrap",
    "no_check_gpg": True,
    "image_size_bytes": DEFAULT_IMAGE_SIZE_BYTES,
    "scheme": "boot-plus-root",
    "output_dir": ".",
    "workdir": "rootfs",
    "boot_env_file": "env_k1-x.txt",
    "boot_files_dir": None,
    "username": "debian",
    "password": "debian",
    "hostname": "debian",
    "timezone": "Asia/Shanghai",
    "extra_packages": [],
    "ledger_path": str(STATE_DIR / "ledger.json"),
    "device_wait_attempts": DEFAULT_DEVICE_WAIT_ATTEMPTS,
    "device_wait_interval": DEFAULT_DEVICE_WAIT_INTERVAL,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class BuildConfig:
    """Resolved configuration for one build."""

    model: str
    board: str
    architecture: str
    suite: str
    bootstrap_suite: str
    mirror: str
    sources_mirror: str
    populator: str
    no_check_gpg: bool
    image_size_bytes: int
    scheme: str
    output_dir: Path
    workdir: Path
    boot_env_file: str
    boot_files_dir: Optional[Path]
    username: str
    password: str
    hostname: str
    timezone: str
    extra_packages: tuple[str, ...]
    ledger_path: Path
    device_wait_attempts: int
    device_wait_interval: float


def build_config(overrides: Optional[dict[str, Any]] = None) -> BuildConfig:
    """Merge stored settings with non-None ``overrides`` (usually CLI flags)."""
    values = dict(settings_store.values or DEFAULT_SETTINGS)
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    boot_files_dir = values.get("boot_files_dir")
    return BuildConfig(
        model=str(values["model"]),
        board=str(values["board"]),
        architecture=str(values["architecture"]),
        suite=str(values["suite"]),
        bootstrap_suite=str(values["bootstrap_suite"]),
        mirror=str(values["mirror"]),
        sources_mirror=str(values["sources_mirror"]),
        populator=str(values["populator"]),
        no_check_gpg=bool(values["no_check_gpg"]),
        image_size_bytes=int(values["image_size_bytes"]),
        scheme=str(values["scheme"]),
        output_dir=Path(values["output_dir"]),
        workdir=Path(values["workdir"]),
        boot_env_file=str(values["boot_env_file"]),
        boot_files_dir=Path(boot_files_dir) if boot_files_dir else None,
        username=str(values["username"]),
        password=str(values["password"]),
        hostname=str(values["hostname"]),
        timezone=str(values["timezone"]),
        extra_packages=tuple(values.get("extra_packages") or ()),
        ledger_path=Path(values["ledger_path"]),
        device_wait_attempts=int(values["device_wait_attempts"]),
        device_wait_interval=float(values["device_wait_interval"]),
    )


load_settings()
