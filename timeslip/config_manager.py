from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from timeslip.models import AppConfig, default_app_config


logger = logging.getLogger("timeslip.config")

CONFIG_SECTIONS = frozenset(item.name for item in fields(AppConfig))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed settings for allocation preferences, storage and sync.

    ``load`` is called on every request by the HTTP adapter, so the parsed
    config is cached until the file's modification time changes.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._cached: AppConfig | None = None
        self._cached_mtime_ns: int | None = None
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            mtime_ns = self.config_path.stat().st_mtime_ns
            if self._cached is not None and mtime_ns == self._cached_mtime_ns:
                return copy.deepcopy(self._cached)
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            if not isinstance(data, dict):
                logger.warning("Ignoring non-mapping config in %s", self.config_path)
                data = {}
            self._cached = AppConfig.from_dict(data)
            self._cached_mtime_ns = mtime_ns
            return copy.deepcopy(self._cached)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _write_yaml(tmp_path, config_dict)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _write_yaml(self.config_path, config_dict)
                tmp_path.unlink(missing_ok=True)
            self._cached = None
            self._cached_mtime_ns = None

    def update(self, payload: dict[str, Any]) -> AppConfig:
        unknown = sorted(str(key) for key in payload if key not in CONFIG_SECTIONS)
        if unknown:
            logger.warning("Ignoring unknown config sections: %s", ", ".join(unknown))
        known = {key: value for key, value in payload.items() if key in CONFIG_SECTIONS}
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), known)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config
