from __future__ import annotations

import errno
import os
import threading
from pathlib import Path
from typing import IO, Any

import yaml

from diarist.errors import FatalConfigError
from diarist.models import AppConfig, ServiceId, default_app_config

DEDUP_SOURCES = {"local", "calendar"}
SECRET_HEADER_NAMES = {"authorization", "cookie", "x-api-key"}


def _dump(data: dict[str, Any], handle: IO[str]) -> None:
    yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


def validate_config(config: AppConfig) -> list[str]:
    problems: list[str] = []
    known = {service_id.value for service_id in ServiceId}
    for name in config.services:
        if name not in known:
            problems.append(f"unknown service '{name}'")
    enabled = config.enabled_services()
    if not enabled:
        problems.append("no service is enabled")
    for service_id in enabled:
        if not config.service(service_id).url:
            problems.append(f"services.{service_id.value}.url is required")
    if not config.calendar.url:
        problems.append("calendar.url is required")
    if not config.oauth.client_id or not config.oauth.client_secret:
        problems.append("oauth.client_id and oauth.client_secret are required")
    if config.dedup.source not in DEDUP_SOURCES:
        problems.append(f"dedup.source must be one of {sorted(DEDUP_SOURCES)}")
    return problems


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def load_validated(self) -> AppConfig:
        try:
            config = self.load()
        except (OSError, yaml.YAMLError, TypeError, ValueError) as exc:
            raise FatalConfigError(f"Cannot read {self.config_path}: {exc}") from exc
        problems = validate_config(config)
        if problems:
            raise FatalConfigError(f"Invalid configuration in {self.config_path}: " + "; ".join(problems))
        return config

    def save(self, config: AppConfig) -> None:
        data = config.to_dict()
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staged = self.config_path.with_name(self.config_path.name + ".tmp")
            with staged.open("w", encoding="utf-8") as handle:
                _dump(data, handle)
            try:
                staged.replace(self.config_path)
                return
            except OSError as exc:
                # Bind-mounted files cannot be replaced, only rewritten in place.
                if exc.errno != errno.EBUSY:
                    raise
            with self.config_path.open("w", encoding="utf-8") as handle:
                _dump(data, handle)
            staged.unlink(missing_ok=True)

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config.get("oauth", {}).get("client_secret"):
            config["oauth"]["client_secret"] = "***"
        for service in config.get("services", {}).values():
            headers = service.get("headers") or {}
            for name in list(headers):
                if name.strip().lower() in SECRET_HEADER_NAMES and headers[name]:
                    headers[name] = "***"
        return config
