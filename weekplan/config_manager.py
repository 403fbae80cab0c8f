from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable

import yaml

from weekplan.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

SECRET_PLACEHOLDER = "***"


def merge_sections(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Nested dicts merge key by key; lists and scalars are replaced."""
    result = copy.deepcopy(base)
    for key, value in updates.items():
        current = result.get(key)
        result[key] = merge_sections(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return result


class ConfigManager:
    """YAML settings file: term dates, feed subscriptions, agent and matching policy."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            raw = yaml.safe_load(self.config_path.read_text(encoding="utf-8"))
        if raw is not None and not isinstance(raw, dict):
            logger.warning("Config root in %s is not a mapping; using defaults", self.config_path)
            raw = None
        return AppConfig.from_dict(raw)

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staged = self.config_path.with_name(self.config_path.name + ".tmp")
            staged.write_text(text, encoding="utf-8")
            try:
                staged.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                staged.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge ``payload`` into the stored settings; invalid values raise ``ValueError``."""
        with self._lock:
            config = AppConfig.from_dict(merge_sections(self.load().to_dict(), payload))
            self.save(config)
            return config

    def _edit_feed_urls(self, edit: Callable[[list[str]], bool]) -> AppConfig:
        with self._lock:
            config = self.load()
            if edit(config.feeds.urls):
                self.save(config)
            return config

    def add_feed_url(self, url: str) -> AppConfig:
        def add(urls: list[str]) -> bool:
            if url in urls:
                return False
            urls.append(url)
            return True

        return self._edit_feed_urls(add)

    def remove_feed_url(self, url: str) -> AppConfig:
        def remove(urls: list[str]) -> bool:
            if url not in urls:
                return False
            urls.remove(url)
            return True

        return self._edit_feed_urls(remove)

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config["ai"].get("api_key"):
            config["ai"]["api_key"] = SECRET_PLACEHOLDER
        return config
