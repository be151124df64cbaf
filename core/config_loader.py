"""
Config loading and hot reload of the authorization table.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from core.auth import AuthorizationTable, ConfigError
from utils.helpers import load_config

logger = logging.getLogger(__name__)

Publisher = Callable[[AuthorizationTable], None]


def validate_config(config: Dict[str, Any], require_token: bool = True) -> AuthorizationTable:
    """Validate a loaded config dict and build its authorization table."""
    telegram = config.get("telegram") or {}
    if not isinstance(telegram, dict):
        raise ConfigError("telegram must be a mapping")
    if require_token and not str(telegram.get("token") or "").strip():
        raise ConfigError("telegram.token is required")

    webhook = telegram.get("webhook") or {}
    if not isinstance(webhook, dict):
        raise ConfigError("telegram.webhook must be a mapping")
    if webhook.get("enabled", False) and not (webhook.get("url") or webhook.get("unix_socket")):
        raise ConfigError("telegram.webhook.url is required when the webhook is enabled")

    return AuthorizationTable.from_config(config.get("users"))


class ConfigLoader:
    """Build authorization tables from a config file and publish them.

    ``load`` is used at startup and raises on failure. ``reload`` is used on a
    reload request: it never raises, and on failure the previously published
    table stays in effect.
    """

    def __init__(self, config_path: str, publish: Optional[Publisher] = None, require_token: bool = True):
        self.config_path = config_path
        self.publish = publish
        self.require_token = require_token
        self.config: Dict[str, Any] = {}
        self.reload_count = 0

    def load(self) -> Tuple[Dict[str, Any], AuthorizationTable]:
        """Read and validate the config file, then publish its table."""
        config = load_config(self.config_path)
        table = validate_config(config, require_token=self.require_token)
        # Publish only after everything above succeeded.
        self.config = config
        if self.publish is not None:
            self.publish(table)
        return config, table

    def reload(self) -> bool:
        """Re-read the config file and republish the table. Returns success."""
        try:
            _, table = self.load()
        except Exception as e:
            logger.warning("Failed to reload config from %s: %s", self.config_path, e)
            return False
        self.reload_count += 1
        logger.info(
            "Reloaded config from %s: %d user(s), %d command(s)",
            self.config_path,
            len(table),
            table.command_count,
        )
        return True
