"""
Builds the run configuration from persisted settings and command line overrides.
"""

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mdown.exceptions import ConfigurationError
from mdown.models.config import PRACTICAL_CONCURRENCY_CEILING, RunConfig
from mdown.storage.ledger import ProgressLedger

log = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def get_data_dir() -> Path:
    """Resolves the directory holding the ledger and its backups."""
    if override := os.getenv("MDOWN_HOME"):
        return Path(override).expanduser()
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "mdown"


def parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


class ConfigManager:
    """Merges ledger settings with CLI options into a validated RunConfig."""

    def __init__(self, ledger: ProgressLedger):
        self.ledger = ledger

    def _settings_as_options(self) -> dict[str, Any]:
        settings = self.ledger.get_settings_blocking()
        try:
            max_consecutive = int(settings["max_consecutive"])
        except ValueError as e:
            raise ConfigurationError(
                f"Stored max_consecutive is not a number: {settings['max_consecutive']!r}"
            ) from e
        return {
            "folder": settings["folder"],
            "stat": parse_bool(settings["stat"]),
            "backup": parse_bool(settings["backup"]),
            "max_consecutive": max_consecutive,
        }

    def load_config(self, cli_options: dict[str, Any] | None = None) -> RunConfig:
        """
        Loads persisted settings, applies CLI overrides, and validates the result.

        Raises:
            ConfigurationError: If the merged options fail validation.
        """
        options = self._settings_as_options()
        if cli_options:
            options.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            config = RunConfig(**options)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        if config.max_consecutive > PRACTICAL_CONCURRENCY_CEILING:
            log.warning(
                f"[yellow]max_consecutive={config.max_consecutive} is above the "
                f"practical ceiling of {PRACTICAL_CONCURRENCY_CEILING}; the image "
                "servers may start refusing requests.[/yellow]"
            )
        return config
