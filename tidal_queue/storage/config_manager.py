"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from tidal_queue.exceptions import ConfigurationError
from tidal_queue.models.config import QueueConfig

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "tidal-queue" / "config.ini"

# Environment variables that override file settings
ENV_OVERRIDES = {
    "REDIS_URL": "redis_url",
    "REDIS_DISABLED": "redis_disabled",
    "WORKER_MAX_CONCURRENT": "max_concurrent",
    "ALBUM_TRACK_CONCURRENCY": "album_concurrency",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _ini_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(
        self,
        config_file_path: Path = DEFAULT_CONFIG_PATH,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.config_file_path = config_file_path
        self.environ = os.environ if environ is None else environ
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: Optional[dict[str, Any]] = None) -> QueueConfig:
        """
        Builds the configuration from defaults, the INI file, environment
        overrides and CLI overrides, in that order of precedence.

        A missing file is not an error; the defaults are used.

        Raises:
            ConfigurationError: If the file cannot be parsed or the merged
            settings fail validation.
        """
        settings: dict[str, Any] = {}
        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path, encoding="utf-8")
            except configparser.Error as e:
                raise ConfigurationError(f"Error parsing configuration file: {e}") from e

            if self._migrate_if_needed():
                log.info(
                    "[yellow]Configuration file was updated with new default values."
                    "[/yellow]"
                )
            settings.update(self._get_config_as_dict())
        else:
            log.debug(
                f"No configuration file at '{self.config_file_path}'; using defaults."
            )

        settings.update(self._env_overrides())
        if cli_options:
            settings.update({k: v for k, v in cli_options.items() if v is not None})

        try:
            return QueueConfig(**settings)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any]) -> None:
        """
        Writes a complete configuration file, filling unspecified keys with
        defaults.

        Raises:
            ConfigurationError: If the settings are invalid or the file cannot
            be written.
        """
        try:
            config = QueueConfig(**settings)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        parser = configparser.ConfigParser(interpolation=None)
        parser["DEFAULT"] = {
            key: _ini_value(getattr(config, key)) for key in sorted(QueueConfig.get_ini_keys())
        }
        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                parser.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        try:
            values = {
                "redis_url": section.get("redis_url"),
                "redis_disabled": section.getboolean("redis_disabled"),
                "queue_key": section.get("queue_key"),
                "max_concurrent": section.getint("max_concurrent"),
                "album_concurrency": section.getint("album_concurrency"),
                "poll_interval": section.getfloat("poll_interval"),
                "processing_timeout_ms": section.getint("processing_timeout_ms"),
                "cleanup_age_ms": section.getint("cleanup_age_ms"),
                "default_max_retries": section.getint("default_max_retries"),
                "server_url": section.get("server_url"),
                "chunk_size": section.getint("chunk_size"),
                "upload_timeout": section.getfloat("upload_timeout"),
                "log_dir": section.get("log_dir") or None,
            }
        except ValueError as e:
            raise ConfigurationError(f"Invalid value in configuration file: {e}") from e
        return {k: v for k, v in values.items() if v is not None}

    def _env_overrides(self) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        for env_name, key in ENV_OVERRIDES.items():
            raw = self.environ.get(env_name)
            if raw is None or raw.strip() == "":
                continue
            if key == "redis_disabled":
                overrides[key] = raw.strip().lower() in _TRUE_VALUES
            else:
                overrides[key] = raw.strip()
            log.debug(f"Config override from ${env_name}: {key}")
        return overrides

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = QueueConfig()
        section = self._parser["DEFAULT"]
        needs_saving = False

        for key in sorted(QueueConfig.get_ini_keys()):
            if key in section:
                continue
            section[key] = _ini_value(getattr(defaults, key))
            needs_saving = True
            log.debug(
                f"Migrating config: added missing key '{key}' with "
                f"value '{section[key]}'."
            )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving
