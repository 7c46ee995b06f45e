#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Settings and logging setup.

Settings come from an optional JSON or YAML file, then environment
variables, then command-line flags (each overriding the previous).

Example config (YAML):
    database_url: postgresql+asyncpg://deploy@db/app
    changelog: db/changelog.yaml
    principal: deploy
    lock_timeout: 60
    checksum_normalization: exact
    logging:
      level: info
      file: logs/schemaledger.log
"""
import getpass
import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

import yaml

from .checksum import Normalization
from .errors import ConfigurationError

LOG_FORMAT = '[%(asctime).19s] [%(name)s] [%(levelname)s] %(message)s'

ENV_PREFIX = 'SCHEMALEDGER_'


class RobustFileHandler(logging.FileHandler):
    """FileHandler that gracefully handles flush errors on Windows"""

    def flush(self):
        """Flush the stream, ignoring EINVAL from stale Windows handles"""
        try:
            super().flush()
        except OSError as e:
            if e.errno != 22:  # EINVAL
                raise


def configure_logger(logger,
                     log_file=None,
                     log_format=LOG_FORMAT,
                     log_level=logging.INFO):
    """Configure a logger with a file or stream handler

    Args:
        logger: Logger instance or logger name string
        log_file: File path string or file-like object (None for stderr)
        log_format: Format string for log messages
        log_level: Logging level (e.g., logging.INFO, logging.DEBUG)

    Returns:
        Configured logger instance
    """
    if isinstance(log_file, (str, Path)):
        handler = RobustFileHandler(
            str(log_file),
            mode='a',
            encoding='utf-8',
            errors='replace'
        )
    else:
        handler = logging.StreamHandler(log_file)  # Default to stderr if None

    formatter = logging.Formatter(log_format)

    if isinstance(logger, str):
        logger = logging.getLogger(logger)

    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(log_level)

    return logger


def parse_log_level(value) -> int:
    """Parse 'info'/'DEBUG'/20 into a logging level constant."""
    if isinstance(value, int):
        return value
    level = getattr(logging, str(value).upper(), None)
    if not isinstance(level, int):
        raise ConfigurationError(f"Invalid log level: {value!r}")
    return level


def _default_principal() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return 'system'


@dataclass
class Settings:
    """
    Engine settings.

    Attributes:
        database_url: Target database URL or SQLite path
        changelog: Path to the master changelog
        principal: Identity recorded in the ledger (applied_by/rolled_back_by)
        default_author: Author for changesets whose source names none
        lock_timeout: Seconds to wait for the change lock
        lock_poll_interval: Seconds between lock attempts
        checksum_normalization: 'exact' or 'whitespace'
        log_level: Logging level name
        log_file: Optional log file path (stderr if None)
    """
    database_url: Optional[str] = None
    changelog: Optional[str] = None
    principal: str = ''
    default_author: str = 'schemaledger'
    lock_timeout: float = 30.0
    lock_poll_interval: float = 0.5
    checksum_normalization: str = Normalization.EXACT.value
    log_level: str = 'info'
    log_file: Optional[str] = None

    def __post_init__(self):
        if not self.principal:
            self.principal = _default_principal()
        self.validate()

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigurationError: On invalid values
        """
        try:
            self.lock_timeout = float(self.lock_timeout)
            self.lock_poll_interval = float(self.lock_poll_interval)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Lock timings must be numbers: {e}") from e
        if self.lock_timeout < 0:
            raise ConfigurationError(f"lock_timeout must be >= 0, got {self.lock_timeout}")
        if self.lock_poll_interval <= 0:
            raise ConfigurationError(
                f"lock_poll_interval must be > 0, got {self.lock_poll_interval}"
            )
        try:
            Normalization(self.checksum_normalization)
        except ValueError as e:
            raise ConfigurationError(
                f"checksum_normalization must be one of "
                f"{[n.value for n in Normalization]}, got {self.checksum_normalization!r}"
            ) from e
        parse_log_level(self.log_level)

    @property
    def normalization(self) -> Normalization:
        return Normalization(self.checksum_normalization)

    def require(self, *names: str) -> None:
        """Raise ConfigurationError if any named setting is unset."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                f"Missing required setting(s): {', '.join(missing)} "
                f"(set in config file, {ENV_PREFIX}* environment or command line)"
            )


def read_config_file(path) -> dict:
    """Load a JSON or YAML config file into a dict."""
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e

    try:
        if config_path.suffix.lower() in ('.yaml', '.yml'):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse config file {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return data


def load_settings(path=None, environ=None, **overrides) -> Settings:
    """
    Build Settings from file, environment and overrides.

    Args:
        path: Optional JSON/YAML config file
        environ: Environment mapping (defaults to os.environ)
        **overrides: Values taking precedence over everything else
            (None values are ignored)

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: On unreadable files or invalid values
    """
    environ = os.environ if environ is None else environ
    values = {}

    if path:
        data = read_config_file(path)
        logging_config = data.pop('logging', None) or {}
        if not isinstance(logging_config, dict):
            raise ConfigurationError("'logging' section must be a mapping")
        if 'level' in logging_config:
            values['log_level'] = logging_config['level']
        if 'file' in logging_config:
            values['log_file'] = logging_config['file']

        known = {f.name for f in fields(Settings)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config key(s): {', '.join(unknown)}")
        values.update(data)

        # Relative changelog paths are resolved against the config file
        if values.get('changelog') and not Path(values['changelog']).is_absolute():
            values['changelog'] = str(Path(path).parent / values['changelog'])

    for name in ('database_url', 'changelog', 'principal', 'lock_timeout', 'log_level'):
        env_value = environ.get(ENV_PREFIX + name.upper())
        if env_value:
            values[name] = env_value

    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings(**values)
