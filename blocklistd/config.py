"""
Daemon configuration.

Defaults live on DaemonConfig as class attributes. A config file of
``KEY = VALUE`` lines may override any of them.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Union

from .errors import ConfigError

logger = logging.getLogger(__name__)


class DaemonConfig:
    """Configuration for the blocklist daemon."""

    # Executables
    IPTABLES = '/usr/sbin/iptables'
    SENDMAIL = '/usr/sbin/sendmail'

    # Control channel
    SOCKET = '/run/blocklistd.sock'

    # Packet filter
    CHAIN = 'BLOCKLISTD'
    INPUT_CHAIN = 'INPUT'
    ACTION = 'DROP'

    # Feed
    FEED_URL = 'https://www.spamhaus.org/drop/drop.txt'
    CACHE_DIR = '/var/cache/blocklistd'
    COMMENT_CHAR = ';'
    RATE_LIMIT = 3600  # seconds between fetches

    # Notifications
    ADMIN_EMAIL = 'root@localhost'
    FROM_EMAIL = 'blocklistd@localhost'

    # Timeouts and limits
    FETCH_TIMEOUT = 30
    COMMAND_TIMEOUT = 30
    READ_TIMEOUT = 5

    LOG_FILE = ''

    INTEGER_KEYS = ('RATE_LIMIT', 'FETCH_TIMEOUT', 'COMMAND_TIMEOUT', 'READ_TIMEOUT')

    def __init__(self, **overrides: Union[str, int]):
        for key, value in overrides.items():
            self.set(key, value)

    @classmethod
    def keys(cls) -> list:
        return [name for name in vars(DaemonConfig)
                if name.isupper() and name != 'INTEGER_KEYS']

    def set(self, key: str, value: Union[str, int]) -> None:
        """Override a single setting, converting numeric keys to int."""
        key = key.upper()
        if key not in self.keys():
            raise ConfigError(f"Unknown configuration key: {key}")

        if key in self.INTEGER_KEYS:
            try:
                value = int(value)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{key} must be an integer, got {value!r}") from e
            if value < 0:
                raise ConfigError(f"{key} must not be negative, got {value}")
        else:
            value = str(value)
            if key == 'COMMENT_CHAR' and len(value) != 1:
                raise ConfigError(f"COMMENT_CHAR must be a single character, got {value!r}")

        setattr(self, key, value)

    @classmethod
    def from_file(cls, path: Union[str, Path], required: bool = True) -> 'DaemonConfig':
        """
        Load configuration overrides from a key/value file.

        Args:
            path: Path to the config file
            required: If False, a missing file yields the defaults

        Returns:
            A DaemonConfig with the file's overrides applied

        Raises:
            ConfigError: If the file is unreadable or contains bad values
        """
        config = cls()
        config_path = Path(path)

        if not config_path.exists():
            if required:
                raise ConfigError(f"Config file not found: {config_path}")
            logger.info(f"No config file at {config_path}, using defaults")
            return config

        try:
            content = config_path.read_text()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Could not read config file {config_path}: {e}") from e

        for key, value in cls._parse(content, config_path).items():
            if key not in cls.keys():
                logger.warning(f"Ignoring unknown configuration key {key} in {config_path}")
                continue
            config.set(key, value)

        logger.info(f"Loaded configuration from {config_path}")
        return config

    @staticmethod
    def _parse(content: str, source: Path) -> Dict[str, str]:
        values: Dict[str, str] = {}
        for line_num, line in enumerate(content.splitlines(), 1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            key, sep, value = line.partition('=')
            if not sep:
                raise ConfigError(f"{source}:{line_num}: expected KEY = VALUE, got {line!r}")

            value = value.strip()
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]
            values[key.strip().upper()] = value
        return values

    def get_log_file(self) -> Optional[str]:
        return self.LOG_FILE or None
