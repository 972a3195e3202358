"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .transfer.methods import TransferMode

logger = logging.getLogger(__name__)

ENV_PREFIX = 'FILERELAY_'

# Fields that round-trip through to_dict()/from_file(); the password never does
SERIALIZED_FIELDS = (
    'host', 'api_port', 'data_dir', 'chunk_size', 'buffer_size',
    'checksum_enabled', 'checksum_max_attempts', 'retry_max_attempts',
    'retry_delay', 'connect_timeout', 'read_timeout', 'transfer_mode', 'log_level',
)


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Config:
    """
    Transfer Node Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (FILERELAY_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    api_port: int = 8080

    # Storage
    data_dir: Path = field(default_factory=lambda: Path('./filerelay_data'))

    # Transfer
    chunk_size: int = 256 * 1024  # 256KB
    buffer_size: int = 8 * 1024  # 8KB
    transfer_mode: TransferMode = TransferMode.HTTP

    # Integrity and retries
    checksum_enabled: bool = True
    checksum_max_attempts: int = 3
    retry_max_attempts: int = 3
    retry_delay: float = 2.0  # doubled after every failed attempt

    # Timeouts (seconds)
    connect_timeout: float = 5.0
    read_timeout: float = 15.0

    # Encryption (never logged, never serialized)
    encryption_password: Optional[str] = field(default=None, repr=False)

    # Logging
    log_level: str = 'INFO'

    # === Derived paths ===

    @property
    def received_dir(self) -> Path:
        return self.data_dir / 'received'

    @property
    def temp_dir(self) -> Path:
        return self.data_dir / 'tmp' / 'uploads'

    @property
    def outgoing_dir(self) -> Path:
        return self.data_dir / 'outgoing'

    @property
    def db_path(self) -> Path:
        return self.data_dir / 'filerelay.db'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = _env('HOST') or config.host
        config.api_port = int(_env('API_PORT') or config.api_port)

        # Storage
        data_dir = _env('DATA_DIR')
        if data_dir:
            config.data_dir = Path(data_dir)

        # Transfer
        config.chunk_size = int(_env('CHUNK_SIZE') or config.chunk_size)
        config.buffer_size = int(_env('BUFFER_SIZE') or config.buffer_size)
        mode = _env('TRANSFER_MODE')
        if mode:
            config.transfer_mode = TransferMode.parse(mode)

        # Integrity and retries
        config.checksum_enabled = _env_bool('CHECKSUM_ENABLED', config.checksum_enabled)
        config.checksum_max_attempts = int(
            _env('CHECKSUM_MAX_ATTEMPTS') or config.checksum_max_attempts
        )
        config.retry_max_attempts = int(_env('RETRY_MAX_ATTEMPTS') or config.retry_max_attempts)
        config.retry_delay = float(_env('RETRY_DELAY') or config.retry_delay)

        # Timeouts
        config.connect_timeout = float(_env('CONNECT_TIMEOUT') or config.connect_timeout)
        config.read_timeout = float(_env('READ_TIMEOUT') or config.read_timeout)

        # Encryption
        config.encryption_password = _env('ENCRYPTION_PASSWORD') or None

        # Logging
        config.log_level = _env('LOG_LEVEL') or config.log_level

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.api_port = data.get('api_port', config.api_port)

        # Storage
        if 'data_dir' in data:
            config.data_dir = Path(data['data_dir'])

        # Transfer
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.buffer_size = data.get('buffer_size', config.buffer_size)
        if 'transfer_mode' in data:
            config.transfer_mode = TransferMode.parse(data['transfer_mode'])

        # Integrity and retries
        config.checksum_enabled = data.get('checksum_enabled', config.checksum_enabled)
        config.checksum_max_attempts = data.get(
            'checksum_max_attempts', config.checksum_max_attempts
        )
        config.retry_max_attempts = data.get('retry_max_attempts', config.retry_max_attempts)
        config.retry_delay = data.get('retry_delay', config.retry_delay)

        # Timeouts
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)
        config.read_timeout = data.get('read_timeout', config.read_timeout)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary (without the encryption password)."""
        return {
            'host': self.host,
            'api_port': self.api_port,
            'data_dir': str(self.data_dir),
            'chunk_size': self.chunk_size,
            'buffer_size': self.buffer_size,
            'checksum_enabled': self.checksum_enabled,
            'checksum_max_attempts': self.checksum_max_attempts,
            'retry_max_attempts': self.retry_max_attempts,
            'retry_delay': self.retry_delay,
            'connect_timeout': self.connect_timeout,
            'read_timeout': self.read_timeout,
            'transfer_mode': self.transfer_mode.value,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and Path(config_path).exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in SERIALIZED_FIELDS:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    # The password only ever comes from the environment
    if env_config.encryption_password:
        config.encryption_password = env_config.encryption_password

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "api_port": 8080,
  "data_dir": "./filerelay_data",
  "chunk_size": 262144,
  "checksum_enabled": true,
  "checksum_max_attempts": 3,
  "retry_max_attempts": 3,
  "retry_delay": 2.0,
  "transfer_mode": "HTTP",
  "log_level": "INFO"
}
"""
