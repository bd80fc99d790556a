"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Optional
import json

from dotenv import load_dotenv

from .transfer.protocol import CHUNK_SIZE, DEFAULT_PORT


@dataclass
class Config:
    """
    filecast configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (FILECAST_*)
    2. Config file (filecast.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    backlog: int = 1

    # Transfer
    chunk_size: int = CHUNK_SIZE

    # Receiver
    output_dir: Path = field(default_factory=lambda: Path('.'))
    connect_timeout: float = 10.0

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if not 0 < self.chunk_size <= CHUNK_SIZE:
            raise ValueError(f"chunk_size must be in 1..{CHUNK_SIZE}")
        if self.backlog < 1:
            raise ValueError(f"backlog must be at least 1: {self.backlog}")

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        defaults = cls()

        output_dir = os.getenv('FILECAST_OUTPUT_DIR')

        return cls(
            host=os.getenv('FILECAST_HOST', defaults.host),
            port=int(os.getenv('FILECAST_PORT', defaults.port)),
            backlog=int(os.getenv('FILECAST_BACKLOG', defaults.backlog)),
            chunk_size=int(os.getenv('FILECAST_CHUNK_SIZE', defaults.chunk_size)),
            output_dir=Path(output_dir) if output_dir else defaults.output_dir,
            connect_timeout=float(
                os.getenv('FILECAST_CONNECT_TIMEOUT', defaults.connect_timeout)
            ),
            log_level=os.getenv('FILECAST_LOG_LEVEL', defaults.log_level),
        )

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        defaults = cls()

        return cls(
            host=data.get('host', defaults.host),
            port=data.get('port', defaults.port),
            backlog=data.get('backlog', defaults.backlog),
            chunk_size=data.get('chunk_size', defaults.chunk_size),
            output_dir=Path(data.get('output_dir', defaults.output_dir)),
            connect_timeout=data.get('connect_timeout', defaults.connect_timeout),
            log_level=data.get('log_level', defaults.log_level),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'backlog': self.backlog,
            'chunk_size': self.chunk_size,
            'output_dir': str(self.output_dir),
            'connect_timeout': self.connect_timeout,
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
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    default = Config()
    for f in fields(Config):
        env_val = getattr(env_config, f.name)
        if env_val != getattr(default, f.name):
            setattr(config, f.name, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 48763,
  "backlog": 1,
  "chunk_size": 65536,
  "output_dir": ".",
  "connect_timeout": 10.0,
  "log_level": "INFO"
}
"""
