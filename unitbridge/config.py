"""
Configuration management for unitbridge.

Handles:
- Upstream API connection parameters
- Slot registry capacity and storage location
- Runtime settings
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".unitbridge"

DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 4444
DEFAULT_SLOT_CAPACITY = 32

# Message terminators used by the different upstream deployments
DELIMITERS = {
    "newline": b"\n",
    "nul": b"\x00",
}


@dataclass
class ApiConfig:
    """Configuration for the upstream session."""
    host: str = DEFAULT_API_HOST
    port: int = DEFAULT_API_PORT
    delimiter: str = "newline"  # newline or nul
    reconnect_delay_seconds: float = 5.0
    connect_timeout_seconds: float = 10.0
    call_timeout_seconds: float = 30.0  # 0 = wait forever
    single_call: bool = False  # reject new calls while one is outstanding

    @property
    def delimiter_bytes(self) -> bytes:
        try:
            return DELIMITERS[self.delimiter]
        except KeyError:
            raise ValueError(f"Unknown delimiter '{self.delimiter}' (use one of {sorted(DELIMITERS)})")

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "delimiter": self.delimiter,
            "reconnect_delay_seconds": self.reconnect_delay_seconds,
            "connect_timeout_seconds": self.connect_timeout_seconds,
            "call_timeout_seconds": self.call_timeout_seconds,
            "single_call": self.single_call,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApiConfig":
        # Filter to only known fields to handle config evolution
        known_fields = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known_fields})


@dataclass
class RegistryConfig:
    """Configuration for the slot registry."""
    capacity: int = DEFAULT_SLOT_CAPACITY
    store_file: str = "slots.json"
    namespace: str = "unitbridge/"

    def to_dict(self) -> dict:
        return {
            "capacity": self.capacity,
            "store_file": self.store_file,
            "namespace": self.namespace,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RegistryConfig":
        known_fields = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known_fields})


@dataclass
class BridgeConfig:
    """
    Main unitbridge configuration.

    Stored at ~/.unitbridge/config.json
    """
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    api: ApiConfig = field(default_factory=ApiConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    log_level: str = "INFO"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def store_path(self) -> Path:
        return self.data_dir / self.registry.store_file

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def save(self) -> None:
        """Save configuration to disk."""
        self.ensure_data_dir()

        data = {
            "api": self.api.to_dict(),
            "registry": self.registry.to_dict(),
            "log_level": self.log_level,
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "BridgeConfig":
        """Load configuration from disk, falling back to defaults."""
        data_dir = Path(data_dir) if data_dir else DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if not config_path.exists():
            return cls(data_dir=data_dir)

        with open(config_path, 'r') as f:
            data = json.load(f)

        config = cls(data_dir=data_dir, log_level=data.get("log_level", "INFO"))
        if "api" in data:
            config.api = ApiConfig.from_dict(data["api"])
        if "registry" in data:
            config.registry = RegistryConfig.from_dict(data["registry"])
        return config
