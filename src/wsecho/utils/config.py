import ipaddress
import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional, Sequence

from .logger import get_logger

logger = get_logger("wsecho.Settings")

PROG = "wsecho-server"
USAGE = (
    f"Usage: {PROG} <address> <port> <threads>\n"
    "Example:\n"
    f"      {PROG} 0.0.0.0 8080 1"
)


class UsageError(Exception):
    """Wrong number of command line arguments"""


class ConfigError(ValueError):
    """A command line argument could not be parsed"""


class Endpoint(NamedTuple):
    address: str
    port: int

    @property
    def family_version(self) -> int:
        return ipaddress.ip_address(self.address).version


@dataclass(frozen=True)
class ServerConfig:
    """Bind address, port and worker count; fixed for the lifetime of the process"""
    address: str
    port: int
    threads: int = 1

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.address, self.port)

    @classmethod
    def from_argv(cls, argv: Sequence[str]) -> "ServerConfig":
        if len(argv) != 3:
            raise UsageError(USAGE)

        raw_address, raw_port, raw_threads = argv

        try:
            address = str(ipaddress.ip_address(raw_address))
        except ValueError:
            raise ConfigError(f"invalid address: {raw_address!r}") from None

        try:
            port = int(raw_port, 10)
        except ValueError:
            raise ConfigError(f"invalid port: {raw_port!r}") from None
        if not 0 <= port <= 65535:
            raise ConfigError(f"port out of range: {port}")

        try:
            threads = int(raw_threads, 10)
        except ValueError:
            raise ConfigError(f"invalid thread count: {raw_threads!r}") from None

        return cls(address=address, port=port, threads=max(1, threads))


class EchoSettings:
    """Tunables read from an optional YAML file"""
    DEFAULT_SETTINGS = {
        "handshake_timeout": 30.0,
        "idle_timeout": 300.0,
        "close_timeout": 5.0,
        "max_message_size": 16 * 1024 * 1024,
        "log_level": "INFO",
        "log_file": None,
    }

    def __init__(self, config_path: Optional[Path] = None, **overrides: Any):
        if config_path:
            self.config_path = Path(config_path)
        elif os.environ.get("WSECHO_CONFIG"):
            self.config_path = Path(os.environ["WSECHO_CONFIG"])
        else:
            self.config_path = Path.home() / ".wsecho" / "config.yaml"

        self.settings: Dict[str, Any] = self.DEFAULT_SETTINGS.copy()
        self.load()
        self.settings.update(overrides)

    def load(self):
        """Merge settings from YAML over the defaults, if the file exists"""
        if not self.config_path.exists():
            logger.debug(f"No config at {self.config_path}, using defaults")
            return

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}

        except yaml.YAMLError as e:
            logger.error(f"YAML error while loading config: {e}")
            return

        except OSError as e:
            logger.error(f"Failed to load config: {e}")
            return

        if not isinstance(loaded, dict):
            logger.error(f"Config {self.config_path} is not a mapping, ignoring it")
            return

        unknown = set(loaded) - set(self.DEFAULT_SETTINGS)
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")

        self.settings.update({k: v for k, v in loaded.items() if k in self.DEFAULT_SETTINGS})

    def get(self, key: str, default=None):
        return self.settings.get(key, default)

    @property
    def handshake_timeout(self) -> float:
        return float(self.settings["handshake_timeout"])

    @property
    def idle_timeout(self) -> float:
        return float(self.settings["idle_timeout"])

    @property
    def close_timeout(self) -> float:
        return float(self.settings["close_timeout"])

    @property
    def max_message_size(self) -> Optional[int]:
        value = self.settings["max_message_size"]
        return None if value is None else int(value)
