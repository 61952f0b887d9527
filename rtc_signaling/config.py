"""Configuration management for rtc-signaling.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (RTC_SIGNALING_HOST, RTC_SIGNALING_PORT, ...)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- rtc-signaling.toml in current working directory
- ~/.rtc-signaling/config.toml

Environment selection via RTC_SIGNALING_ENV (development, staging, production).
Keys in an ``[environments.<env>]`` table override the base sections.
Defaults to production if not set.
"""

import os
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger


DEFAULT_ICE_SERVERS = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:stun1.l.google.com:19302"},
]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class ServerConfig:
    """Settings for the relay server.

    Attributes:
        host: Interface to bind.
        port: TCP port to listen on.
        max_clients: Registry capacity; further connections are refused.
        outbound_queue_size: Frames buffered per client before dropping.
        send_timeout: Seconds a critical frame may wait for buffer space.
        announce_presence: Broadcast ``peer-disconnected`` on disconnect.
    """

    host: str = "localhost"
    port: int = 8080
    max_clients: int = 1024
    outbound_queue_size: int = 256
    send_timeout: float = 5.0
    announce_presence: bool = True

    def __post_init__(self):
        if self.max_clients < 1:
            raise ValueError("max_clients must be at least 1")
        if self.outbound_queue_size < 1:
            raise ValueError("outbound_queue_size must be at least 1")
        if self.send_timeout <= 0:
            raise ValueError("send_timeout must be positive")


@dataclass
class NegotiationConfig:
    """Settings for negotiation session bookkeeping.

    Attributes:
        session_idle_timeout: Seconds without activity before eviction.
        closed_linger: Seconds a closed pair keeps rejecting late messages.
        sweep_interval: Seconds between eviction sweeps.
    """

    session_idle_timeout: float = 300.0
    closed_linger: float = 10.0
    sweep_interval: float = 30.0

    def __post_init__(self):
        if self.session_idle_timeout <= 0:
            raise ValueError("session_idle_timeout must be positive")
        if self.sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")


@dataclass
class ClientConfig:
    """Settings used by peers connecting to the relay."""

    signaling_url: str = "ws://localhost:8080"
    ice_servers: List[Dict[str, Any]] = field(
        default_factory=lambda: [dict(s) for s in DEFAULT_ICE_SERVERS]
    )


def _apply_section(target, data: dict, section: str) -> None:
    """Copy known keys from a TOML table onto a config dataclass."""
    for key, value in data.items():
        if not hasattr(target, key):
            logger.warning(f"Ignoring unknown key '{key}' in [{section}]")
            continue
        setattr(target, key, value)
    # Re-run validation with the merged values
    if hasattr(target, "__post_init__"):
        target.__post_init__()


class Config:
    """Configuration manager for rtc-signaling."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.server = ServerConfig()
        self.negotiation = NegotiationConfig()
        self.client = ClientConfig()
        self.environment: str = "production"
        self.source: Optional[Path] = None
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from RTC_SIGNALING_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("RTC_SIGNALING_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid RTC_SIGNALING_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. rtc-signaling.toml in current working directory
        2. ~/.rtc-signaling/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "rtc-signaling.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = self._home_config_path()
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _home_config_path(self) -> Path:
        return Path.home() / ".rtc-signaling" / "config.toml"

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        A file that cannot be parsed or fails validation is ignored as a
        whole and the defaults stay in place.

        Args:
            config_file: Path to the TOML configuration file.
        """
        server = ServerConfig()
        negotiation = NegotiationConfig()
        client = ClientConfig()
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)

            sections = {
                "server": server,
                "negotiation": negotiation,
                "client": client,
            }
            for name, target in sections.items():
                _apply_section(target, self._config_data.get(name, {}), name)

            # Apply environment-specific settings
            environments = self._config_data.get("environments", {})
            env_config = environments.get(self.environment, {})
            for name, target in sections.items():
                if name in env_config:
                    _apply_section(
                        target, env_config[name], f"environments.{self.environment}.{name}"
                    )

        except (OSError, tomllib.TOMLDecodeError, ValueError, TypeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        self.server = server
        self.negotiation = negotiation
        self.client = client
        self.source = config_file

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        host = os.getenv("RTC_SIGNALING_HOST")
        if host:
            self.server.host = host
            logger.info(f"Overriding host from env: {host}")

        port = os.getenv("RTC_SIGNALING_PORT")
        if port:
            try:
                self.server.port = int(port)
                logger.info(f"Overriding port from env: {port}")
            except ValueError:
                logger.warning(f"Ignoring non-integer RTC_SIGNALING_PORT: {port}")

        max_clients = os.getenv("RTC_SIGNALING_MAX_CLIENTS")
        if max_clients:
            try:
                self.server.max_clients = max(1, int(max_clients))
                logger.info(f"Overriding max_clients from env: {max_clients}")
            except ValueError:
                logger.warning(
                    f"Ignoring non-integer RTC_SIGNALING_MAX_CLIENTS: {max_clients}"
                )

        url = os.getenv("RTC_SIGNALING_URL")
        if url:
            self.client.signaling_url = url
            logger.info(f"Overriding signaling_url from env: {url}")

    def to_dict(self) -> dict:
        """Return the effective configuration as nested dictionaries."""
        return {
            "environment": self.environment,
            "server": asdict(self.server),
            "negotiation": asdict(self.negotiation),
            "client": asdict(self.client),
        }


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
