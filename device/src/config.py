"""
Device configuration module.

Manages the device configuration: server URL, access token, the restaurant
the device belongs to, and the timing knobs of the change stream and sync
client. Configuration is loaded from a YAML file and can be overridden by
environment variables.
"""

import os
import re
from pathlib import Path
from typing import Any, Callable, List, Optional

import yaml
from platformdirs import user_config_dir, user_data_dir


# ============================================================================
# Constants
# ============================================================================

APP_NAME = "servicebell"
APP_AUTHOR = "ServiceBell"
CONFIG_FILENAME = "device-config.yaml"

# Environment variable names
ENV_PREFIX = "SERVICEBELL_DEVICE_"
ENV_CONFIG_PATH = "SERVICEBELL_DEVICE_CONFIG"
ENV_SERVER_URL = "SERVICEBELL_DEVICE_SERVER_URL"
ENV_API_TOKEN = "SERVICEBELL_DEVICE_API_TOKEN"
ENV_TENANT_ID = "SERVICEBELL_DEVICE_TENANT_ID"
ENV_RECIPIENTS = "SERVICEBELL_DEVICE_RECIPIENTS"
ENV_ENDPOINT = "SERVICEBELL_DEVICE_ENDPOINT"
ENV_LOG_LEVEL = "SERVICEBELL_DEVICE_LOG_LEVEL"

# Default values
DEFAULT_HEARTBEAT_INTERVAL = 30  # seconds
MIN_HEARTBEAT_INTERVAL = 30
MAX_HEARTBEAT_INTERVAL = 60
DEFAULT_BACKOFF_BASE = 1.0  # seconds
DEFAULT_BACKOFF_MAX = 30.0  # seconds
DEFAULT_BACKOFF_JITTER = 0.2
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_HEALTH_CHECK_INTERVAL = 30  # seconds
DEFAULT_RECOVERY_DEBOUNCE = 1.0  # seconds
DEFAULT_MAX_PINGS = 3
DEFAULT_PING_INTERVAL = 30  # seconds
DEFAULT_LOG_LEVEL = "INFO"

# URL validation regex
URL_PATTERN = re.compile(
    r"^https?://"  # http:// or https://
    r"(?:(?:[A-Z0-9](?:[A-Z0-9-]{0,61}[A-Z0-9])?\.)+[A-Z]{2,6}\.?|"  # domain
    r"localhost|"  # localhost
    r"\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3})"  # ...or ip
    r"(?::\d+)?"  # optional port
    r"(?:/?|[/?]\S+)$",
    re.IGNORECASE,
)

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


# ============================================================================
# Exceptions
# ============================================================================


class ConfigError(Exception):
    """Base exception for configuration errors."""

    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""

    pass


# ============================================================================
# Helper Functions
# ============================================================================


def get_default_config_dir() -> Path:
    """
    Get the default configuration directory for the current platform.

    Returns:
        Path to the platform-appropriate config directory
    """
    return Path(user_config_dir(APP_NAME, APP_AUTHOR))


def get_default_data_dir() -> Path:
    """
    Get the default data directory for the current platform.

    Holds the local notification store.

    Returns:
        Path to the platform-appropriate data directory
    """
    return Path(user_data_dir(APP_NAME, APP_AUTHOR))


def clamp_heartbeat_interval(value: float) -> int:
    """Clamp a heartbeat interval into the 30-60 second window."""
    return int(max(MIN_HEARTBEAT_INTERVAL, min(MAX_HEARTBEAT_INTERVAL, value)))


def _env_or(name: str, value: Any, cast: Callable[[str], Any]) -> Any:
    """Return the environment override for ``name`` when set, else ``value``."""
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return value
    try:
        return cast(raw)
    except ValueError:
        raise ConfigError(f"Invalid value for {name}: {raw!r}")


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# ============================================================================
# DeviceConfig Class
# ============================================================================


class DeviceConfig:
    """
    Device configuration manager.

    Handles loading, saving, and validating device configuration.
    Configuration sources (in priority order):
    1. Environment variables (SERVICEBELL_DEVICE_*)
    2. Configuration file
    3. Default values

    Attributes:
        server_url: ServiceBell server URL
        api_token: Bearer token identifying the staff member and restaurant
        tenant_id: Restaurant the device belongs to
        recipients: Staff ids that receive notifications built on this device
        endpoint: Push endpoint of this device, reported with heartbeats
        heartbeat_interval_seconds: Interval between heartbeats (30-60)
        backoff_base_seconds: First reconnect delay
        backoff_max_seconds: Reconnect delay cap
        backoff_jitter: Fraction of each delay used as symmetric jitter
        max_reconnect_attempts: Failed reconnects before a channel degrades
        health_check_interval_seconds: Interval of the channel health check
        recovery_debounce_seconds: Window coalescing recovery triggers
        max_pings: Re-presentations of an unacknowledged notification
        ping_interval_seconds: Delay between re-presentations
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config_dir: Optional[Path] = None,
    ):
        """
        Initialize device configuration.

        Args:
            config_path: Explicit path to config file (takes precedence)
            config_dir: Directory containing config file
        """
        if config_path:
            self._config_path = Path(config_path)
            self._config_dir = self._config_path.parent
        elif config_dir:
            self._config_dir = Path(config_dir)
            self._config_path = self._config_dir / CONFIG_FILENAME
        else:
            env_path = os.environ.get(ENV_CONFIG_PATH)
            if env_path:
                self._config_path = Path(env_path)
                self._config_dir = self._config_path.parent
            else:
                self._config_dir = get_default_config_dir()
                self._config_path = self._config_dir / CONFIG_FILENAME

        # Initialize with defaults
        self._server_url: str = ""
        self._api_token: str = ""
        self._tenant_id: str = ""
        self._recipients: List[str] = []
        self._endpoint: str = ""
        self._heartbeat_interval_seconds: int = DEFAULT_HEARTBEAT_INTERVAL
        self._backoff_base_seconds: float = DEFAULT_BACKOFF_BASE
        self._backoff_max_seconds: float = DEFAULT_BACKOFF_MAX
        self._backoff_jitter: float = DEFAULT_BACKOFF_JITTER
        self._max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
        self._health_check_interval_seconds: int = DEFAULT_HEALTH_CHECK_INTERVAL
        self._recovery_debounce_seconds: float = DEFAULT_RECOVERY_DEBOUNCE
        self._max_pings: int = DEFAULT_MAX_PINGS
        self._ping_interval_seconds: int = DEFAULT_PING_INTERVAL
        self._log_level: str = DEFAULT_LOG_LEVEL

        self._load()

    @property
    def config_path(self) -> Path:
        """Get the configuration file path."""
        return self._config_path

    @property
    def config_dir(self) -> Path:
        """Get the configuration directory."""
        return self._config_dir

    # -------------------------------------------------------------------------
    # Connection Properties
    # -------------------------------------------------------------------------

    @property
    def server_url(self) -> str:
        """Get the server URL."""
        return os.environ.get(ENV_SERVER_URL, self._server_url)

    @server_url.setter
    def server_url(self, value: str) -> None:
        self._server_url = value

    @property
    def api_token(self) -> str:
        """Get the access token."""
        return os.environ.get(ENV_API_TOKEN, self._api_token)

    @api_token.setter
    def api_token(self, value: str) -> None:
        self._api_token = value

    @property
    def tenant_id(self) -> str:
        """Get the restaurant id."""
        return os.environ.get(ENV_TENANT_ID, self._tenant_id)

    @tenant_id.setter
    def tenant_id(self, value: str) -> None:
        self._tenant_id = value

    @property
    def recipients(self) -> List[str]:
        """Get the staff ids notified by the bridge."""
        return _env_or(ENV_RECIPIENTS, list(self._recipients), _split_csv)

    @recipients.setter
    def recipients(self, value: List[str]) -> None:
        self._recipients = list(value)

    @property
    def endpoint(self) -> str:
        """Get the push endpoint reported with heartbeats."""
        return os.environ.get(ENV_ENDPOINT, self._endpoint)

    @endpoint.setter
    def endpoint(self, value: str) -> None:
        self._endpoint = value

    # -------------------------------------------------------------------------
    # Timing Properties
    # -------------------------------------------------------------------------

    @property
    def heartbeat_interval_seconds(self) -> int:
        """Get the heartbeat interval in seconds, clamped to 30-60."""
        value = _env_or(
            f"{ENV_PREFIX}HEARTBEAT_INTERVAL_SECONDS", self._heartbeat_interval_seconds, float
        )
        return clamp_heartbeat_interval(value)

    @heartbeat_interval_seconds.setter
    def heartbeat_interval_seconds(self, value: int) -> None:
        self._heartbeat_interval_seconds = value

    @property
    def backoff_base_seconds(self) -> float:
        return _env_or(f"{ENV_PREFIX}BACKOFF_BASE_SECONDS", self._backoff_base_seconds, float)

    @backoff_base_seconds.setter
    def backoff_base_seconds(self, value: float) -> None:
        self._backoff_base_seconds = value

    @property
    def backoff_max_seconds(self) -> float:
        return _env_or(f"{ENV_PREFIX}BACKOFF_MAX_SECONDS", self._backoff_max_seconds, float)

    @backoff_max_seconds.setter
    def backoff_max_seconds(self, value: float) -> None:
        self._backoff_max_seconds = value

    @property
    def backoff_jitter(self) -> float:
        return _env_or(f"{ENV_PREFIX}BACKOFF_JITTER", self._backoff_jitter, float)

    @backoff_jitter.setter
    def backoff_jitter(self, value: float) -> None:
        self._backoff_jitter = value

    @property
    def max_reconnect_attempts(self) -> int:
        return _env_or(f"{ENV_PREFIX}MAX_RECONNECT_ATTEMPTS", self._max_reconnect_attempts, int)

    @max_reconnect_attempts.setter
    def max_reconnect_attempts(self, value: int) -> None:
        self._max_reconnect_attempts = value

    @property
    def health_check_interval_seconds(self) -> int:
        return _env_or(
            f"{ENV_PREFIX}HEALTH_CHECK_INTERVAL_SECONDS", self._health_check_interval_seconds, int
        )

    @health_check_interval_seconds.setter
    def health_check_interval_seconds(self, value: int) -> None:
        self._health_check_interval_seconds = value

    @property
    def recovery_debounce_seconds(self) -> float:
        return _env_or(
            f"{ENV_PREFIX}RECOVERY_DEBOUNCE_SECONDS", self._recovery_debounce_seconds, float
        )

    @recovery_debounce_seconds.setter
    def recovery_debounce_seconds(self, value: float) -> None:
        self._recovery_debounce_seconds = value

    @property
    def max_pings(self) -> int:
        return _env_or(f"{ENV_PREFIX}MAX_PINGS", self._max_pings, int)

    @max_pings.setter
    def max_pings(self, value: int) -> None:
        self._max_pings = value

    @property
    def ping_interval_seconds(self) -> int:
        return _env_or(f"{ENV_PREFIX}PING_INTERVAL_SECONDS", self._ping_interval_seconds, int)

    @ping_interval_seconds.setter
    def ping_interval_seconds(self, value: int) -> None:
        self._ping_interval_seconds = value

    @property
    def log_level(self) -> str:
        """Get the log level."""
        return os.environ.get(ENV_LOG_LEVEL, self._log_level)

    @log_level.setter
    def log_level(self, value: str) -> None:
        self._log_level = value

    # -------------------------------------------------------------------------
    # Computed Properties
    # -------------------------------------------------------------------------

    @property
    def is_configured(self) -> bool:
        """Check if the device can reach and authenticate with a server."""
        return bool(self.server_url and self.api_token and self.tenant_id)

    # -------------------------------------------------------------------------
    # Configuration Management
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        """Load configuration from file."""
        if not self._config_path.exists():
            return

        try:
            with open(self._config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {self._config_path}")

        self._server_url = data.get("server_url", "")
        self._api_token = data.get("api_token", "")
        self._tenant_id = data.get("tenant_id", "")
        recipients = data.get("recipients") or []
        if isinstance(recipients, str):
            recipients = _split_csv(recipients)
        self._recipients = [str(r) for r in recipients]
        self._endpoint = data.get("endpoint", "")
        self._heartbeat_interval_seconds = data.get(
            "heartbeat_interval_seconds", DEFAULT_HEARTBEAT_INTERVAL
        )
        self._backoff_base_seconds = data.get("backoff_base_seconds", DEFAULT_BACKOFF_BASE)
        self._backoff_max_seconds = data.get("backoff_max_seconds", DEFAULT_BACKOFF_MAX)
        self._backoff_jitter = data.get("backoff_jitter", DEFAULT_BACKOFF_JITTER)
        self._max_reconnect_attempts = data.get(
            "max_reconnect_attempts", DEFAULT_MAX_RECONNECT_ATTEMPTS
        )
        self._health_check_interval_seconds = data.get(
            "health_check_interval_seconds", DEFAULT_HEALTH_CHECK_INTERVAL
        )
        self._recovery_debounce_seconds = data.get(
            "recovery_debounce_seconds", DEFAULT_RECOVERY_DEBOUNCE
        )
        self._max_pings = data.get("max_pings", DEFAULT_MAX_PINGS)
        self._ping_interval_seconds = data.get("ping_interval_seconds", DEFAULT_PING_INTERVAL)
        self._log_level = data.get("log_level", DEFAULT_LOG_LEVEL)

    def save(self) -> None:
        """Save configuration to file."""
        self._config_dir.mkdir(parents=True, exist_ok=True)

        data = {
            "server_url": self._server_url,
            "api_token": self._api_token,
            "tenant_id": self._tenant_id,
            "recipients": self._recipients,
            "endpoint": self._endpoint,
            "heartbeat_interval_seconds": self._heartbeat_interval_seconds,
            "backoff_base_seconds": self._backoff_base_seconds,
            "backoff_max_seconds": self._backoff_max_seconds,
            "backoff_jitter": self._backoff_jitter,
            "max_reconnect_attempts": self._max_reconnect_attempts,
            "health_check_interval_seconds": self._health_check_interval_seconds,
            "recovery_debounce_seconds": self._recovery_debounce_seconds,
            "max_pings": self._max_pings,
            "ping_interval_seconds": self._ping_interval_seconds,
            "log_level": self._log_level,
        }

        with open(self._config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)

    def validate(self) -> None:
        """
        Validate the current configuration.

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        if self.server_url and not URL_PATTERN.match(self.server_url):
            raise ConfigValidationError(f"Invalid server_url format: {self.server_url}")

        if self.backoff_base_seconds <= 0:
            raise ConfigValidationError(
                f"backoff_base_seconds must be positive, got: {self.backoff_base_seconds}"
            )

        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ConfigValidationError(
                "backoff_max_seconds must be at least backoff_base_seconds"
            )

        if not 0.0 <= self.backoff_jitter <= 1.0:
            raise ConfigValidationError(
                f"backoff_jitter must be between 0 and 1, got: {self.backoff_jitter}"
            )

        if self.max_reconnect_attempts < 1:
            raise ConfigValidationError(
                f"max_reconnect_attempts must be at least 1, got: {self.max_reconnect_attempts}"
            )

        if self.health_check_interval_seconds <= 0:
            raise ConfigValidationError(
                "health_check_interval_seconds must be positive, "
                f"got: {self.health_check_interval_seconds}"
            )

        if self.max_pings < 0:
            raise ConfigValidationError(f"max_pings must be non-negative, got: {self.max_pings}")

        if self.ping_interval_seconds <= 0:
            raise ConfigValidationError(
                f"ping_interval_seconds must be positive, got: {self.ping_interval_seconds}"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigValidationError(f"Invalid log_level: {self.log_level}")
