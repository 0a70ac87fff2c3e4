"""Configuration management for dm-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (DM_RTC_RELAY_WS, DM_RTC_CONNECT_TIMEOUT)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- dm-rtc.toml in current working directory
- ~/.dm-rtc/config.toml

Environment selection via DM_RTC_ENV (development, staging, production).
Defaults to production if not set.

Example dm-rtc.toml:

    [environments.development]
    relay_websocket = "ws://localhost:8765"

    [call]
    connect_timeout = 30
    camera_switch_attempts = 2

    [ice]
    stun_urls = ["stun:stun.l.google.com:19302"]
    turn_urls = []

    [media]
    front_camera = "/dev/video0"
    back_camera = "/dev/video1"
    camera_format = "v4l2"
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
from loguru import logger


# STUN servers used by the web client. No TURN relay is shipped: peers that
# are both behind symmetric NAT will not connect unless turn_urls is set.
DEFAULT_STUN_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
    "stun:stun3.l.google.com:19302",
    "stun:stun4.l.google.com:19302",
]

DEFAULT_RELAY_WEBSOCKET = "ws://localhost:8765"
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_CAMERA_SWITCH_ATTEMPTS = 2

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class IceConfig:
    """ICE server settings for NAT traversal.

    Attributes:
        stun_urls: STUN server URLs.
        turn_urls: TURN server URLs (empty by default).
        turn_username: Username for the TURN servers.
        turn_credential: Credential for the TURN servers.
    """

    stun_urls: List[str] = field(default_factory=lambda: list(DEFAULT_STUN_URLS))
    turn_urls: List[str] = field(default_factory=list)
    turn_username: Optional[str] = None
    turn_credential: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "IceConfig":
        """Create IceConfig from TOML dictionary.

        Args:
            data: Dictionary from TOML [ice] section.

        Returns:
            IceConfig instance.
        """
        stun_urls = data.get("stun_urls", DEFAULT_STUN_URLS)
        turn_urls = data.get("turn_urls", [])
        if not isinstance(stun_urls, list) or not isinstance(turn_urls, list):
            logger.warning("Ignoring [ice] section: stun_urls/turn_urls must be lists")
            return cls()

        config = cls(
            stun_urls=list(stun_urls),
            turn_urls=list(turn_urls),
            turn_username=data.get("turn_username"),
            turn_credential=data.get("turn_credential"),
        )
        if config.turn_urls and not (config.turn_username and config.turn_credential):
            logger.warning("TURN urls configured without turn_username/turn_credential")
        return config

    def to_ice_servers(self) -> List[RTCIceServer]:
        servers = [RTCIceServer(urls=url) for url in self.stun_urls]
        if self.turn_urls:
            servers.append(
                RTCIceServer(
                    urls=self.turn_urls,
                    username=self.turn_username,
                    credential=self.turn_credential,
                )
            )
        return servers


@dataclass
class MediaConfig:
    """Capture device settings for local media.

    Device names are passed straight to ``aiortc.contrib.media.MediaPlayer``,
    so they follow ffmpeg conventions for the given format (``v4l2`` and
    ``pulse`` on Linux, ``avfoundation`` on macOS, ``dshow`` on Windows).

    Attributes:
        front_camera: Device for the "user" facing mode.
        back_camera: Device for the "environment" facing mode.
        camera_format: ffmpeg input format for cameras.
        microphone: Audio capture device.
        microphone_format: ffmpeg input format for the microphone.
    """

    front_camera: str = "/dev/video0"
    back_camera: Optional[str] = None
    camera_format: Optional[str] = "v4l2"
    microphone: str = "default"
    microphone_format: Optional[str] = "pulse"

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        defaults = cls()
        return cls(
            front_camera=data.get("front_camera", defaults.front_camera),
            back_camera=data.get("back_camera", defaults.back_camera),
            camera_format=data.get("camera_format", defaults.camera_format),
            microphone=data.get("microphone", defaults.microphone),
            microphone_format=data.get(
                "microphone_format", defaults.microphone_format
            ),
        )

    def camera_for(self, facing_mode: str) -> Optional[str]:
        """Get the camera device for a facing mode.

        Args:
            facing_mode: "user" (front) or "environment" (back).

        Returns:
            Device name, or None if no camera is configured for that side.
        """
        if facing_mode == "environment":
            return self.back_camera
        return self.front_camera


@dataclass
class CallConfig:
    """Call lifecycle settings.

    Attributes:
        connect_timeout: Seconds a call may stay in "connecting" before it is
            ended as failed. None or 0 disables the timer.
        camera_switch_attempts: Device requests tried per camera switch before
            outbound video is marked degraded.
    """

    connect_timeout: Optional[float] = DEFAULT_CONNECT_TIMEOUT
    camera_switch_attempts: int = DEFAULT_CAMERA_SWITCH_ATTEMPTS

    @classmethod
    def from_dict(cls, data: dict) -> "CallConfig":
        timeout = data.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)
        attempts = data.get("camera_switch_attempts", DEFAULT_CAMERA_SWITCH_ATTEMPTS)
        try:
            timeout = float(timeout) if timeout else None
        except (TypeError, ValueError):
            logger.warning(f"Invalid connect_timeout {timeout!r}, using default")
            timeout = DEFAULT_CONNECT_TIMEOUT
        if not isinstance(attempts, int) or attempts < 1:
            logger.warning(
                f"Invalid camera_switch_attempts {attempts!r}, using default"
            )
            attempts = DEFAULT_CAMERA_SWITCH_ATTEMPTS
        return cls(connect_timeout=timeout, camera_switch_attempts=attempts)


class Config:
    """Configuration manager for dm-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.relay_websocket: str = DEFAULT_RELAY_WEBSOCKET
        self.environment: str = "production"
        self.ice: IceConfig = IceConfig()
        self.media: MediaConfig = MediaConfig()
        self.call: CallConfig = CallConfig()
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (DM_RTC_RELAY_WS, DM_RTC_CONNECT_TIMEOUT)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from DM_RTC_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("DM_RTC_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid DM_RTC_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. dm-rtc.toml in current working directory
        2. ~/.dm-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "dm-rtc.toml"
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
        return Path.home() / ".dm-rtc" / "config.toml"

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except Exception as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            self._config_data = {}
            return

        self.ice = IceConfig.from_dict(self._config_data.get("ice", {}))
        self.media = MediaConfig.from_dict(self._config_data.get("media", {}))
        self.call = CallConfig.from_dict(self._config_data.get("call", {}))

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "relay_websocket" in env_config:
            self.relay_websocket = env_config["relay_websocket"]
            logger.debug(f"Loaded relay_websocket from config: {self.relay_websocket}")

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("DM_RTC_RELAY_WS")
        if ws_override:
            self.relay_websocket = ws_override
            logger.info(f"Overriding relay_websocket from env: {self.relay_websocket}")

        timeout_override = os.getenv("DM_RTC_CONNECT_TIMEOUT")
        if timeout_override:
            try:
                self.call.connect_timeout = float(timeout_override) or None
                logger.info(
                    f"Overriding connect_timeout from env: {self.call.connect_timeout}"
                )
            except ValueError:
                logger.warning(
                    f"Ignoring invalid DM_RTC_CONNECT_TIMEOUT: {timeout_override}"
                )

    def get_rtc_configuration(self) -> RTCConfiguration:
        """Build the aiortc peer connection configuration.

        Returns:
            RTCConfiguration with the configured STUN/TURN servers.
        """
        return RTCConfiguration(iceServers=self.ice.to_ice_servers())


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
