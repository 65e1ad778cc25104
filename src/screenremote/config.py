import json
import logging
from pathlib import Path


WEBSOCKET_PORT = 9090
DISCOVERY_PORT = 9091
DEFAULT_BIND_ADDRESS = "0.0.0.0"

# Capture
DEFAULT_FPS = 10
MIN_FPS = 5
MAX_FPS = 30
DEFAULT_MONITOR = 0

# Compression
DEFAULT_CODEC = "jpeg"
DEFAULT_QUALITY = 70
MIN_QUALITY = 40
MAX_QUALITY = 90
AVAILABLE_CODECS = ["jpeg", "vp8", "vp9", "h264"]

# Network quality thresholds in milliseconds: below good = excellent, below fair = good,
# below poor = fair, anything else = poor.
LATENCY_GOOD_MS = 50
LATENCY_FAIR_MS = 150
LATENCY_POOR_MS = 300

LATENCY_HISTORY_SIZE = 30
ADAPT_EVERY_N_FRAMES = 10
STATS_EVERY_N_FRAMES = 30

HEARTBEAT_INTERVAL = 30.0
MAX_CLIENTS = 5
METRICS_LOG_INTERVAL_SECS = 60

SERVER_NAME = "Screen Remote Server"
SERVER_VERSION = "2.0.0"
SERVER_CAPABILITIES = [
    "screen_capture",
    "mouse_control",
    "keyboard_control",
    "multi_monitor",
    "multi_codec",
    "adaptive_streaming",
    "network_monitoring",
]

RESIZE_WIDTH = 1280
RESIZE_HEIGHT = 720

CONFIG_KEYS = {
    "bind_address": str,
    "port": int,
    "discovery_port": int,
    "fps": int,
    "min_fps": int,
    "max_fps": int,
    "monitor": int,
    "codec": str,
    "quality": int,
    "min_quality": int,
    "max_quality": int,
    "adaptive_enabled": bool,
    "network_monitoring": bool,
    "latency_good_ms": float,
    "latency_fair_ms": float,
    "latency_poor_ms": float,
    "heartbeat_interval": float,
    "max_clients": int,
    "resize_enabled": bool,
    "resize_width": int,
    "resize_height": int,
    "server_name": str,
}


class ServerConfig:
    """Runtime settings shared by every session.

    Starts from the module defaults; ``load_config_file`` and ``apply_overrides`` layer a
    JSON file and command line values on top.
    """

    def __init__(self, **overrides):
        self.bind_address = DEFAULT_BIND_ADDRESS
        self.port = WEBSOCKET_PORT
        self.discovery_port = DISCOVERY_PORT
        self.fps = DEFAULT_FPS
        self.min_fps = MIN_FPS
        self.max_fps = MAX_FPS
        self.monitor = DEFAULT_MONITOR
        self.codec = DEFAULT_CODEC
        self.quality = DEFAULT_QUALITY
        self.min_quality = MIN_QUALITY
        self.max_quality = MAX_QUALITY
        self.adaptive_enabled = True
        self.network_monitoring = True
        self.latency_good_ms = LATENCY_GOOD_MS
        self.latency_fair_ms = LATENCY_FAIR_MS
        self.latency_poor_ms = LATENCY_POOR_MS
        self.heartbeat_interval = HEARTBEAT_INTERVAL
        self.max_clients = MAX_CLIENTS
        self.resize_enabled = False
        self.resize_width = RESIZE_WIDTH
        self.resize_height = RESIZE_HEIGHT
        self.server_name = SERVER_NAME
        self.version = SERVER_VERSION
        self.capabilities = list(SERVER_CAPABILITIES)
        self.apply_overrides(overrides)

    def apply_overrides(self, values: dict) -> None:
        """Apply known keys from ``values``; ``None`` means "keep current"."""
        for key, value in values.items():
            if key not in CONFIG_KEYS:
                logging.warning("[CONFIG] Ignoring unknown setting '%s'", key)
                continue
            if value is None:
                continue
            caster = CONFIG_KEYS[key]
            if caster is bool and not isinstance(value, bool):
                raise ValueError(f"Setting '{key}' must be true or false, got {value!r}")
            try:
                setattr(self, key, caster(value))
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid value for '{key}': {value!r}") from e
        self.validate()

    def validate(self) -> None:
        if not (0 < self.min_fps <= self.fps <= self.max_fps):
            raise ValueError(f"FPS bounds invalid: min={self.min_fps} default={self.fps} max={self.max_fps}")
        if not (1 <= self.min_quality <= self.quality <= self.max_quality <= 100):
            raise ValueError(
                f"Quality bounds invalid: min={self.min_quality} default={self.quality} max={self.max_quality}"
            )
        if not (0 <= self.latency_good_ms <= self.latency_fair_ms <= self.latency_poor_ms):
            raise ValueError("Latency thresholds must satisfy good <= fair <= poor")
        if self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if self.max_clients < 1:
            raise ValueError("max_clients must be at least 1")

    def server_info(self) -> dict:
        """Server block embedded in the ``connected`` welcome message."""
        return {
            "name": self.server_name,
            "version": self.version,
            "capabilities": list(self.capabilities),
        }


def load_config_file(path) -> dict:
    """Load settings from a JSON file.

    Returns:
        Settings dict, or an empty dict if the file is missing or unreadable
    """
    cfg_path = Path(path)
    try:
        with cfg_path.open(encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logging.warning(f"[CONFIG] Config file not found: {cfg_path} — using defaults")
        return {}
    except json.JSONDecodeError as e:
        logging.warning(f"[CONFIG] Corrupted config file {cfg_path}: {e}")
        return {}
    except OSError as e:
        logging.warning(f"[CONFIG] Failed to read config {cfg_path}: {e}")
        return {}

    if not isinstance(data, dict):
        logging.warning(f"[CONFIG] Config file {cfg_path} must hold a JSON object — ignoring")
        return {}
    return data


def build_config(config_path=None, **overrides) -> ServerConfig:
    """Defaults, then the optional JSON file, then explicit overrides."""
    cfg = ServerConfig()
    if config_path:
        cfg.apply_overrides(load_config_file(config_path))
    cfg.apply_overrides(overrides)
    return cfg
