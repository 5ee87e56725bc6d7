"""
Configuration for wormwatch.

Protocol constants, the tunable protocol parameters, file paths and YAML
configuration file handling are centralized here.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


# ---------------- Protocol Constants ----------------

AODV_PORT = 654  # Well-known control port

# Message type tags
MSG_REQUEST = 1
MSG_REPLY = 2
MSG_ERROR = 3
MSG_REPLY_ACK = 4
MSG_WH_CHECK = 5
MSG_WH_EVIDENCE = 6

MAX_ERROR_DESTINATIONS = 255  # Unreachable entries per error message
MAX_NEIGHBOR_LIST = 0xFFFF    # Width of the neighbor count field

# Broadcast jitter bounds (seconds)
JITTER_MIN = 0.0
JITTER_MAX = 0.010
HELLO_START_JITTER = 0.100

# Default IP TTL for data packets originated by the shim
DEFAULT_IP_TTL = 64

BROADCAST_ALL = "255.255.255.255"
LOOPBACK = "127.0.0.1"


# ---------------- File Paths ----------------

HOMEDIR = os.path.join(os.path.expanduser("~"), ".wormwatch")
LOG_DIR = os.path.join(HOMEDIR, "logs")
CONFIG_FILE = os.path.join(HOMEDIR, "config.yaml")  # YAML configuration file


# ---------------- Logging Configuration ----------------

LOG_FILE = os.path.join(LOG_DIR, "wormwatch.log")
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB per log file
LOG_BACKUP_COUNT = 5  # Keep 5 rotated log files


@dataclass
class ProtocolConfig:
    """
    Tunable protocol parameters.

    Durations are seconds. The derived timeouts (net traversal time, path
    discovery time, my route timeout, delete period, blacklist timeout) are
    computed from the base values unless set explicitly.
    """

    hello_interval: float = 1.0
    ttl_start: int = 1
    ttl_increment: int = 2
    ttl_threshold: int = 7
    timeout_buffer: int = 2
    rreq_retries: int = 2
    rreq_rate_limit: int = 10
    rerr_rate_limit: int = 10
    node_traversal_time: float = 0.040
    next_hop_wait: float = 0.050
    active_route_timeout: float = 3.0
    net_diameter: int = 35
    allowed_hello_loss: int = 2
    max_queue_len: int = 64
    max_queue_time: float = 30.0
    destination_only: bool = False
    gratuitous_reply: bool = True
    enable_hello: bool = True
    enable_broadcast: bool = True
    enable_wormhole_detection: bool = True

    # Explicit overrides for derived values
    net_traversal_override: Optional[float] = None
    path_discovery_override: Optional[float] = None
    my_route_timeout_override: Optional[float] = None
    delete_period_override: Optional[float] = None
    blacklist_timeout_override: Optional[float] = None
    pending_reply_lifetime: Optional[float] = None

    @property
    def net_traversal_time(self) -> float:
        if self.net_traversal_override is not None:
            return self.net_traversal_override
        return 2 * self.node_traversal_time * self.net_diameter

    @property
    def path_discovery_time(self) -> float:
        if self.path_discovery_override is not None:
            return self.path_discovery_override
        return 2 * self.net_traversal_time

    @property
    def my_route_timeout(self) -> float:
        if self.my_route_timeout_override is not None:
            return self.my_route_timeout_override
        return 2 * max(self.path_discovery_time, self.active_route_timeout)

    @property
    def delete_period(self) -> float:
        if self.delete_period_override is not None:
            return self.delete_period_override
        return 5 * max(self.active_route_timeout, self.hello_interval)

    @property
    def blacklist_timeout(self) -> float:
        if self.blacklist_timeout_override is not None:
            return self.blacklist_timeout_override
        return self.rreq_retries * self.net_traversal_time

    @property
    def pending_reply_window(self) -> float:
        """How long a suppressed reply waits for cross-check evidence."""
        if self.pending_reply_lifetime is not None:
            return self.pending_reply_lifetime
        return self.path_discovery_time

    @property
    def neighbor_lifetime(self) -> float:
        return self.allowed_hello_loss * self.hello_interval

    def validate(self) -> None:
        """
        Check parameter sanity.

        Raises:
            ConfigError: If a parameter is out of range
        """
        for name in ("hello_interval", "node_traversal_time", "next_hop_wait",
                     "active_route_timeout", "max_queue_time"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.net_diameter < 1 or self.net_diameter > 255:
            raise ConfigError("net_diameter must be in 1..255")
        if not 1 <= self.ttl_start <= self.net_diameter:
            raise ConfigError("ttl_start must be in 1..net_diameter")
        if self.ttl_increment < 1:
            raise ConfigError("ttl_increment must be at least 1")
        if self.ttl_threshold < self.ttl_start:
            raise ConfigError("ttl_threshold must not be below ttl_start")
        if self.rreq_retries < 0:
            raise ConfigError("rreq_retries must not be negative")
        if self.rreq_rate_limit < 1 or self.rerr_rate_limit < 1:
            raise ConfigError("rate limits must be at least 1 per second")
        if self.max_queue_len < 1:
            raise ConfigError("max_queue_len must be at least 1")
        if self.allowed_hello_loss < 1:
            raise ConfigError("allowed_hello_loss must be at least 1")

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class RuntimeConfig:
    """Runtime configuration that can be modified at startup."""

    log_to_file: bool = True
    log_level: str = "INFO"
    nodes: int = 36
    topology: str = "grid"
    wormhole: bool = False
    duration: float = 30.0
    seed: int = 1
    csv_path: Optional[str] = None
    protocol: ProtocolConfig = field(default_factory=ProtocolConfig)

    def __post_init__(self):
        """Ensure directories exist."""
        if self.log_to_file:
            Path(LOG_DIR).mkdir(parents=True, exist_ok=True)


def load_config_file(path: Optional[str] = None) -> dict:
    """
    Load configuration from YAML file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        Configuration dict (empty if file doesn't exist)

    Raises:
        ConfigError: If the file exists but is not valid YAML
    """
    config_path = path or CONFIG_FILE

    if not os.path.exists(config_path):
        return {}

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config file {config_path}: {e}") from e
    return data if isinstance(data, dict) else {}


DEFAULT_CONFIG_TEMPLATE = """\
# wormwatch configuration

# Logging settings
logging:
  # Enable file logging
  to_file: true
  # Log level: DEBUG, INFO, WARNING, ERROR
  level: INFO

# Routing protocol parameters (seconds for durations)
protocol:
  hello_interval: 1.0
  enable_hello: true
  ttl_start: 1
  ttl_increment: 2
  ttl_threshold: 7
  net_diameter: 35
  rreq_retries: 2
  rreq_rate_limit: 10
  rerr_rate_limit: 10
  node_traversal_time: 0.04
  active_route_timeout: 3.0
  max_queue_len: 64
  max_queue_time: 30.0
  destination_only: false
  gratuitous_reply: true
  enable_wormhole_detection: true

# Simulation defaults
simulation:
  nodes: 36
  topology: grid
  duration: 30.0
  seed: 1
"""


def save_default_config(path: Optional[str] = None) -> bool:
    """
    Save default configuration file.

    Args:
        path: Path to config file (defaults to CONFIG_FILE)

    Returns:
        True if saved successfully
    """
    config_path = path or CONFIG_FILE

    try:
        Path(config_path).parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            f.write(DEFAULT_CONFIG_TEMPLATE)
        return True
    except OSError as e:
        logger.warning(f"Could not write config file {config_path}: {e}")
        return False


def apply_protocol_section(config: ProtocolConfig, section: dict) -> None:
    """Copy known keys of a ``protocol`` section onto a ProtocolConfig."""
    known = {f.name: f for f in fields(config)}
    for key, value in section.items():
        if key not in known:
            logger.warning(f"Ignoring unknown protocol option: {key}")
            continue
        current = getattr(config, key)
        if isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, int):
            value = int(value)
        elif isinstance(current, float):
            value = float(value)
        setattr(config, key, value)


def apply_config_file(runtime_config: RuntimeConfig, file_config: dict) -> None:
    """
    Apply file configuration to runtime config.

    File config values are used as defaults, CLI args take precedence.
    """
    logging_config = file_config.get("logging", {}) or {}
    if "to_file" in logging_config:
        runtime_config.log_to_file = bool(logging_config["to_file"])
    if "level" in logging_config:
        runtime_config.log_level = str(logging_config["level"])

    sim_config = file_config.get("simulation", {}) or {}
    for key in ("nodes", "topology", "duration", "seed"):
        if key in sim_config:
            setattr(runtime_config, key, type(getattr(runtime_config, key))(sim_config[key]))

    apply_protocol_section(runtime_config.protocol, file_config.get("protocol", {}) or {})
    runtime_config.protocol.validate()
