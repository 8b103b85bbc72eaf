"""
Shared Constants - Single Source of Truth

Wire constants, default ports and thresholds shared by the host tooling,
the in-target agents and the operator API.

Usage:
    from shared.constants import JobStatus, DEFAULT_CONTROL_PORT_BASE
"""

from enum import Enum


# ==================== JOB STATES ====================
class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERRORED = "error"
    TIMED_OUT = "timeout"


# ==================== EXECUTION CONTEXTS ====================
class TargetContext(str, Enum):
    PRIMARY = "main"
    SURFACE = "renderer"


# ==================== PORT KINDS ====================
class PortKind(str, Enum):
    CONTROL = "control"
    MONITOR = "monitor"


# ==================== PORTS ====================
DEFAULT_REGISTRY_PORT = 5666
DEFAULT_CONTROL_PORT_BASE = 10100
DEFAULT_MONITOR_PORT_BASE = 11100
DEFAULT_API_PORT = 8765

# ==================== TIMING (milliseconds) ====================
JOB_TIMEOUT_MS = 10_000
JOB_MAX_AGE_MS = 300_000
JOB_SWEEP_INTERVAL_S = 60
CALL_HOME_INTERVAL_MS = 60_000
CALL_HOME_INITIAL_DELAY_S = 5
ONLINE_THRESHOLD_MS = 120_000
EVICTION_AFTER_MS = 300_000
REGISTRY_SWEEP_INTERVAL_S = 60
MONITOR_CLIENT_TIMEOUT_MS = 60_000
MONITOR_SWEEP_INTERVAL_S = 30

# ==================== RCE CLIENT ====================
POLL_ATTEMPTS = 5
POLL_DELAY_S = 1.0

# ==================== TRAFFIC RING ====================
TRAFFIC_RING_MAX = 2000
TRAFFIC_RING_TRIM_TO = 1500
TRAFFIC_BACKLOG_REPLAY = 100

# ==================== SERIALIZATION LIMITS ====================
SERIALIZE_MAX_DEPTH = 3
SERIALIZE_MAX_STRING = 500
SERIALIZE_MAX_ITEMS = 10
SERIALIZE_MAX_KEYS = 20

# ==================== ARCHIVE ====================
ASAR_INTEGRITY_BLOCK_SIZE = 4 * 1024 * 1024
ASAR_DEFAULT_UNPACK = ("*.node",)
BACKUP_SUFFIX = ".backup"

# ==================== WEBSOCKET ====================
WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

# ==================== AGENT ====================
AGENT_TOOL_VERSION = "2.0"
AGENT_ROUTES = ["GET /info", "POST /console", "GET /result/:jobId"]
