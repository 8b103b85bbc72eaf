"""
AsarHook Shared Layer

Constants and settings used by core, services, the API and the CLI.
Ports, timeouts and buffer limits live in shared.constants; anything an
operator may override goes through shared.settings.
"""

from shared.constants import (
    JobStatus,
    TargetContext,
    PortKind,
)
from shared.settings import AsarHookSettings, get_settings

__all__ = [
    "JobStatus",
    "TargetContext",
    "PortKind",
    "AsarHookSettings",
    "get_settings",
]
