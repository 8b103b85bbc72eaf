"""
Agent Injector

Prepends agent source to an archive's entry script and repacks the archive.
Injection is textual: the agent runs before anything the original entry
script defines, so it must not reference those symbols.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from core.asar_archive import ArchiveBridge, temporary_workdir
from core.backup_store import BackupRecord, BackupStore
from core.exceptions import AsarHookError, NoEntryScriptError, PayloadEmptyError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

ENTRY_CANDIDATES = (
    "main.js",
    "index.js",
    "app.js",
    "electron.js",
    "main.bundle.js",
    "main.bundle.cjs",
    "dist/main/index.js",
    "src/main/index.js",
)
WALK_EXCLUDES = {"node_modules", "dist", "build"}
SCRIPT_SUFFIXES = (".js", ".cjs", ".mjs")


@dataclass
class InjectionResult:
    archive_path: Path
    entry_script: str
    backup: Optional[BackupRecord] = None
    header_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archivePath": str(self.archive_path),
            "entryScript": self.entry_script,
            "backup": self.backup.to_dict() if self.backup else None,
            "headerHash": self.header_hash,
        }


def resolve_archive_path(path: PathLike) -> Path:
    """Validate an operator-selected archive path"""
    path = Path(path)
    if not path.exists():
        raise AsarHookError(f"Archive not found: {path}", path=str(path))
    if not path.is_file():
        raise AsarHookError(f"Archive path is not a file: {path}", path=str(path))
    if path.stat().st_size == 0:
        raise AsarHookError(f"Archive is empty: {path}", path=str(path))
    return path


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


class AgentInjector:
    """Drives extract, entry-script rewrite and repack for one archive at a time"""

    def __init__(
        self,
        bridge: Optional[ArchiveBridge] = None,
        backups: Optional[BackupStore] = None,
        tmp_dir: Optional[PathLike] = None,
    ):
        self.bridge = bridge or ArchiveBridge()
        self.backups = backups
        self.tmp_dir = tmp_dir

    def resolve_entry_script(self, work_dir: PathLike) -> Path:
        """Find the script the runtime executes first.

        Order: conventional locations, package.json "main", then the first
        script found walking the tree depth first.

        Raises:
            NoEntryScriptError: nothing script-like in the tree
        """
        work_dir = Path(work_dir)

        for candidate in ENTRY_CANDIDATES:
            path = work_dir / candidate
            if path.is_file():
                return path

        manifest = work_dir / "package.json"
        if manifest.is_file():
            try:
                declared = json.loads(manifest.read_text(encoding="utf-8")).get("main")
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Unreadable package.json in {work_dir}: {e}")
                declared = None
            if declared:
                path = work_dir / declared
                if path.is_dir():
                    path = path / "index.js"
                elif not path.exists() and not path.suffix:
                    path = path.with_suffix(".js")
                if path.is_file():
                    return path

        found = self._first_script(work_dir)
        if found is None:
            raise NoEntryScriptError("No entry script found in archive", path=str(work_dir))
        return found

    def _first_script(self, directory: Path) -> Optional[Path]:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
        for entry in entries:
            if entry.is_file() and entry.suffix in SCRIPT_SUFFIXES:
                return entry
        for entry in entries:
            if entry.is_dir() and not entry.is_symlink() and entry.name not in WALK_EXCLUDES:
                found = self._first_script(entry)
                if found is not None:
                    return found
        return None

    def inject_into(self, entry_script: PathLike, agent_source: str) -> None:
        """Prepend agent_source to the entry script"""
        if not agent_source.strip():
            raise PayloadEmptyError("Payload file is empty")
        entry_script = Path(entry_script)
        original = entry_script.read_text(encoding="utf-8")
        combined = normalize_newlines(agent_source) + "\n\n" + normalize_newlines(original)
        entry_script.write_text(combined, encoding="utf-8", newline="\n")

    def _run(
        self,
        archive_path: Path,
        agent_source: str,
        entry_override: Optional[str] = None,
        backup: bool = False,
    ) -> InjectionResult:
        if not agent_source.strip():
            raise PayloadEmptyError("Payload file is empty")

        with temporary_workdir(prefix="asarhook-inject-", parent=self.tmp_dir) as work_dir:
            self.bridge.extract(archive_path, work_dir)

            if entry_override:
                entry = work_dir / entry_override
                if not entry.is_file():
                    raise NoEntryScriptError(f"Entry script not found: {entry_override}", path=str(entry))
            else:
                entry = self.resolve_entry_script(work_dir)
            rel = entry.relative_to(work_dir).as_posix()
            logger.info(f"Injecting into {rel}")

            record = None
            if backup and self.backups is not None:
                record = self.backups.create(archive_path)

            self.inject_into(entry, agent_source)
            header = self.bridge.pack(work_dir, archive_path)

        return InjectionResult(
            archive_path=archive_path,
            entry_script=rel,
            backup=record,
            header_hash=header.sha256,
        )

    def setup(self, archive_path: PathLike, passthrough_path: PathLike) -> InjectionResult:
        """First-time flow: inject the passthrough agent, no backup"""
        archive_path = resolve_archive_path(archive_path)
        source = Path(passthrough_path).read_text(encoding="utf-8")
        return self._run(archive_path, source)

    def inject(
        self,
        agent_path: PathLike,
        archive_path: PathLike,
        entry_override: Optional[str] = None,
    ) -> InjectionResult:
        """Inject a caller-supplied agent file, backing up the archive first"""
        archive_path = resolve_archive_path(archive_path)
        source = Path(agent_path).read_text(encoding="utf-8")
        return self.inject_source(source, archive_path, entry_override)

    def inject_source(
        self,
        agent_source: str,
        archive_path: PathLike,
        entry_override: Optional[str] = None,
    ) -> InjectionResult:
        archive_path = resolve_archive_path(archive_path)
        return self._run(archive_path, agent_source, entry_override, backup=True)
