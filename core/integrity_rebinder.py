"""
Integrity Rebinder

Electron launchers built with embedded ASAR integrity validation carry the
expected header hash of app.asar inside the executable as a JSON record
(`"alg":"SHA256","value":"<hex>"`). After an archive is modified, the
stored hash is rewritten in place so launch-time validation passes again.
"""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from core.asar_archive import ArchiveBridge, temporary_workdir
from core.exceptions import HashLengthError, HashNotFoundError, IntegrityMismatchError
from shared.constants import BACKUP_SUFFIX

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

EMBEDDED_HASH_PATTERN = re.compile(rb'"alg":"SHA256","value":"([a-f0-9]{64})"')
LAUNCH_ERROR_PATTERN = re.compile(
    r"Integrity check failed for asar archive \(([a-f0-9]{64}) vs ([a-f0-9]{64})\)"
)
HEX64 = re.compile(r"^[a-f0-9]{64}$")

# Electron fuse wire: sentinel, version byte, length byte, one byte per fuse
FUSE_SENTINEL = b"dL7pKGdnNz796PbbjQWNKmHXBZaB9tsX"
FUSE_ASAR_INTEGRITY_INDEX = 4


@dataclass
class BypassResult:
    old_hash: str
    new_hash: str
    success: bool
    offset: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "oldHash": self.old_hash,
            "newHash": self.new_hash,
            "success": self.success,
            "offset": self.offset,
        }


class IntegrityRebinder:
    """Keep a launcher's embedded archive hash in agreement with its archive"""

    def __init__(self, bridge: Optional[ArchiveBridge] = None, tmp_dir: Optional[PathLike] = None):
        self.bridge = bridge or ArchiveBridge()
        self.tmp_dir = tmp_dir

    def extract_embedded_hash(self, binary_path: PathLike) -> str:
        """Return the first stored SHA-256 archive hash found in the binary.

        Raises:
            HashNotFoundError: no stored-hash record in the binary
        """
        data = Path(binary_path).read_bytes()
        match = EMBEDDED_HASH_PATTERN.search(data)
        if not match:
            raise HashNotFoundError(
                "Embedded ASAR integrity hash not found in binary",
                path=str(binary_path),
                pattern=EMBEDDED_HASH_PATTERN.pattern.decode(),
            )
        return match.group(1).decode("ascii")

    def compute_archive_hash(self, archive_path: PathLike) -> str:
        return self.bridge.read_header(archive_path).sha256

    def rebind(self, binary_path: PathLike, old_hash: str, new_hash: str) -> Optional[int]:
        """Overwrite the byte-exact occurrence of old_hash with new_hash.

        Both hashes must be 64 lowercase hex characters; anything else would
        shift every following byte of the executable.

        Returns:
            Offset that was patched, or None when old_hash == new_hash
        """
        for label, value in (("old", old_hash), ("new", new_hash)):
            if not HEX64.match(value or ""):
                raise HashLengthError(
                    f"{label} hash must be 64 lowercase hex characters, got {len(value or '')}",
                    path=str(binary_path),
                )
        if old_hash == new_hash:
            logger.info("Stored hash already matches archive, binary left untouched")
            return None

        binary_path = Path(binary_path)
        needle = old_hash.encode("ascii")
        offset = binary_path.read_bytes().find(needle)
        if offset < 0:
            raise HashNotFoundError(
                f"Hash {old_hash} not present in binary",
                path=str(binary_path),
                pattern=old_hash,
            )

        with open(binary_path, "r+b") as fh:
            fh.seek(offset)
            fh.write(new_hash.encode("ascii"))

        logger.info(f"Rebound {binary_path.name} at offset {offset}: {old_hash[:12]}... -> {new_hash[:12]}...")
        return offset

    def validate_integrity(self, binary_path: PathLike, archive_path: PathLike, strict: bool = False) -> Dict[str, Any]:
        """Compare the stored hash with the archive's header hash.

        A mismatch is expected after any mutation and is only reported,
        unless strict is set.

        Raises:
            IntegrityMismatchError: strict and the hashes differ
        """
        stored = self.extract_embedded_hash(binary_path)
        current = self.compute_archive_hash(archive_path)
        if strict and stored != current:
            raise IntegrityMismatchError(stored, current, path=str(binary_path))
        return {
            "storedHash": stored,
            "currentHash": current,
            "isValid": stored == current,
            "needsBypass": stored != current,
        }

    def _backup_once(self, path: Path) -> bool:
        backup = Path(str(path) + BACKUP_SUFFIX)
        if backup.exists():
            return False
        shutil.copy2(path, backup)
        logger.info(f"Created backup {backup.name}")
        return True

    def bypass(
        self,
        binary_path: PathLike,
        archive_path: PathLike,
        mutate: Optional[Callable[[Path], None]] = None,
        create_backups: bool = True,
    ) -> BypassResult:
        """Optionally mutate the archive, then rebind the binary to it.

        The stored hash is located before anything is written, and the
        binary is only patched after the archive has been repacked and
        rehashed successfully.
        """
        binary_path = Path(binary_path)
        archive_path = Path(archive_path)

        old_hash = self.extract_embedded_hash(binary_path)

        if create_backups:
            self._backup_once(binary_path)
            self._backup_once(archive_path)

        if mutate is not None:
            with temporary_workdir(prefix="asarhook-bypass-", parent=self.tmp_dir) as work_dir:
                self.bridge.extract(archive_path, work_dir)
                mutate(work_dir)
                header = self.bridge.pack(work_dir, archive_path)
            new_hash = header.sha256
        else:
            new_hash = self.compute_archive_hash(archive_path)

        offset = self.rebind(binary_path, old_hash, new_hash)
        self.validate_integrity(binary_path, archive_path, strict=True)
        return BypassResult(old_hash=old_hash, new_hash=new_hash, success=True, offset=offset)

    def restore_from_backup(self, binary_path: PathLike, archive_path: PathLike) -> Dict[str, bool]:
        """Copy `.backup` siblings back over the live files"""
        restored = {}
        for key, path in (("binaryRestored", Path(binary_path)), ("archiveRestored", Path(archive_path))):
            backup = Path(str(path) + BACKUP_SUFFIX)
            if backup.is_file():
                shutil.copy2(backup, path)
                logger.info(f"Restored {path.name} from {backup.name}")
                restored[key] = True
            else:
                restored[key] = False
        return restored

    def check_integrity_fuse(self, binary_path: PathLike) -> Optional[bool]:
        """Read EnableEmbeddedAsarIntegrityValidation from the fuse wire.

        Returns True/False for an enabled/disabled fuse, None when the
        binary carries no fuse wire or the fuse is absent or removed.
        """
        data = Path(binary_path).read_bytes()
        start = data.find(FUSE_SENTINEL)
        if start < 0:
            return None
        wire = start + len(FUSE_SENTINEL)
        if wire + 2 > len(data):
            return None
        fuse_count = data[wire + 1]
        if FUSE_ASAR_INTEGRITY_INDEX >= fuse_count:
            return None
        value = data[wire + 2 + FUSE_ASAR_INTEGRITY_INDEX:wire + 3 + FUSE_ASAR_INTEGRITY_INDEX]
        if value == b"1":
            return True
        if value == b"0":
            return False
        return None

    async def probe_hash_from_launch(self, binary_path: PathLike, timeout: float = 10.0) -> Optional[Dict[str, str]]:
        """Launch the binary and read the stored/runtime hashes from its integrity failure"""
        proc = await asyncio.create_subprocess_exec(
            str(binary_path),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        collected = b""
        try:
            collected = await asyncio.wait_for(proc.stderr.read(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Launch probe timed out after {timeout}s")
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            await proc.wait()

        match = LAUNCH_ERROR_PATTERN.search(collected.decode("utf-8", errors="replace"))
        if not match:
            return None
        return {"storedHash": match.group(1), "runtimeHash": match.group(2)}
