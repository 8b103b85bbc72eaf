"""
ASAR Archive Bridge

Reads, extracts and packs Electron ASAR archives.

Layout on disk:
    [size pickle: u32 4, u32 header_buf_size]
    [header pickle: u32 payload_size, u32 json_len, json bytes, zero pad to 4]
    [file data ...]

The runtime integrity check binds to the SHA-256 of the JSON header string
only, so the header is what IntegrityRebinder hashes.
"""

import fnmatch
import hashlib
import json
import logging
import os
import shutil
import stat
import struct
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from core.exceptions import ArchiveCorruptError
from shared.constants import ASAR_DEFAULT_UNPACK, ASAR_INTEGRITY_BLOCK_SIZE

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class ArchiveHeader:
    """Parsed header snapshot of one archive"""
    header_size: int
    header_string: str
    tree: Dict[str, Any]
    sha256: str
    data_offset: int = 0

    def iter_entries(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (relative posix path, node) for every node in the tree"""
        stack: List[Tuple[str, Dict[str, Any]]] = [("", self.tree)]
        while stack:
            prefix, node = stack.pop()
            for name, child in sorted(node.get("files", {}).items(), reverse=True):
                rel = f"{prefix}/{name}" if prefix else name
                yield rel, child
                if "files" in child:
                    stack.append((rel, child))

    @property
    def file_count(self) -> int:
        return sum(1 for _, node in self.iter_entries() if "files" not in node and "link" not in node)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "headerSize": self.header_size,
            "sha256": self.sha256,
            "fileCount": self.file_count,
            "dataOffset": self.data_offset,
        }


def _align4(n: int) -> int:
    return n + (4 - n % 4) % 4


def _file_integrity(path: Path, block_size: int = ASAR_INTEGRITY_BLOCK_SIZE) -> Dict[str, Any]:
    whole = hashlib.sha256()
    blocks = []
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(block_size)
            if not chunk:
                break
            whole.update(chunk)
            blocks.append(hashlib.sha256(chunk).hexdigest())
    if not blocks:
        blocks.append(hashlib.sha256(b"").hexdigest())
    return {
        "algorithm": "SHA256",
        "hash": whole.hexdigest(),
        "blockSize": block_size,
        "blocks": blocks,
    }


def encode_header(tree: Dict[str, Any]) -> Tuple[bytes, str]:
    """Serialize a header tree into the two leading pickles.

    Returns the raw bytes that precede file data and the JSON string
    that the integrity hash is computed over.
    """
    header_string = json.dumps(tree, separators=(",", ":"), ensure_ascii=False)
    raw = header_string.encode("utf-8")
    payload_size = 4 + _align4(len(raw))
    header_pickle = (
        struct.pack("<II", payload_size, len(raw))
        + raw
        + b"\0" * (_align4(len(raw)) - len(raw))
    )
    size_pickle = struct.pack("<II", 4, len(header_pickle))
    return size_pickle + header_pickle, header_string


@contextmanager
def temporary_workdir(prefix: str = "asarhook-", parent: Optional[PathLike] = None) -> Iterator[Path]:
    """Scoped temp directory, removed on every exit path.

    Removal failures are logged and never mask the caller's outcome.
    """
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)
    work_dir = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent) if parent else None))
    try:
        yield work_dir
    finally:
        try:
            shutil.rmtree(work_dir)
        except OSError as e:
            logger.warning(f"Failed to remove temp directory {work_dir}: {e}")


class ArchiveBridge:
    """Extract and pack ASAR archives"""

    def __init__(self, unpack: Sequence[str] = ASAR_DEFAULT_UNPACK):
        self.unpack = tuple(unpack)

    # ==================== Reading ====================

    def read_header(self, archive_path: PathLike) -> ArchiveHeader:
        """Read and parse the header of an archive without touching file data"""
        archive_path = Path(archive_path)
        try:
            with open(archive_path, "rb") as fh:
                size_pickle = fh.read(8)
                if len(size_pickle) != 8:
                    raise ArchiveCorruptError("Archive is too small to contain a header", path=str(archive_path))
                _, header_buf_size = struct.unpack("<II", size_pickle)
                header_pickle = fh.read(header_buf_size)
        except OSError as e:
            raise ArchiveCorruptError(f"Cannot read archive: {e}", path=str(archive_path)) from e

        if len(header_pickle) != header_buf_size or header_buf_size < 8:
            raise ArchiveCorruptError("Truncated archive header", path=str(archive_path))

        _, str_len = struct.unpack("<II", header_pickle[:8])
        raw = header_pickle[8:8 + str_len]
        if len(raw) != str_len:
            raise ArchiveCorruptError("Header string length exceeds header buffer", path=str(archive_path))

        try:
            header_string = raw.decode("utf-8")
            tree = json.loads(header_string)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ArchiveCorruptError(f"Header is not valid JSON: {e}", path=str(archive_path)) from e

        if not isinstance(tree, dict) or "files" not in tree:
            raise ArchiveCorruptError("Header has no file tree", path=str(archive_path))

        return ArchiveHeader(
            header_size=header_buf_size,
            header_string=header_string,
            tree=tree,
            sha256=hashlib.sha256(raw).hexdigest(),
            data_offset=8 + header_buf_size,
        )

    def info(self, archive_path: PathLike) -> Dict[str, Any]:
        header = self.read_header(archive_path)
        return {"path": str(archive_path), **header.to_dict()}

    # ==================== Extract ====================

    def extract(self, archive_path: PathLike, work_dir: PathLike) -> Path:
        """Extract every entry of an archive into work_dir.

        Raises:
            ArchiveCorruptError: header unreadable, entry escapes work_dir,
                or the archive yields zero files
        """
        archive_path = Path(archive_path)
        work_dir = Path(work_dir)
        header = self.read_header(archive_path)
        unpacked_root = Path(str(archive_path) + ".unpacked")
        root = work_dir.resolve()

        work_dir.mkdir(parents=True, exist_ok=True)
        links: List[Tuple[Path, str]] = []
        extracted = 0

        with open(archive_path, "rb") as fh:
            for rel, node in header.iter_entries():
                if any(part in ("", ".", "..") for part in rel.split("/")):
                    raise ArchiveCorruptError(f"Unsafe entry name: {rel}", path=str(archive_path))
                target = work_dir.joinpath(*rel.split("/"))
                if root not in target.resolve().parents:
                    raise ArchiveCorruptError(f"Entry escapes work directory: {rel}", path=str(archive_path))

                if "files" in node:
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if "link" in node:
                    link_target = work_dir.joinpath(*str(node["link"]).split("/"))
                    if root not in link_target.resolve().parents:
                        raise ArchiveCorruptError(
                            f"Link escapes work directory: {rel} -> {node['link']}", path=str(archive_path)
                        )
                    links.append((target, node["link"]))
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                if node.get("unpacked"):
                    source = unpacked_root.joinpath(*rel.split("/"))
                    if not source.is_file():
                        raise ArchiveCorruptError(f"Unpacked file missing: {source}", path=str(archive_path))
                    shutil.copyfile(source, target)
                else:
                    size = int(node.get("size", 0))
                    fh.seek(header.data_offset + int(node.get("offset", "0")))
                    data = fh.read(size)
                    if len(data) != size:
                        raise ArchiveCorruptError(f"Truncated file data for {rel}", path=str(archive_path))
                    target.write_bytes(data)

                if node.get("executable"):
                    target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
                extracted += 1

        for target, link in links:
            self._materialize_link(work_dir, target, link)

        if extracted == 0:
            raise ArchiveCorruptError("Archive extraction yielded no files", path=str(archive_path))

        logger.info(f"Extracted {extracted} files from {archive_path.name} to {work_dir}")
        return work_dir

    def _materialize_link(self, work_dir: Path, target: Path, link: str) -> None:
        link_target = work_dir.joinpath(*link.split("/"))
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.symlink(os.path.relpath(link_target, target.parent), target)
        except OSError as e:
            logger.warning(f"Cannot create symlink {target} -> {link} ({e}), copying instead")
            if link_target.is_dir():
                shutil.copytree(link_target, target)
            elif link_target.exists():
                shutil.copyfile(link_target, target)

    # ==================== Pack ====================

    def _should_unpack(self, rel: str) -> bool:
        name = rel.rsplit("/", 1)[-1]
        return any(fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel, pattern) for pattern in self.unpack)

    def build_tree(self, work_dir: PathLike) -> Tuple[Dict[str, Any], List[Tuple[str, Path, bool]]]:
        """Walk work_dir into a header tree.

        Returns the tree plus (rel, path, unpacked) tuples in data order.
        """
        work_dir = Path(work_dir)
        root = work_dir.resolve()
        files: List[Tuple[str, Path, bool]] = []
        offset = 0

        def walk(directory: Path, prefix: str) -> Dict[str, Any]:
            nonlocal offset
            node: Dict[str, Any] = {}
            for entry in sorted(directory.iterdir(), key=lambda p: p.name):
                rel = f"{prefix}/{entry.name}" if prefix else entry.name

                if entry.is_symlink():
                    resolved = entry.resolve()
                    if resolved == root or root in resolved.parents:
                        node[entry.name] = {"link": resolved.relative_to(root).as_posix()}
                        continue

                if entry.is_dir():
                    node[entry.name] = {"files": walk(entry, rel)}
                    continue

                size = entry.stat().st_size
                record: Dict[str, Any] = {"size": size}
                unpacked = self._should_unpack(rel)
                if unpacked:
                    record["unpacked"] = True
                else:
                    record["offset"] = str(offset)
                    offset += size
                record["integrity"] = _file_integrity(entry)
                if os.name != "nt" and entry.stat().st_mode & stat.S_IXUSR:
                    record["executable"] = True
                node[entry.name] = record
                files.append((rel, entry, unpacked))
            return node

        tree = {"files": walk(work_dir, "")}
        return tree, files

    def pack(self, work_dir: PathLike, archive_path: PathLike) -> ArchiveHeader:
        """Pack work_dir into archive_path, overwriting any existing archive"""
        work_dir = Path(work_dir)
        archive_path = Path(archive_path)
        if not work_dir.is_dir():
            raise ArchiveCorruptError(f"Not a directory: {work_dir}", path=str(work_dir))

        tree, files = self.build_tree(work_dir)
        prefix, header_string = encode_header(tree)

        unpacked_root = Path(str(archive_path) + ".unpacked")
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with open(archive_path, "wb") as out:
            out.write(prefix)
            for rel, path, unpacked in files:
                if unpacked:
                    dest = unpacked_root.joinpath(*rel.split("/"))
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(path, dest)
                    continue
                with open(path, "rb") as src:
                    shutil.copyfileobj(src, out)

        raw = header_string.encode("utf-8")
        logger.info(f"Packed {len(files)} files into {archive_path.name}")
        return ArchiveHeader(
            header_size=len(prefix) - 8,
            header_string=header_string,
            tree=tree,
            sha256=hashlib.sha256(raw).hexdigest(),
            data_offset=len(prefix),
        )
