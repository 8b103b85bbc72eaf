"""
Tests for the ASAR archive bridge
"""

import hashlib
import os
import struct

import pytest

from core.asar_archive import ArchiveBridge, encode_header, temporary_workdir
from core.exceptions import ArchiveCorruptError


class TestHeader:
    """Header layout and hashing"""

    def test_hash_is_sha256_of_header_string(self, archive):
        header = ArchiveBridge().read_header(archive)
        assert header.sha256 == hashlib.sha256(header.header_string.encode("utf-8")).hexdigest()

    def test_pickle_layout(self, archive):
        raw = archive.read_bytes()
        size_field, header_buf_size = struct.unpack("<II", raw[:8])
        payload_size, str_len = struct.unpack("<II", raw[8:16])
        assert size_field == 4
        assert header_buf_size % 4 == 0
        assert payload_size == header_buf_size - 4
        assert raw[16:16 + str_len].decode("utf-8") == ArchiveBridge().read_header(archive).header_string

    def test_info_counts_files(self, archive):
        info = ArchiveBridge().info(archive)
        assert info["fileCount"] == 4
        assert len(info["sha256"]) == 64

    def test_offsets_are_strings(self, archive):
        tree = ArchiveBridge().read_header(archive).tree
        assert isinstance(tree["files"]["main.js"]["offset"], str)
        assert tree["files"]["main.js"]["integrity"]["algorithm"] == "SHA256"


class TestExtractPack:
    """Extract and repack"""

    def test_roundtrip_keeps_header_hash(self, tmp_path, archive):
        bridge = ArchiveBridge()
        original = bridge.read_header(archive)
        work = tmp_path / "work"
        bridge.extract(archive, work)
        repacked = bridge.pack(work, tmp_path / "out" / "app.asar")
        assert repacked.sha256 == original.sha256

    def test_extract_restores_contents(self, tmp_path, archive, app_tree):
        work = ArchiveBridge().extract(archive, tmp_path / "work")
        for rel in ("main.js", "package.json", "lib/util.js", "native/addon.node"):
            assert (work / rel).read_bytes() == (app_tree / rel).read_bytes()

    def test_native_modules_are_unpacked(self, archive):
        node = ArchiveBridge().read_header(archive).tree["files"]["native"]["files"]["addon.node"]
        assert node["unpacked"] is True
        assert "offset" not in node
        assert (archive.parent / "app.asar.unpacked" / "native" / "addon.node").is_file()

    def test_missing_unpacked_file_is_corrupt(self, archive):
        (archive.parent / "app.asar.unpacked" / "native" / "addon.node").unlink()
        with pytest.raises(ArchiveCorruptError):
            ArchiveBridge().extract(archive, archive.parent / "work")

    @pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
    def test_symlinks_become_links(self, tmp_path, app_tree):
        os.symlink("util.js", app_tree / "lib" / "alias.js")
        bridge = ArchiveBridge()
        header = bridge.pack(app_tree, tmp_path / "linked.asar")
        assert header.tree["files"]["lib"]["files"]["alias.js"] == {"link": "lib/util.js"}
        assert header.file_count == 4

        work = bridge.extract(tmp_path / "linked.asar", tmp_path / "work")
        assert (work / "lib" / "alias.js").read_text() == "module.exports = 42;\n"


class TestCorruptArchives:
    """Unreadable or hostile archives"""

    def test_too_small(self, tmp_path):
        path = tmp_path / "tiny.asar"
        path.write_bytes(b"\x01\x02")
        with pytest.raises(ArchiveCorruptError):
            ArchiveBridge().read_header(path)

    def test_header_not_json(self, tmp_path):
        path = tmp_path / "bad.asar"
        path.write_bytes(struct.pack("<II", 4, 12) + struct.pack("<II", 8, 4) + b"nope")
        with pytest.raises(ArchiveCorruptError, match="not valid JSON"):
            ArchiveBridge().read_header(path)

    def test_empty_tree_yields_no_files(self, tmp_path):
        path = tmp_path / "empty.asar"
        prefix, _ = encode_header({"files": {}})
        path.write_bytes(prefix)
        with pytest.raises(ArchiveCorruptError, match="yielded no files"):
            ArchiveBridge().extract(path, tmp_path / "work")

    def test_parent_entry_rejected(self, tmp_path):
        path = tmp_path / "evil.asar"
        prefix, _ = encode_header({"files": {"..": {"size": 1, "offset": "0"}}})
        path.write_bytes(prefix + b"x")
        with pytest.raises(ArchiveCorruptError, match="Unsafe entry"):
            ArchiveBridge().extract(path, tmp_path / "work")

    def test_link_outside_tree_rejected(self, tmp_path):
        path = tmp_path / "evil.asar"
        tree = {"files": {
            "a.js": {"size": 1, "offset": "0"},
            "escape": {"link": "../../outside"},
        }}
        prefix, _ = encode_header(tree)
        path.write_bytes(prefix + b"x")
        with pytest.raises(ArchiveCorruptError, match="Link escapes work directory"):
            ArchiveBridge().extract(path, tmp_path / "work")
        assert not (tmp_path / "work" / "escape").exists()


class TestTemporaryWorkdir:
    def test_removed_on_error(self, tmp_path):
        seen = []
        with pytest.raises(RuntimeError):
            with temporary_workdir(parent=tmp_path) as work:
                seen.append(work)
                (work / "f").write_text("x")
                raise RuntimeError("boom")
        assert not seen[0].exists()
