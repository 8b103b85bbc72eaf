"""
Tests for launcher integrity rebinding
"""

import pytest

from core.asar_archive import ArchiveBridge
from core.exceptions import HashLengthError, HashNotFoundError, IntegrityMismatchError
from core.integrity_rebinder import LAUNCH_ERROR_PATTERN, IntegrityRebinder

from conftest import make_binary


class TestEmbeddedHash:
    """Locating the stored hash"""

    def test_extract_embedded_hash(self, binary, archive):
        stored = IntegrityRebinder().extract_embedded_hash(binary)
        assert stored == ArchiveBridge().read_header(archive).sha256

    def test_missing_hash_reports_pattern(self, tmp_path):
        path = tmp_path / "plain"
        path.write_bytes(b"\x00" * 128)
        with pytest.raises(HashNotFoundError) as exc:
            IntegrityRebinder().extract_embedded_hash(path)
        assert '"alg":"SHA256"' in exc.value.pattern

    def test_validate_integrity(self, binary, archive):
        report = IntegrityRebinder().validate_integrity(binary, archive)
        assert report["isValid"] is True
        assert report["needsBypass"] is False

    def test_strict_validation_raises_on_mismatch(self, tmp_path, archive):
        stale = make_binary(tmp_path / "Stale", "0" * 64)
        rebinder = IntegrityRebinder()
        assert rebinder.validate_integrity(stale, archive)["needsBypass"] is True
        with pytest.raises(IntegrityMismatchError) as exc:
            rebinder.validate_integrity(stale, archive, strict=True)
        assert exc.value.stored_hash == "0" * 64
        assert exc.value.current_hash == ArchiveBridge().read_header(archive).sha256


class TestRebind:
    """In-place hash replacement"""

    def test_same_hash_leaves_binary_untouched(self, binary):
        before = binary.read_bytes()
        stored = IntegrityRebinder().extract_embedded_hash(binary)
        assert IntegrityRebinder().rebind(binary, stored, stored) is None
        assert binary.read_bytes() == before

    def test_rebind_preserves_length(self, binary):
        rebinder = IntegrityRebinder()
        before = binary.read_bytes()
        old = rebinder.extract_embedded_hash(binary)
        offset = rebinder.rebind(binary, old, "b" * 64)
        after = binary.read_bytes()
        assert len(after) == len(before)
        assert after[offset:offset + 64] == b"b" * 64
        assert rebinder.extract_embedded_hash(binary) == "b" * 64

    def test_short_hash_rejected(self, binary):
        old = IntegrityRebinder().extract_embedded_hash(binary)
        with pytest.raises(HashLengthError):
            IntegrityRebinder().rebind(binary, old, "abc")

    def test_uppercase_hash_rejected(self, binary):
        old = IntegrityRebinder().extract_embedded_hash(binary)
        with pytest.raises(HashLengthError):
            IntegrityRebinder().rebind(binary, old, "A" * 64)

    def test_absent_old_hash(self, binary):
        with pytest.raises(HashNotFoundError):
            IntegrityRebinder().rebind(binary, "c" * 64, "d" * 64)


class TestBypass:
    """Mutate, repack, rebind"""

    def test_bypass_with_mutation(self, tmp_path, binary, archive):
        rebinder = IntegrityRebinder(tmp_dir=tmp_path / "tmp")
        size_before = binary.stat().st_size

        def mutate(work_dir):
            (work_dir / "extra.js").write_text("// added\n")

        result = rebinder.bypass(binary, archive, mutate=mutate)

        assert result.success is True
        assert result.old_hash != result.new_hash
        assert binary.stat().st_size == size_before
        assert rebinder.validate_integrity(binary, archive)["isValid"] is True
        assert (tmp_path / "App.backup").is_file()
        assert (archive.parent / "app.asar.backup").is_file()

    def test_bypass_stale_binary(self, tmp_path, archive):
        stale = make_binary(tmp_path / "Stale", "a" * 64)
        result = IntegrityRebinder().bypass(stale, archive, create_backups=False)
        assert result.old_hash == "a" * 64
        assert result.new_hash == ArchiveBridge().read_header(archive).sha256
        assert not (tmp_path / "Stale.backup").exists()

    def test_bypass_without_hash_changes_nothing(self, tmp_path, archive):
        path = tmp_path / "NoRecord"
        path.write_bytes(b"\x00" * 64)
        archive_before = archive.read_bytes()
        with pytest.raises(HashNotFoundError):
            IntegrityRebinder().bypass(path, archive, mutate=lambda d: (d / "x.js").write_text("x"))
        assert archive.read_bytes() == archive_before

    def test_restore_from_backup(self, tmp_path, binary, archive):
        rebinder = IntegrityRebinder()
        original = binary.read_bytes()
        rebinder.bypass(binary, archive, mutate=lambda d: (d / "x.js").write_text("x"))
        restored = rebinder.restore_from_backup(binary, archive)
        assert restored == {"binaryRestored": True, "archiveRestored": True}
        assert binary.read_bytes() == original
        assert rebinder.validate_integrity(binary, archive)["isValid"] is True


class TestFuse:
    """EnableEmbeddedAsarIntegrityValidation fuse"""

    def test_enabled(self, binary):
        assert IntegrityRebinder().check_integrity_fuse(binary) is True

    def test_disabled(self, tmp_path):
        path = make_binary(tmp_path / "Off", "a" * 64, fuse=b"0")
        assert IntegrityRebinder().check_integrity_fuse(path) is False

    def test_no_fuse_wire(self, tmp_path):
        path = tmp_path / "Bare"
        path.write_bytes(b"\x00" * 64)
        assert IntegrityRebinder().check_integrity_fuse(path) is None


def test_launch_error_pattern():
    line = f"FATAL: Integrity check failed for asar archive ({'a' * 64} vs {'b' * 64})"
    match = LAUNCH_ERROR_PATTERN.search(line)
    assert match.group(1) == "a" * 64
    assert match.group(2) == "b" * 64
