"""
Tests for archive backups
"""

import pytest

from core.backup_store import BackupRecord, BackupStore, hash_path
from core.exceptions import AsarHookError, BackupMismatchError


class TestBackupStore:
    """Create, list, restore, delete"""

    def test_create_names_backup(self, tmp_path, archive):
        store = BackupStore(tmp_path / "backups")
        record = store.create(archive, now_ms=1700000000000)
        assert record.file_name == f"app.asar_{hash_path(archive)}_1700000000000.backup"
        assert record.storage_path.read_bytes() == archive.read_bytes()

    def test_list_newest_first(self, tmp_path, archive):
        store = BackupStore(tmp_path / "backups")
        store.create(archive, now_ms=1000)
        store.create(archive, now_ms=3000)
        store.create(archive, now_ms=2000)
        (tmp_path / "backups" / "notes.backup").write_text("not a backup")
        assert [r.created_at_ms for r in store.list()] == [3000, 2000, 1000]
        assert store.latest_for(archive).created_at_ms == 3000

    def test_restore_by_name(self, tmp_path, archive):
        store = BackupStore(tmp_path / "backups")
        original = archive.read_bytes()
        record = store.create(archive)
        archive.write_bytes(b"tampered")
        store.restore(record.file_name, archive)
        assert archive.read_bytes() == original

    def test_restore_other_path_refused(self, tmp_path, archive):
        store = BackupStore(tmp_path / "backups")
        record = store.create(archive)
        other = tmp_path / "other" / "app.asar"
        other.parent.mkdir()
        other.write_bytes(b"keep me")
        with pytest.raises(BackupMismatchError, match="Backup does not match target ASAR file"):
            store.restore(record.file_name, other)
        assert other.read_bytes() == b"keep me"

    def test_delete(self, tmp_path, archive):
        store = BackupStore(tmp_path / "backups")
        record = store.create(archive)
        store.delete(record.file_name)
        assert store.list() == []

    def test_invalid_name(self, tmp_path):
        with pytest.raises(AsarHookError, match="Invalid backup file format"):
            BackupRecord.from_file(tmp_path / "app.asar.bak")

    def test_to_dict(self, tmp_path, archive):
        record = BackupStore(tmp_path / "backups").create(archive, now_ms=42)
        data = record.to_dict()
        assert data["originalName"] == "app.asar"
        assert data["hash"] == hash_path(archive)
        assert data["timestamp"] == 42
        assert data["size"] == archive.stat().st_size

    def test_list_for_one_archive(self, tmp_path, archive):
        store = BackupStore(tmp_path / "backups")
        other = tmp_path / "other" / "app.asar"
        other.parent.mkdir()
        other.write_bytes(archive.read_bytes())
        store.create(archive, now_ms=1000)
        store.create(other, now_ms=2000)
        store.create(archive, now_ms=3000)
        assert [r.created_at_ms for r in store.list(archive)] == [3000, 1000]
        assert [r.created_at_ms for r in store.list(other)] == [2000]
        assert len(store.list()) == 3
        assert store.latest_for(other).created_at_ms == 2000


class TestPathIdentity:
    """Backups follow the file, whatever spelling of its path is used"""

    def test_relative_and_absolute_agree(self, tmp_path, archive, monkeypatch):
        monkeypatch.chdir(archive.parent)
        real = archive.resolve()
        assert hash_path("./app.asar") == hash_path(real)
        assert hash_path("app.asar") == hash_path(str(real))

    def test_restore_through_dot_slash(self, tmp_path, archive, monkeypatch):
        monkeypatch.chdir(archive.parent)
        store = BackupStore(tmp_path / "backups")
        original = archive.read_bytes()
        record = store.create("./app.asar")
        archive.write_bytes(b"tampered")
        store.restore(record.file_name, "./app.asar")
        assert archive.read_bytes() == original

    def test_restore_through_doubled_separator(self, tmp_path, archive):
        store = BackupStore(tmp_path / "backups")
        original = archive.read_bytes()
        doubled = f"{archive.parent}//{archive.name}"
        record = store.create(doubled)
        archive.write_bytes(b"tampered")
        store.restore(record.file_name, doubled)
        assert archive.read_bytes() == original
        assert store.list(archive) == [record]
