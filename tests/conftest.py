"""
Shared fixtures: a small Electron-style app tree, its packed archive and a
fake launcher binary carrying the archive's integrity record.
"""

import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.asar_archive import ArchiveBridge
from core.integrity_rebinder import FUSE_SENTINEL
from shared.settings import AsarHookSettings

MAIN_JS = "const { app } = require('electron');\napp.whenReady().then(() => console.log('ready'));\n"


def make_binary(path: Path, stored_hash: str, fuse: bytes = b"1") -> Path:
    """Write a fake launcher: padding, the integrity record, a fuse wire"""
    record = b'[{"file":"resources\\\\app.asar","alg":"SHA256","value":"' + stored_hash.encode() + b'"}]'
    wire = FUSE_SENTINEL + b"\x01\x08" + b"0100" + fuse + b"111"
    path.write_bytes(b"\x7fELF" + b"\x00" * 256 + record + b"\x00" * 64 + wire + b"\x00" * 32)
    return path


@pytest.fixture
def app_tree(tmp_path):
    root = tmp_path / "src"
    (root / "lib").mkdir(parents=True)
    (root / "native").mkdir()
    (root / "package.json").write_text('{"name": "demo", "main": "main.js"}', encoding="utf-8")
    (root / "main.js").write_text(MAIN_JS, encoding="utf-8")
    (root / "lib" / "util.js").write_text("module.exports = 42;\n", encoding="utf-8")
    (root / "native" / "addon.node").write_bytes(b"\x00native\x01")
    return root


@pytest.fixture
def archive(tmp_path, app_tree):
    path = tmp_path / "resources" / "app.asar"
    ArchiveBridge().pack(app_tree, path)
    return path


@pytest.fixture
def binary(tmp_path, archive):
    stored = ArchiveBridge().read_header(archive).sha256
    return make_binary(tmp_path / "App", stored)


@pytest.fixture
def settings(tmp_path):
    return AsarHookSettings(DATA_DIR=tmp_path / "data", POLL_DELAY_S=0.2, POLL_ATTEMPTS=3)
