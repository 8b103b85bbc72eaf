"""
Tests for the payload library
"""

import pytest

from core.agent_templates import PLACEHOLDER
from core.exceptions import PayloadExistsError
from core.payload_library import DEFAULT_SNIPPETS, PayloadLibrary


class TestPayloadLibrary:
    def test_initialize_never_overwrites(self, tmp_path):
        library = PayloadLibrary(tmp_path / "payloads")
        assert library.initialize() == len(DEFAULT_SNIPPETS) + 1
        library.passthrough_path.write_text("// edited")
        assert library.initialize() == 0
        assert library.passthrough_path.read_text() == "// edited"

    def test_passthrough_is_rendered(self, tmp_path):
        library = PayloadLibrary(tmp_path / "payloads")
        library.initialize()
        source = library.passthrough_path.read_text()
        assert PLACEHOLDER.search(source) is None
        assert "enableCallHome: false" in source

    def test_create_and_list(self, tmp_path):
        library = PayloadLibrary(tmp_path / "payloads")
        library.initialize()
        path = library.create("dump-env", "return process.env;", "recon")
        assert path.name == "dump-env.js"

        entries = {e["relativePath"]: e for e in library.list()}
        assert entries["recon/dump-env.js"]["category"] == "recon"
        assert entries["passthrough.js"]["category"] == "root"
        assert entries["info/app-info.js"]["isJavaScript"] is True

    def test_duplicate_rejected(self, tmp_path):
        library = PayloadLibrary(tmp_path / "payloads")
        library.create("a", "1")
        with pytest.raises(PayloadExistsError, match="Payload already exists"):
            library.create("a.js", "2")

    def test_bad_names(self, tmp_path):
        library = PayloadLibrary(tmp_path / "payloads")
        with pytest.raises(ValueError):
            library.create("../escape", "x")
        with pytest.raises(ValueError):
            library.create("ok", "x", category="..")

    def test_read_confined(self, tmp_path):
        library = PayloadLibrary(tmp_path / "payloads")
        library.initialize()
        assert "app.getName()" in library.read("info/app-info.js")
        with pytest.raises(ValueError):
            library.read("../../etc/passwd")
