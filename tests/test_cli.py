"""
Tests for the command line front end
"""

import pytest

import asarhook


class TestParser:
    def test_hook_arguments(self):
        args = asarhook.build_parser().parse_args(["hook", "app.asar", "--uuid", "u1", "--port", "10200"])
        assert args.func is asarhook.cmd_hook
        assert args.uuid == "u1"
        assert args.port == 10200
        assert args.no_call_home is False

    def test_exec_defaults(self):
        args = asarhook.build_parser().parse_args(["exec", "return 1"])
        assert (args.host, args.port, args.process) == ("127.0.0.1", 10100, "main")

    def test_command_required(self):
        with pytest.raises(SystemExit):
            asarhook.build_parser().parse_args([])


class TestReport:
    def test_failure_exit_code(self):
        assert asarhook.report({"success": False, "error": "nope"}, "Setup") == 1

    def test_success_exit_code(self):
        assert asarhook.report({"success": True, "entryScript": "main.js", "backup": None}, "Setup") == 0


class TestCommands:
    def test_setup_command(self, monkeypatch, settings, archive):
        monkeypatch.setattr("services.injector_service.get_settings", lambda: settings)
        args = asarhook.build_parser().parse_args(["setup", str(archive)])
        assert args.func(args) == 0

    def test_exec_needs_code(self):
        args = asarhook.build_parser().parse_args(["exec"])
        assert asarhook.cmd_exec(args) == 1
