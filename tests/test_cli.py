"""
Tests for the CLI — commands wired to an engine on the fake network.
"""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from blindspot import __version__
from blindspot.core.models import BatchReport, OperationReceipt
from blindspot.main import cli
from blindspot.ui.cli.common import prompt_chooser
from tests.conftest import elf


@pytest.fixture
def invoke(engine, settings):
    runner = CliRunner()

    def run(*args: str):
        return runner.invoke(cli, list(args), obj={"engine": engine, "settings": settings})

    return run


class TestCliBasics:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("install", "update", "revert", "remove", "list", "info", "history"):
            assert command in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init_creates_config(self, invoke, settings):
        settings.config_path.unlink(missing_ok=True)
        result = invoke("init")
        assert result.exit_code == 0
        assert settings.config_path.exists()

    def test_init_twice_does_not_overwrite(self, invoke):
        invoke("init")
        result = invoke("init")
        assert result.exit_code == 0
        assert "already exists" in result.output

    def test_completion(self, invoke):
        result = invoke("completion", "--shell", "fish")
        assert result.exit_code == 0
        assert "_BLINDSPOT_COMPLETE" in result.output


class TestPackageCommands:
    def test_list_empty(self, invoke):
        result = invoke("list")
        assert result.exit_code == 0
        assert "No packages installed" in result.output

    def test_install_then_list(self, invoke, transport):
        transport.publish("o/tool", "v1", {"tool": elf("1")})

        result = invoke("install", "tool", "o/tool")
        assert result.exit_code == 0, result.output
        assert "Installed tool v1" in result.output

        result = invoke("list", "--json")
        data = json.loads(result.output)
        assert [p["name"] for p in data] == ["tool"]
        assert data[0]["version"] == "v1"

    def test_install_twice_fails(self, invoke, transport):
        transport.publish("o/tool", "v1", {"tool": elf("1")})
        invoke("install", "tool", "o/tool")

        result = invoke("install", "tool", "o/tool")
        assert result.exit_code == 1
        assert "already installed" in result.output

    def test_install_with_format_override(self, invoke, transport, settings):
        import gzip

        url = "https://dl.test/tool.bin"
        transport.files[url] = gzip.compress(elf("z"))

        result = invoke("install", "tool", url, "--compression", "gzip", "--archive", "none")
        assert result.exit_code == 0, result.output
        assert settings.binary_path("tool").read_bytes() == elf("z")

    def test_update_revert_cycle(self, invoke, transport, engine):
        transport.publish("o/tool", "v1", {"tool": elf("1")})
        invoke("install", "tool", "o/tool")
        transport.publish("o/tool", "v2", {"tool": elf("2")})

        result = invoke("update", "tool")
        assert result.exit_code == 0, result.output
        assert "v1 → v2" in result.output

        result = invoke("revert", "tool")
        assert result.exit_code == 0, result.output
        assert engine.status("tool").version == "v1"

        result = invoke("revert", "tool")
        assert result.exit_code == 1
        assert "No backup" in result.output

    def test_batch_update_reports_failure(self, invoke, transport):
        for name in ("a", "b"):
            transport.publish(f"o/{name}", "v1", {name: elf(name)})
            invoke("install", name, f"o/{name}")
            transport.publish(f"o/{name}", "v2", {name: elf(name + "2")})
        transport.failing.add(transport.asset_url("o/b", "v2", "b"))

        result = invoke("update")

        assert result.exit_code == 1
        assert "1 updated, 0 unchanged, 1 failed" in result.output

    def test_batch_update_json(self, invoke, transport):
        transport.publish("o/a", "v1", {"a": elf("a")})
        invoke("install", "a", "o/a")

        result = invoke("update", "--json")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["status"] == "ok"
        assert data["unchanged"] == 1

    def test_update_nothing_installed(self, invoke):
        result = invoke("update")
        assert result.exit_code == 0
        assert "No packages installed" in result.output

    @pytest.mark.parametrize("alias", ["remove", "uninstall", "delete"])
    def test_remove_aliases(self, invoke, transport, settings, alias):
        transport.publish("o/tool", "v1", {"tool": elf("1")})
        invoke("install", "tool", "o/tool")

        result = invoke(alias, "tool")
        assert result.exit_code == 0, result.output
        assert not settings.binary_path("tool").exists()

    def test_info_not_installed(self, invoke):
        result = invoke("info", "ghost")
        assert result.exit_code == 1
        assert "not installed" in result.output

    def test_info_json(self, invoke, transport):
        transport.publish("o/tool", "v1", {"tool": elf("1")})
        invoke("install", "tool", "o/tool")

        result = invoke("info", "tool", "--json")
        assert result.exit_code == 0
        assert json.loads(result.output)["source"] == "o/tool"

    def test_info_shows_state_and_format(self, invoke, transport):
        import gzip

        url = "https://dl.test/tool.bin"
        transport.files[url] = gzip.compress(elf("z"))
        invoke("install", "tool", url, "--compression", "gzip")

        result = invoke("info", "tool")
        assert result.exit_code == 0, result.output
        assert "(installed)" in result.output
        assert "compression=gzip" in result.output

        result = invoke("info", "tool", "--json")
        assert json.loads(result.output)["state"] == "installed"

    def test_batch_update_flags_inconsistent_state(self, invoke, engine):
        report = BatchReport([
            OperationReceipt(package="a", operation="update", version_before="1", version_after="2"),
            OperationReceipt(
                package="b", operation="update", status="failed",
                error="rename failed", error_kind="PartialUpdateError",
                recovery_paths=["/tmp/b.hold"],
            ),
        ])
        with patch.object(engine, "update_many", return_value=report):
            result = invoke("update", "a", "b")

        assert result.exit_code == 1
        assert "state may be inconsistent" in result.output
        assert "recoverable: /tmp/b.hold" in result.output

    def test_history(self, invoke, transport):
        transport.publish("o/tool", "v1", {"tool": elf("1")})
        invoke("install", "tool", "o/tool")

        result = invoke("history", "--json")
        entries = json.loads(result.output)
        assert [(e["operation"], e["package"]) for e in entries] == [("install", "tool")]


class TestPromptChooser:
    def test_none_without_terminal(self):
        with patch("sys.stdin") as stdin:
            stdin.isatty.return_value = False
            assert prompt_chooser("Release assets") is None

    def test_lists_names_with_sizes(self, capsys):
        with patch("sys.stdin") as stdin:
            stdin.isatty.return_value = True
            choose = prompt_chooser("Release assets")

        with patch("click.prompt", return_value=1):
            picked = choose(["tool-a", "tool-b"], sizes={"tool-a": 3 * 1024 * 1024, "tool-b": 0})

        out = capsys.readouterr().out
        assert picked == "tool-b"
        assert "tool-a  (3.00 MB)" in out
        assert "tool-b\n" in out
