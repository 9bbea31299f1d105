"""Tests for command line parsing and the CLI entry point."""

import json

import pytest

import boxpm
from args import parse_args
from boxpm import parse_overrides, run_command
from context import InstallOptions
from service import ResultCode, RunResult


class TestParseArgs:
    """Subcommands and options."""

    def test_install_defaults(self):
        args = parse_args(["install"])
        assert args.COMMAND == "install"
        assert args.PACKAGES == []
        assert args.MANIFEST == "box.json"
        assert not args.SAVE_DEV and not args.FORCE
        assert not args.PRODUCTION and not args.STRICT and not args.JSON
        assert args.LOG_LEVEL == "INFO"

    def test_install_with_packages(self):
        args = parse_args(["add", "foo@^1.2", "github:me/lib#v1", "-D", "--force", "-m", "sub/box.json"])
        assert args.COMMAND == "add"
        assert args.PACKAGES == ["foo@^1.2", "github:me/lib#v1"]
        assert args.SAVE_DEV and args.FORCE
        assert args.MANIFEST == "sub/box.json"

    def test_remove_requires_packages(self):
        with pytest.raises(SystemExit):
            parse_args(["remove"])

    def test_settings_accumulate(self):
        args = parse_args(["resolve", "--set", "max_workers=2", "--set", "run-hooks=false", "--json"])
        assert args.SETTINGS == ["max_workers=2", "run-hooks=false"]
        assert args.JSON

    def test_command_required(self):
        with pytest.raises(SystemExit):
            parse_args([])

    def test_bad_log_level(self):
        with pytest.raises(SystemExit):
            parse_args(["install", "--loglevel", "LOUD"])


def test_parse_overrides():
    assert parse_overrides(["max-workers=4", " engines = box=1.0.0 ", "junk"]) == {
        "max_workers": "4",
        "engines": "box=1.0.0",
    }
    assert parse_overrides(None) == {}


class FakeService:
    """Records which command was dispatched."""

    def __init__(self):
        self.calls = []

    def install(self, manifest, options, packages=()):
        self.calls.append(("install", str(manifest), options, list(packages)))
        return RunResult(ResultCode.SUCCESS)

    def update(self, manifest, names, options):
        self.calls.append(("update", str(manifest), options, list(names)))
        return RunResult(ResultCode.SUCCESS)

    def remove(self, manifest, names, options):
        self.calls.append(("remove", str(manifest), options, list(names)))
        return RunResult(ResultCode.SUCCESS)

    def resolve(self, manifest, options):
        self.calls.append(("resolve", str(manifest), options, []))
        return RunResult(ResultCode.SUCCESS)


@pytest.mark.parametrize("argv, expected", [
    (["i", "foo"], ("install", ["foo"])),
    (["up"], ("update", [])),
    (["uninstall", "foo", "bar"], ("remove", ["foo", "bar"])),
    (["plan"], ("resolve", [])),
])
def test_run_command_dispatch(argv, expected):
    service = FakeService()
    run_command(parse_args(argv), service)
    command, _, _, packages = service.calls[0]
    assert (command, packages) == expected


def test_run_command_options():
    service = FakeService()
    run_command(parse_args(["install", "--production", "--strict", "-D"]), service)
    assert service.calls[0][2] == InstallOptions(dev=False, strict=True, force=False, save_dev=True)


def test_main_exit_code_and_json(tmp_path, monkeypatch, capsys):
    manifest = tmp_path / "box.json"
    manifest.write_text("{not json")
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setattr(boxpm, "configure_logging", lambda **kwargs: None)

    with pytest.raises(SystemExit) as excinfo:
        boxpm.main(["resolve", "-m", str(manifest), "--json"])

    assert excinfo.value.code == 5
    payload = json.loads(capsys.readouterr().out)
    assert payload["code"] == "persistence_failed"
    assert payload["diagnostics"][0]["error"] == "PersistenceFailure"
