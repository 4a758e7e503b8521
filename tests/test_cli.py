"""Tests for the converge command line."""

import json
from unittest.mock import patch

import pytest
from fakes import FakeStore

from converge.cli.apply import apply_command, print_result_json, print_result_summary, reconcile_declaration
from converge.cli.main import build_parser, main
from converge.config.settings import Settings
from converge.core.errors import ConfigurationError, ExitCode
from converge.declaration import parse_declaration
from converge.engine import Reconciler


@pytest.fixture
def declaration_file(tmp_path):
    path = tmp_path / "stack.yaml"
    path.write_text("'@things':\n  a:\n    size: 2\n")
    return str(path)


def fake_reconcile(store):
    async def run(declaration, settings, *, dry_run=False):
        return await Reconciler({"things": store}, dry_run=dry_run).apply(declaration)

    return run


class TestBuildParser:
    def test_plan_arguments(self):
        args = build_parser().parse_args(["plan", "stack.yaml", "--output", "json", "-v"])

        assert args.command == "plan"
        assert args.declaration == "stack.yaml"
        assert args.output == "json"
        assert args.verbose

    def test_apply_defaults(self):
        args = build_parser().parse_args(["apply", "stack.yaml"])

        assert args.output == "text"
        assert not args.verbose

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])

        assert exc_info.value.code == 2
        assert "plan" in capsys.readouterr().out


class TestApplyCommand:
    def test_plan_with_changes_exits_pending(self, declaration_file, capsys):
        store = FakeStore({"a": {"size": 1}})

        with patch("converge.cli.apply.reconcile_declaration", fake_reconcile(store)):
            code = apply_command(declaration_file, dry_run=True, settings=Settings(_env_file=None))

        assert code == ExitCode.CHANGES_PENDING
        assert store.mutations == []
        assert "Plan:" in capsys.readouterr().out

    def test_apply_converges(self, declaration_file):
        store = FakeStore({"a": {"size": 1}})

        with patch("converge.cli.apply.reconcile_declaration", fake_reconcile(store)):
            code = apply_command(declaration_file, settings=Settings(_env_file=None))

        assert code == ExitCode.SUCCESS
        assert store.mutations == [("update", "a")]

    def test_plan_without_changes(self, declaration_file):
        store = FakeStore({"a": {"size": 2}})

        with patch("converge.cli.apply.reconcile_declaration", fake_reconcile(store)):
            code = apply_command(declaration_file, dry_run=True, settings=Settings(_env_file=None))

        assert code == ExitCode.SUCCESS

    def test_json_output(self, declaration_file, capsys):
        store = FakeStore({"a": {"size": 1}})

        with patch("converge.cli.apply.reconcile_declaration", fake_reconcile(store)):
            apply_command(declaration_file, dry_run=True, output_format="json", settings=Settings(_env_file=None))

        output = json.loads(capsys.readouterr().out)
        assert output["dry_run"] is True
        assert output["summary"]["update"] == 1
        assert output["actions"][0] == {
            "kind": "update",
            "path": "@things",
            "name": "a",
            "drift": ["size"],
            "planned": True,
        }

    def test_missing_file(self, tmp_path):
        code = apply_command(str(tmp_path / "missing.yaml"), settings=Settings(_env_file=None))

        assert code == ExitCode.CONFIG_ERROR

    def test_missing_token(self, declaration_file, monkeypatch):
        monkeypatch.delenv("CONVERGE_DIGITALOCEAN_TOKEN", raising=False)

        code = apply_command(declaration_file, settings=Settings(_env_file=None))

        assert code == ExitCode.CONFIG_ERROR


@pytest.mark.asyncio
async def test_reconcile_declaration_requires_token(monkeypatch):
    monkeypatch.delenv("CONVERGE_DIGITALOCEAN_TOKEN", raising=False)

    with pytest.raises(ConfigurationError, match="TOKEN"):
        await reconcile_declaration(parse_declaration({}), Settings(_env_file=None))


@pytest.mark.asyncio
async def test_printers_handle_results(capsys):
    store = FakeStore({"stray": {}})
    result = await Reconciler({"things": store}).apply({"@things": {"a": {}}})

    print_result_summary(result, verbose=True)
    print_result_json(result)

    out = capsys.readouterr().out
    assert "@things/a" in out
    assert '"delete": 1' in out


def test_unbounded_polling_is_a_configuration_error(declaration_file):
    settings = Settings(_env_file=None, digitalocean_token="t", poll_timeout=None, poll_max_attempts=None)

    assert apply_command(declaration_file, settings=settings) == ExitCode.CONFIG_ERROR
