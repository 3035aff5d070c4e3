"""Tests for the laneforge command line."""

from unittest.mock import patch

import pytest

from lanekit.lanes import Lane

from app.cli import _print_result, build_parser, main
from app.services.pipeline.models import PipelineFailure, PipelineSuccess


@pytest.fixture(autouse=True)
def _quiet_logging():
    with patch("app.cli.configure_logging"):
        yield


def test_parser_build_options():
    args = build_parser().parse_args(["build", "a dice roller", "--lane", "python_script", "--model", "m"])
    assert args.command == "build"
    assert args.prompt == "a dice roller"
    assert args.lane == "python_script"
    assert args.model == "m"
    assert args.output_dir is None


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_parser().parse_args([])


def test_route_prints_lane_and_reason(capsys, monkeypatch):
    monkeypatch.setattr("app.config.settings.DATABASE_URL", "")
    assert main(["route", "a todo list web app"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("web\tmatched web keywords")


def test_route_reports_ambiguity(capsys):
    assert main(["route", "a rust web app"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0].startswith("rust\t")
    assert out[1] == "ambiguous: rust, web"


def test_route_with_override(capsys):
    assert main(["route", "a todo list web app", "--lane", "powershell"]) == 0
    assert capsys.readouterr().out.startswith("powershell\texplicit override 'powershell'")


def test_missing_configuration_exits_2(capsys, monkeypatch):
    monkeypatch.setattr("app.config.settings.ANTHROPIC_API_KEY", "")
    assert main(["build", "a todo list web app"]) == 2
    assert "missing required configuration: ANTHROPIC_API_KEY" in capsys.readouterr().err


def test_history_without_database_exits_2(capsys, monkeypatch):
    monkeypatch.setattr("app.config.settings.DATABASE_URL", "")
    assert main(["history"]) == 2
    assert "DATABASE_URL" in capsys.readouterr().err


def test_constraints_unknown_lane_exits_2(capsys):
    assert main(["constraints", "cobol"]) == 2
    err = capsys.readouterr().err
    assert "unknown lane 'cobol'" in err
    assert "powershell_module" in err


# ---------------------------------------------------------------------------
# Result printing
# ---------------------------------------------------------------------------


def test_print_success(capsys):
    _print_result(PipelineSuccess(
        build_id="abc",
        app_name="Todo List",
        lane=Lane.WEB,
        artifact_path="/tmp/todo/index.html",
        source_dir="/tmp/todo/src",
        build_time_seconds=12.34,
        size_label="2.0 KB",
        deferred_features=["sync"],
        scope_gaps=["dark mode"],
    ))
    out = capsys.readouterr().out
    assert "BUILD SUCCEEDED: Todo List (web)" in out
    assert "/tmp/todo/index.html 2.0 KB" in out
    assert "Time:       12.3s" in out
    assert "Deferred:   sync" in out
    assert "Scope gap:  dark mode" in out


def test_print_failure(capsys):
    _print_result(PipelineFailure(
        build_id="abc",
        kind="validation_failure",
        diagnostic_text="[index.html] still failing",
        partial_errors=["[index.html] dynamic evaluation via eval() (line 3)"],
    ))
    out = capsys.readouterr().out
    assert "BUILD FAILED (validation_failure)" in out
    assert "- [index.html] dynamic evaluation via eval() (line 3)" in out
