import json

from typer.testing import CliRunner

from labprotocol.cli.analyze_protocol import app

runner = CliRunner()


def test_analyze_prints_analysis_json(tmp_path, scenario_a):
    path = tmp_path / "scenario.json"
    path.write_text(json.dumps(scenario_a), encoding="utf-8")

    result = runner.invoke(app, ["analyze", str(path), "--type", "dependencies"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["dependencies"]["critical_path"]["steps"] == ["A", "B", "C"]
    assert payload["validation"] is None


def test_analyze_reports_cycles(tmp_path, block, sequence):
    path = tmp_path / "loop.json"
    document = {"blocks": [sequence(block("mixing_step", "a", AFTER="b"), block("wash_step", "b"))]}
    path.write_text(json.dumps(document), encoding="utf-8")

    result = runner.invoke(app, ["analyze", str(path)])

    assert result.exit_code == 1
    assert "CircularDependencyError" in result.output


def test_analyze_rejects_unknown_category(tmp_path, scenario_a):
    path = tmp_path / "scenario.json"
    path.write_text(json.dumps(scenario_a), encoding="utf-8")

    result = runner.invoke(app, ["analyze", str(path), "--category", "vibes"])

    assert result.exit_code != 0


def test_rules_lists_builtin_rules():
    result = runner.invoke(app, ["rules"])

    assert result.exit_code == 0
    assert "temperature_limits" in result.output
    assert "chemical_compatibility" in result.output
