import json
import logging
import runpy
import sys

import pytest

from fmusim import cli
from fmusim.errors import ValidationError
from fmusim.fmi2 import Fmi2Status, logging_sink
from fmusim.simulation import SimulationResult
from mock_model import MOCK_MODEL_DESCRIPTION


@pytest.fixture(autouse=True)
def restore_logging():
    logger = logging.getLogger("fmusim")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


@pytest.fixture
def fmu_dir(tmp_path):
    directory = tmp_path / "Mock"
    directory.mkdir()
    (directory / "modelDescription.xml").write_text(MOCK_MODEL_DESCRIPTION)
    return directory


def test_describe(fmu_dir, capsys):
    assert cli.main(["describe", str(fmu_dir)]) == 0
    out = capsys.readouterr().out
    assert out.startswith("Model Info\n")
    assert "  FMI Version        2.0" in out
    assert "  FMI Type           Model Exchange, Co-Simulation" in out
    assert "  Model Name         Mock" in out
    assert "  Stop Time     0.1" in out
    assert "Variables (input, output, independent)" in out
    names = [line.split()[0] for line in out.splitlines()[-4:]]
    assert names == ["time", "x", "steps", "u"]


def test_run_as_module(fmu_dir, monkeypatch, capsys):
    monkeypatch.setattr(sys, "argv", ["fmusim", "describe", str(fmu_dir)])
    with pytest.raises(SystemExit) as exc_info:
        runpy.run_module("fmusim", run_name="__main__")
    assert exc_info.value.code == 0
    assert capsys.readouterr().out.startswith("Model Info\n")


def test_describe_causality(fmu_dir, capsys):
    assert cli.main(
        ["describe", str(fmu_dir), "--causality", "parameter"]
    ) == 0
    out = capsys.readouterr().out
    assert "Variables (parameter)" in out
    assert "  k                  parameter  2            1/s" in out
    assert "  enabled            parameter  true" in out
    assert " x " not in out.split("Variables (parameter)")[1]


def test_describe_missing_file(tmp_path, capsys):
    assert cli.main(["describe", str(tmp_path / "missing.fmu")]) == 1
    assert capsys.readouterr().out.startswith("[ERROR] ")


def test_simulate_missing_file(tmp_path, capsys):
    assert cli.main(["simulate", str(tmp_path / "missing.fmu")]) == 1
    assert capsys.readouterr().out.startswith("[ERROR] ")


def test_simulate_without_binary(fmu_dir, capsys):
    assert cli.main(["simulate", str(fmu_dir)]) == 1
    assert "is not supported by the FMU" in capsys.readouterr().out


def test_simulate_merges_overrides(fmu_dir, tmp_path, monkeypatch, capsys):
    options_file = tmp_path / "options.yaml"
    options_file.write_text(
        "stop_time: 5.0\noutput_interval: 0.5\nstart_values:\n  k: 3\n"
    )
    seen = {}

    def fake_simulate(filename, options):
        seen["filename"] = filename
        seen["options"] = options
        return SimulationResult(columns=["time", "x"], data=[(0.0, 0.0), (1.0, 3.0)])

    monkeypatch.setattr(cli, "simulate_fmu", fake_simulate)
    output_file = tmp_path / "out.csv"
    assert cli.main(
        [
            "simulate",
            str(fmu_dir),
            "--options",
            str(options_file),
            "--stop-time",
            "1.0",
            "--debug-logging",
            "--output-file",
            str(output_file),
        ]
    ) == 0

    options = seen["options"]
    assert seen["filename"] == str(fmu_dir)
    assert options.stop_time == 1.0
    assert options.output_interval == 0.5
    assert options.start_values == {"k": 3}
    assert options.debug_logging
    assert output_file.read_text() == "time,x\n0.0,0.0\n1.0,3.0\n"
    assert capsys.readouterr().out == ""


def test_simulate_prints_csv(fmu_dir, monkeypatch, capsys):
    monkeypatch.setattr(
        cli,
        "simulate_fmu",
        lambda filename, options: SimulationResult(columns=["time"], data=[(0.0,)]),
    )
    assert cli.main(["simulate", str(fmu_dir)]) == 0
    assert capsys.readouterr().out == "time\n0.0\n"


def test_simulate_debug_logging_shows_model_messages(fmu_dir, monkeypatch, capsys):
    def fake_simulate(filename, options):
        assert options.debug_logging
        logging_sink()("Mock", Fmi2Status.OK, "logEvents", "Step accepted")
        return SimulationResult(columns=["time"], data=[(0.0,)])

    monkeypatch.setattr(cli, "simulate_fmu", fake_simulate)
    assert cli.main(["simulate", str(fmu_dir), "--debug-logging"]) == 0
    err = capsys.readouterr().err
    assert "[Mock] [logEvents] Step accepted" in err
    assert "INFO" in err


def test_simulate_hides_model_messages_by_default(fmu_dir, monkeypatch, capsys):
    def fake_simulate(filename, options):
        logging_sink()("Mock", Fmi2Status.OK, "logEvents", "Step accepted")
        return SimulationResult(columns=["time"], data=[(0.0,)])

    monkeypatch.setattr(cli, "simulate_fmu", fake_simulate)
    assert cli.main(["simulate", str(fmu_dir)]) == 0
    assert "Step accepted" not in capsys.readouterr().err


def test_simulate_invalid_options_file(fmu_dir, tmp_path, capsys):
    options_file = tmp_path / "options.json"
    options_file.write_text(json.dumps({"stepsize": 0.1}))
    assert cli.main(["simulate", str(fmu_dir), "--options", str(options_file)]) == 1
    assert capsys.readouterr().out.startswith("[ERROR] ")


def test_load_options_json(tmp_path):
    path = tmp_path / "options.json"
    path.write_text(json.dumps({"stop_time": 2.0, "output": ["x"]}))
    options = cli.load_options(path)
    assert options.stop_time == 2.0
    assert options.output == ["x"]


def test_load_options_empty_yaml(tmp_path):
    path = tmp_path / "options.yml"
    path.write_text("")
    assert cli.load_options(path).stop_time is None


@pytest.mark.parametrize(
    "name,text,message",
    [
        ("options.yaml", "stop_time: [1\n", "invalid options syntax"),
        ("options.json", "{", "invalid options syntax"),
        ("options.yaml", "- 1\n- 2\n", "must be a mapping"),
        ("options.yaml", "stop_time: soon\n", "stop_time"),
    ],
)
def test_load_options_errors(tmp_path, name, text, message):
    path = tmp_path / name
    path.write_text(text)
    with pytest.raises(ValidationError, match=message):
        cli.load_options(path)


def test_load_options_missing_file(tmp_path):
    with pytest.raises(ValidationError, match="not found"):
        cli.load_options(tmp_path / "missing.yaml")


def test_command_is_required():
    with pytest.raises(SystemExit):
        cli.main([])
