"""
Tests for the doodle-compile command line entry point.
"""

import sys
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_cli import main


def write_source(tmp_path, text, name="pattern.doodle"):
    path = tmp_path / name
    path.write_text(text)
    return path


def run(argv):
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


class TestCli:
    """Exit codes and output streams."""

    def test_css_output(self, tmp_path, capsys):
        path = write_source(tmp_path, "color: red;")
        assert run([str(path), "--seed", "1"]) == 0
        out = capsys.readouterr().out
        assert "#c-1-1-1 {color: red;}" in out

    def test_grid_and_seed(self, tmp_path, capsys):
        path = write_source(tmp_path, "color: red;")
        assert run([str(path), "--grid", "2", "--seed", "x"]) == 0
        assert "#c-2-2-1 {color: red;}" in capsys.readouterr().out

    def test_yaml_output(self, tmp_path, capsys):
        path = write_source(tmp_path, "color: red;")
        assert run([str(path), "--seed", "1", "--format", "yaml"]) == 0
        data = yaml.safe_load(capsys.readouterr().out)
        assert data["seed"] == "1"
        assert data["grid"]["x"] == 1
        assert data["styles"]["cells"] == "#c-1-1-1 {color: red;}"

    def test_errors_exit_nonzero(self, tmp_path, capsys):
        path = write_source(tmp_path, ":host { color: red;")
        assert run([str(path), "--seed", "1"]) == 1
        err = capsys.readouterr().err
        assert f"{path}:1:1: error: unterminated" in err
        assert "1 error(s)" in err

    def test_warnings_exit_zero(self, tmp_path, capsys):
        path = write_source(tmp_path, "@bogus { color: red; }")
        assert run([str(path), "--seed", "1"]) == 0
        assert "warning: unknown conditional @bogus" in capsys.readouterr().err

    def test_missing_file(self, tmp_path, capsys):
        assert run([str(tmp_path / "nope.doodle")]) == 1
        assert "cannot read" in capsys.readouterr().err

    def test_config(self, tmp_path, capsys):
        config = tmp_path / "doodle.yaml"
        config.write_text("seed: fromconfig\n")
        path = write_source(tmp_path, "color: red;")
        assert run([str(path), "--config", str(config), "--format", "yaml"]) == 0
        assert yaml.safe_load(capsys.readouterr().out)["seed"] == "fromconfig"

    def test_bad_config(self, tmp_path, capsys):
        config = tmp_path / "doodle.yaml"
        config.write_text("unknown: 1\n")
        path = write_source(tmp_path, "color: red;")
        assert run([str(path), "--config", str(config)]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_experimental(self, tmp_path, capsys):
        path = write_source(tmp_path, "@grid: 70x1; color: red;")
        assert run([str(path), "--seed", "1", "--experimental"]) == 0
        assert "#c-70-1-1 {color: red;}" in capsys.readouterr().out
