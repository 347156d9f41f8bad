"""
Tests for compiler options and YAML config loading.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from doodle.dsl_config import CompilerOptions, ConfigError, load_config


class TestCompilerOptions:
    """Defaults, validation and overrides."""

    def test_defaults(self):
        options = CompilerOptions()
        assert options.max_grid == 64
        assert options.experimental is False
        assert options.seed is None
        assert options.variables == {}

    def test_effective_max_grid(self):
        assert CompilerOptions().effective_max_grid == 64
        assert CompilerOptions(experimental=True).effective_max_grid == 256
        assert CompilerOptions(max_grid=300, experimental=True).effective_max_grid == 300

    def test_from_dict(self):
        options = CompilerOptions.from_dict({"max_grid": 32, "seed": 5})
        assert options.max_grid == 32
        assert options.seed == "5"

    def test_from_none(self):
        assert CompilerOptions.from_dict(None) == CompilerOptions()

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="unknown config key"):
            CompilerOptions.from_dict({"grid": 5})

    def test_not_a_mapping(self):
        with pytest.raises(ConfigError):
            CompilerOptions.from_dict(["max_grid"])

    def test_bad_max_grid(self):
        for value in (True, 0, "10"):
            with pytest.raises(ConfigError):
                CompilerOptions.from_dict({"max_grid": value})

    def test_bad_flag(self):
        with pytest.raises(ConfigError):
            CompilerOptions.from_dict({"experimental": "yes"})

    def test_variables(self):
        options = CompilerOptions.from_dict({"variables": {"--a": "color: red;", "--b": None}})
        assert options.variables == {"--a": "color: red;", "--b": ""}
        assert CompilerOptions.from_dict({"variables": None}).variables == {}

    def test_variable_names_need_dashes(self):
        with pytest.raises(ConfigError):
            CompilerOptions.from_dict({"variables": {"base": "x"}})

    def test_merged(self):
        options = CompilerOptions(seed="a").merged(seed=None, experimental=True)
        assert options.seed == "a"
        assert options.experimental is True

    def test_merged_unknown(self):
        with pytest.raises(ConfigError):
            CompilerOptions().merged(bogus=1)

    def test_to_dict(self):
        data = CompilerOptions(seed="s").to_dict()
        assert data["seed"] == "s"
        assert data["max_grid"] == 64


class TestLoadConfig:
    """Reading options from YAML files."""

    def test_load(self, tmp_path):
        path = tmp_path / "doodle.yaml"
        path.write_text("max_grid: 16\nseed: sunrise\nvariables:\n  --dots: '@grid: 5;'\n")
        options = load_config(path)
        assert options.max_grid == 16
        assert options.seed == "sunrise"
        assert options.variables == {"--dots": "@grid: 5;"}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == CompilerOptions()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read config"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("max_grid: [\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(path)
