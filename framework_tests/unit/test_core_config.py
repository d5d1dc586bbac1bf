"""Tests for configuration loading and layering."""

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from pydantic import ValidationError

from picotest.core.config import ConfigManager, _convert_env_value, load_env_overrides
from picotest.core.enums import ProbeKind
from picotest.core.errors import ConfigurationError
from picotest.core.types import ClusterSpec, PicotestConfig


class TestEnvOverrides:
    """Test PICOTEST_ environment variable parsing."""

    def test_top_level_and_nested(self) -> None:
        env = {
            "PICOTEST_KEEP_DATA": "true",
            "PICOTEST_TOOL__BINARY": "/opt/picodata",
            "PICOTEST_TIMEOUTS__READINESS_DEFAULT": "12.5",
            "OTHER": "x",
        }
        with patch.dict("os.environ", env, clear=True):
            overrides = load_env_overrides()
        assert overrides == {
            "keep_data": True,
            "tool": {"binary": "/opt/picodata"},
            "timeouts": {"readiness_default": 12.5},
        }

    def test_deeper_nesting_ignored(self) -> None:
        with patch.dict("os.environ", {"PICOTEST_A__B__C": "1"}, clear=True):
            assert load_env_overrides() == {}

    @pytest.mark.parametrize(
        "value,expected",
        [("", None), ("3", 3), ("0.5", 0.5), ("yes", True), ("off", False), ("text", "text")],
    )
    def test_value_conversion(self, value, expected) -> None:
        assert _convert_env_value(value) == expected


class TestConfigManager:
    """Test ConfigManager precedence."""

    def test_defaults(self, isolated_environment) -> None:
        config = ConfigManager().load_config()
        assert config.tool.binary == "picodata"
        assert config.timeouts.readiness_poll_interval == 0.2
        assert config.timeouts.process_graceful_stop == 3.0
        assert config.readiness.probe == ProbeKind.ADMIN

    def test_file_env_and_overrides(self, isolated_environment) -> None:
        config_file = isolated_environment / "picotest.yaml"
        config_file.write_text(
            yaml.safe_dump({"log_level": "DEBUG", "tool": {"binary": "from-file", "build_profile": "release"}}),
            encoding="utf-8",
        )
        with patch.dict("os.environ", {"PICOTEST_TOOL__BINARY": "from-env"}):
            config = ConfigManager().load_config(config_file, keep_data=True)
        assert config.log_level == "DEBUG"
        assert config.tool.binary == "from-env"
        assert config.tool.build_profile == "release"
        assert config.keep_data is True

    def test_missing_file(self, temp_dir) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            ConfigManager().load_config(temp_dir / "missing.yaml")

    def test_unsupported_format(self, temp_dir) -> None:
        path = temp_dir / "config.json"
        path.write_text("{}", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Unsupported"):
            ConfigManager().load_config(path)

    def test_file_must_be_mapping(self, temp_dir) -> None:
        path = temp_dir / "config.yaml"
        path.write_text("- 1\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="mapping"):
            ConfigManager().load_config(path)

    def test_invalid_values(self, isolated_environment) -> None:
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConfigManager().load_config(ports={"base_port": "many"})

    def test_get_config_loads_once(self, isolated_environment) -> None:
        manager = ConfigManager()
        assert manager.get_config() is manager.get_config()


class TestClusterSpec:
    """Test ClusterSpec model."""

    def test_defaults(self) -> None:
        spec = ClusterSpec(topology_path=Path("/tmp/plugin"))
        assert spec.tiers is None
        assert spec.single_node is False
        assert spec.install_plugins is True
        assert spec.env == {}

    def test_frozen(self) -> None:
        spec = ClusterSpec(topology_path=Path("/tmp/plugin"))
        with pytest.raises(ValidationError):
            spec.timeout = 1.0

    def test_picotest_config_sections(self) -> None:
        config = PicotestConfig(tool={"binary": "x"})
        assert config.tool.binary == "x"
        assert config.ports.base_port < config.ports.max_port
