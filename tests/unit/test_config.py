"""
Unit tests for lanchat.config module.

Tests default values, file merging, environment overrides and saving.
"""

import pytest

from lanchat.config import DEFAULT_CONFIG, Config
from lanchat.errors import ConfigError, ErrorCode


class TestDefaults:
    """Test configuration without a file."""

    def test_defaults_when_file_missing(self, temp_dir):
        config = Config(temp_dir / "missing.toml")

        assert config.get("network", "port") == 9876
        assert config.get("discovery", "group") == "239.255.255.250"
        assert config.get("discovery", "port") == 54321
        assert config.get("reconnect", "max_attempts") == 5
        assert config.get("reconnect", "base_delay") == 2.0

    def test_get_default(self, temp_dir):
        config = Config(temp_dir / "missing.toml")

        assert config.get("network", "nonexistent", "fallback") == "fallback"
        assert config.get("nonexistent", "key") is None

    def test_defaults_are_not_shared(self, temp_dir):
        config = Config(temp_dir / "missing.toml")
        config.set("network", "port", 1234)

        assert DEFAULT_CONFIG["network"]["port"] == 9876
        assert Config(temp_dir / "missing.toml").get("network", "port") == 9876


class TestFileLoading:
    """Test merging a TOML file over the defaults."""

    def test_file_values_override_defaults(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text('[user]\nusername = "alice"\n\n[network]\nport = 9900\n')

        config = Config(path)

        assert config.get("user", "username") == "alice"
        assert config.get("network", "port") == 9900
        # Keys missing from the file keep their defaults
        assert config.get("network", "max_bind_attempts") == 10

    def test_invalid_toml(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[network\nport = ")

        with pytest.raises(ConfigError) as exc_info:
            Config(path)
        assert exc_info.value.code == ErrorCode.E704_CONFIG_PARSE_ERROR


class TestEnvironmentOverrides:
    """Test LANCHAT_SECTION_KEY overrides."""

    def test_int_override(self, temp_dir, monkeypatch):
        monkeypatch.setenv("LANCHAT_NETWORK_PORT", "9911")
        assert Config(temp_dir / "missing.toml").get("network", "port") == 9911

    def test_float_override(self, temp_dir, monkeypatch):
        monkeypatch.setenv("LANCHAT_RECONNECT_BASE_DELAY", "0.5")
        assert Config(temp_dir / "missing.toml").get("reconnect", "base_delay") == 0.5

    def test_bool_override(self, temp_dir, monkeypatch):
        monkeypatch.setenv("LANCHAT_LOGGING_FILE_LOGGING", "no")
        assert Config(temp_dir / "missing.toml").get("logging", "file_logging") is False

    def test_string_override_beats_file(self, temp_dir, monkeypatch):
        path = temp_dir / "config.toml"
        path.write_text('[user]\nusername = "alice"\n')
        monkeypatch.setenv("LANCHAT_USER_USERNAME", "bob")

        assert Config(path).get("user", "username") == "bob"

    def test_unconvertible_value_is_ignored(self, temp_dir, monkeypatch):
        monkeypatch.setenv("LANCHAT_NETWORK_PORT", "lots")
        assert Config(temp_dir / "missing.toml").get("network", "port") == 9876


class TestRuntimeOverrides:
    """Test values set for the current run."""

    def test_set_overrides_file(self, temp_dir):
        path = temp_dir / "config.toml"
        path.write_text("[network]\nport = 9900\n")
        config = Config(path)

        config.set("network", "port", 9950)

        assert config.get("network", "port") == 9950
        assert path.read_text() == "[network]\nport = 9900\n"

    def test_to_dict_is_a_copy(self, temp_dir):
        config = Config(temp_dir / "missing.toml")
        config.to_dict()["network"]["port"] = 1

        assert config.get("network", "port") == 9876
