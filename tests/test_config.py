"""
Configuration Test Suite

Run with: pytest tests/test_config.py -v
"""

import pytest
import yaml

from flowguard.config import (
    ConfigError,
    ConfigValidationError,
    ConfigValue,
    FlowGuardConfig,
    get_config,
    get_config_manager,
)


class TestConfigValue:
    """Tests for individual values."""

    def test_default_and_override(self):
        value = ConfigValue(default=10, validator=lambda x: x > 0)
        assert value.get() == 10
        value.set(20)
        assert value.get() == 20
        value.reset()
        assert value.get() == 10

    def test_string_coerced_to_default_type(self):
        value = ConfigValue(default=10)
        value.set("42")
        assert value.get() == 42
        flag = ConfigValue(default=True)
        flag.set("off")
        assert flag.get() is False

    def test_validator_rejects(self):
        value = ConfigValue(default=10, validator=lambda x: x > 0)
        with pytest.raises(ConfigValidationError):
            value.set(0)
        assert value.get() == 10

    def test_environment_wins(self, monkeypatch):
        value = ConfigValue(default=10, env_var="FLOWGUARD_TEST_VALUE")
        value.set(20)
        monkeypatch.setenv("FLOWGUARD_TEST_VALUE", "30")
        assert value.get() == 30


class TestConfigManager:
    """Tests for the process-wide manager."""

    def test_singleton(self):
        assert get_config_manager() is get_config_manager()
        assert get_config() is get_config_manager().config

    def test_defaults(self):
        manager = get_config_manager()
        assert manager.get("transaction.dust_limit") == 546
        assert manager.get("transaction.fee_reserve") == 1500
        assert manager.get("sessions.ttl_seconds") == 24 * 3600
        assert manager.get("limits.max_signers") == 5

    def test_set_by_path(self):
        manager = get_config_manager()
        manager.set("limits.max_recipients", 3)
        assert get_config().limits.max_recipients.get() == 3

    @pytest.mark.parametrize("path", ["limits.nope", "nope", "limits"])
    def test_bad_path(self, path):
        with pytest.raises(ConfigError):
            get_config_manager().set(path, 1)

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("FLOWGUARD_DUST_LIMIT", "600")
        assert get_config_manager().get("transaction.dust_limit") == 600

    def test_reset(self):
        manager = get_config_manager()
        manager.set("transaction.fee_reserve", 2000)
        manager.reset()
        assert manager.get("transaction.fee_reserve") == 1500

    def test_validate_fee_bounds(self):
        manager = get_config_manager()
        assert manager.validate() == []
        manager.set("transaction.executor_fee_min", 5000)
        assert any("executor_fee_min" in e for e in manager.validate())

    def test_to_dict_and_yaml(self):
        data = FlowGuardConfig().to_dict()
        assert data["sessions"]["verify_signatures"] is True
        assert yaml.safe_load(FlowGuardConfig().to_yaml()) == data


class TestConfigFiles:
    """Tests for YAML configuration files."""

    def test_load(self, tmp_path):
        path = tmp_path / "flowguard.yaml"
        path.write_text("transaction:\n  dust_limit: 700\nsessions:\n  ttl_seconds: 600\n")
        manager = get_config_manager()
        manager.load_from_file(path)
        assert manager.get("transaction.dust_limit") == 700
        assert manager.get("sessions.ttl_seconds") == 600

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_empty_file_is_ignored(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        get_config_manager().load_from_file(path)
        assert get_config_manager().get("transaction.dust_limit") == 546

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(path)

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "typo.yaml"
        path.write_text("transaction:\n  dust_limt: 700\n")
        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(path)

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("observability:\n  log_format: xml\n")
        with pytest.raises(ConfigValidationError):
            get_config_manager().load_from_file(path)
