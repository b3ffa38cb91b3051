"""
Unit tests for settings loading and validation.

Tests YAML parsing, environment overrides and strict validation.
"""

import os
import tempfile

import pytest
import yaml

from foc_storage_guard.config.loader import Settings, load_settings


class TestSettingsLoading:
    """Test settings loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "settings.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_defaults_without_file_or_environment(self):
        settings = load_settings(environ={})

        assert settings.network == "calibration"
        assert settings.total_storage_needed_gib == 150
        assert settings.persistence_period_days == 365
        assert settings.runout_notification_threshold_days == 45
        assert settings.read_retries == 2
        assert settings.private_key is None

    def test_valid_yaml_loads_correctly(self):
        path = self._write_config({
            "network": {"name": "mainnet", "rpc_url": "https://rpc.example"},
            "contracts": {"warm_storage": "0xwarm", "payments": "0xpay"},
            "storage": {"total_storage_needed_gib": 10, "persistence_period_days": 90},
            "client": {"read_retries": 0},
        })

        settings = load_settings(path, environ={})

        assert settings.network == "mainnet"
        assert settings.rpc_url == "https://rpc.example"
        assert settings.warm_storage_address == "0xwarm"
        assert settings.payments_address == "0xpay"
        assert settings.total_storage_needed_gib == 10
        assert settings.total_storage_needed_bytes == 10 * 1024 ** 3
        assert settings.persistence_period_days == 90
        assert settings.read_retries == 0

    def test_environment_overrides_yaml(self):
        path = self._write_config({"storage": {"persistence_period_days": 90}})
        environ = {
            "PERSISTENCE_PERIOD_DAYS": "180",
            "TOTAL_STORAGE_NEEDED_GiB": "20",
            "FILECOIN_NETWORK": "mainnet",
            "PRIVATE_KEY": "0xabc",
        }

        settings = load_settings(path, environ=environ)

        assert settings.persistence_period_days == 180
        assert settings.total_storage_needed_gib == 20
        assert settings.network == "mainnet"
        assert settings.private_key == "0xabc"

    def test_catalog_addresses_from_yaml_and_environment(self):
        path = self._write_config({
            "contracts": {"storage_view": "0xview", "pdp_verifier": "0xpdp"},
        })
        environ = {"PROVIDER_REGISTRY_ADDRESS": "0xregistry", "PDP_VERIFIER_ADDRESS": "0xpdp2"}

        settings = load_settings(path, environ=environ)

        assert settings.storage_view_address == "0xview"
        assert settings.pdp_verifier_address == "0xpdp2"
        assert settings.provider_registry_address == "0xregistry"

    def test_catalog_addresses_are_optional_for_signing(self):
        settings = Settings(private_key="0xabc", warm_storage_address="0xw", payments_address="0xp")
        settings.require_signer()
        assert settings.storage_view_address is None

    def test_blank_environment_values_are_ignored(self):
        settings = load_settings(environ={"PERSISTENCE_PERIOD_DAYS": "  "})
        assert settings.persistence_period_days == 365

    def test_unknown_top_level_key_raises(self):
        path = self._write_config({"storage": {}, "extra": {}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_settings(path, environ={})

    def test_unknown_section_key_raises(self):
        path = self._write_config({"storage": {"capacity": 5}})
        with pytest.raises(ValueError, match="Unknown keys in storage"):
            load_settings(path, environ={})

    def test_empty_file_raises(self):
        path = os.path.join(self.temp_dir, "empty.yaml")
        open(path, "w").close()
        with pytest.raises(ValueError, match="empty"):
            load_settings(path, environ={})

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_settings(os.path.join(self.temp_dir, "nope.yaml"), environ={})

    def test_invalid_yaml_raises(self):
        path = os.path.join(self.temp_dir, "bad.yaml")
        with open(path, "w", encoding="utf-8") as f:
            f.write("storage: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_settings(path, environ={})

    @pytest.mark.parametrize("env_name", ["PERSISTENCE_PERIOD_DAYS", "RUNOUT_NOTIFICATION_THRESHOLD_DAYS"])
    def test_periods_below_thirty_days_raise(self, env_name):
        with pytest.raises(ValueError, match="greater than or equal to 30"):
            load_settings(environ={env_name: "29"})

    def test_non_integer_values_raise(self):
        with pytest.raises(ValueError, match="must be an integer"):
            load_settings(environ={"READ_RETRIES": "two"})
        path = self._write_config({"storage": {"persistence_period_days": 45.5}})
        with pytest.raises(ValueError, match="must be an integer"):
            load_settings(path, environ={})

    def test_unknown_network_raises(self):
        with pytest.raises(ValueError, match="network must be one of"):
            load_settings(environ={"FILECOIN_NETWORK": "devnet"})

    def test_file_store_must_be_import_path(self):
        with pytest.raises(ValueError, match="module:factory"):
            load_settings(environ={"FILE_STORE": "just_a_module"})


class TestSettings:
    """Test Settings helpers."""

    def test_require_signer_lists_missing_settings(self):
        settings = Settings(private_key="0xabc")
        with pytest.raises(ValueError) as excinfo:
            settings.require_signer()
        assert "WARM_STORAGE_ADDRESS" in str(excinfo.value)
        assert "PAYMENTS_ADDRESS" in str(excinfo.value)
        assert "PRIVATE_KEY" not in str(excinfo.value)

    def test_require_signer_passes_when_complete(self):
        Settings(private_key="0xabc", warm_storage_address="0x1", payments_address="0x2").require_signer()

    def test_storage_needed_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(total_storage_needed_gib=0)
