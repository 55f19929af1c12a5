"""
Unit tests for device configuration module.

Tests configuration loading, saving, defaults, environment overrides
and validation.
"""

import pytest
import yaml


class TestDeviceConfig:
    """Tests for DeviceConfig class."""

    def test_default_config_values(self, temp_config_dir):
        """Test that default configuration values are set correctly."""
        from device.src.config import DeviceConfig

        config = DeviceConfig(config_dir=temp_config_dir)

        assert config.server_url == ""
        assert config.api_token == ""
        assert config.tenant_id == ""
        assert config.recipients == []
        assert config.heartbeat_interval_seconds == 30
        assert config.backoff_base_seconds == 1.0
        assert config.backoff_max_seconds == 30.0
        assert config.max_reconnect_attempts == 10
        assert config.max_pings == 3
        assert config.ping_interval_seconds == 30
        assert config.log_level == "INFO"
        assert config.is_configured is False

    def test_load_config_from_file(self, device_config_file, device_config):
        """Test loading configuration from a YAML file."""
        from device.src.config import DeviceConfig

        config = DeviceConfig(config_path=device_config_file)

        assert config.server_url == device_config["server_url"]
        assert config.api_token == device_config["api_token"]
        assert config.tenant_id == "rest_1"
        assert config.recipients == ["staff_1", "staff_2"]
        assert config.heartbeat_interval_seconds == 45
        assert config.backoff_base_seconds == 0.5
        assert config.max_pings == 5
        assert config.log_level == "DEBUG"
        assert config.is_configured is True

    def test_recipients_as_csv_string(self, temp_config_dir):
        """Test that recipients may be written as a comma separated string."""
        from device.src.config import DeviceConfig

        (temp_config_dir / "device-config.yaml").write_text("recipients: 'staff_1, staff_2,'\n")
        config = DeviceConfig(config_dir=temp_config_dir)

        assert config.recipients == ["staff_1", "staff_2"]

    def test_save_config_to_file(self, temp_config_dir):
        """Test saving configuration to a YAML file."""
        from device.src.config import DeviceConfig

        config_path = temp_config_dir / "sub" / "device-config.yaml"
        config = DeviceConfig(config_path=config_path)
        config.server_url = "http://example.com:8000"
        config.api_token = "token-123"
        config.tenant_id = "rest_9"
        config.recipients = ["staff_9"]
        config.max_pings = 2
        config.save()

        with open(config_path) as f:
            saved = yaml.safe_load(f)

        assert saved["server_url"] == "http://example.com:8000"
        assert saved["tenant_id"] == "rest_9"
        assert saved["recipients"] == ["staff_9"]
        assert saved["max_pings"] == 2

        reloaded = DeviceConfig(config_path=config_path)
        assert reloaded.api_token == "token-123"
        assert reloaded.max_pings == 2

    def test_load_config_from_environment(self, device_config_file, monkeypatch):
        """Test that environment variables override file configuration."""
        from device.src.config import DeviceConfig

        monkeypatch.setenv("SERVICEBELL_DEVICE_SERVER_URL", "http://env-server:8000")
        monkeypatch.setenv("SERVICEBELL_DEVICE_RECIPIENTS", "staff_7,staff_8")
        monkeypatch.setenv("SERVICEBELL_DEVICE_MAX_PINGS", "7")
        monkeypatch.setenv("SERVICEBELL_DEVICE_BACKOFF_MAX_SECONDS", "12.5")

        config = DeviceConfig(config_path=device_config_file)

        assert config.server_url == "http://env-server:8000"
        assert config.recipients == ["staff_7", "staff_8"]
        assert config.max_pings == 7
        assert config.backoff_max_seconds == 12.5
        # Untouched keys still come from the file
        assert config.tenant_id == "rest_1"

    def test_config_path_from_environment(self, device_config_file, monkeypatch):
        """Test that SERVICEBELL_DEVICE_CONFIG selects the config file."""
        from device.src.config import DeviceConfig

        monkeypatch.setenv("SERVICEBELL_DEVICE_CONFIG", str(device_config_file))
        config = DeviceConfig()

        assert config.config_path == device_config_file
        assert config.tenant_id == "rest_1"

    def test_invalid_environment_number(self, temp_config_dir, monkeypatch):
        """Test that a non-numeric override raises ConfigError."""
        from device.src.config import ConfigError, DeviceConfig

        monkeypatch.setenv("SERVICEBELL_DEVICE_MAX_PINGS", "lots")
        config = DeviceConfig(config_dir=temp_config_dir)

        with pytest.raises(ConfigError):
            _ = config.max_pings

    @pytest.mark.parametrize("value,expected", [(10, 30), (30, 30), (45, 45), (60, 60), (600, 60)])
    def test_heartbeat_interval_is_clamped(self, temp_config_dir, value, expected):
        """Test that the heartbeat interval stays within 30-60 seconds."""
        from device.src.config import DeviceConfig

        config = DeviceConfig(config_dir=temp_config_dir)
        config.heartbeat_interval_seconds = value

        assert config.heartbeat_interval_seconds == expected

    def test_malformed_file(self, temp_config_dir):
        """Test that unparseable YAML raises ConfigError."""
        from device.src.config import ConfigError, DeviceConfig

        (temp_config_dir / "device-config.yaml").write_text("server_url: [unclosed\n")

        with pytest.raises(ConfigError):
            DeviceConfig(config_dir=temp_config_dir)

    def test_non_mapping_file(self, temp_config_dir):
        """Test that a YAML list is rejected."""
        from device.src.config import ConfigError, DeviceConfig

        (temp_config_dir / "device-config.yaml").write_text("- a\n- b\n")

        with pytest.raises(ConfigError):
            DeviceConfig(config_dir=temp_config_dir)


class TestDeviceConfigValidation:
    """Tests for DeviceConfig.validate."""

    def test_valid_config(self, device_config_file):
        """Test that the sample configuration validates."""
        from device.src.config import DeviceConfig

        DeviceConfig(config_path=device_config_file).validate()

    @pytest.mark.parametrize(
        "attribute,value",
        [
            ("server_url", "not-a-url"),
            ("backoff_base_seconds", 0),
            ("backoff_max_seconds", 0.1),
            ("backoff_jitter", 1.5),
            ("max_reconnect_attempts", 0),
            ("health_check_interval_seconds", 0),
            ("max_pings", -1),
            ("ping_interval_seconds", 0),
            ("log_level", "VERBOSE"),
        ],
    )
    def test_invalid_values(self, device_config_file, attribute, value):
        """Test that each invalid setting is rejected."""
        from device.src.config import ConfigValidationError, DeviceConfig

        config = DeviceConfig(config_path=device_config_file)
        setattr(config, attribute, value)

        with pytest.raises(ConfigValidationError):
            config.validate()


class TestDefaultDirectories:
    """Tests for platform directory helpers."""

    def test_default_dirs_use_app_name(self):
        """Test that default directories are namespaced by the app name."""
        from device.src.config import get_default_config_dir, get_default_data_dir

        assert "servicebell" in str(get_default_config_dir()).lower()
        assert "servicebell" in str(get_default_data_dir()).lower()
