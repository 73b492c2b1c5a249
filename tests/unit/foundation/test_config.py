"""Tests for configuration management."""

import json

import pytest
import yaml

from sitemirror.foundation.config import ConfigManager, MirrorConfig, get_config_manager, set_config_manager
from sitemirror.foundation.errors import ConfigurationError


class TestConfigManager:
    """Test suite for ConfigManager."""

    def test_init_with_default_path(self):
        """Test initialization without a config path loads defaults."""
        config_manager = ConfigManager()
        assert config_manager.config_path is None
        assert config_manager.get_setting("crawl.max_depth") == 3
        assert config_manager.get_setting("crawl.max_pages") == 100
        assert config_manager.get_setting("queue.max_attempts") == 3

    def test_init_with_custom_path(self, temp_dir):
        """Test initialization with custom config path."""
        config_path = temp_dir / "custom_config.yaml"
        config_manager = ConfigManager(config_path=config_path)
        assert config_manager.config_path == config_path

    def test_get_setting_with_default(self, config_manager):
        """Test getting a non-existing setting with default."""
        assert config_manager.get_setting("non.existing", default=42) == 42
        assert config_manager.get_setting("non.existing") is None

    def test_set_setting_invalidates_model(self, config_manager):
        """Test runtime overrides show up in the pydantic model."""
        config_manager.set_setting("crawl.max_pages", 7)
        assert config_manager.get_setting("crawl.max_pages") == 7
        assert config_manager.config.crawl.max_pages == 7

    def test_get_section(self, config_manager):
        """Test getting configuration sections."""
        verification = config_manager.get_section("verification")
        assert verification["link_weight"] == 0.35
        assert verification["asset_weight"] == 0.35
        assert verification["integrity_weight"] == 0.20
        assert verification["js_weight"] == 0.10
        assert config_manager.get_section("nonexisting") is None

    def test_global_section_uses_alias(self, config_manager):
        """Test the global section is exposed under its alias."""
        settings = config_manager.get_all_settings()
        assert "global" in settings
        assert "global_" not in settings
        assert config_manager.config.global_.log_level == "INFO"

    def test_storage_paths_expanded(self):
        """Test user paths are expanded but :memory: is left alone."""
        config_manager = ConfigManager()
        config_manager.set_setting("storage.database_path", "~/mirror.db")
        assert not config_manager.config.storage.database_path.startswith("~")

        config_manager.set_setting("storage.database_path", ":memory:")
        assert config_manager.config.storage.database_path == ":memory:"

    def test_invalid_value_raises(self, config_manager):
        """Test an unparseable value raises ConfigurationError."""
        config_manager.set_setting("crawl.max_depth", "deep")
        with pytest.raises(ConfigurationError):
            config_manager.config


class TestConfigFiles:
    """Test suite for loading and saving configuration files."""

    def test_load_from_file_yaml(self, temp_dir):
        """Test loading configuration from YAML file merges sections."""
        config_path = temp_dir / "config.yaml"
        config_path.write_text(yaml.safe_dump({"crawl": {"max_depth": 1}, "proxy": {"policy": "random"}}))

        config_manager = ConfigManager(config_path=config_path)
        config_manager.load_from_file()

        assert config_manager.get_setting("crawl.max_depth") == 1
        assert config_manager.get_setting("crawl.max_pages") == 100
        assert config_manager.config.proxy.policy == "random"

    def test_load_from_file_json(self, temp_dir):
        """Test loading configuration from JSON file."""
        config_path = temp_dir / "config.json"
        config_path.write_text(json.dumps({"cache": {"ttl": 60}}))

        config_manager = ConfigManager()
        config_manager.load_from_file(config_path)
        assert config_manager.config.cache.ttl == 60

    def test_load_missing_file_is_noop(self, temp_dir):
        """Test a missing file leaves defaults untouched."""
        config_manager = ConfigManager(config_path=temp_dir / "absent.yaml")
        config_manager.load_from_file()
        assert config_manager.get_setting("crawl.max_depth") == 3

    def test_load_invalid_yaml(self, temp_dir):
        """Test broken YAML raises ConfigurationError."""
        config_path = temp_dir / "config.yaml"
        config_path.write_text("crawl: [unclosed\n")
        with pytest.raises(ConfigurationError):
            ConfigManager(config_path=config_path).load_from_file()

    def test_load_non_mapping(self, temp_dir):
        """Test a file that is not a mapping is rejected."""
        config_path = temp_dir / "config.yaml"
        config_path.write_text("- one\n- two\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            ConfigManager(config_path=config_path).load_from_file()

    def test_save_and_reload(self, temp_dir):
        """Test saved settings survive a reload."""
        config_path = temp_dir / "nested" / "config.yaml"
        config_manager = ConfigManager(config_path=config_path)
        config_manager.set_setting("crawl.concurrency", 9)
        assert config_manager.save_to_file() == config_path

        reloaded = ConfigManager(config_path=config_path)
        reloaded.reload_config()
        assert reloaded.get_setting("crawl.concurrency") == 9

    def test_create_default_config(self, temp_dir):
        """Test writing a default config file."""
        path = ConfigManager().create_default_config(temp_dir / "default.yaml")
        data = yaml.safe_load(path.read_text())
        assert data["crawl"]["max_depth"] == 3
        assert "global" in data

    def test_load_hierarchical(self, temp_dir, monkeypatch):
        """Test user file then environment overrides are applied in order."""
        user_config = temp_dir / "user.yaml"
        user_config.write_text(yaml.safe_dump({"crawl": {"max_pages": 20, "concurrency": 2}}))
        monkeypatch.setenv("SITEMIRROR_CONFIG_PATH", str(user_config))
        monkeypatch.setenv("SITEMIRROR_CRAWL__CONCURRENCY", "3")

        config_manager = ConfigManager()
        config_manager.load_hierarchical()

        assert config_manager.get_setting("crawl.max_pages") == 20
        assert config_manager.get_setting("crawl.concurrency") == 3


class TestEnvironmentOverrides:
    """Test suite for SITEMIRROR_ environment variables."""

    def test_env_values_coerced(self, monkeypatch):
        """Test booleans and numbers are coerced from strings."""
        monkeypatch.setenv("SITEMIRROR_CACHE__ENABLED", "false")
        monkeypatch.setenv("SITEMIRROR_CRAWL__TIMEOUT", "12.5")
        monkeypatch.setenv("SITEMIRROR_CRAWL__MAX_PAGES", "40")
        monkeypatch.setenv("SITEMIRROR_GLOBAL__LOG_LEVEL", "DEBUG")

        config_manager = ConfigManager()
        config_manager.load_from_environment()

        assert config_manager.get_setting("cache.enabled") is False
        assert config_manager.get_setting("crawl.timeout") == 12.5
        assert config_manager.get_setting("crawl.max_pages") == 40
        assert config_manager.config.global_.log_level == "DEBUG"

    def test_empty_log_file_disables_file_logging(self, monkeypatch):
        """Test an empty log file override is kept as a falsy string."""
        monkeypatch.setenv("SITEMIRROR_GLOBAL__LOG_FILE", "")
        config_manager = ConfigManager()
        config_manager.load_from_environment()
        assert config_manager.get_setting("global.log_file") == ""


class TestValidateConfig:
    """Test suite for configuration validation."""

    def test_defaults_are_valid(self, config_manager):
        """Test the default configuration validates with warnings only."""
        result = config_manager.validate_config()
        assert result["valid"] is True
        assert result["errors"] == []
        assert any("solver" in warning for warning in result["warnings"])

    @pytest.mark.parametrize("key,value,fragment", [
        ("crawl.max_pages", 0, "max_pages"),
        ("crawl.max_depth", -1, "max_depth"),
        ("crawl.concurrency", 0, "concurrency"),
        ("crawl.scope", "galaxy", "scope"),
        ("proxy.dead_failure_ratio", 1.5, "dead_failure_ratio"),
        ("assets.jpeg_quality", 100, "jpeg_quality"),
        ("verification.link_weight", -0.1, "weights"),
    ])
    def test_invalid_values(self, config_manager, key, value, fragment):
        """Test each bound is enforced."""
        config_manager.set_setting(key, value)
        result = config_manager.validate_config()
        assert result["valid"] is False
        assert any(fragment in error for error in result["errors"])

    def test_missing_section(self, config_manager):
        """Test a missing required section is reported."""
        del config_manager._config["storage"]
        result = config_manager.validate_config()
        assert result["valid"] is False
        assert "Required section 'storage' is missing" in result["errors"]

    def test_unparseable_value_reported(self, config_manager):
        """Test pydantic failures surface as validation errors."""
        config_manager.set_setting("browser.pool_size", "many")
        result = config_manager.validate_config()
        assert result["valid"] is False
        assert "Invalid configuration" in result["errors"][0]


class TestGlobalConfigManager:
    """Test suite for the process-wide config manager."""

    def test_singleton(self):
        """Test get_config_manager returns one instance until reset."""
        first = get_config_manager()
        assert get_config_manager() is first
        replacement = ConfigManager()
        set_config_manager(replacement)
        assert get_config_manager() is replacement

    def test_model_defaults(self):
        """Test the pydantic model defaults."""
        config = MirrorConfig()
        assert config.crawl.scope == "registrable-domain"
        assert config.queue.lease_timeout == 300.0
