"""Configuration management for the sitemirror engine."""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator, ConfigDict
from pydantic_settings import BaseSettings

from .errors import ConfigurationError


class GlobalConfig(BaseModel):
    """Global process configuration."""
    log_level: str = "INFO"
    log_file: Optional[str] = "~/.sitemirror/logs/sitemirror.log"
    max_workers: int = 4

    model_config = ConfigDict(extra="allow")


class BrowserConfig(BaseModel):
    """Browser session settings."""
    browser_type: str = "chromium"
    headless: bool = True
    user_agent: Optional[str] = None
    viewport_width: int = 1920
    viewport_height: int = 1080
    extra_args: List[str] = Field(default_factory=list)
    pool_size: int = 4
    navigation_timeout: float = 30.0
    idle_timeout: float = 300.0

    model_config = ConfigDict(extra="allow")


class CrawlConfig(BaseModel):
    """Default crawl bounds applied to new jobs."""
    max_depth: int = 3
    max_pages: int = 100
    concurrency: int = 5
    timeout: float = 30.0
    checkpoint_interval: int = 5
    scope: str = "registrable-domain"
    ignore_query: bool = False

    model_config = ConfigDict(extra="allow")


class ProxySettings(BaseModel):
    """Proxy pool health policy."""
    policy: str = "round-robin"
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0
    dead_failure_ratio: float = 0.8
    dead_min_requests: int = 20
    check_url: str = "https://httpbin.org/ip"
    check_timeout: float = 10.0
    check_interval: float = 60.0

    model_config = ConfigDict(extra="allow")


class ChallengeConfig(BaseModel):
    """Anti-bot interstitial handling."""
    max_attempts: int = 2
    wait_seconds: float = 5.0
    solver: Optional[str] = None
    solver_timeout: float = 120.0

    model_config = ConfigDict(extra="allow")


class CacheConfig(BaseModel):
    """Content cache settings."""
    enabled: bool = True
    ttl: int = 86400
    check_timeout: float = 10.0

    model_config = ConfigDict(extra="allow")


class QueueConfig(BaseModel):
    """Distributed queue settings."""
    lease_timeout: float = 300.0
    poll_interval: float = 1.0
    max_attempts: int = 3
    completed_retention: int = 3600
    failed_retention: int = 86400

    model_config = ConfigDict(extra="allow")


class AssetsConfig(BaseModel):
    """Asset pipeline settings."""
    optimize_images: bool = True
    jpeg_quality: int = 85
    max_image_width: int = 2560
    download_timeout: float = 30.0
    max_asset_bytes: int = 50 * 1024 * 1024
    concurrency: Optional[int] = None

    model_config = ConfigDict(extra="allow")


class VerificationConfig(BaseModel):
    """Verification scoring weights and thresholds."""
    link_weight: float = 0.35
    asset_weight: float = 0.35
    integrity_weight: float = 0.20
    js_weight: float = 0.10
    js_check: bool = False
    js_sample_pages: int = 5
    pass_threshold: float = 70.0

    model_config = ConfigDict(extra="allow")


class StorageConfig(BaseModel):
    """Storage locations."""
    database_path: str = "~/.sitemirror/sitemirror.db"
    output_root: str = "~/.sitemirror/mirrors"

    # SQLite specific settings
    sqlite_wal_mode: bool = True
    sqlite_synchronous: str = "NORMAL"

    model_config = ConfigDict(extra="allow")


class MirrorConfig(BaseSettings):
    """Main configuration class that combines all settings."""

    version: str = "1.0"

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    challenge: ChallengeConfig = Field(default_factory=ChallengeConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    assets: AssetsConfig = Field(default_factory=AssetsConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = ConfigDict(
        env_prefix="SITEMIRROR_",
        env_nested_delimiter="__",
        case_sensitive=False,
        populate_by_name=True,
        extra="allow"
    )

    @field_validator("storage")
    @classmethod
    def expand_storage_paths(cls, v):
        """Expand user paths in storage configuration."""
        if isinstance(v, dict):
            v = StorageConfig(**v)
        if v.database_path != ":memory:":
            v.database_path = str(Path(v.database_path).expanduser())
        v.output_root = str(Path(v.output_root).expanduser())
        return v

    @field_validator("global_")
    @classmethod
    def expand_global_paths(cls, v):
        """Expand user paths in global configuration."""
        if isinstance(v, dict):
            v = GlobalConfig(**v)
        if v.log_file and v.log_file.startswith("~"):
            v.log_file = str(Path(v.log_file).expanduser())
        return v


class ConfigManager:
    """Manages configuration loading, validation, and access."""

    ENV_PREFIX = "SITEMIRROR_"

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path).expanduser() if config_path else None
        self._config: Dict[str, Any] = {}
        self._pydantic_config: Optional[MirrorConfig] = None
        self._load_default_config()

    def _get_default_config_path(self) -> Path:
        """Get the default configuration file path."""
        env_path = os.getenv("SITEMIRROR_CONFIG_PATH")
        if env_path:
            return Path(env_path).expanduser()
        return Path.home() / ".sitemirror" / "config.yaml"

    def get_default_config_path(self) -> Path:
        """Get the default configuration file path."""
        return self._get_default_config_path()

    def get_system_config_path(self) -> Path:
        """Get the system configuration file path."""
        return Path("/etc/sitemirror/config.yaml")

    def _load_default_config(self) -> None:
        default_config = MirrorConfig()
        self._config = default_config.model_dump(by_alias=True)
        self._pydantic_config = default_config

    @property
    def config(self) -> MirrorConfig:
        """Get the current configuration as a pydantic model.

        Raises:
            ConfigurationError: If the merged settings do not validate
        """
        if self._pydantic_config is None:
            try:
                self._pydantic_config = MirrorConfig(**self._config)
            except PydanticValidationError as e:
                raise ConfigurationError(f"Invalid configuration: {e}") from e
        return self._pydantic_config

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a configuration setting using dot notation.

        Args:
            key: Setting key in dot notation (e.g., 'crawl.max_depth')
            default: Default value if setting is not found

        Returns:
            Configuration value or default
        """
        value: Any = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set_setting(self, key: str, value: Any) -> None:
        """Set a configuration setting (runtime only).

        Args:
            key: Setting key in dot notation
            value: Value to set
        """
        keys = key.split('.')
        current = self._config
        for k in keys[:-1]:
            if not isinstance(current.get(k), dict):
                current[k] = {}
            current = current[k]
        current[keys[-1]] = value
        self._pydantic_config = None

    def get_section(self, section_name: str) -> Optional[Dict[str, Any]]:
        """Get a configuration section by name."""
        return self._config.get(section_name)

    def get_all_settings(self) -> Dict[str, Any]:
        """Get a copy of all configuration settings."""
        return json.loads(json.dumps(self._config, default=str))

    def validate_config(self) -> Dict[str, Any]:
        """Validate the current configuration.

        Returns:
            Dictionary with ``valid``, ``errors`` and ``warnings`` keys
        """
        result: Dict[str, Any] = {"valid": True, "errors": [], "warnings": []}

        for section in ("storage", "crawl", "browser"):
            if section not in self._config:
                result["errors"].append(f"Required section '{section}' is missing")
        if result["errors"]:
            result["valid"] = False
            return result

        try:
            config = self.config
        except ConfigurationError as e:
            result["valid"] = False
            result["errors"].append(str(e))
            return result

        if config.crawl.max_pages < 1:
            result["errors"].append("crawl.max_pages must be at least 1")
        if config.crawl.max_depth < 0:
            result["errors"].append("crawl.max_depth must not be negative")
        if config.crawl.concurrency < 1:
            result["errors"].append("crawl.concurrency must be at least 1")
        if config.browser.pool_size < 1:
            result["errors"].append("browser.pool_size must be at least 1")
        if config.crawl.scope not in ("host", "registrable-domain", "any"):
            result["errors"].append(f"crawl.scope '{config.crawl.scope}' is not recognized")
        if not 0.0 < config.proxy.dead_failure_ratio <= 1.0:
            result["errors"].append("proxy.dead_failure_ratio must be in (0, 1]")
        if not 1 <= config.assets.jpeg_quality <= 95:
            result["errors"].append("assets.jpeg_quality must be between 1 and 95")

        weights = config.verification
        if min(weights.link_weight, weights.asset_weight, weights.integrity_weight, weights.js_weight) < 0:
            result["errors"].append("verification weights must not be negative")
        elif weights.link_weight + weights.asset_weight + weights.integrity_weight <= 0:
            result["errors"].append("verification weights must not all be zero")

        if config.storage.database_path != ":memory:":
            storage_dir = Path(config.storage.database_path).parent
            if storage_dir.exists() and not os.access(storage_dir, os.W_OK):
                result["errors"].append(f"Storage directory is not writable: {storage_dir}")

        if config.challenge.solver is None:
            result["warnings"].append(
                "No challenge solver configured; captcha pages will be recorded as blocked"
            )
        if not config.cache.enabled:
            result["warnings"].append("Content cache disabled; incremental runs will re-fetch everything")

        if result["errors"]:
            result["valid"] = False
        return result

    def load_from_file(self, path: Optional[Union[str, Path]] = None) -> None:
        """Merge configuration from a YAML or JSON file.

        Raises:
            ConfigurationError: If the file cannot be read or parsed
        """
        path = Path(path).expanduser() if path else self.config_path
        if not path or not path.exists():
            return

        try:
            with open(path, 'r', encoding='utf-8') as f:
                if path.suffix.lower() == '.json':
                    file_data = json.load(f)
                else:
                    file_data = yaml.safe_load(f) or {}
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot load config file {path}: {e}", config_key=str(path)) from e

        if not isinstance(file_data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping", config_key=str(path))

        self._deep_merge(self._config, file_data)
        self._pydantic_config = None

    def save_to_file(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Write the current configuration to a YAML or JSON file."""
        path = Path(path).expanduser() if path else (self.config_path or self._get_default_config_path())
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.get_all_settings()
        with open(path, 'w', encoding='utf-8') as f:
            if path.suffix.lower() == '.json':
                json.dump(data, f, indent=2)
            else:
                yaml.safe_dump(data, f, default_flow_style=False, indent=2)
        return path

    def load_from_environment(self) -> None:
        """Load ``SITEMIRROR_SECTION__KEY`` environment overrides."""
        for key, value in os.environ.items():
            if not key.startswith(self.ENV_PREFIX) or "__" not in key:
                continue
            config_key = key[len(self.ENV_PREFIX):].lower().replace("__", ".")
            self.set_setting(config_key, self._coerce_env_value(value))
        self._pydantic_config = None

    @staticmethod
    def _coerce_env_value(value: str) -> Any:
        if value.lower() in ("true", "false"):
            return value.lower() == "true"
        if value.isdigit():
            return int(value)
        try:
            return float(value)
        except ValueError:
            return value

    def merge_config(self, new_config: Dict[str, Any]) -> None:
        """Merge new configuration with existing."""
        self._deep_merge(self._config, new_config)
        self._pydantic_config = None

    def _deep_merge(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._deep_merge(target[key], value)
            else:
                target[key] = value

    def load_hierarchical(self) -> None:
        """Load configuration hierarchically (system -> user -> custom -> env)."""
        self._load_default_config()
        for path in (self.get_system_config_path(), self.get_default_config_path(), self.config_path):
            if path and path.exists():
                self.load_from_file(path)
        self.load_from_environment()

    def create_default_config(self, config_path: Optional[Path] = None) -> Path:
        """Create a default configuration file.

        Args:
            config_path: Path to create config file (defaults to standard location)

        Returns:
            Path to created config file
        """
        if config_path is None:
            config_path = self._get_default_config_path()
        config_path = Path(config_path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = json.loads(MirrorConfig().model_dump_json(by_alias=True))
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, indent=2)
        return config_path

    def reload_config(self) -> None:
        """Reload configuration from file and environment."""
        self._load_default_config()
        if self.config_path and self.config_path.exists():
            self.load_from_file()
        self.load_from_environment()


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def set_config_manager(manager: Optional[ConfigManager]) -> None:
    """Replace the global configuration manager (None resets it)."""
    global _config_manager
    _config_manager = manager


def get_config() -> MirrorConfig:
    """Get the current configuration."""
    return get_config_manager().config
