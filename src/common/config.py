"""
Configuration management with hierarchical YAML files, environment overrides,
schema validation and hot-reloading
"""
import os
import yaml
import json
import threading
import time
from typing import Dict, Any, Optional, List, Callable
from pathlib import Path
from dataclasses import dataclass, asdict
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler
from jsonschema import validate, ValidationError
import logging

from .interfaces import AggregationAlgorithm, AggregationConfig, OutlierMethod, WeightingStrategy

logger = logging.getLogger(__name__)


@dataclass
class NetworkConfig:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class AggregationSettings:
    algorithm: str = "weighted-fedavg"
    min_submissions: int = 3
    weighting_strategy: str = "dataset-size"
    outlier_detection: bool = True
    outlier_threshold: float = 2.5
    outlier_method: str = "leave-one-out"


@dataclass
class VerificationConfig:
    gateway: str = "signature"  # signature or allow_all
    timeout_seconds: float = 10.0


@dataclass
class StorageConfig:
    backend: str = "memory"  # memory or file
    directory: str = "models"
    max_history: int = 100
    save_retries: int = 3
    retry_backoff_seconds: float = 0.5
    blob_backend: str = "none"  # none, memory or file
    blob_directory: str = "blobs"


@dataclass
class MonitoringConfig:
    enable_metrics: bool = True
    log_level: str = "INFO"


@dataclass
class AppConfig:
    environment: str = "development"
    debug: bool = True
    hot_reload: bool = False
    network: NetworkConfig = None
    aggregation: AggregationSettings = None
    verification: VerificationConfig = None
    storage: StorageConfig = None
    monitoring: MonitoringConfig = None
    config_version: str = "1.0.0"

    def __post_init__(self):
        if self.network is None:
            self.network = NetworkConfig()
        if self.aggregation is None:
            self.aggregation = AggregationSettings()
        if self.verification is None:
            self.verification = VerificationConfig()
        if self.storage is None:
            self.storage = StorageConfig()
        if self.monitoring is None:
            self.monitoring = MonitoringConfig()

    def to_aggregation_config(self) -> AggregationConfig:
        """Immutable aggregation settings for the round coordinator"""
        return AggregationConfig.from_dict(asdict(self.aggregation))


class ConfigFileHandler(FileSystemEventHandler):
    """File system event handler for configuration hot-reloading"""

    def __init__(self, config_manager):
        self.config_manager = config_manager
        self.last_modified = {}

    def on_modified(self, event):
        if event.is_directory:
            return

        file_path = Path(event.src_path)
        if file_path.suffix in ['.yaml', '.yml', '.json']:
            # Debounce rapid file changes
            current_time = time.time()
            if file_path in self.last_modified:
                if current_time - self.last_modified[file_path] < 1.0:
                    return

            self.last_modified[file_path] = current_time
            logger.info(f"Configuration file changed: {file_path}")
            self.config_manager._reload_from_file_change(str(file_path))


class ConfigManager:
    """Configuration manager with hierarchical configuration,
    validation and hot-reloading"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        self._config: Optional[AppConfig] = None
        self._config_lock = threading.RLock()
        self._reload_callbacks: List[Callable[[AppConfig], None]] = []
        self._observer: Optional[Observer] = None
        self._schema = self._load_config_schema()

    def load_config(self, environment: str = None) -> AppConfig:
        """Load configuration for specified environment with hierarchical merging"""
        with self._config_lock:
            if environment is None:
                environment = os.getenv("ENVIRONMENT", "development")

            # Load configurations in hierarchical order
            configs = []

            # 1. Load base configuration
            base_config = self._load_config_file("base.yaml")
            if base_config:
                configs.append(base_config)

            # 2. Load environment-specific configuration
            env_config = self._load_config_file(f"{environment}.yaml")
            if env_config:
                configs.append(env_config)

            # 3. Load local overrides (if exists)
            local_config = self._load_config_file("local.yaml")
            if local_config:
                configs.append(local_config)

            # Merge all configurations hierarchically
            merged_config = {'environment': environment}
            for config in configs:
                merged_config = self._merge_configs(merged_config, config)

            # Override with environment variables
            merged_config = self._apply_env_overrides(merged_config)

            # Create AppConfig instance
            config_obj = self._dict_to_config(merged_config)

            # Validate configuration
            if not self.validate_config(config_obj):
                raise ValueError("Configuration validation failed")

            self._config = config_obj
            return self._config

    def get_config(self) -> AppConfig:
        """Get current configuration"""
        if self._config is None:
            return self.load_config()
        return self._config

    def reload_config(self) -> AppConfig:
        """Reload configuration from files"""
        self._config = None
        return self.load_config()

    def save_config(self, config: AppConfig, filename: str = None):
        """Save configuration to file"""
        if filename is None:
            filename = f"{config.environment}.yaml"

        self.config_dir.mkdir(parents=True, exist_ok=True)
        config_path = self.config_dir / filename

        with open(config_path, 'w') as f:
            yaml.dump(asdict(config), f, default_flow_style=False)

    def validate_config(self, config: AppConfig) -> bool:
        """Configuration validation using JSON schema plus business rules"""
        try:
            config_dict = asdict(config)

            # Validate against schema
            if self._schema:
                validate(instance=config_dict, schema=self._schema)

            # Additional business logic validation
            assert 0 < config.network.port < 65536
            assert config.aggregation.algorithm in [a.value for a in AggregationAlgorithm]
            assert config.aggregation.weighting_strategy in [w.value for w in WeightingStrategy]
            assert config.aggregation.outlier_method in [m.value for m in OutlierMethod]
            assert config.aggregation.min_submissions > 0
            assert config.aggregation.outlier_threshold > 0
            assert config.verification.gateway in ["signature", "allow_all"]
            assert config.verification.timeout_seconds > 0
            assert config.storage.backend in ["memory", "file"]
            assert config.storage.blob_backend in ["none", "memory", "file"]
            assert config.storage.max_history > 0
            assert config.storage.save_retries >= 0
            assert config.storage.retry_backoff_seconds >= 0
            assert config.monitoring.log_level.upper() in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

            return True
        except (AssertionError, AttributeError, ValidationError) as e:
            logger.error(f"Configuration validation failed: {e}")
            return False

    def enable_hot_reloading(self):
        """Enable hot-reloading of configuration files"""
        if self._observer is not None:
            return  # Already enabled

        self.config_dir.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        event_handler = ConfigFileHandler(self)
        self._observer.schedule(event_handler, str(self.config_dir), recursive=False)
        self._observer.start()
        logger.info("Configuration hot-reloading enabled")

    def disable_hot_reloading(self):
        """Disable hot-reloading of configuration files"""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("Configuration hot-reloading disabled")

    def add_reload_callback(self, callback: Callable[[AppConfig], None]):
        """Add callback to be called when configuration is reloaded"""
        self._reload_callbacks.append(callback)

    def remove_reload_callback(self, callback: Callable[[AppConfig], None]):
        """Remove reload callback"""
        if callback in self._reload_callbacks:
            self._reload_callbacks.remove(callback)

    def _reload_from_file_change(self, file_path: str):
        """Handle configuration reload from file system change"""
        try:
            new_config = self.load_config(self._config.environment if self._config else None)

            # Notify callbacks of configuration change
            for callback in self._reload_callbacks:
                try:
                    callback(new_config)
                except Exception as e:
                    logger.error(f"Error in reload callback: {e}")

            logger.info(f"Configuration reloaded successfully after change to {file_path}")
        except Exception as e:
            logger.error(f"Failed to reload configuration: {e}")

    def _load_config_schema(self) -> Optional[Dict[str, Any]]:
        """Load JSON schema for configuration validation"""
        schema_path = self.config_dir / "schema.json"
        if schema_path.exists():
            try:
                with open(schema_path, 'r') as f:
                    return json.load(f)
            except Exception as e:
                logger.warning(f"Failed to load config schema: {e}")
        return None

    def _load_config_file(self, filename: str) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        config_path = self.config_dir / filename

        if not config_path.exists():
            return {}

        with open(config_path, 'r') as f:
            if filename.endswith('.yaml') or filename.endswith('.yml'):
                return yaml.safe_load(f) or {}
            elif filename.endswith('.json'):
                return json.load(f)

        return {}

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge configuration dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides"""
        # Network overrides
        if os.getenv("PORT"):
            config.setdefault("network", {})["port"] = int(os.getenv("PORT"))
        if os.getenv("HOST"):
            config.setdefault("network", {})["host"] = os.getenv("HOST")

        # Aggregation overrides
        if os.getenv("FL_MIN_SUBMISSIONS"):
            config.setdefault("aggregation", {})["min_submissions"] = int(os.getenv("FL_MIN_SUBMISSIONS"))
        if os.getenv("FL_ALGORITHM"):
            config.setdefault("aggregation", {})["algorithm"] = os.getenv("FL_ALGORITHM")
        if os.getenv("FL_WEIGHTING_STRATEGY"):
            config.setdefault("aggregation", {})["weighting_strategy"] = os.getenv("FL_WEIGHTING_STRATEGY")
        if os.getenv("FL_OUTLIER_THRESHOLD"):
            config.setdefault("aggregation", {})["outlier_threshold"] = float(os.getenv("FL_OUTLIER_THRESHOLD"))

        # Storage overrides
        if os.getenv("FL_STORAGE_BACKEND"):
            config.setdefault("storage", {})["backend"] = os.getenv("FL_STORAGE_BACKEND")
        if os.getenv("FL_STORAGE_DIR"):
            config.setdefault("storage", {})["directory"] = os.getenv("FL_STORAGE_DIR")

        # Monitoring overrides
        if os.getenv("LOG_LEVEL"):
            config.setdefault("monitoring", {})["log_level"] = os.getenv("LOG_LEVEL")

        return config

    def _dict_to_config(self, config_dict: Dict[str, Any]) -> AppConfig:
        """Convert dictionary to AppConfig instance"""
        # Extract nested configurations
        network_config = NetworkConfig(**config_dict.get("network", {}))
        aggregation_config = AggregationSettings(**config_dict.get("aggregation", {}))
        verification_config = VerificationConfig(**config_dict.get("verification", {}))
        storage_config = StorageConfig(**config_dict.get("storage", {}))
        monitoring_config = MonitoringConfig(**config_dict.get("monitoring", {}))

        return AppConfig(
            environment=config_dict.get("environment", "development"),
            debug=config_dict.get("debug", True),
            hot_reload=config_dict.get("hot_reload", False),
            network=network_config,
            aggregation=aggregation_config,
            verification=verification_config,
            storage=storage_config,
            monitoring=monitoring_config
        )


# Global configuration manager instance
config_manager = ConfigManager()


def get_config() -> AppConfig:
    """Get application configuration"""
    return config_manager.get_config()


def reload_config() -> AppConfig:
    """Reload application configuration"""
    return config_manager.reload_config()
