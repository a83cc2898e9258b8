"""
Configuration Management Module

YAML configuration loading, environment variable resolution and validation.
"""

import os
import threading
from typing import Any, Dict, List, Optional
from functools import lru_cache

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from quotehub.core.config_models import ConfigModel
from quotehub.core.logger import get_logger
from quotehub.core.error_handler import ConfigError


class Config:
    """
    Configuration manager

    Loads the application configuration from a YAML file and the environment.
    """

    _instance: Optional["Config"] = None
    _lock = threading.Lock()
    _config: Dict[str, Any] = {}
    _config_path: Optional[str] = None

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if not hasattr(self, '_initialized') or not self._initialized:
            self.logger = get_logger()
            self._load_config(config_path)
            self._initialized = True
        elif config_path and config_path != self._config_path:
            self.reload(config_path)

    def _load_config(self, config_path: Optional[str] = None) -> None:
        """
        Load the configuration file

        Args:
            config_path: file path, the default locations are searched when omitted
        """
        if config_path is None:
            config_path = self._find_config_file()

        self._config_path = config_path
        self._config = {}

        self._load_env_file()
        if config_path and os.path.exists(config_path):
            self._load_yaml_config(config_path)
            self._resolve_env_variables()
        self._validate()

    def _find_config_file(self) -> Optional[str]:
        """
        Locate the configuration file

        Priority: $QUOTEHUB_CONFIG > config/config.yaml > config/config.example.yaml
        """
        possible_paths = [
            os.getenv("QUOTEHUB_CONFIG", ""),
            "config/config.yaml",
            "config/config.example.yaml",
        ]
        for path in possible_paths:
            if path and os.path.exists(path):
                return path
        return None

    def _load_yaml_config(self, config_path: str) -> None:
        """
        Parse the YAML document
        """
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                self._config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            self.logger.error(f"Invalid YAML in config file: {e}")
            raise ConfigError(f"Invalid YAML: {e}")
        except OSError as e:
            self.logger.error(f"Failed to read config file: {e}")
            raise ConfigError(f"Cannot read config file {config_path}: {e}")

        if not isinstance(self._config, dict):
            raise ConfigError(f"Config root must be a mapping: {config_path}")

    def _load_env_file(self) -> None:
        """
        Load the first .env file found
        """
        env_files = [
            ".env",
            "config/.env",
        ]
        for env_file in env_files:
            if os.path.exists(env_file):
                load_dotenv(env_file, override=False)
                break

    def _resolve_env_variables(self) -> None:
        """
        Replace ${VAR_NAME} references with environment values
        """
        self._config = self._resolve_dict(self._config)

    def _resolve_dict(self, obj: Any) -> Any:
        """
        Recursively resolve environment references
        """
        if isinstance(obj, dict):
            resolved = {}
            for key, value in obj.items():
                resolved[key] = self._resolve_dict(value)
            return resolved
        elif isinstance(obj, list):
            return [self._resolve_dict(item) for item in obj]
        elif isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
            env_key = obj[2:-1]
            value = os.getenv(env_key)
            if value is None:
                self.logger.debug(f"Environment variable {env_key} not set, leaving placeholder")
                return obj
            return value
        return obj

    def _validate(self) -> None:
        """
        Validate against ConfigModel and fill defaults
        """
        try:
            validated_config = ConfigModel.from_dict(self._config)
        except ValidationError as e:
            self.logger.error(f"Config validation failed: {e}")
            raise ConfigError(f"Invalid configuration: {e}")
        self._config = validated_config.to_dict()
        self.logger.debug(f"Config validation passed: {self._config_path or '<defaults>'}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Read a value

        Args:
            key: dotted path such as "engine.max_request_seconds"
            default: fallback value

        Returns:
            The configured value
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def get_section(self, section: str, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Read a whole section

        Args:
            section: section name
            default: fallback value

        Returns:
            Section dict
        """
        return self._config.get(section, default or {})

    @property
    def app(self) -> Dict[str, Any]:
        """Application settings"""
        return self.get_section("app")

    @property
    def database(self) -> Dict[str, Any]:
        """Database settings"""
        return self.get_section("database")

    @property
    def engine(self) -> Dict[str, Any]:
        """Fan-out engine settings"""
        return self.get_section("engine")

    @property
    def providers(self) -> Optional[List[Dict[str, Any]]]:
        """Provider registry, None when the file defines none"""
        return self._config.get("providers")

    @property
    def path(self) -> Optional[str]:
        return self._config_path

    def reload(self, config_path: Optional[str] = None) -> None:
        """
        Reload the configuration

        Args:
            config_path: new file path
        """
        self._load_config(config_path or self._config_path)


@lru_cache(maxsize=1)
def get_config(config_path: Optional[str] = None) -> Config:
    """
    Return the configuration singleton

    Args:
        config_path: configuration file path

    Returns:
        Config instance
    """
    return Config(config_path)
