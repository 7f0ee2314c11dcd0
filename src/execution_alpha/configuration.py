"""
Configuration Management

Handles loading and validation of configuration from YAML files
with environment variable substitution.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional
import yaml
import structlog
from dotenv import load_dotenv

from .analysis.market_depth import MarketDepthConfig
from .analysis.slippage_timing import SlippageTimingConfig
from .execution.scheduled_slicer import ScheduledSlicerConfig
from .execution.iceberg_slicer import IcebergConfig
from .execution.router import RouterConfig

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/execution_alpha.yaml"

# ${VAR_NAME} or ${VAR_NAME:default_value}
ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')


@dataclass(frozen=True)
class LoggingConfig:
    """Logging section"""
    level: str = "INFO"
    renderer: str = "console"

    def __post_init__(self):
        """Validate configuration"""
        if self.renderer not in ("console", "json"):
            raise ValueError("renderer must be 'console' or 'json'")


@dataclass(frozen=True)
class EngineConfig:
    """Validated configuration for every engine component"""
    market_depth: MarketDepthConfig = field(default_factory=MarketDepthConfig)
    slippage_timing: SlippageTimingConfig = field(default_factory=SlippageTimingConfig)
    scheduled_slicer: ScheduledSlicerConfig = field(default_factory=ScheduledSlicerConfig)
    iceberg: IcebergConfig = field(default_factory=IcebergConfig)
    router: RouterConfig = field(default_factory=RouterConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EngineConfig':
        """
        Build component configs from plain section dictionaries

        Raises:
            ValueError: On unknown sections, unknown keys or invalid values
        """
        data = data or {}
        section_types = {f.name: f.default_factory for f in fields(cls)}

        unknown_sections = set(data) - set(section_types)
        if unknown_sections:
            raise ValueError(f"Unknown configuration sections: {sorted(unknown_sections)}")

        sections = {}
        for name, section_type in section_types.items():
            values = data.get(name) or {}
            if not isinstance(values, dict):
                raise ValueError(f"Configuration section '{name}' must be a mapping")

            allowed = {f.name for f in fields(section_type)}
            unknown = set(values) - allowed
            if unknown:
                raise ValueError(f"Unknown keys in '{name}': {sorted(unknown)}")

            sections[name] = section_type(**values)

        return cls(**sections)


class Config:
    """YAML configuration with environment substitution"""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration

        Args:
            config_path: Path to YAML configuration file
        """
        load_dotenv()

        self.config_path = config_path or os.getenv("EXECUTION_ALPHA_CONFIG", DEFAULT_CONFIG_PATH)
        self._config_data: Dict[str, Any] = {}

        self._load_config()

        logger.info("Configuration loaded",
                    config_path=self.config_path,
                    sections=list(self._config_data.keys()))

    def _load_config(self) -> None:
        """Load configuration from YAML file"""
        config_file = Path(self.config_path)

        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        config_text = self._substitute_env_vars(config_file.read_text())

        try:
            data = yaml.safe_load(config_text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a dictionary")

        self._config_data = data

    @staticmethod
    def _substitute_env_vars(text: str) -> str:
        """Substitute environment variables in configuration text"""
        def replace_env_var(match):
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.getenv(match.group(1), default_value)

        return ENV_PATTERN.sub(replace_env_var, text)

    def get(self, key: str, default: Any = None) -> Any:
        """Get top-level configuration value"""
        return self._config_data.get(key, default)

    def get_nested(self, path: str, default: Any = None) -> Any:
        """
        Get nested configuration value using dot notation

        Example: config.get_nested('iceberg.max_concurrent_orders')
        """
        value = self._config_data

        try:
            for key in path.split('.'):
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def update(self, section: str, updates: Dict[str, Any]) -> None:
        """Update configuration section"""
        self._config_data.setdefault(section, {}).update(updates)
        logger.info("Configuration updated", section=section, updates=updates)

    def to_dict(self) -> Dict[str, Any]:
        """Get full configuration as dictionary"""
        return self._config_data.copy()

    def to_engine_config(self) -> EngineConfig:
        """Validated component configs for the engine"""
        return EngineConfig.from_dict(self._config_data)


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """
    Load and validate configuration from file

    Args:
        config_path: Path to configuration file

    Returns:
        Validated engine configuration
    """
    return Config(config_path).to_engine_config()
