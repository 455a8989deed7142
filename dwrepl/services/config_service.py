"""
Configuration service for TiDB to warehouse replication
"""

import json
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..exceptions import ConfigurationError
from ..models.config import ReplicationConfig
from ..models.state import RunMode


class ConfigService:
    """Service for loading and managing configuration"""

    def load_config(self, config_path: str, overrides: Optional[Dict[str, Any]] = None) -> ReplicationConfig:
        """
        Load configuration from a YAML or JSON file

        Args:
            config_path: Path to the configuration file
            overrides: Top-level values (mode, sink_uri, timezone) that replace
                the file's values; None entries are ignored

        Returns:
            The immutable replication configuration
        """
        try:
            config_path = Path(config_path)
            if not config_path.exists():
                raise ConfigurationError(f"Configuration file not found: {config_path}")

            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.suffix.lower() == '.json':
                    config_dict = json.load(f)
                elif config_path.suffix.lower() in ['.yml', '.yaml']:
                    config_dict = yaml.safe_load(f)
                else:
                    raise ConfigurationError(f"Unsupported configuration format: {config_path.suffix}")

            if not isinstance(config_dict, dict):
                raise ConfigurationError("Configuration must be a mapping")

            config = ReplicationConfig.from_dict(config_dict)
        except ConfigurationError:
            raise
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON configuration: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML configuration: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error loading configuration: {e}")

        return self.apply_overrides(config, overrides or {})

    @staticmethod
    def apply_overrides(config: ReplicationConfig, overrides: Dict[str, Any]) -> ReplicationConfig:
        """Return a copy of the configuration with command-line overrides applied"""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return config
        if 'mode' in changes:
            changes['mode'] = RunMode.parse(changes['mode'])
        try:
            return replace(config, **changes)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration override: {e}")
