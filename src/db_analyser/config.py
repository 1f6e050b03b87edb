"""
Database Analyser - Configuration
Copyright (c) 2025 Dmitry Solonnikov
Licensed under MIT License - see LICENSE file for details
"""
import configparser
import os
from dataclasses import dataclass, fields
from typing import Dict, Optional

from .errors import ConfigError

CONFIG_ENV_VAR = 'DB_ANALYSER_CONFIG'


@dataclass
class AnalysisConfig:
    """Tunable settings for analysis runs and sessions."""
    # [analysis]
    max_workers: int = 4
    max_parallel_databases: int = 2
    query_timeout_seconds: int = 300

    # [profiling]
    max_profile_columns: int = 200

    # [usage]
    active_threshold: float = 0.3
    low_threshold: float = -0.3
    min_uptime_days_positive: int = 7
    min_uptime_days_negative: int = 30
    query_text_sample_size: int = 200

    # [session]
    session_idle_timeout_minutes: int = 30
    cleanup_interval_minutes: int = 5


# INI section for every config field
_SECTIONS: Dict[str, str] = {
    'max_workers': 'analysis',
    'max_parallel_databases': 'analysis',
    'query_timeout_seconds': 'analysis',
    'max_profile_columns': 'profiling',
    'active_threshold': 'usage',
    'low_threshold': 'usage',
    'min_uptime_days_positive': 'usage',
    'min_uptime_days_negative': 'usage',
    'query_text_sample_size': 'usage',
    'session_idle_timeout_minutes': 'session',
    'cleanup_interval_minutes': 'session',
}


def load_config(config_path: Optional[str] = None) -> AnalysisConfig:
    """Load configuration from an INI file.

    Args:
        config_path: Path to the configuration file. Falls back to the
            DB_ANALYSER_CONFIG environment variable, then to defaults.

    Returns:
        Populated AnalysisConfig
    """
    config_path = config_path or os.environ.get(CONFIG_ENV_VAR)
    config = AnalysisConfig()
    if not config_path:
        return config

    parser = configparser.ConfigParser()
    if not parser.read(config_path):
        return config

    for field in fields(AnalysisConfig):
        section = _SECTIONS[field.name]
        if not parser.has_option(section, field.name):
            continue
        try:
            if field.type is float or field.type == 'float':
                value = parser.getfloat(section, field.name)
            else:
                value = parser.getint(section, field.name)
        except ValueError as e:
            raise ConfigError(f"Invalid value for [{section}] {field.name}: {e}") from e
        setattr(config, field.name, value)

    if config.low_threshold > config.active_threshold:
        raise ConfigError("[usage] low_threshold must not exceed active_threshold")
    if config.max_workers < 1 or config.max_parallel_databases < 1:
        raise ConfigError("[analysis] worker counts must be positive")
    return config
