"""
Configuration package initialization.
"""

from .settings import (
    ConfigManager,
    AnalysisConfig,
    CatalogConfig,
    ProcessingConfig,
    OutputConfig,
    LoggingConfig,
    SystemConfig,
    config_manager,
    get_config,
    load_config,
    setup_logging,
    validate_config,
)

__all__ = [
    "ConfigManager",
    "AnalysisConfig",
    "CatalogConfig",
    "ProcessingConfig",
    "OutputConfig",
    "LoggingConfig",
    "SystemConfig",
    "config_manager",
    "get_config",
    "load_config",
    "setup_logging",
    "validate_config",
]
