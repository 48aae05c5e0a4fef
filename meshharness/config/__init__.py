"""
Configuration package for the mesh test harness.

This package provides harness settings with environment variable support and
loading of topology and test configuration documents.
"""

from .settings import (
    Settings,
    LoggingConfig,
    TimeoutConfig,
    ProviderConfig,
    CoordinatorConfig,
    ExecutorConfig,
    DiscoveryConfig,
    MetricsConfig,
    Environment,
    LogLevel,
    load_settings
)

from .loader import (
    HarnessDocument,
    load_config_file,
    parse_harness_document,
    load_harness_document,
    save_config_file
)

__all__ = [
    "Settings",
    "LoggingConfig",
    "TimeoutConfig",
    "ProviderConfig",
    "CoordinatorConfig",
    "ExecutorConfig",
    "DiscoveryConfig",
    "MetricsConfig",
    "Environment",
    "LogLevel",
    "load_settings",
    "HarnessDocument",
    "load_config_file",
    "parse_harness_document",
    "load_harness_document",
    "save_config_file"
]
