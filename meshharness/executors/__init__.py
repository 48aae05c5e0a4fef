"""
Test executors for single-cluster test runs.
"""

from typing import Optional

from .base import TestExecutor, ExecutorRegistry
from .cypress_executor import CypressTestExecutor
from .go_executor import GoTestExecutor
from ..config.settings import Settings


def create_executor_registry(settings: Optional[Settings] = None) -> ExecutorRegistry:
    """Registry with every built-in executor, configured from settings."""
    settings = settings or Settings()
    registry = ExecutorRegistry()
    registry.register(GoTestExecutor(settings.executors))
    registry.register(CypressTestExecutor(settings.executors))
    return registry


__all__ = [
    "TestExecutor",
    "ExecutorRegistry",
    "GoTestExecutor",
    "CypressTestExecutor",
    "create_executor_registry"
]
