"""
Configuration management for the mesh test harness.

This module provides configuration classes for harness-wide settings with
environment variable support, validation, and deployment environment handling.
Settings are loaded explicitly and passed into the components that need them.
"""

from typing import Optional
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    CI = "ci"


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Harness log level"
    )
    structured: bool = Field(
        default=True,
        description="Emit JSON log records"
    )
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format when structured logging is off"
    )


class TimeoutConfig(BaseModel):
    """Per-operation deadlines, in seconds."""

    cluster_create: float = Field(
        default=600,
        ge=30,
        description="Deadline for creating one cluster"
    )
    cluster_delete: float = Field(
        default=300,
        ge=10,
        description="Deadline for deleting one cluster"
    )
    status: float = Field(
        default=60,
        ge=1,
        description="Deadline for one cluster status query"
    )
    command: float = Field(
        default=120,
        ge=1,
        description="Default deadline for short provider commands"
    )
    api_call: float = Field(
        default=30,
        ge=1,
        description="Deadline for one Kubernetes API call"
    )


class ProviderConfig(BaseModel):
    """Cluster provider binaries and defaults."""

    kind_binary: str = Field(default="kind", description="Path to the kind binary")
    minikube_binary: str = Field(default="minikube", description="Path to the minikube binary")
    kind_node_image: str = Field(default="kindest/node", description="kind node image repository")
    kind_wait: str = Field(default="5m", description="How long kind waits for the control plane")

    @field_validator('kind_binary', 'minikube_binary')
    @classmethod
    def validate_binary(cls, v):
        if not v or not v.strip():
            raise ValueError("Provider binary cannot be empty")
        return v.strip()


class CoordinatorConfig(BaseModel):
    """Defaults for the distributed test coordinator."""

    default_timeout: float = Field(
        default=1800,
        gt=0,
        description="Per-run timeout in seconds when a test config does not set one"
    )
    default_retry_delay: float = Field(
        default=10,
        ge=0,
        description="Delay between retries in seconds"
    )
    default_max_concurrency: int = Field(
        default=3,
        ge=1,
        le=64,
        description="Concurrent per-cluster runs in parallel mode"
    )


class ExecutorConfig(BaseModel):
    """Test executor binaries."""

    go_binary: str = Field(default="go", description="Path to the go toolchain")
    npx_binary: str = Field(default="npx", description="Path to npx, used to launch Cypress")
    run_timeout: float = Field(
        default=3600,
        gt=0,
        description="Hard ceiling for one external test process in seconds"
    )


class DiscoveryConfig(BaseModel):
    """Service discovery defaults."""

    namespace: str = Field(
        default="kube-system",
        description="Namespace for discovery resources when a mechanism does not set one"
    )
    managed_by: str = Field(
        default="meshharness",
        description="Value of the app.kubernetes.io/managed-by label on created resources"
    )


class MetricsConfig(BaseModel):
    enabled: bool = Field(default=True, description="Enable metrics collection")


class Settings(BaseSettings):
    """Main harness settings with environment variable support."""

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    providers: ProviderConfig = Field(default_factory=ProviderConfig)
    coordinator: CoordinatorConfig = Field(default_factory=CoordinatorConfig)
    executors: ExecutorConfig = Field(default_factory=ExecutorConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_prefix="MESH_",
        extra="ignore"
    )

    @model_validator(mode='after')
    def validate_environment_specific_settings(self):
        """Apply environment-specific configuration overrides."""
        if self.environment == Environment.DEVELOPMENT:
            if self.debug:
                self.logging.level = LogLevel.DEBUG

        elif self.environment == Environment.TESTING:
            self.logging.level = LogLevel.WARNING
            self.metrics.enabled = False
            self.debug = False

        elif self.environment == Environment.CI:
            self.logging.structured = True
            self.debug = False

        return self


def load_settings(env_file: Optional[str] = None, **overrides) -> Settings:
    """Load a fresh Settings instance.

    Args:
        env_file: Alternative .env file to read
        **overrides: Explicit values that take precedence over the environment

    Returns:
        A new Settings instance
    """
    if env_file is not None:
        return Settings(_env_file=env_file, **overrides)
    return Settings(**overrides)
