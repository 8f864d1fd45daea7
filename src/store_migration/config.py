"""Configuration management for Store Bridge using Pydantic.

This module provides type-safe configuration models for the store
connections, API rate limits, the job scheduler, the per-module migrators,
the state database and logging.
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_API_VERSION = "2024-01"


class StoreConfig(BaseModel):
    """Connection settings for one store (source or destination)."""

    url: str = Field(..., description="Store domain, e.g. my-shop.myshopify.com")
    access_token: str = Field(..., description="Admin API access token")
    api_version: str = Field(default=DEFAULT_API_VERSION, description="Admin API version")
    timeout: int = Field(default=30, ge=1, le=600, description="API request timeout in seconds")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Normalize the store URL to a bare domain."""
        v = v.strip()
        if v.startswith("http://"):
            raise ValueError("Store URL should use HTTPS")
        v = v.removeprefix("https://").rstrip("/")
        if not v or "/" in v:
            raise ValueError("Store URL must be a domain such as my-shop.myshopify.com")
        return v

    @field_validator("access_token")
    @classmethod
    def validate_access_token(cls, v: str) -> str:
        """Validate token is not empty."""
        if not v or v.strip() == "":
            raise ValueError("Access token cannot be empty")
        return v

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        """Validate the YYYY-MM version format."""
        parts = v.split("-")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError("API version must look like YYYY-MM")
        return v

    @property
    def base_url(self) -> str:
        """Versioned Admin API base URL."""
        return f"https://{self.url}/admin/api/{self.api_version}"


class RateLimitConfig(BaseModel):
    """Outbound quota settings for the REST and GraphQL limiters."""

    rest_capacity: int = Field(default=40, ge=1, le=1000, description="REST calls per interval")
    rest_interval: float = Field(default=1.0, gt=0, description="REST refill interval (seconds)")
    rest_min_spacing: float = Field(
        default=0.5, ge=0, description="Minimum seconds between two REST calls"
    )
    graphql_capacity: int = Field(
        default=50, ge=1, le=1000, description="GraphQL calls per interval"
    )
    graphql_interval: float = Field(
        default=1.0, gt=0, description="GraphQL refill interval (seconds)"
    )
    graphql_min_spacing: float = Field(
        default=0.1, ge=0, description="Minimum seconds between two GraphQL calls"
    )
    max_concurrent: int = Field(
        default=1, ge=1, le=10, description="In-flight requests per limiter"
    )
    throttle_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Total attempts for a throttled (429) call"
    )
    default_retry_after: float = Field(
        default=2.0, ge=0, description="Wait used when a 429 carries no Retry-After header"
    )
    graphql_low_budget_threshold: int = Field(
        default=10, ge=0, description="Remaining query cost below which calls pause"
    )
    graphql_low_budget_pause: float = Field(
        default=1.0, ge=0, description="Pause (seconds) when the query cost budget is low"
    )


class SchedulerConfig(BaseModel):
    """Job scheduler configuration."""

    concurrency: int = Field(default=5, ge=1, le=32, description="Worker pool size")
    job_attempts: int = Field(default=3, ge=1, le=10, description="Attempts per module job")
    job_backoff_base: float = Field(
        default=5.0, ge=0, description="Seconds before the first job retry (doubles each retry)"
    )
    heartbeat_interval: float = Field(
        default=10.0, gt=0, description="Seconds between liveness signals of a running job"
    )
    lease_timeout: float = Field(
        default=60.0, gt=0, description="Seconds without a heartbeat before a running job is requeued"
    )

    @model_validator(mode="after")
    def validate_lease(self) -> "SchedulerConfig":
        """A lease must outlive several heartbeats."""
        if self.lease_timeout <= self.heartbeat_interval:
            raise ValueError("lease_timeout must be greater than heartbeat_interval")
        return self


class MigratorConfig(BaseModel):
    """Per-module migrator settings."""

    page_sizes: dict[str, int] = Field(
        default={
            "products": 50,
            "pages": 250,
            "collections": 250,
            "media": 250,
        },
        description="Page size per module",
    )
    max_item_retries: int = Field(
        default=3,
        ge=1,
        le=100,
        description="Failed attempts after which an item is skipped until reset",
    )
    milestone_every: int = Field(
        default=10, ge=1, le=10000, description="Items between milestone log entries"
    )

    @field_validator("page_sizes")
    @classmethod
    def validate_page_sizes(cls, v: dict[str, int]) -> dict[str, int]:
        """Validate page sizes are within API limits."""
        for module, size in v.items():
            if size < 1 or size > 250:
                raise ValueError(f"Page size for {module} must be between 1 and 250")
        return v

    def page_size(self, module: str, default: int = 250) -> int:
        """Page size configured for a module."""
        return self.page_sizes.get(module, default)


class StateConfig(BaseModel):
    """State management configuration."""

    db_path: str = Field(default="./migration_state.db", description="Path or URL of state database")
    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of connections to maintain in the pool (PostgreSQL only)",
    )
    db_max_overflow: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of connections to create beyond pool_size (PostgreSQL only)",
    )
    db_pool_timeout: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Timeout in seconds for getting a connection from the pool",
    )
    db_pool_recycle: int = Field(
        default=3600,
        ge=60,
        le=28800,
        description="Recycle connections after this many seconds",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default="WARNING",
        description="Console log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    file_level: str = Field(
        default="DEBUG",
        description="File log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    format: str = Field(default="json", description="Log format (json or console)")
    file: str | None = Field(default="logs/migration.log", description="Log file path")
    disable_progress: bool = Field(
        default=False, description="Disable live progress display (useful for CI/logging)"
    )
    log_payloads: bool = Field(
        default=False,
        description=(
            "Enable request/response payload logging at DEBUG level. "
            "Access tokens are redacted."
        ),
    )
    max_payload_size: int = Field(
        default=10000,
        ge=100,
        le=1000000,
        description="Maximum payload size (characters) to log. Larger payloads will be truncated.",
    )

    @field_validator("level", "file_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["json", "console"]
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Log format must be one of: {', '.join(valid_formats)}")
        return v_lower


class MigrationConfig(BaseSettings):
    """Main migration configuration."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Store connections keyed by the name used on the command line
    stores: dict[str, StoreConfig] = Field(
        default_factory=dict, description="Store connections by name"
    )

    rate_limits: RateLimitConfig = Field(
        default_factory=RateLimitConfig, description="API rate limit configuration"
    )

    scheduler: SchedulerConfig = Field(
        default_factory=SchedulerConfig, description="Job scheduler configuration"
    )

    migrators: MigratorConfig = Field(
        default_factory=MigratorConfig, description="Module migrator configuration"
    )

    state: StateConfig = Field(default_factory=StateConfig, description="State configuration")

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig, description="Logging configuration"
    )

    @model_validator(mode="after")
    def validate_store_names(self) -> "MigrationConfig":
        """Store names are used as references in the state database."""
        for name in self.stores:
            if not name or name.strip() != name:
                raise ValueError(f"Invalid store name: {name!r}")
        return self


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        MigrationConfig: Loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        config_data = yaml.safe_load(f)

    if not config_data:
        raise ValueError(f"Empty configuration file: {config_path}")

    config_data = _expand_env_vars(config_data)

    return MigrationConfig(**config_data)


def _expand_env_vars(data: dict) -> dict:
    """Recursively expand environment variables in config dict.

    Supports ${VAR_NAME} syntax for environment variable substitution.

    Args:
        data: Configuration dictionary

    Returns:
        dict: Dictionary with expanded environment variables
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    elif isinstance(data, str):
        if data.startswith("${") and data.endswith("}"):
            var_name = data[2:-1]
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '{var_name}' not found. "
                    f"Please set it in your environment or .env file."
                )
            return env_value
        return data
    else:
        return data
