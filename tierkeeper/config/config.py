"""
Configuration models for the tierkeeper position engine.

Uses Pydantic for validation and type safety. Values come from a YAML file
with ${VAR} expansion, and can be overridden per field through environment
variables using the "__" nested delimiter (e.g. MONITORING__CHECK_INTERVAL_SECONDS).
"""
from typing import Dict, Literal, Optional
from pathlib import Path
import os
import re

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Persistence configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    url: str = Field(default="sqlite:///tierkeeper.db", description="SQLAlchemy URL (sqlite or postgresql)")
    echo: bool = False


class AccountConfig(BaseSettings):
    """One set of exchange credentials. Positions reference it by name."""
    model_config = SettingsConfigDict(extra="ignore")

    exchange: Literal["gate"] = "gate"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    use_testnet: bool = False

    @field_validator("api_key", "api_secret", mode="before")
    @classmethod
    def unset_placeholder(cls, v):
        # ${VAR} survives expansion when the variable is missing
        if isinstance(v, str) and (not v.strip() or v.startswith("${")):
            return None
        return v


class MonitoringConfig(BaseSettings):
    """Fill-reconciliation loop configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    check_interval_seconds: int = Field(default=30, ge=5, le=600, description="Reconciliation cycle interval")
    break_even_buffer: float = Field(default=0.0005, ge=0.0, le=0.01, description="Offset from entry for break-even stop")
    trailing_distance: float = Field(default=0.01, gt=0.0, le=0.2, description="Trailing stop distance after TP2")
    remote_timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0, description="Bound on a single remote call")


class ExpiryConfig(BaseSettings):
    """Time-based expiry enforcement configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    enabled: bool = True
    max_age_hours: float = Field(default=4.0, gt=0.0, le=168.0, description="Positions older than this are force-closed")
    sweep_interval_minutes: float = Field(default=15.0, gt=0.0, le=240.0)
    warning_minutes: float = Field(default=30.0, ge=0.0, le=600.0, description="Warn this long before expiry")
    force_close_minutes: float = Field(default=5.0, ge=0.0, le=120.0, description="Force close this long before expiry")
    force_close_before_expiry: bool = True
    flatten_on_force_close: bool = Field(
        default=False,
        description="Send a reduce-only market close for the remaining size before cancelling protective orders",
    )
    tracking_retention_hours: float = Field(default=24.0, ge=1.0, description="Prune finished trackers older than this")

    @model_validator(mode="after")
    def validate_thresholds(self) -> "ExpiryConfig":
        if self.force_close_minutes > self.warning_minutes:
            raise ValueError(
                f"force_close_minutes ({self.force_close_minutes}) must not exceed "
                f"warning_minutes ({self.warning_minutes})"
            )
        return self


class LoggingConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    accounts: Dict[str, AccountConfig] = Field(default_factory=dict)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    expiry: ExpiryConfig = Field(default_factory=ExpiryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    environment: Literal["dev", "paper", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unknown names are left as-is
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        config_dict = yaml.safe_load(pattern.sub(replace_match, raw_content)) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("database", {})["url"] = db_url

        return cls(**config_dict)

    def account(self, name: str) -> AccountConfig:
        """Look up credentials by account name."""
        try:
            return self.accounts[name]
        except KeyError:
            raise KeyError(f"Unknown account '{name}'. Configured: {sorted(self.accounts)}") from None


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses tierkeeper/config/config.yaml

    Raises:
        FileNotFoundError: If config file not found
        pydantic.ValidationError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    return Config.from_yaml(config_path)
