# src/calsync_hub/config.py
"""Configuration management using Pydantic Settings."""

import os
from pathlib import Path
from typing import Optional, List

from pydantic import Field, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ConflictResolution, EventSource, SyncConfig


DEFAULT_PROVIDER_PRIORITY = ["google", "outlook", "apple", "native"]


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        # Allow reading tokens directly from files in this directory
        secrets_dir=os.getenv("SECRETS_DIR", "/run/secrets")
    )

    # Application Configuration
    app_name: str = Field(default="calsync-hub", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calsync-hub",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Provider Configuration
    providers: List[SyncConfig] = Field(
        default_factory=list,
        description="Per-provider connection parameters"
    )
    provider_priority: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PROVIDER_PRIORITY),
        description="Provider precedence for multi-way conflict resolution"
    )
    conflict_resolution: ConflictResolution = Field(
        default=ConflictResolution.TIMESTAMP,
        description="Strategy for operations arriving over the realtime channel"
    )

    # Sync Behaviour
    poll_interval_seconds: float = Field(default=30.0, gt=0, description="Default polling interval")
    max_retry_attempts: int = Field(default=5, ge=1, description="Attempts before dead-lettering")
    push_on_submit: bool = Field(default=True, description="Push to providers right after a local mutation")

    # Realtime Channel Configuration
    realtime_url: Optional[str] = Field(default=None, description="WebSocket URL of the realtime server")
    realtime_token: Optional[str] = Field(default=None, description="Session token for the realtime server")
    realtime_reconnect_initial_seconds: float = Field(default=1.0, gt=0)
    realtime_reconnect_max_seconds: float = Field(default=60.0, gt=0)
    realtime_auth_timeout_seconds: float = Field(default=10.0, gt=0)

    # Performance Configuration
    request_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="HTTP request timeout"
    )

    @validator('data_dir', pre=True)
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if v is None:
            return v
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @validator('database_url')
    def set_default_database_url(cls, v, values):
        """Set default SQLite database URL if not provided."""
        if not v and 'data_dir' in values:
            data_dir = values['data_dir']
            return f"sqlite:///{data_dir}/calsync.db"
        return v

    @validator('log_level')
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @validator('provider_priority')
    def validate_provider_priority(cls, v):
        """Provider priority must list each tag once and include the native source."""
        tags = [tag.strip().lower() for tag in v]
        if len(tags) != len(set(tags)):
            raise ValueError("Duplicate provider tags in provider_priority")
        if EventSource.NATIVE.value not in tags:
            tags.append(EventSource.NATIVE.value)
        return tags

    @validator('providers')
    def validate_unique_providers(cls, v):
        """Each provider tag may be configured once."""
        tags = [config.provider for config in v]
        if len(tags) != len(set(tags)):
            raise ValueError("Duplicate provider entries in providers")
        return v

    def ensure_directories(self):
        """Create necessary directories with proper permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)  # Owner only

    def get_active_providers(self) -> List[SyncConfig]:
        """Get only enabled provider configurations.

        Providers without their own poll interval inherit the global one.
        """
        active = []
        for config in self.providers:
            if not config.enabled:
                continue
            if 'poll_interval_seconds' not in config.model_fields_set:
                config = config.model_copy(update={'poll_interval_seconds': self.poll_interval_seconds})
            active.append(config)
        return active

    def validate_required_settings(self) -> List[str]:
        """Validate required settings and return list of problems."""
        missing = []

        if not self.providers and not self.realtime_url:
            missing.append('PROVIDERS or REALTIME_URL')
        for config in self.providers:
            if not config.access_token:
                missing.append(f'access_token for provider {config.provider}')
        if self.realtime_url and not self.realtime_token:
            missing.append('REALTIME_TOKEN')

        return missing


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# CalSync Hub Configuration
# Copy this file to .env and fill in your actual tokens

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO

# Storage Configuration (optional)
# DATA_DIR=~/.calsync-hub
# DATABASE_URL=sqlite:///~/.calsync-hub/calsync.db

# Providers - JSON array of provider connection objects.
# conflict_resolution is one of: timestamp, source, local
# Unknown provider tags need an api_endpoint and are passed through untransformed.
PROVIDERS=[{"provider": "google", "access_token": "ya29.your-token", "refresh_token": "1//your-refresh-token", "conflict_resolution": "timestamp"}]

# Provider precedence used when several providers disagree about one event
PROVIDER_PRIORITY=["google", "outlook", "apple", "native"]

# Strategy applied to operations received from other sessions
CONFLICT_RESOLUTION=timestamp

# Sync Behaviour
POLL_INTERVAL_SECONDS=30
MAX_RETRY_ATTEMPTS=5
PUSH_ON_SUBMIT=true

# Realtime Channel (optional)
# REALTIME_URL=wss://sync.example.com/ws
# REALTIME_TOKEN=your-session-token
REALTIME_RECONNECT_INITIAL_SECONDS=1
REALTIME_RECONNECT_MAX_SECONDS=60

# Performance Configuration
REQUEST_TIMEOUT_SECONDS=30
'''

    with open(path, 'w') as f:
        f.write(example_content)
