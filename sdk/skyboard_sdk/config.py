"""
Configuration for the Skyboard local-first client.

Uses pydantic-settings for environment variable loading.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class ClientSettings(BaseSettings):
    """Client configuration loaded from environment."""

    # Identity of the local principal
    principal: str = Field(default="", description="DID of the local principal")
    access_token: str | None = Field(default=None, description="Bearer token for repository writes")

    # Local cache
    db_path: str = Field(default="./data/local.db", description="Local cache SQLite file")
    busy_timeout_ms: int = Field(default=5000, description="SQLite busy timeout")
    busy_retries: int = Field(default=3, description="Attempts for a locked write")

    # Sync
    sync_interval_seconds: float = Field(default=5.0, description="Seconds between push rounds")
    error_reset_rounds: int = Field(default=12, description="Push rounds between error retries")

    # Upstream
    plc_directory: str = Field(default="https://plc.directory", description="PLC directory URL")
    request_timeout: float = Field(default=10.0, description="Repository request timeout seconds")
    fetch_concurrency: int = Field(default=3, description="Participants fetched in parallel")

    model_config = {"env_prefix": "SKYBOARD_"}
