"""Runtime settings: env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
LOCKFORGE_* environment variables; CLI options override individual values
per invocation.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class ForgeSettings(BaseSettings):
    """Pipeline settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export LOCKFORGE_LOG_LEVEL=DEBUG
        export LOCKFORGE_CACHE_PATH=/var/cache/lockforge
        export LOCKFORGE_IMAGE_CREATED=epoch

    Or via .env file::

        LOCKFORGE_RUN_TESTS=true
        LOCKFORGE_NETWORK_ISOLATION=unshare
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOCKFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    cache_path: Path = Path(".lockforge/cache")
    output_path: Path = Path(".lockforge/out")

    # Fetching
    registry_url: str = "https://static.crates.io/crates"
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 0.5
    fetch_timeout_seconds: float = 60.0
    max_concurrent_fetches: int = 8

    # Compiling
    run_tests: bool = False
    network_isolation: Literal["offline", "unshare"] = "offline"
    lint_flags: str = "-D unused-crate-dependencies"

    # Image
    image_created: str = "now"  # "now", "epoch" or an ISO-8601 timestamp
    observability_address: str = "0.0.0.0:9090"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# Module-level singleton: import as `from lockforge.config import settings`
settings = ForgeSettings()
