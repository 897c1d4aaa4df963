"""
config.py — pydantic-settings Settings class.

All environment variables for the civicdata core are declared here.
The pipeline, store adapters and CLI import `settings` from this module.

Usage:
    from civicdata_shared.config import settings
    print(settings.write_batch_size)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_dotenv() -> Path | None:
    """Walk up from CWD to find the nearest .env file."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        candidate = parent / ".env"
        if candidate.is_file():
            return candidate
    return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_find_dotenv() or ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # Supabase
    # -------------------------------------------------------------------------
    supabase_url: str = Field(default="http://localhost:54321")
    supabase_anon_key: str = Field(default="")
    supabase_service_key: str = Field(default="")
    # Postgres function that applies one list of write ops in a single transaction
    write_batch_rpc: str = Field(default="apply_write_batch")

    # -------------------------------------------------------------------------
    # Census import endpoint (external fetch)
    # -------------------------------------------------------------------------
    census_import_url: str = Field(default="http://localhost:3000/api/census-import")
    import_timeout_s: float = Field(default=120.0)
    max_import_years: int = Field(default=5)

    # -------------------------------------------------------------------------
    # Write batching
    # -------------------------------------------------------------------------
    write_batch_size: int = Field(default=10)
    summary_upsert_batch_size: int = Field(default=50)
    summary_scan_page_size: int = Field(default=25)
    visibility_sync_batch_size: int = Field(default=25)
    relation_cleanup_batch_size: int = Field(default=100)
    derived_single_transaction: bool = Field(default=False)

    # -------------------------------------------------------------------------
    # Statistic defaults
    # -------------------------------------------------------------------------
    derived_source: str = Field(default="Derived, Census")
    default_category: str = Field(default="demographics")

    # -------------------------------------------------------------------------
    # Local state
    # -------------------------------------------------------------------------
    checkpoint_dir: str = Field(default="./data/cache")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_format: Literal["json", "console"] = Field(default="console")

    @field_validator("supabase_url", "census_import_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/") if isinstance(v, str) else v

    @field_validator("write_batch_size", "summary_upsert_batch_size", "max_import_years")
    @classmethod
    def at_least_one(cls, v: int) -> int:
        return max(1, v)


# ---------------------------------------------------------------------------
# Module-level singleton: import this everywhere
# ---------------------------------------------------------------------------
settings = Settings()
