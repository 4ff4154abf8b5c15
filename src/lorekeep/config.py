"""
lorekeep Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables and an optional .env file.
"""

import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_data_dir() -> str:
    """
    Get XDG-compliant data directory for lorekeep.

    Follows XDG Base Directory Specification:
    - Uses $XDG_DATA_HOME/lorekeep if XDG_DATA_HOME is set
    - Falls back to $HOME/.local/share/lorekeep if not set
    - Returns relative path .lorekeep if HOME not available (dev/testing)

    Returns:
        str: Path to data directory
    """
    xdg_data_home = os.getenv("XDG_DATA_HOME")
    if xdg_data_home:
        return str(Path(xdg_data_home) / "lorekeep")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "share" / "lorekeep")

    return ".lorekeep"


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for lorekeep logs.

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "lorekeep" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "lorekeep" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = f"sqlite:///{get_xdg_data_dir()}/lorekeep.db"
    db_echo: bool = False

    # Providers
    enabled_providers: list[str] | str = ["cli_source_a", "cli_source_b"]
    cli_source_a_roots: list[str] | str = ["~/.claude/projects"]
    cli_source_b_roots: list[str] | str = ["~/.codex/sessions"]

    # Web sources
    web_source_a_base_url: str = "https://web-source-a.invalid/api"
    web_source_a_session_token: str = ""
    web_source_b_base_url: str = "https://web-source-b.invalid/backend-api"
    web_source_b_session_token: str = ""
    web_page_size: int = 50

    # Sync
    sync_max_retries: int = 3  # Retries per work unit on transient failures
    sync_backoff_seconds: float = 1.0  # Base for exponential backoff
    sync_max_workers: int = 4  # Providers synced concurrently
    sync_progress_step_items: int = 10
    sync_progress_step_percent: float = 5.0
    http_timeout: float = 30.0

    # Analysis
    analysis_types: list[str] | str = ["learning", "workflow"]
    analysis_batch_size: int = 10
    analysis_concurrency: int = 2
    analysis_max_attempts: int = 3
    analysis_poll_interval: float = 5.0
    analysis_stale_timeout_seconds: int = 600
    allow_cloud_analysis: bool = False  # Hard gate for cloud-hosted analyzers

    # Learnings
    learning_min_confidence: float = 0.7
    workflow_min_confidence: float = 0.65
    dedupe_similarity_threshold: float = 0.85

    # LLM extraction
    llm_provider: str = "none"  # none, ollama, openai, anthropic
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250514"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2"
    llm_max_tokens: int = 800

    # Search
    semantic_search_enabled: bool = True
    search_fts_weight: float = 0.5
    search_semantic_weight: float = 0.5
    search_min_semantic_score: float = 0.7
    search_max_results: int = 50

    # Embeddings
    embedding_provider: str = "none"  # none, ollama, openai
    ollama_embedding_model: str = "nomic-embed-text"
    openai_embedding_model: str = "text-embedding-3-small"

    # Watch daemon
    watch_debounce_seconds: float = 1.0
    watch_retry_interval: int = 300  # Retry failed files every N seconds
    watch_max_retries: int = 3

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # Defaults to XDG state dir if empty
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    @field_validator(
        "enabled_providers",
        "cli_source_a_roots",
        "cli_source_b_roots",
        "analysis_types",
        mode="before",
    )
    @classmethod
    def split_csv(cls, value: object) -> object:
        """Accept comma-separated strings for list-valued settings."""
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
