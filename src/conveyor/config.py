"""Application configuration loaded from environment variables."""

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings


def _default_languages() -> dict[str, list[str]]:
    return {
        "python": ["python3", "-I", "{file}"],
        "javascript": ["node", "{file}"],
        "bash": ["bash", "--noprofile", "--norc", "{file}"],
        "sh": ["sh", "{file}"],
    }


class Settings(BaseSettings):
    """Conveyor configuration."""

    # Step execution
    default_timeout_ms: int = 30000
    retry_backoff_cap_ms: int = 60000

    # Sandbox: working root (cwd + file tools) and scratch root (code files)
    sandbox_root: str = "./data/workspace"
    sandbox_scratch_root: str = "./data/scratch"

    # Language -> argv template; "{file}" is replaced by the snippet path
    sandbox_languages: dict[str, list[str]] = Field(default_factory=_default_languages)

    # Only these variables are copied from the engine environment
    sandbox_env_allowlist: list[str] = Field(
        default_factory=lambda: ["PATH", "LANG", "LC_ALL", "TZ"]
    )
    sandbox_max_output_bytes: int = 1_000_000

    # Resource guard: tool name -> max dispatches per window (empty = unlimited)
    tool_quotas: dict[str, int] = Field(default_factory=dict)
    quota_window_seconds: float = 30 * 24 * 3600.0
    quota_warning_ratio: float = 0.8

    # http_request built-in
    http_timeout_seconds: float = 30.0

    # Database (empty = local SQLite under data_dir)
    database_url: str = ""
    data_dir: str = "./data"
    persist_runs: bool = False
    # Finished runs kept in memory for the API (older ones only via persist_runs)
    memory_run_limit: int = 1000

    # Logging
    log_level: str = "info"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @computed_field
    @property
    def is_local_mode(self) -> bool:
        """True when runs are stored in a local SQLite database."""
        return not self.database_url or self.database_url.startswith("sqlite")


settings = Settings()
