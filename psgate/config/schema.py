"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LimitsConfig(BaseModel):
    """Timeout and output ceilings for supervised execution."""
    default_timeout_seconds: float = 90.0
    max_timeout_seconds: float = 600.0
    long_timeout_warning_seconds: float = 60.0
    max_output_kb: int = 512
    max_lines: int = 4000
    max_command_chars: int = 10000
    overflow_strategy: Literal["return", "truncate", "terminate"] = "return"
    self_terminate: bool = True  # Inject an in-shell exit timer
    self_terminate_lead_ms: int = 300
    watchdog_grace_ms: int = 1500  # Soft kill -> hard kill
    kill_verify_window_ms: int = 1500


class AdaptiveConfig(BaseModel):
    """Defaults for adaptive timeout extension."""
    extend_window_ms: int = 2000
    extend_step_ms: int = 5000
    max_total_multiplier: float = 3.0
    max_total_ceiling_seconds: float = 180.0


class RateLimitConfig(BaseModel):
    """Per-client token bucket."""
    enabled: bool = True
    burst: int = 10
    max_requests: int = 5  # Tokens added per interval
    interval_ms: int = 10_000


class WorkingDirectoryConfig(BaseModel):
    """Working directory allow-list."""
    enforce: bool = False
    allowed_roots: list[str] = Field(default_factory=lambda: [str(Path.cwd()), "${TEMP}"])


class SecurityConfig(BaseModel):
    """Classification and threat tracking settings."""
    working_directory: WorkingDirectoryConfig = Field(default_factory=WorkingDirectoryConfig)
    additional_safe: list[str] = Field(default_factory=list)
    additional_blocked: list[str] = Field(default_factory=list)
    max_tracked_threats: int = 1000


class LearningConfig(BaseModel):
    """Unknown-command journal and learned safe patterns."""
    enabled: bool = True
    journal_file: str = "~/.psgate/learn-candidates.jsonl"
    max_journal_kb: int = 512
    learned_file: str = "~/.psgate/learned-safe.json"


class MetricsConfig(BaseModel):
    """Metrics HTTP endpoint."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9090
    history_size: int = 1000


class ShellConfig(BaseModel):
    """Interpreter selection."""
    executable: str | None = None  # Explicit pwsh/powershell path
    allow_posix_fallback: bool = True


class Config(BaseSettings):
    """Root configuration for psgate."""
    model_config = SettingsConfigDict(env_prefix="PSGATE_", env_nested_delimiter="__")

    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    adaptive: AdaptiveConfig = Field(default_factory=AdaptiveConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)

    @property
    def journal_path(self) -> Path:
        """Get expanded journal path."""
        return Path(self.learning.journal_file).expanduser()

    @property
    def learned_path(self) -> Path:
        """Get expanded learned-patterns path."""
        return Path(self.learning.learned_file).expanduser()

    @property
    def max_output_bytes(self) -> int:
        return self.limits.max_output_kb * 1024
