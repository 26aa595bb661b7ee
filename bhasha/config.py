"""Configuration for Bhasha with validation."""

import os
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict
import structlog
import toml

log = structlog.get_logger()


class ProviderSettings(BaseModel):
    """Outbound provider endpoints and credentials."""

    openai_base_url: str = "https://api.openai.com/v1"
    openai_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-pro"
    timeout_seconds: float = Field(gt=0, le=600, default=60.0)
    submit_max_attempts: int = Field(ge=1, le=10, default=3)
    submit_backoff_seconds: float = Field(ge=0, default=2.0)

    @field_validator("openai_base_url", "gemini_base_url")
    @classmethod
    def url_has_scheme(cls, v):
        if not v.startswith(("http://", "https://")):
            raise ValueError("Provider URLs must start with http:// or https://")
        return v.rstrip("/")


class CurationSettings(BaseModel):
    """Thresholds used by curation and import."""

    duplicate_threshold: float = Field(gt=0, le=1, default=0.85)
    max_import_errors: int = Field(gt=0, default=100)
    default_dataset_split: tuple[float, float, float] = (0.8, 0.1, 0.1)
    provider_dataset_split: tuple[float, float, float] = (0.9, 0.1, 0.0)

    @field_validator("default_dataset_split", "provider_dataset_split")
    @classmethod
    def split_sums_to_one(cls, v):
        if any(part < 0 for part in v) or abs(sum(v) - 1.0) > 1e-6:
            raise ValueError("Split ratios must be non-negative and sum to 1")
        return v


class BhashaConfig(BaseModel):
    """Main configuration for Bhasha."""

    model_config = ConfigDict(validate_assignment=True)

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".bhasha")
    db_path: Optional[Path] = None  # Computed from data_dir if None

    providers: ProviderSettings = Field(default_factory=ProviderSettings)
    curation: CurationSettings = Field(default_factory=CurationSettings)

    # Scheduler
    poll_interval_seconds: float = Field(gt=0, default=300.0)
    worker_idle_seconds: float = Field(gt=0, default=1.0)
    task_retention_seconds: float = Field(gt=0, default=7 * 24 * 3600.0)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    log_json: bool = False

    def model_post_init(self, __context):
        """Set computed values after initialization."""
        self.data_dir = Path(self.data_dir).expanduser()
        if self.db_path is None:
            self.db_path = self.data_dir / "bhasha.db"
        self.data_dir.mkdir(parents=True, exist_ok=True)

        # Environment fills credentials left unset in the file
        if self.providers.openai_api_key is None and os.environ.get("OPENAI_API_KEY"):
            self.providers.openai_api_key = os.environ["OPENAI_API_KEY"]
        if self.providers.gemini_api_key is None and os.environ.get("GEMINI_API_KEY"):
            self.providers.gemini_api_key = os.environ["GEMINI_API_KEY"]

    @classmethod
    def load(cls, path: Optional[str] = None) -> "BhashaConfig":
        """Load configuration from a TOML file.

        Search order if path not provided:
        1. ./bhasha.toml (project-specific)
        2. ~/.bhasha/config.toml (user default)

        Args:
            path: Optional explicit config file path

        Returns:
            BhashaConfig instance (defaults when nothing usable is found)
        """
        if path is None:
            for candidate in (Path("bhasha.toml"), Path("~/.bhasha/config.toml").expanduser()):
                if candidate.exists():
                    path = str(candidate)
                    log.info("config_found", path=path)
                    break

        if path and Path(path).exists():
            try:
                data = toml.load(path)
                log.info("config_loaded", path=path)
                return cls(**data)
            except Exception as e:
                log.error("config_load_failed", path=path, error=str(e))
                return cls()

        log.info("config_using_defaults")
        return cls()

    def save(self, path: str):
        """Save configuration to a TOML file."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json", exclude_none=True)
        # Credentials stay in the environment
        data.get("providers", {}).pop("openai_api_key", None)
        data.get("providers", {}).pop("gemini_api_key", None)
        with open(path, "w") as f:
            toml.dump(data, f)
        log.info("config_saved", path=path)


def validate_config(config: BhashaConfig) -> list[str]:
    """Validate configuration and return warnings.

    Args:
        config: Config to validate

    Returns:
        List of warning messages
    """
    warnings = []

    if not config.providers.openai_api_key:
        warnings.append("OPENAI_API_KEY not configured; OpenAI fine-tuning and evaluation disabled")

    if not config.providers.gemini_api_key:
        warnings.append("GEMINI_API_KEY not configured; quality analysis returns neutral scores")

    if config.poll_interval_seconds < 60:
        warnings.append(
            f"Poll interval of {config.poll_interval_seconds:.0f}s may hit provider rate limits"
        )

    try:
        config.data_dir.mkdir(parents=True, exist_ok=True)
        test_file = config.data_dir / ".write_test"
        test_file.touch()
        test_file.unlink()
    except Exception as e:
        warnings.append(f"Data directory not writable: {e}")

    return warnings
