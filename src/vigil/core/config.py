# src/vigil/core/config.py
"""Configuration schema and loading for Vigil.

Settings are frozen Pydantic models. load_settings() reads a YAML file and
overlays VIGIL_* environment variables via Dynaconf before validation.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from vigil.contracts.enums import TransportKind
from vigil.core.dsn import parse_dsn


class RetrySettings(BaseModel):
    """Retry behavior for a single send()."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=3, gt=0, description="Total attempts per send, including the first")
    initial_delay_seconds: float = Field(default=1.0, gt=0, description="Backoff before the second attempt")
    max_delay_seconds: float = Field(default=30.0, gt=0, description="Cap for any single backoff sleep")

    @model_validator(mode="after")
    def validate_delay_order(self) -> "RetrySettings":
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must not exceed max_delay_seconds")
        return self


class TransportSettings(BaseModel):
    """Transport selection and network budget."""

    model_config = {"frozen": True}

    kind: str = Field(default=TransportKind.HTTP.value, min_length=1, description="Built-in or plugin transport name")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-attempt network timeout")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra request headers")
    retry: RetrySettings = Field(default_factory=RetrySettings)
    beacon_max_in_flight: int = Field(
        default=64,
        gt=0,
        description="Beacon transport: queued requests accepted before rejecting",
    )


class OfflineSettings(BaseModel):
    """Offline queue persistence and replay."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=False, description="Wrap the transport in an offline queue")
    directory: Path | None = Field(
        default=None,
        description="Directory for the file store; None keeps entries in memory",
    )
    max_size: int = Field(default=30, gt=0, description="Maximum persisted envelopes (oldest evicted)")
    max_age_seconds: float = Field(default=24 * 60 * 60, gt=0, description="Entries older than this are dropped")
    replay_interval_seconds: float = Field(default=30.0, gt=0, description="Delay between replay cycles")
    max_replay_interval_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Upper bound for the replay delay after repeated failed cycles",
    )

    @model_validator(mode="after")
    def validate_replay_intervals(self) -> "OfflineSettings":
        if self.replay_interval_seconds > self.max_replay_interval_seconds:
            raise ValueError("replay_interval_seconds must not exceed max_replay_interval_seconds")
        return self


class ClientReportSettings(BaseModel):
    """Client report (dropped-event accounting) delivery."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=True, description="Send client reports through the transport")
    flush_interval_seconds: float = Field(default=60.0, gt=0, description="Periodic flush interval")


class LoggingSettings(BaseModel):
    """Diagnostic logging for Vigil itself."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="WARNING")
    json_output: bool = Field(default=False, description="Render log lines as JSON")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: object) -> object:
        return v.upper() if isinstance(v, str) else v


class VigilSettings(BaseModel):
    """Top-level Vigil configuration.

    All settings are validated and frozen after construction. A missing dsn
    disables delivery: the client still samples and accounts for events but
    never builds a network transport.
    """

    model_config = {"frozen": True}

    dsn: str | None = Field(default=None, description="Project DSN; None disables sending")
    environment: str | None = Field(default=None, description="Environment tag attached to events")
    release: str | None = Field(default=None, description="Release identifier attached to events")
    sample_rate: float = Field(default=1.0, ge=0.0, le=1.0, description="Error sampling rate")
    traces_sample_rate: float = Field(default=0.0, ge=0.0, le=1.0, description="Transaction sampling rate")
    transport: TransportSettings = Field(default_factory=TransportSettings)
    offline: OfflineSettings = Field(default_factory=OfflineSettings)
    client_reports: ClientReportSettings = Field(default_factory=ClientReportSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("dsn")
    @classmethod
    def validate_dsn(cls, v: str | None) -> str | None:
        """DSN must parse at config time rather than on first send."""
        if v is None or v == "":
            return None
        parse_dsn(v)
        return v


def load_settings(config_path: Path) -> VigilSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (VIGIL_*) - highest priority
    2. Config file (vigil.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: VIGIL_TRANSPORT__TIMEOUT_SECONDS for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated VigilSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="VIGIL",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; Pydantic fields are lowercase
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): _lower_keys(v) for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    return VigilSettings(**raw_config)


def _lower_keys(value: Any) -> Any:
    """Lower-case nested mapping keys (environment overrides arrive upper-cased)."""
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value
