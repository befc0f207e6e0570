"""
Centralized configuration loader for the listing post scheduler.

Loads settings from YAML files and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - RetryPolicyConfig: Dispatcher retry/backoff policy with env var overrides
    - PhaseDefaults: Default phase durations and frequencies for new templates
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Singleton accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field, fields
from datetime import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from listing_scheduler.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of listing_scheduler/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


def _apply_env_overrides(target: Any, env_overrides: Dict[str, tuple]) -> None:
    """Set attributes on *target* from env vars, failing fast on bad values."""
    for env_key, (attr_name, cast_fn) in env_overrides.items():
        env_val = os.environ.get(env_key)
        if env_val is not None:
            try:
                setattr(target, attr_name, cast_fn(env_val))
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var {env_key}='{env_val}': {exc}"
                ) from exc


# ===========================================================================
# RETRY POLICY CONFIGURATION
# ===========================================================================


@dataclass
class RetryPolicyConfig:
    """
    Single source of truth for dispatcher retry and recovery policy.

    Allows tuning via environment variables without code changes.

    Usage::

        policy = RetryPolicyConfig()
        delay = policy.backoff_seconds(retry_count=2)
    """

    max_retries: int = 3
    base_delay_seconds: int = 300
    max_delay_seconds: int = 3600
    processing_timeout_minutes: int = 30

    def __post_init__(self) -> None:
        """Override policy values from environment variables if set."""
        _apply_env_overrides(self, {
            "DISPATCH_MAX_RETRIES": ("max_retries", int),
            "DISPATCH_RETRY_BASE_DELAY": ("base_delay_seconds", int),
            "DISPATCH_RETRY_MAX_DELAY": ("max_delay_seconds", int),
            "PROCESSING_TIMEOUT_MINUTES": ("processing_timeout_minutes", int),
        })
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_seconds <= 0:
            raise ConfigurationError(
                f"base_delay_seconds must be positive, got {self.base_delay_seconds}"
            )

    def backoff_seconds(self, retry_count: int) -> int:
        """
        Delay before the next attempt.

        Args:
            retry_count: Retry number being scheduled (1 for the first retry).

        Returns:
            ``base * 2^(retry_count - 1)``, capped at ``max_delay_seconds``.
        """
        exponent = max(retry_count - 1, 0)
        return min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)


# ===========================================================================
# PHASE DEFAULTS
# ===========================================================================


@dataclass
class PhaseDefaults:
    """Defaults applied to templates created by the verification engine."""

    days_of_week: List[int] = field(default_factory=lambda: [0, 2, 4])
    launch_frequency: str = "3"
    ongoing_frequency: str = "2"
    launch_duration_weeks: int = 2
    ongoing_duration_weeks: int = 10
    banner_duration_weeks: int = 2


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    secrets and deployment-specific configuration.
    """

    # Timezone used to interpret template time windows
    timezone: str = "Europe/Dublin"

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Slot generation
    horizon_days: int = 14
    default_window_start: time = time(9, 0)
    default_window_end: time = time(18, 0)
    max_jitter_seconds: int = 900

    # Locks
    lock_ttl_minutes: int = 10
    vision_slot_capacity: int = 3

    # Status verification
    verification_delay_minutes: int = 15

    # Dispatch
    dispatch_batch_size: int = 50
    retry: RetryPolicyConfig = field(default_factory=RetryPolicyConfig)

    # Publishing targets
    default_platforms: List[str] = field(default_factory=lambda: [
        "facebook", "instagram",
    ])
    platform_aspect_ratios: Dict[str, str] = field(default_factory=lambda: {
        "facebook": "16x9",
        "instagram": "9x16",
        "linkedin": "16x9",
        "tiktok": "9x16",
        "youtube": "9x16",
        "x": "16x9",
    })

    # Content rotation weights (content_type -> relative weight)
    content_type_weights: Dict[str, int] = field(default_factory=lambda: {
        "video_tour": 3,
        "photo_carousel": 2,
        "hero_image": 2,
        "feature_spotlight": 1,
    })

    # Listing housekeeping sweeps
    auto_archive_days: int = 30
    auto_expire_new_days: int = 30

    # Phase defaults for templates created automatically
    phases: PhaseDefaults = field(default_factory=PhaseDefaults)

    # Worker loop
    worker_interval_seconds: int = 60

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or an override holds an invalid value.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        # -----------------------------------------------------------------
        # Nested sections
        # -----------------------------------------------------------------
        retry_data = data.pop("retry", {}) or {}
        retry = RetryPolicyConfig(**{
            k: v for k, v in retry_data.items()
            if k in RetryPolicyConfig.__dataclass_fields__
        })

        phase_data = data.pop("phases", {}) or {}
        phases = PhaseDefaults(**{
            k: v for k, v in phase_data.items()
            if k in PhaseDefaults.__dataclass_fields__
        })

        # -----------------------------------------------------------------
        # Flat keys (unknown keys are ignored with a warning)
        # -----------------------------------------------------------------
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.warning("Unknown settings key '%s' in %s, ignoring", key, path)
                continue
            kwargs[key] = value

        for key in ("default_window_start", "default_window_end"):
            if key in kwargs and not isinstance(kwargs[key], time):
                kwargs[key] = _parse_time_setting(key, kwargs[key])

        settings = cls(retry=retry, phases=phases, **kwargs)

        # -----------------------------------------------------------------
        # Environment overrides
        # -----------------------------------------------------------------
        _apply_env_overrides(settings, {
            "SCHEDULER_TIMEZONE": ("timezone", str),
            "LOG_LEVEL": ("log_level", str),
            "LOG_DIR": ("log_dir", str),
            "SCHEDULE_HORIZON_DAYS": ("horizon_days", int),
            "MAX_JITTER_SECONDS": ("max_jitter_seconds", int),
            "LOCK_TTL_MINUTES": ("lock_ttl_minutes", int),
            "VISION_SLOT_CAPACITY": ("vision_slot_capacity", int),
            "VERIFICATION_DELAY_MINUTES": ("verification_delay_minutes", int),
            "DISPATCH_BATCH_SIZE": ("dispatch_batch_size", int),
        })

        settings.validate()
        return settings

    def validate(self) -> None:
        """
        Check cross-field constraints.

        Raises:
            ConfigurationError: On any out-of-range value.
        """
        if self.horizon_days <= 0:
            raise ConfigurationError(f"horizon_days must be positive, got {self.horizon_days}")
        if self.max_jitter_seconds < 0:
            raise ConfigurationError(
                f"max_jitter_seconds must be >= 0, got {self.max_jitter_seconds}"
            )
        if self.lock_ttl_minutes <= 0:
            raise ConfigurationError(
                f"lock_ttl_minutes must be positive, got {self.lock_ttl_minutes}"
            )
        if self.vision_slot_capacity <= 0:
            raise ConfigurationError(
                f"vision_slot_capacity must be positive, got {self.vision_slot_capacity}"
            )
        if self.default_window_end <= self.default_window_start:
            raise ConfigurationError(
                "default_window_end must be after default_window_start"
            )
        if not self.content_type_weights or any(
            w <= 0 for w in self.content_type_weights.values()
        ):
            raise ConfigurationError("content_type_weights must be non-empty and positive")


def _parse_time_setting(key: str, value: Any) -> time:
    try:
        return time.fromisoformat(str(value))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid time for {key}: '{value}'") from exc


# ===========================================================================
# SINGLETON SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global Settings singleton.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.

    Returns:
        The global Settings instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """
    Reset the cached Settings singleton.

    Useful for testing or when configuration files have been updated
    at runtime.
    """
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required environment variables for the system to function
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

# Optional but recommended environment variables
OPTIONAL_ENV_VARS: List[str] = [
    "UPLOAD_POST_API_KEY",
    "UPLOAD_POST_BASE_URL",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


# ===========================================================================
# PUBLIC API
# ===========================================================================

__all__ = [
    # Configuration classes
    "RetryPolicyConfig",
    "PhaseDefaults",
    "Settings",
    # Settings accessor
    "get_settings",
    "reset_settings",
    # Environment validation
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
    # Constants
    "PROJECT_ROOT",
]
