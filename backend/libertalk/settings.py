"""Settings for the LiberTalk matchmaking backend."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
	if env_names:
		alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
		return Field(default=default, validation_alias=alias)
	return Field(default=default)


class Settings(BaseSettings):
	redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
	# Number of times a conditional update re-checks its guards after a WATCH abort
	store_watch_retries: int = _env_field(3, "STORE_WATCH_RETRIES")

	# Presence
	liveness_window_seconds: float = _env_field(45.0, "LIVENESS_WINDOW_SECONDS")
	default_connection_quality: int = 100
	join_rate_limit_per_minute: int = _env_field(20, "JOIN_RATE_LIMIT_PER_MINUTE")
	match_rate_limit_per_minute: int = _env_field(120, "MATCH_RATE_LIMIT_PER_MINUTE")

	# Match finder
	max_distance_km: float = _env_field(500.0, "MAX_DISTANCE_KM")
	desperate_after_attempts: int = _env_field(10, "DESPERATE_AFTER_ATTEMPTS")
	confirmation_timeout_seconds: float = _env_field(30.0, "CONFIRMATION_TIMEOUT_SECONDS")

	# Chat sessions
	chat_inactivity_seconds: float = _env_field(300.0, "CHAT_INACTIVITY_SECONDS")

	# Reaper
	reaper_enabled: bool = _env_field(True, "REAPER_ENABLED")
	reaper_interval_seconds: float = _env_field(20.0, "REAPER_INTERVAL_SECONDS")
	reaper_sweep_probability: float = _env_field(0.02, "REAPER_SWEEP_PROBABILITY")
	reaper_purge_interval_hours: int = _env_field(1, "REAPER_PURGE_INTERVAL_HOURS")
	attempt_retention_seconds: int = _env_field(3600, "ATTEMPT_RETENTION_SECONDS")
	chat_retention_seconds: int = _env_field(86400, "CHAT_RETENTION_SECONDS")
	# How long a device keeps its participant id and partner history after leaving
	identity_retention_seconds: int = _env_field(86400, "IDENTITY_RETENTION_SECONDS")

	# Backoff: client polling hint for findMatch
	poll_base_delay_seconds: float = 1.5
	poll_max_delay_seconds: float = 3.0
	poll_multiplier: float = 1.25
	poll_jitter: float = 0.15
	# Backoff: internal retry after a lost conditional update
	conflict_max_attempts: int = _env_field(4, "CONFLICT_MAX_ATTEMPTS")
	conflict_base_delay_seconds: float = 0.01
	conflict_max_delay_seconds: float = 0.2
	# Backoff: store unavailable
	transient_max_attempts: int = _env_field(3, "TRANSIENT_MAX_ATTEMPTS")
	transient_base_delay_seconds: float = 0.1
	transient_max_delay_seconds: float = 1.0
	transient_timeout_seconds: float = _env_field(3.0, "TRANSIENT_TIMEOUT_SECONDS")

	environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
	obs_enabled: bool = _env_field(True, "OBS_ENABLED")
	obs_metrics_public: bool = _env_field(False, "OBS_METRICS_PUBLIC")
	obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
	obs_log_sampling_rate_info: float = _env_field(0.1, "LOG_SAMPLING_RATE_INFO")
	obs_admin_token: Optional[str] = _env_field(None, "OBS_ADMIN_TOKEN")
	service_name: str = _env_field("libertalk-matchmaking", "SERVICE_NAME")
	git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")

	cors_allow_origins: Any = _env_field((), "CORS_ALLOW_ORIGINS")

	model_config = SettingsConfigDict(
		env_prefix="",
		env_file=".env",
		case_sensitive=False,
		env_nested_delimiter="__",
	)

	# Environment helpers
	def is_prod(self) -> bool:
		return self.environment.lower() in ("prod", "production", "live")

	def is_dev(self) -> bool:
		return self.environment.lower() in ("dev", "development")

	@field_validator("cors_allow_origins", mode="before")
	def _split_origins(cls, value):  # type: ignore[override]
		"""Accept a comma-separated string or a list of origins."""
		if value in (None, ""):
			return ()
		if isinstance(value, (list, tuple, set)):
			return tuple(str(item).strip() for item in value if str(item).strip())
		if isinstance(value, str):
			return tuple(part.strip() for part in value.split(",") if part.strip())
		return value


settings = Settings()
