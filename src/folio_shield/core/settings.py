"""Application settings and configuration.

This module defines all configuration options for the Folio Shield service.
Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CORS_ORIGINS = ",".join(
    [
        "http://localhost:5173",
        "http://localhost:5174",
        "https://connectwithaaditiya.onrender.com",
        "https://connectwithaaditiyamg.onrender.com",
        "https://connectwithaaditiyaadmin.onrender.com",
        "https://aaditiyatyagi.vercel.app",
    ]
)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    List-valued knobs are plain comma-separated strings in the environment and
    are exposed as lists through the matching ``*_list`` properties.
    """

    # Application metadata
    app_name: str = Field(default="Folio Shield", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./folio_shield.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Shared rate-limit store; unset means process-local counters only
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_reconnect_step_ms: int = Field(default=100, alias="REDIS_RECONNECT_STEP_MS")
    redis_reconnect_max_delay_ms: int = Field(default=3000, alias="REDIS_RECONNECT_MAX_DELAY_MS")
    redis_reconnect_max_attempts: int = Field(default=10, alias="REDIS_RECONNECT_MAX_ATTEMPTS")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="logs", alias="LOG_DIR")
    log_to_console: bool = Field(default=False, alias="LOG_TO_CONSOLE")
    log_max_bytes: int = Field(default=5 * 1024 * 1024, alias="LOG_MAX_BYTES")
    log_backup_count: int = Field(default=5, alias="LOG_BACKUP_COUNT")

    # Rate-limit tiers (window in seconds, max requests per window)
    rate_limit_general_window_seconds: int = Field(
        default=15 * 60, alias="RATE_LIMIT_GENERAL_WINDOW_SECONDS"
    )
    rate_limit_general_max: int = Field(default=100, alias="RATE_LIMIT_GENERAL_MAX")
    rate_limit_burst_window_seconds: int = Field(default=60, alias="RATE_LIMIT_BURST_WINDOW_SECONDS")
    rate_limit_burst_max: int = Field(default=150, alias="RATE_LIMIT_BURST_MAX")
    rate_limit_api_window_seconds: int = Field(default=15 * 60, alias="RATE_LIMIT_API_WINDOW_SECONDS")
    rate_limit_api_max: int = Field(default=300, alias="RATE_LIMIT_API_MAX")
    rate_limit_strict_window_seconds: int = Field(
        default=15 * 60, alias="RATE_LIMIT_STRICT_WINDOW_SECONDS"
    )
    rate_limit_strict_max: int = Field(default=30, alias="RATE_LIMIT_STRICT_MAX")
    rate_limit_auth_window_seconds: int = Field(default=15 * 60, alias="RATE_LIMIT_AUTH_WINDOW_SECONDS")
    rate_limit_auth_max: int = Field(default=5, alias="RATE_LIMIT_AUTH_MAX")
    rate_limit_public_window_seconds: int = Field(
        default=15 * 60, alias="RATE_LIMIT_PUBLIC_WINDOW_SECONDS"
    )
    rate_limit_public_max: int = Field(default=500, alias="RATE_LIMIT_PUBLIC_MAX")
    rate_limit_upload_window_seconds: int = Field(
        default=60 * 60, alias="RATE_LIMIT_UPLOAD_WINDOW_SECONDS"
    )
    rate_limit_upload_max: int = Field(default=20, alias="RATE_LIMIT_UPLOAD_MAX")

    # Suspicious activity detector
    suspicious_threshold: int = Field(default=100, alias="SUSPICIOUS_THRESHOLD")
    suspicious_window_seconds: int = Field(default=60, alias="SUSPICIOUS_WINDOW_SECONDS")

    # Temporary bans: strikes are suspicious-activity and attack-signature rejections
    ip_ban_enabled: bool = Field(default=True, alias="IP_BAN_ENABLED")
    ip_ban_strikes: int = Field(default=20, alias="IP_BAN_STRIKES")
    ip_ban_strike_window_seconds: int = Field(
        default=10 * 60, alias="IP_BAN_STRIKE_WINDOW_SECONDS"
    )
    ip_ban_duration_seconds: int = Field(
        default=24 * 60 * 60, alias="IP_BAN_DURATION_SECONDS"
    )
    security_cleanup_interval_seconds: int = Field(
        default=60 * 60, alias="SECURITY_CLEANUP_INTERVAL_SECONDS"
    )

    # Client and route classification
    ip_allowlist: str = Field(default="", alias="IP_ALLOWLIST")
    ip_blocklist: str = Field(default="", alias="IP_BLOCKLIST")
    whitelisted_paths: str = Field(
        default="/health,/api/health,/ping,/status,/metrics",
        alias="WHITELISTED_PATHS",
    )
    auth_paths: str = Field(
        default="/api/auth,/api/admin/login,/api/admin/register,/api/user/login",
        alias="AUTH_PATHS",
    )
    upload_paths: str = Field(default="/api/upload,/api/audio,/api/documents", alias="UPLOAD_PATHS")
    strict_paths: str = Field(default="/api/admin,/api/superadmin,/api/email", alias="STRICT_PATHS")
    public_paths: str = Field(default="/api/visitors,/public", alias="PUBLIC_PATHS")

    # Request validation
    max_url_length: int = Field(default=2048, alias="MAX_URL_LENGTH")
    max_json_body_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_JSON_BODY_BYTES")

    # Live presence tracking
    presence_live_window_seconds: int = Field(default=5 * 60, alias="PRESENCE_LIVE_WINDOW_SECONDS")
    presence_sweep_interval_seconds: float = Field(
        default=60.0, alias="PRESENCE_SWEEP_INTERVAL_SECONDS"
    )
    presence_retention_seconds: int = Field(default=24 * 60 * 60, alias="PRESENCE_RETENTION_SECONDS")

    # CORS configuration for the admin console and portfolio frontends
    cors_origins: str = Field(default=DEFAULT_CORS_ORIGINS, alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: str = Field(
        default="GET,POST,PUT,DELETE,PATCH,OPTIONS",
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: str = Field(default="Content-Type,Authorization", alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def is_production(self) -> bool:
        """Return True when running with ``ENVIRONMENT=production``."""
        return self.environment.lower() == "production"

    @property
    def rate_limit_tiers(self) -> dict[str, tuple[int, int]]:
        """Return ``{tier: (window_seconds, max_requests)}`` for every tier."""
        return {
            "general": (self.rate_limit_general_window_seconds, self.rate_limit_general_max),
            "burst": (self.rate_limit_burst_window_seconds, self.rate_limit_burst_max),
            "api": (self.rate_limit_api_window_seconds, self.rate_limit_api_max),
            "strict": (self.rate_limit_strict_window_seconds, self.rate_limit_strict_max),
            "auth": (self.rate_limit_auth_window_seconds, self.rate_limit_auth_max),
            "public": (self.rate_limit_public_window_seconds, self.rate_limit_public_max),
            "upload": (self.rate_limit_upload_window_seconds, self.rate_limit_upload_max),
        }

    @property
    def ip_allowlist_list(self) -> list[str]:
        return _split_csv(self.ip_allowlist)

    @property
    def ip_blocklist_list(self) -> list[str]:
        return _split_csv(self.ip_blocklist)

    @property
    def whitelisted_paths_list(self) -> list[str]:
        return _split_csv(self.whitelisted_paths)

    @property
    def auth_paths_list(self) -> list[str]:
        return _split_csv(self.auth_paths)

    @property
    def upload_paths_list(self) -> list[str]:
        return _split_csv(self.upload_paths)

    @property
    def strict_paths_list(self) -> list[str]:
        return _split_csv(self.strict_paths)

    @property
    def public_paths_list(self) -> list[str]:
        return _split_csv(self.public_paths)

    @property
    def cors_origins_list(self) -> list[str]:
        return _split_csv(self.cors_origins)

    @property
    def cors_allow_methods_list(self) -> list[str]:
        return _split_csv(self.cors_allow_methods)

    @property
    def cors_allow_headers_list(self) -> list[str]:
        return _split_csv(self.cors_allow_headers)


settings = Settings()
