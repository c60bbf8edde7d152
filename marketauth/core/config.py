"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AuthConfig:
    """Token and account configuration."""

    secret_key: str
    access_token_ttl_seconds: int
    refresh_token_ttl_seconds: int
    issuer: str
    admin_email: str
    admin_password: str


@dataclass(frozen=True)
class OTPConfig:
    """One-time code lifecycle settings."""

    code_length: int = 6
    ttl_seconds: int = 600
    max_attempts: int = 5
    resend_cooldown_seconds: int = 60
    gc_grace_seconds: int = 24 * 60 * 60
    hash_secret: str = "dev-otp-pepper"
    expose_code: bool = False


@dataclass(frozen=True)
class RateLimitPolicy:
    """Quota for a single rate-limited scope."""

    limit: int
    window_seconds: int
    penalty_seconds: int = 0
    max_penalty_seconds: int = 24 * 60 * 60


@dataclass(frozen=True)
class RateLimitConfig:
    """Quota policy per rate-limit scope."""

    otp_send: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=10, window_seconds=3600, penalty_seconds=300)
    )
    otp_verify: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=20, window_seconds=900, penalty_seconds=300)
    )
    login: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=50, window_seconds=900, penalty_seconds=600)
    )
    generic: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=1000, window_seconds=900)
    )
    suspicious: RateLimitPolicy = field(
        default_factory=lambda: RateLimitPolicy(limit=10, window_seconds=3600, penalty_seconds=3600)
    )


@dataclass(frozen=True)
class NotificationConfig:
    """Outbound SMS/email delivery settings."""

    sms_api_url: str = ""
    sms_api_key: str = ""
    sms_sender_id: str = "MARKET"
    email_api_url: str = ""
    email_api_key: str = ""
    email_sender: str = "no-reply@localhost"
    app_name: str = "Marketplace"
    timeout_seconds: float = 5.0
    retry_backoff_seconds: float = 0.5


@dataclass(frozen=True)
class StorageConfig:
    """Runtime state storage locations."""

    sqlite_path: str = "runtime/app_state.db"
    sqlite_timeout_seconds: float = 5.0
    mongo_uri: str = ""
    mongo_db: str = "marketauth"


@dataclass(frozen=True)
class LoggingConfig:
    """Structured logging configuration."""

    level: str


@dataclass(frozen=True)
class SecurityConfig:
    """API perimeter security settings."""

    cors_allowed_origins: list[str]
    request_max_bytes: int
    login_lockout_threshold: int = 5
    login_lockout_seconds: int = 30 * 60
    default_country_code: str = "91"
    max_page_limit: int = 100


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    auth: AuthConfig
    otp: OTPConfig
    rate_limits: RateLimitConfig
    notifications: NotificationConfig
    storage: StorageConfig
    logging: LoggingConfig
    security: SecurityConfig

    @staticmethod
    def from_env() -> "AppConfig":
        """Build app config from process environment."""
        secret_key = (
            os.getenv("AUTH_SECRET_KEY", "").strip() or "dev-insecure-secret-change-me"
        )
        issuer = os.getenv("AUTH_ISSUER", "marketauth").strip() or "marketauth"
        admin_email = os.getenv("AUTH_ADMIN_EMAIL", "admin@local.test").strip().lower()
        admin_password = os.getenv("AUTH_ADMIN_PASSWORD", "admin123").strip()
        cors_allowed_origins = [
            origin.strip()
            for origin in os.getenv(
                "CORS_ALLOWED_ORIGINS",
                "http://localhost:3000,http://127.0.0.1:3000",
            ).split(",")
            if origin.strip()
        ]

        return AppConfig(
            auth=AuthConfig(
                secret_key=secret_key,
                access_token_ttl_seconds=_env_int("AUTH_ACCESS_TOKEN_TTL_SECONDS", 900),
                refresh_token_ttl_seconds=_env_int("AUTH_REFRESH_TOKEN_TTL_SECONDS", 604800),
                issuer=issuer,
                admin_email=admin_email,
                admin_password=admin_password,
            ),
            otp=OTPConfig(
                code_length=_env_int("OTP_LENGTH", 6),
                ttl_seconds=_env_int("OTP_TTL_SECONDS", 600),
                max_attempts=_env_int("OTP_MAX_ATTEMPTS", 5),
                resend_cooldown_seconds=_env_int("OTP_RESEND_COOLDOWN_SECONDS", 60),
                gc_grace_seconds=_env_int("OTP_GC_GRACE_SECONDS", 86400),
                hash_secret=os.getenv("OTP_HASH_SECRET", "").strip() or secret_key,
                expose_code=_env_flag("OTP_EXPOSE_CODE"),
            ),
            rate_limits=RateLimitConfig(
                otp_send=RateLimitPolicy(
                    limit=_env_int("RATE_LIMIT_OTP_SEND_MAX", 10),
                    window_seconds=_env_int("RATE_LIMIT_OTP_SEND_WINDOW_SECONDS", 3600),
                    penalty_seconds=_env_int("RATE_LIMIT_OTP_SEND_PENALTY_SECONDS", 300),
                ),
                otp_verify=RateLimitPolicy(
                    limit=_env_int("RATE_LIMIT_OTP_VERIFY_MAX", 20),
                    window_seconds=_env_int("RATE_LIMIT_OTP_VERIFY_WINDOW_SECONDS", 900),
                    penalty_seconds=_env_int("RATE_LIMIT_OTP_VERIFY_PENALTY_SECONDS", 300),
                ),
                login=RateLimitPolicy(
                    limit=_env_int("RATE_LIMIT_LOGIN_MAX", 50),
                    window_seconds=_env_int("RATE_LIMIT_LOGIN_WINDOW_SECONDS", 900),
                    penalty_seconds=_env_int("RATE_LIMIT_LOGIN_PENALTY_SECONDS", 600),
                ),
                generic=RateLimitPolicy(
                    limit=_env_int("RATE_LIMIT_GENERIC_MAX", 1000),
                    window_seconds=_env_int("RATE_LIMIT_GENERIC_WINDOW_SECONDS", 900),
                ),
                suspicious=RateLimitPolicy(
                    limit=_env_int("SUSPICIOUS_BLOCK_AFTER", 10),
                    window_seconds=_env_int("SUSPICIOUS_WINDOW_SECONDS", 3600),
                    penalty_seconds=_env_int("SUSPICIOUS_PENALTY_SECONDS", 3600),
                ),
            ),
            notifications=NotificationConfig(
                sms_api_url=os.getenv("SMS_API_URL", "").strip(),
                sms_api_key=os.getenv("SMS_API_KEY", "").strip(),
                sms_sender_id=os.getenv("SMS_SENDER_ID", "MARKET").strip() or "MARKET",
                email_api_url=os.getenv("EMAIL_API_URL", "").strip(),
                email_api_key=os.getenv("EMAIL_API_KEY", "").strip(),
                email_sender=os.getenv("EMAIL_SENDER", "no-reply@localhost").strip(),
                app_name=os.getenv("APP_NAME", "Marketplace").strip() or "Marketplace",
                timeout_seconds=float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "5")),
                retry_backoff_seconds=float(
                    os.getenv("NOTIFICATION_RETRY_BACKOFF_SECONDS", "0.5")
                ),
            ),
            storage=StorageConfig(
                sqlite_path=(
                    os.getenv("STATE_SQLITE_PATH", "runtime/app_state.db").strip()
                    or "runtime/app_state.db"
                ),
                sqlite_timeout_seconds=float(os.getenv("STATE_SQLITE_TIMEOUT_SECONDS", "5")),
                mongo_uri=os.getenv("MONGODB_URI", "").strip(),
                mongo_db=os.getenv("MONGODB_DB", "marketauth").strip() or "marketauth",
            ),
            logging=LoggingConfig(level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"),
            security=SecurityConfig(
                cors_allowed_origins=cors_allowed_origins,
                request_max_bytes=_env_int("REQUEST_MAX_BYTES", 1024 * 1024),
                login_lockout_threshold=_env_int("LOGIN_LOCKOUT_THRESHOLD", 5),
                login_lockout_seconds=_env_int("LOGIN_LOCKOUT_SECONDS", 1800),
                default_country_code=(
                    os.getenv("DEFAULT_COUNTRY_CODE", "91").strip().lstrip("+") or "91"
                ),
                max_page_limit=_env_int("MAX_PAGE_LIMIT", 100),
            ),
        )
