import secrets

from pydantic_settings import BaseSettings


def _generate_dev_secret() -> str:
    """Generate a random secret for local development only."""
    return secrets.token_hex(32)


class Settings(BaseSettings):
    # App
    app_name: str = "CarbonTrack Messaging"
    debug: bool = False
    environment: str = "development"  # development, production
    log_level: str = ""  # DEBUG, INFO, WARNING, ERROR, CRITICAL (empty = auto based on environment)
    log_to_file: bool = True  # Enable file logging

    # Database (SQLite for local dev, PostgreSQL for production)
    database_url: str = "sqlite:///./carbontrack.db"

    # JWT — no default; must be set via SECRET_KEY env var in production.
    # In development, a random key is generated per-process if not set.
    secret_key: str = ""
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Frontend
    frontend_url: str = "http://localhost:5173"

    # CORS (comma-separated origins, empty = allow all in development)
    allowed_origins: str = ""

    # Rate limiting (slowapi)
    rate_limit_enabled: bool = True

    # Audit logging
    audit_log_enabled: bool = True

    # Email
    sendgrid_api_key: str = ""
    from_email: str = "noreply@carbontrack.app"
    from_name: str = "CarbonTrack"
    # SMTP (used when SendGrid is not configured)
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    # Log instead of sending (local development)
    email_simulation: bool = False

    # Broadcasts
    broadcast_email_enabled: bool = True
    broadcast_snapshot_id_cap: int = 200
    broadcast_snapshot_error_cap: int = 100
    # Window around broadcast.created_at used to match messages by content hash
    broadcast_hash_window_before_seconds: int = 900
    broadcast_hash_window_after_seconds: int = 120
    # 0 disables the periodic flush job
    broadcast_flush_interval_minutes: int = 0
    broadcast_flush_batch_size: int = 20
    broadcast_flush_force: bool = True  # periodic job sends (True) or only reconciles (False)

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()

# Validate secret key
_KNOWN_WEAK_KEYS = {"your-secret-key-change-in-production", "changeme", "secret", ""}

if settings.secret_key in _KNOWN_WEAK_KEYS:
    if settings.environment == "production":
        raise RuntimeError(
            "SECRET_KEY is not set or uses a known weak default. "
            "Set a strong SECRET_KEY env var (e.g. `openssl rand -hex 32`)."
        )
    # Development: generate a random key so the app can start
    settings.secret_key = _generate_dev_secret()
