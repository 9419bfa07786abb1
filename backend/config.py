from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Ulasis"
    LOG_LEVEL: str = "INFO"
    SECRET_KEY: str = "change-me-in-production"
    ENCRYPTION_KEY: str = "change-me-in-production-32bytes!"
    DATABASE_URL: str = "sqlite:///data/ulasis.db"
    DATA_DIR: Path = Path("data")
    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_HOURS: int = 72
    AUTH_COOKIE_NAME: str = "ulasis_session"
    AUTH_COOKIE_SECURE: bool = False
    AUTH_COOKIE_HTTPONLY: bool = True
    AUTH_COOKIE_SAMESITE: str = "lax"  # strict | lax | none
    AUTH_COOKIE_DOMAIN: str | None = None
    AUTH_COOKIE_PATH: str = "/"
    SECURITY_HEADERS_ENABLED: bool = True

    # Enterprise admin sessions
    ADMIN_SESSION_TOKEN_HOURS: int = 8
    ADMIN_SESSION_TIMEOUT_SECONDS: int = 8 * 60 * 60
    ADMIN_SESSION_SWEEP_INTERVAL_SECONDS: int = 5 * 60
    ADMIN_LOCKOUT_MAX_ATTEMPTS: int = 5
    ADMIN_LOCKOUT_DURATION_SECONDS: int = 15 * 60
    ADMIN_COOKIE_NAME: str = "adminToken"
    ADMIN_REMEMBER_ME_DAYS: int = 7
    ADMIN_TOTP_VALID_WINDOW: int = 2
    ADMIN_TOTP_ISSUER: str = "Ulasis Enterprise"
    BOOTSTRAP_ADMIN_EMAIL: str | None = None
    BOOTSTRAP_ADMIN_PASSWORD: str | None = None

    RATE_LIMIT_AUTH_LOGIN_ATTEMPTS: int = 10
    RATE_LIMIT_AUTH_LOGIN_WINDOW_SECONDS: int = 300
    RATE_LIMIT_AUTH_REGISTER_ATTEMPTS: int = 5
    RATE_LIMIT_AUTH_REGISTER_WINDOW_SECONDS: int = 600
    RATE_LIMIT_RESPONSE_SUBMIT_ATTEMPTS: int = 30
    RATE_LIMIT_RESPONSE_SUBMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_ADMIN_REQUESTS: int = 100
    RATE_LIMIT_ADMIN_WINDOW_SECONDS: int = 15 * 60
    RATE_LIMIT_ADMIN_STRICT_REQUESTS: int = 10
    RATE_LIMIT_ADMIN_STRICT_WINDOW_SECONDS: int = 15 * 60

    # Notifications
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    SMTP_FROM_EMAIL: str = "noreply@ulasis.com"
    SMTP_FROM_NAME: str = "Ulasis"
    SMTP_TIMEOUT_SECONDS: int = 10
    ADMIN_NOTIFICATION_EMAIL: str = "admin@ulasis.com"

    PAYMENT_LINK_BASE: str = "https://dana.link/payment"
    PAYMENT_CURRENCY: str = "IDR"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    @property
    def is_development(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"development", "dev"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.SECRET_KEY == "change-me-in-production":
            errors.append("SECRET_KEY must be changed from the default value")
        if len((self.SECRET_KEY or "").strip()) < 32:
            errors.append("SECRET_KEY must be at least 32 characters")
        if self.ENCRYPTION_KEY == "change-me-in-production-32bytes!":
            errors.append("ENCRYPTION_KEY must be changed from the default value")
        if len((self.ENCRYPTION_KEY or "").strip()) < 16:
            errors.append("ENCRYPTION_KEY must be at least 16 characters")
        if not self.AUTH_COOKIE_SECURE:
            errors.append("AUTH_COOKIE_SECURE must be true in production-like environments")
        if (self.AUTH_COOKIE_SAMESITE or "").strip().lower() == "none" and not self.AUTH_COOKIE_SECURE:
            errors.append("AUTH_COOKIE_SAMESITE=none requires AUTH_COOKIE_SECURE=true")
        if self.BOOTSTRAP_ADMIN_PASSWORD and len(self.BOOTSTRAP_ADMIN_PASSWORD) < 12:
            errors.append("BOOTSTRAP_ADMIN_PASSWORD must be at least 12 characters")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
