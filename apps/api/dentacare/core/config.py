"""Application configuration with environment variables."""

from datetime import time

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Proxy/Load Balancer Settings
    TRUST_PROXY_HEADERS: bool = False

    # Database
    DATABASE_URL: str

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""  # Secret for /internal/scheduled/* endpoints

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_API: int = 60  # General API
    RATE_LIMIT_REDEEM_VALIDATE: int = 30  # Redeem code lookups

    # Payment gateway
    GATEWAY_ENV: str = "sandbox"  # sandbox | production
    GATEWAY_MERCHANT_ID: str = ""
    GATEWAY_CLIENT_ID: str = ""
    GATEWAY_CLIENT_SECRET: str = ""
    GATEWAY_CLIENT_VERSION: str = "1"
    GATEWAY_SALT_KEY: str = ""  # Callback checksum key
    GATEWAY_SALT_INDEX: str = "1"
    GATEWAY_CALLBACK_URL: str = "http://localhost:8000/payment/gateway/callback"
    GATEWAY_REDIRECT_URL: str = "http://localhost:3000/payment/result"
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_TOKEN_REFRESH_SKEW_SECONDS: int = 60

    # Pricing
    PAYMENT_CURRENCY: str = "INR"
    VIRTUAL_APPOINTMENT_PRICE_CENTS: int = 50000
    VIRTUAL_APPOINTMENT_DURATION_MINUTES: int = 30

    # Booking and payment timing
    PAYMENT_HOLD_TTL_SECONDS: int = 600
    STATUS_POLL_INTERVAL_SECONDS: int = 30
    MIN_LEAD_TIME_MINUTES: int = 15
    MAX_HORIZON_DAYS: int = 60

    # Fallback service window when no admin has configured one
    DEFAULT_SERVICE_START: time = time(9, 0)
    DEFAULT_SERVICE_END: time = time(18, 0)
    DEFAULT_SERVICE_TIMEZONE: str = "Asia/Kolkata"

    # Video rooms
    ROOM_PRE_JOIN_WINDOW_MINUTES: int = 10
    ROOM_GRACE_MINUTES: int = 30
    ROOM_MAX_DURATION_MINUTES: int = 90
    ROOM_SIGNING_SECRET: str = "change-this-room-secret"
    SIGNALING_URL: str = "wss://localhost:8443/signaling"
    ICE_SERVERS: str = "stun:stun.l.google.com:19302"

    # Notifications
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@example.com"
    FCM_SERVER_KEY: str = ""

    # Object store (S3-compatible)
    S3_ENDPOINT_URL: str = ""
    S3_REGION: str = ""
    S3_URL_STYLE: str = ""
    S3_PUBLIC_BASE_URL: str = ""
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    STORAGE_TIMEOUT_SECONDS: float = 5.0
    S3_RECEIPTS_BUCKET: str = ""  # Empty disables receipt archiving

    # Worker
    WORKER_POLL_INTERVAL: int = 10
    WORKER_BATCH_SIZE: int = 10
    SWEEP_INTERVAL_SECONDS: int = 60

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def ice_servers_list(self) -> list[str]:
        """Parse ICE_SERVERS into a list of STUN/TURN URLs."""
        return [s.strip() for s in self.ICE_SERVERS.split(",") if s.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets


settings = Settings()
