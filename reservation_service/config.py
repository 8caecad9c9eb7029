from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./reservations.db"
    # This service needs to know the secret to VERIFY tokens
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # Property Management service, consulted on booking creation
    PROPERTY_SERVICE_URL: str = "http://property-service:8000"
    PROPERTY_SERVICE_TIMEOUT_SECONDS: float = 5.0

    # --- KAFKA SETTINGS ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_BOOKING_TOPIC: str = "booking_events"
    KAFKA_PAYOUT_TOPIC: str = "payouts"
    KAFKA_NOTIFICATION_TOPIC: str = "notifications"

    REDIS_URL: str = "redis://redis:6379/0"
    RATE_LIMIT_ENABLED: bool = True

    # --- PAYMENT GATEWAY ---
    STRIPE_API_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_TIMEOUT_SECONDS: float = 10.0
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # --- RESERVATION ENGINE ---
    HOLD_DURATION_MINUTES: int = 15
    REAPER_INTERVAL_SECONDS: int = 60
    IDEMPOTENCY_TTL_HOURS: int = 24
    IDEMPOTENCY_IN_FLIGHT_TIMEOUT_SECONDS: int = 30
    CANCELLATION_CUTOFF_HOURS: int = 48
    SERVICE_FEE: Decimal = Decimal("0.00")
    MIN_NIGHTS: int = 1
    MAX_NIGHTS: int = 30

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
