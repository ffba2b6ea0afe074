from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./allocation.db"

    # Tokens are issued by the restaurant's auth service; we only VERIFY them
    SECRET_KEY: str
    ALGORITHM: str = "HS256"

    # --- Rate limiting ---
    REDIS_URL: str = "redis://redis:6379/0"
    RATE_LIMIT_ENABLED: bool = True

    # --- Lifecycle events ---
    KAFKA_BOOTSTRAP_SERVERS: str = "kafka:9092"
    KAFKA_BOOKING_TOPIC: str = "booking_events"
    OUTBOX_POLLER_ENABLED: bool = True

    # --- Allocation engine ---
    # How long a request waits for another request holding the same resource
    LOCK_TIMEOUT_SECONDS: float = 5.0
    ALLOCATION_MAX_ATTEMPTS: int = 3
    ALLOCATION_RETRY_BACKOFF_SECONDS: float = 0.05

    # Opening hours used when listing free slots
    SLOT_DAY_START_HOUR: int = 9
    SLOT_DAY_END_HOUR: int = 22

    model_config = SettingsConfigDict(env_file=".env")


settings = Settings()
