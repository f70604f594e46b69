from functools import lru_cache
import os

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env next to the package regardless of CWD
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
ENV_PATH = os.path.join(BASE_DIR, ".env")
load_dotenv(ENV_PATH)


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./dailycup.db"
    AUTO_CREATE_TABLES: bool = False
    REDIS_URL: str | None = None
    CORS_ORIGIN: str = "*"
    LOG_LEVEL: str = "INFO"
    METRICS_ENABLED: bool = True

    JWT_SECRET_KEY: str = "CHANGE_ME_IN_PRODUCTION"
    JWT_ALGORITHM: str = "HS256"

    # Payment provider
    WEBHOOK_SECRET: str | None = None
    WEBHOOK_CALLBACK_TOKEN: str | None = None
    XENDIT_SECRET_KEY: str | None = None
    XENDIT_API_URL: str = "https://api.xendit.co/v2/invoices"
    APP_URL: str = "http://localhost:3001"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Orders
    TOTAL_TOLERANCE: float = 0.01
    COD_MAX_AMOUNT: float = 100000
    LOYALTY_POINTS_PER_ORDER: int = 2
    LOYALTY_AMOUNT_PER_POINT: float = 10000

    # Couriers
    AVG_COURIER_SPEED_KMH: float = 20.0
    COURIER_MAX_ACTIVE_ORDERS: int = 5
    DELIVERY_PHOTO_REQUIRED: bool = False
    PHOTO_MAX_BYTES: int = 5 * 1024 * 1024
    TRACKING_KEEPALIVE_SECONDS: float = 15.0

    # Geocoding
    GEOCODER_URL: str = "https://nominatim.openstreetmap.org/search"
    GEOCODER_USER_AGENT: str = "DailyCup/1.0 (dev@dailycup.local)"
    GEOCODE_BATCH_SIZE: int = 5
    GEOCODE_MAX_ATTEMPTS: int = 5
    GEOCODE_NOTIFY_THRESHOLD: int = 3
    GEOCODE_MIN_INTERVAL_SECONDS: float = 1.0
    GEOCODE_POLL_SECONDS: float = 5.0
    GEOCODE_BACKOFF_SECONDS: float = 30.0
    GEOCODE_WORKER_ENABLED: bool = False

    # "limit/window_seconds" per bucket
    RATE_LIMIT_ORDER: str = "10/60"
    RATE_LIMIT_WEBHOOK: str = "120/60"
    RATE_LIMIT_LOCATION: str = "30/60"

    # Evidence photo storage
    AWS_ACCESS_KEY_ID: str | None = None
    AWS_SECRET_ACCESS_KEY: str | None = None
    AWS_DEFAULT_REGION: str | None = None
    S3_BUCKET: str | None = None
    LOCAL_FILES_DIR: str = os.path.join(BASE_DIR, "files")

    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        u = self.DATABASE_URL.strip()
        if u.startswith("postgres://"):
            u = "postgresql+psycopg2://" + u[len("postgres://"):]
        return u

    def rate_limit(self, bucket: str) -> tuple[int, int]:
        raw = getattr(self, f"RATE_LIMIT_{bucket.upper()}")
        limit, window = raw.split("/", 1)
        return int(limit), int(window)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
