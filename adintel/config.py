import json
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load env values for components that read os.environ directly (e.g., the Gemini client).
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


def _coerce_json(value: str):
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str = "sqlite+pysqlite:///./adintel.db"
    DB_POOL_SIZE: int = 20
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30

    TEMPORAL_NAMESPACE: str = "default"
    TEMPORAL_TASK_QUEUE: str = "adintel"
    TEMPORAL_ADDRESS: str = "localhost:7233"
    TEMPORAL_ACTIVITY_WORKERS: int = 16
    # "temporal" hands events to JobEventsWorkflow; "local" runs handlers on an in-process thread pool.
    EVENT_DISPATCHER: str = "temporal"
    LOCAL_DISPATCHER_WORKERS: int = 4

    BACKEND_CORS_ORIGINS: list[str] = ["http://localhost:5173"]

    APIFY_API_TOKEN: str | None = None
    APIFY_API_URL: str = "https://api.apify.com/v2"
    APIFY_ACTOR_ID: str = "curious_coder~facebook-ads-library-scraper"
    SCRAPE_DEFAULT_REGION: str = "US"
    SCRAPE_ACTIVE_STATUS: str = "active"
    SCRAPE_POLL_INTERVAL_SECONDS: int = 5
    SCRAPE_MAX_WAIT_SECONDS: int = 600

    OPENAI_API_KEY: str | None = None
    GEMINI_API_KEY: str | None = None
    ANALYSIS_IMAGE_MODEL: str = "gpt-4o"
    ANALYSIS_STRATEGIC_MODEL: str = "gpt-4o-mini"
    ANALYSIS_VIDEO_MODEL: str = "gemini-2.5-flash"
    ANALYSIS_REQUEST_TIMEOUT_SECONDS: float = 120.0
    ANALYSIS_ITEM_DELAY_SECONDS: float = 8.0
    ANALYSIS_MAX_ATTEMPTS: int = 3
    ANALYSIS_BACKOFF_BASE_SECONDS: float = 1.0
    ANALYSIS_MAX_BACKOFF_SECONDS: float = 60.0
    ANALYSIS_ESTIMATED_TOKENS: int = 1000
    ANALYSIS_FALLBACK_ENABLED: bool = False
    # With fallback enabled, rate-limited items still wait out windows up to this long.
    ANALYSIS_FALLBACK_MIN_WAIT_SECONDS: float = 60.0
    ANALYSIS_MAX_VIDEO_BYTES: int = 20 * 1024 * 1024
    # Optional per-model overrides: {"openai:gpt-4o": {"rpm": 3, "tpm": 40000, "rpd": 200}}
    RATE_LIMIT_OVERRIDES: dict[str, dict[str, int]] = Field(default_factory=dict)

    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    # Maps Stripe price ids to plan keys, e.g. {"price_123": "pro"}.
    STRIPE_PRICE_PLAN_MAP: dict[str, str] = Field(default_factory=dict)
    BILLING_AUTODOWNGRADE_ENABLED: bool = False

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("EVENT_DISPATCHER")
    @classmethod
    def validate_dispatcher(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"temporal", "local"}:
            raise ValueError("EVENT_DISPATCHER must be 'temporal' or 'local'")
        return normalized

    model_config = SettingsConfigDict(env_file=".env", env_json_loads=_coerce_json, extra="ignore")


settings = Settings()
