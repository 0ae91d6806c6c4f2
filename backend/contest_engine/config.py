"""
backend/contest_engine/config.py

Purpose:
    Central settings loading for the contest scoring engine.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "contest_engine"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"
    LOG_LEVEL: str = "INFO"

    # External collaborators
    SPORTS_DATA_BASE_URL: str = "http://localhost:8081/sports"
    SPORTS_DATA_API_KEY: str = ""
    ORACLE_BASE_URL: str = "http://localhost:8082/oracle"
    PAYMENT_GATEWAY_BASE_URL: str = "http://localhost:8083/payments"
    PAYMENT_GATEWAY_API_KEY: str = ""
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 10.0
    EXTERNAL_CALL_MAX_RETRIES: int = 2
    EXTERNAL_CALL_BASE_DELAY_SECONDS: float = 1.0

    # Result poller tiers (seconds between polls of one game)
    POLL_SCHEDULED_INTERVAL_SECONDS: int = 600
    POLL_LIVE_INTERVAL_SECONDS: int = 120
    POLL_FINAL_INTERVAL_SECONDS: int = 300
    POLL_BACKOFF_BASE_SECONDS: int = 30
    POLL_BACKOFF_MAX_SECONDS: int = 1800
    POLL_MAX_FAILURES: int = 5
    POLL_BATCH_SIZE: int = 200

    # Result corrections inside this window go to operator review; after it
    # a confirmed final result is never re-checked.
    DISPUTE_WINDOW_HOURS: int = 24

    # Event bus (in-process)
    EVENT_BUS_ENABLED: bool = True
    EVENT_BUS_INGRESS_QUEUE_MAXSIZE: int = 10000
    EVENT_BUS_HANDLER_QUEUE_MAXSIZE: int = 2000
    EVENT_BUS_HANDLER_DEFAULT_CONCURRENCY: int = 1
    EVENT_BUS_ERROR_BUFFER_SIZE: int = 200
    EVALUATION_WORKERS: int = 4

    # Leaderboard
    LEADERBOARD_MAX_STALENESS_SECONDS: float = 2.0

    # Payouts
    PAYOUT_MAX_ATTEMPTS: int = 5
    PAYOUT_RECONCILE_INTERVAL_MINUTES: int = 10
    PAYOUT_RECOVERY_GRACE_SECONDS: int = 300

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    LIFECYCLE_INTERVAL_MINUTES: int = 5

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()
