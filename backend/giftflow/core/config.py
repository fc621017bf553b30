import json
import os

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "GiftFlow API"
    environment: str = "local"
    frontend_url: str = "http://localhost:3000"
    backend_cors_origins_raw: str = ""  # Comma-separated or JSON array

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "allow",
    }

    @property
    def backend_cors_origins(self) -> list[str]:
        """Parse CORS origins from raw string."""
        raw = os.getenv("BACKEND_CORS_ORIGINS", self.backend_cors_origins_raw).strip()
        if not raw:
            return ["http://localhost:3000", "http://127.0.0.1:3000"]
        if raw.startswith("["):
            try:
                parsed = json.loads(raw)
                if isinstance(parsed, list):
                    return [str(item).strip() for item in parsed if str(item).strip()]
            except ValueError:
                pass
        return [item.strip() for item in raw.split(",") if item.strip()]

    # Database: sqlite+aiosqlite:///./giftflow.db (dev) | postgresql+asyncpg://... (prod)
    postgres_dsn: str = "sqlite+aiosqlite:///./giftflow.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_recycle: int = 1800
    db_pool_timeout: int = 30

    access_token_expire_minutes: int = 60 * 24 * 7
    # SECURITY: override via JWT_SECRET_KEY env var outside local environment
    jwt_secret_key: str = "CHANGE_ME"
    jwt_algorithm: str = "HS256"

    # Telegram WebApp identity
    bot_token: str = ""
    init_data_max_age_seconds: int = 60 * 60 * 24

    default_language: str = "ru"
    default_currency: str = "RUB"

    # Event lifecycle sweep
    scheduler_enabled: bool = True
    event_sweep_interval_seconds: int = 60
    event_sweep_max_catchup_seconds: int = 60 * 60
    event_starting_soon_lead_hours: int = 24
    event_gifters_reveal_delay_hours: int = 24

    log_level: str = "INFO"
    log_file: str = ""


settings = Settings()
