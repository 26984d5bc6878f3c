import os
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv


# Load .env from the project root before any default below is evaluated.
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    app_env: str = os.getenv("APP_ENV", os.getenv("NODE_ENV", "production"))
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8000"))
    cors_origins: list[str] = field(
        default_factory=lambda: _env_list("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    )

    database_url: str = os.getenv("DATABASE_URL", "")
    db_host: str = os.getenv("DB_HOST", "localhost")
    db_port: int = int(os.getenv("DB_PORT", "5432"))
    db_name: str = os.getenv("DB_NAME", "postgres")
    db_user: str = os.getenv("DB_USER", "postgres")
    db_password: str = os.getenv("DB_PASSWORD", "")
    db_ssl: bool = _env_bool("DB_SSL", bool(os.getenv("DATABASE_URL")))

    db_pool_max: int = int(os.getenv("DB_POOL_MAX", "20"))
    db_pool_min: int = int(os.getenv("DB_POOL_MIN", "2"))
    db_idle_timeout_ms: int = int(os.getenv("DB_IDLE_TIMEOUT_MS", "30000"))
    db_connection_timeout_ms: int = int(os.getenv("DB_CONNECTION_TIMEOUT_MS", "10000"))
    db_max_uses: int = int(os.getenv("DB_MAX_USES", "7500"))
    db_statement_timeout_ms: int = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "30000"))
    db_query_timeout_ms: int = int(os.getenv("DB_QUERY_TIMEOUT_MS", "30000"))
    db_transaction_timeout_ms: int = int(os.getenv("DB_TRANSACTION_TIMEOUT_MS", "30000"))
    db_query_retries: int = int(os.getenv("DB_QUERY_RETRIES", "2"))
    db_monitor_interval_s: float = float(os.getenv("DB_MONITOR_INTERVAL_S", "60"))
    db_alert_waiting: int = int(os.getenv("DB_ALERT_WAITING", "5"))
    db_alert_failed_queries: int = int(os.getenv("DB_ALERT_FAILED_QUERIES", "10"))

    jwt_secret: str = os.getenv("JWT_SECRET", "change-me-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_exp_days: int = int(os.getenv("JWT_EXP_DAYS", "7"))
    auth_lookup_timeout_s: float = float(os.getenv("AUTH_LOOKUP_TIMEOUT_S", "5"))
    otp_exp_minutes: int = int(os.getenv("OTP_EXP_MINUTES", "5"))

    admin_phone: str = os.getenv("ADMIN_PHONE", "")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "")

    google_apps_script_url: str = os.getenv("GOOGLE_APPS_SCRIPT_URL", "")
    google_apps_script_timeout_s: float = float(os.getenv("GOOGLE_APPS_SCRIPT_TIMEOUT_S", "30"))

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``asyncpg.connect``."""
        kwargs: dict[str, Any] = {"timeout": self.db_connection_timeout_ms / 1000}
        if self.database_url:
            kwargs["dsn"] = self.database_url
        else:
            kwargs.update(
                host=self.db_host,
                port=self.db_port,
                database=self.db_name,
                user=self.db_user,
                password=self.db_password or None,
            )
        # Managed Postgres hosts present certificates we do not pin.
        kwargs["ssl"] = "require" if self.db_ssl else False
        return kwargs

    def sqlalchemy_url(self) -> str:
        if self.database_url:
            url = self.database_url
            for prefix in ("postgres://", "postgresql://"):
                if url.startswith(prefix):
                    return "postgresql+psycopg2://" + url[len(prefix):]
            return url
        password = f":{self.db_password}" if self.db_password else ""
        return (
            f"postgresql+psycopg2://{self.db_user}{password}@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
