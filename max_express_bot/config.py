# max_express_bot/config.py
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Telegram
    telegram_bot_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("telegram_bot_token", "teloxide_token"),
    )
    telegram_mode: Literal["polling", "webhook"] = "polling"
    telegram_webhook_url: str | None = None  # Public HTTPS URL of /webhooks/telegram
    telegram_webhook_secret: str | None = None  # X-Telegram-Bot-Api-Secret-Token
    telegram_poll_timeout: int = 30

    # Marketplace help texts
    help_1688: str = ""
    help_pinduoduo: str = ""
    help_poizon: str = ""
    help_taobao: str = ""

    # Database
    expected_schema_version: str = "001_init.sql"  # Update on deploy when new migrations are added
    database_url: str | None = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "postgres"
    postgres_password: str = ""
    postgres_db: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 10
    pg_connect_timeout: int = 5
    pg_command_timeout: int = 30

    # Parcel tracking (vendor status API)
    tracking_api_url: str = "http://www.107kapro.cn/index/index/search"
    tracking_timeout_seconds: int = 10

    # HTTP surface
    http_host: str = "0.0.0.0"
    http_port: int = 8080
    enable_metrics: bool = True

    # Graceful shutdown: how long in-flight updates may take to finish
    shutdown_grace_seconds: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def help_texts(self) -> dict[str, str]:
        """Raw marketplace help texts keyed by marketplace wire value"""
        return {
            "1688": self.help_1688,
            "pinduoduo": self.help_pinduoduo,
            "poizon": self.help_poizon,
            "taobao": self.help_taobao,
        }

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        required_fields = [
            ("telegram_bot_token", self.telegram_bot_token),
            ("help_1688", self.help_1688),
            ("help_pinduoduo", self.help_pinduoduo),
            ("help_poizon", self.help_poizon),
            ("help_taobao", self.help_taobao),
        ]
        if self.telegram_mode == "webhook":
            required_fields.append(("telegram_webhook_url", self.telegram_webhook_url))

        return [name for name, value in required_fields if not value]


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if not s.telegram_bot_token:
        warnings.append("telegram_bot_token is missing (the bot cannot reach Telegram).")

    for key, text in s.help_texts.items():
        if not text.strip():
            warnings.append(f"help_{key} is empty (users will see a placeholder text).")

    if s.telegram_mode == "webhook":
        if not s.telegram_webhook_url:
            warnings.append("telegram_mode=webhook but telegram_webhook_url is not set.")
        if not s.telegram_webhook_secret:
            warnings.append("telegram_mode=webhook but telegram_webhook_secret is not set (webhook is unauthenticated).")

    if s.is_production and not s.database_url and not s.postgres_password:
        warnings.append("prod: postgres_password is empty.")

    return warnings


def validate_or_warn(s: "Settings") -> list[str]:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.

    Returns the warnings so the caller can log them once logging is configured.
    """
    missing = s.validate_required_for_production()
    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    return warn_on_risky_config(s)


settings = Settings()
