# config/settings.py
"""
Settings - every tunable of the ordering service lives here.

On startup the application reads the .env file (and the environment)
and builds the module-level ``config`` object.

If a value is missing or has the wrong type, Pydantic fails loudly
and tells exactly which variable is wrong.
"""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Main settings class.

    BaseSettings:
    1. Reads the .env file automatically
    2. Validates types (API_PORT must be int, DEBUG must be bool)
    3. Lets every field be overridden by an environment variable
    """

    # ==========================================
    # DATABASE
    # ==========================================
    database_url: str = "sqlite+aiosqlite:///./restaurant.db"
    database_echo: bool = False

    # ==========================================
    # REDIS (shared broadcast channel)
    # ==========================================
    redis_url: str = "redis://localhost:6379/0"
    broadcast_backend: Literal["memory", "redis"] = "memory"
    broadcast_channel: str = "orders:events"

    # ==========================================
    # API
    # ==========================================
    api_host: str = "0.0.0.0"
    api_port: int = 5000
    public_base_url: str = ""
    admin_api_token: str = ""
    websocket_path: str = "/api/ws"

    # ==========================================
    # MERCADO PAGO
    # ==========================================
    mercadopago_access_token: str = ""
    mercadopago_public_key: str = ""
    mercadopago_webhook_secret: str = ""
    mercadopago_api_url: str = "https://api.mercadopago.com"
    mercadopago_timeout: float = 5.0
    mercadopago_statement_descriptor: str = "Delivery App"

    # ==========================================
    # PAYMENT FLOW
    # ==========================================
    pix_expiration_minutes: int = 30
    payment_poll_interval: float = 2.0
    payment_poll_max_retries: int = 5
    payment_poll_max_backoff: float = 30.0

    # ==========================================
    # ORDERS
    # ==========================================
    order_number_start: int = 10000
    currency_id: str = "BRL"

    # ==========================================
    # ENVIRONMENT
    # ==========================================
    environment: Literal["development", "production"] = "development"
    debug: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False
    )

    @property
    def async_database_url(self) -> str:
        """Convert a standard PostgreSQL URL to the asyncpg driver format"""
        url = self.database_url
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if "sslmode=disable" in url:
            url = url.replace("?sslmode=disable", "")
        return url

    @property
    def base_url(self) -> str:
        """Public base URL used for back_urls and notifications"""
        return (self.public_base_url or f"http://{self.api_host}:{self.api_port}").rstrip("/")

    @property
    def webhook_url(self) -> str:
        """Generate the Mercado Pago notification URL"""
        return f"{self.base_url}/api/webhook/mercadopago"

    @property
    def sandbox(self) -> bool:
        return self.environment != "production"

    def optional_redis_url(self) -> Optional[str]:
        """Redis URL only when the redis backend is selected."""
        if self.broadcast_backend == "redis" and self.redis_url:
            return self.redis_url
        return None


config = Settings()
