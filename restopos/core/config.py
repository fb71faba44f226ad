from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = Field(default="Restaurant POS", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    database_url: str = Field(default="", alias="DB_URL")
    timezone: str = Field(default="Asia/Kolkata", alias="TIMEZONE")
    currency: str = Field(default="INR", alias="CURRENCY")
    currency_symbol: str = Field(default="₹", alias="CURRENCY_SYMBOL")
    loyalty_min_orders: int = Field(default=5, alias="LOYALTY_MIN_ORDERS")
    visit_lookup_attempts: int = Field(default=2, alias="VISIT_LOOKUP_ATTEMPTS")
    almost_there_ratio: Decimal = Field(default=Decimal("0.6"), alias="ALMOST_THERE_RATIO")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


settings = Settings()
