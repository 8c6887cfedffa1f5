"""Application configuration management using Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Required settings will raise validation errors if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="laundry-pos-backend", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")
    max_request_body_size: int = Field(default=1_048_576, description="Maximum request body size in bytes")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(..., description="Supabase project URL")
    supabase_secret_key: str = Field(..., description="Supabase secret key for backend operations")

    # Email (Resend)
    resend_api_key: str = Field(default="", description="Resend API key for customer notifications")
    email_from_address: str = Field(
        default="Laundry <orders@example.com>",
        description="From address for customer notification emails",
    )
    notification_max_attempts: int = Field(default=3, ge=1, description="Delivery attempts per notification")
    notification_retry_wait_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Base of the exponential wait between notification attempts",
    )

    # Pricing
    vat_rate: Decimal = Field(default=Decimal("0.12"), ge=0, description="VAT rate (inclusive model)")
    staff_service_fee: Decimal = Field(default=Decimal("40"), ge=0, description="Flat staff-service fee per order")
    delivery_fee_default: Decimal = Field(default=Decimal("50"), ge=0, description="Delivery fee when no override is given")
    delivery_fee_min: Decimal = Field(default=Decimal("50"), ge=0, description="Lowest delivery fee a cashier may charge")
    basket_weight_max: Decimal = Field(default=Decimal("8"), gt=0, description="Maximum basket weight in kg")
    iron_weight_min: Decimal = Field(default=Decimal("2"), ge=0, description="Minimum chargeable iron weight in kg")
    iron_weight_max: Decimal = Field(default=Decimal("8"), gt=0, description="Maximum iron weight in kg")
    additional_dry_time_increment_minutes: int = Field(default=8, gt=0, description="Minutes per extra dry-time increment")
    additional_dry_time_price: Decimal = Field(default=Decimal("15"), ge=0, description="Price per extra dry-time increment")
    plastic_bag_price: Decimal = Field(
        default=Decimal("0.50"),
        ge=0,
        description="Fallback plastic bag price when the product catalog has none",
    )
    loyalty_tier1_rate: Decimal = Field(default=Decimal("0.05"), ge=0, le=1, description="Tier 1 loyalty discount rate")
    loyalty_tier2_rate: Decimal = Field(default=Decimal("0.15"), ge=0, le=1, description="Tier 2 loyalty discount rate")
    loyalty_tier1_points: int = Field(default=10, ge=0, description="Loyalty points redeemed for the tier 1 discount")
    loyalty_tier2_points: int = Field(default=20, ge=0, description="Loyalty points redeemed for the tier 2 discount")

    @model_validator(mode="after")
    def check_delivery_fee_floor(self) -> "Settings":
        """Make sure the default delivery fee never undercuts the minimum."""
        if self.delivery_fee_default < self.delivery_fee_min:
            self.delivery_fee_default = self.delivery_fee_min
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
