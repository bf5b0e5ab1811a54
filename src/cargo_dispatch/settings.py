from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cargo_dispatch.fare import DEFAULT_RATE_CARD, RequirementCharges, VehicleRates
from cargo_dispatch.vehicles import VehicleType


class ServiceSettings(BaseSettings):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["text", "json"] = "text"
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)

    model_config = SettingsConfigDict(env_prefix="SERVICE_")


class DispatchSettings(BaseSettings):
    """Candidate search and offer protocol configuration."""

    offer_timeout_seconds: float = Field(
        default=15.0,
        ge=1.0,
        le=300.0,
        description="Seconds a driver has to accept or decline an offer",
    )
    booking_expiry_seconds: float = Field(
        default=300.0,
        ge=10.0,
        le=3600.0,
        description="Seconds a booking may stay pending before it expires",
    )
    search_radius_m: float = Field(default=10_000.0, gt=0, le=100_000.0)
    candidate_limit: int = Field(default=10, ge=1, le=100)
    max_offer_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Offers sent for one booking before it expires",
    )
    max_reassignments: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Times an assigned driver may release a booking before it expires",
    )
    sweep_interval_seconds: float = Field(default=1.0, gt=0, le=60.0)
    h3_resolution: int = Field(default=8, ge=5, le=11)
    demand_zone_resolution: int = Field(default=7, ge=4, le=9)

    model_config = SettingsConfigDict(env_prefix="DISPATCH_")


class FareSettings(BaseSettings):
    currency: str = "INR"
    max_demand_factor: float = Field(default=2.0, ge=1.0, le=5.0)
    rate_card: dict[VehicleType, VehicleRates] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_CARD)
    )
    requirement_charges: RequirementCharges = Field(default_factory=RequirementCharges)

    model_config = SettingsConfigDict(env_prefix="FARE_")

    @field_validator("rate_card")
    @classmethod
    def fill_missing_vehicle_types(
        cls, v: dict[VehicleType, VehicleRates]
    ) -> dict[VehicleType, VehicleRates]:
        return {**DEFAULT_RATE_CARD, **v}


class PaymentSettings(BaseSettings):
    commission_rate: Decimal = Field(default=Decimal("0.15"), ge=0, le=1)
    default_gateway: Literal["razorpay", "stripe"] = "razorpay"
    gateway_url: str = "http://localhost:9100"
    gateway_key: str = ""
    gateway_secret: str = ""
    gateway_timeout_seconds: float = Field(default=10.0, gt=0, le=120.0)
    gateway_max_retries: int = Field(default=3, ge=1, le=10)
    gateway_retry_base_delay: float = Field(default=0.5, ge=0.0, le=5.0)

    model_config = SettingsConfigDict(env_prefix="PAYMENT_")

    @field_validator("gateway_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("Gateway URL must start with http:// or https://")
        return v.rstrip("/")


class DatabaseSettings(BaseSettings):
    url: str = "sqlite:///./data/cargo_dispatch.db"
    echo: bool = False

    model_config = SettingsConfigDict(env_prefix="DATABASE_")


class RedisSettings(BaseSettings):
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: str = ""
    ssl: bool = False
    channel: str = "notifications"

    model_config = SettingsConfigDict(env_prefix="REDIS_")


class RoutingSettings(BaseSettings):
    base_url: str | None = None
    timeout_seconds: float = Field(default=5.0, gt=0, le=60.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    road_factor: float = Field(default=1.3, ge=1.0, le=3.0)
    average_speed_kmh: float = Field(default=25.0, gt=0, le=120.0)

    model_config = SettingsConfigDict(env_prefix="OSRM_")

    @field_validator("base_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("OSRM base URL must start with http:// or https://")
        return v.rstrip("/")


class NotificationSettings(BaseSettings):
    backends: str = Field(
        default="log,websocket",
        description="Comma-separated notifier backends: log, redis, websocket",
    )

    model_config = SettingsConfigDict(env_prefix="NOTIFY_")

    @field_validator("backends")
    @classmethod
    def validate_backends(cls, v: str) -> str:
        allowed = {"log", "redis", "websocket"}
        names = [name.strip() for name in v.split(",") if name.strip()]
        unknown = set(names) - allowed
        if unknown:
            raise ValueError(f"Unknown notifier backends: {', '.join(sorted(unknown))}")
        return ",".join(names)

    @property
    def backend_names(self) -> list[str]:
        return self.backends.split(",") if self.backends else []


class APISettings(BaseSettings):
    key: str = ""

    model_config = SettingsConfigDict(env_prefix="API_")

    @model_validator(mode="after")
    def validate_credentials_provided(self) -> "APISettings":
        if not self.key:
            raise ValueError("Required credential not provided: API_KEY")
        return self


class CORSSettings(BaseSettings):
    origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = SettingsConfigDict(env_prefix="CORS_")


class Settings(BaseSettings):
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    fare: FareSettings = Field(default_factory=FareSettings)
    payment: PaymentSettings = Field(default_factory=PaymentSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    api: APISettings = Field(default_factory=APISettings)
    cors: CORSSettings = Field(default_factory=CORSSettings)

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
    )


def get_settings() -> Settings:
    """Load and validate settings from environment variables."""
    return Settings()
