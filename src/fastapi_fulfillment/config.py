"""Fulfillment configuration."""

from decimal import Decimal

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _strip_quotes(value: str) -> str:
    # Some env loaders keep literal quotes around values.
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        value = value[1:-1]
    return value.strip()


class CarrierSettings(BaseModel):
    """Shipping aggregator connection settings."""

    base_url: str = "https://apiv2.shiprocket.in/v1/external"
    email: str = ""
    password: SecretStr = SecretStr("")
    token_ttl_seconds: int = 24 * 60 * 60
    token_refresh_margin_seconds: int = 60
    timeout_seconds: float = 15.0
    retry_attempts: int = 2
    retry_backoff_seconds: float = 1.0
    tracking_url_template: str = "https://shiprocket.co/tracking/{awb}"
    webhook_token: SecretStr | None = None

    @field_validator("email", mode="before")
    @classmethod
    def _clean_email(cls, value: str) -> str:
        return _strip_quotes(str(value))

    @field_validator("password", mode="before")
    @classmethod
    def _clean_password(cls, value):
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        return _strip_quotes(str(value))


class PackageSettings(BaseModel):
    """Default parcel dimensions (cm) and weight per unit (kg)."""

    length: Decimal = Decimal("15")
    breadth: Decimal = Decimal("15")
    height: Decimal = Decimal("10")
    weight_per_unit_kg: Decimal = Decimal("0.5")


class EmailSettings(BaseModel):
    """Transactional email provider settings."""

    api_key: SecretStr = SecretStr("")
    base_url: str = "https://api.resend.com"
    from_email: str = "Store <orders@example.com>"
    reply_to: str | None = None
    timeout_seconds: float = 10.0
    store_name: str = "Store"


class FulfillmentConfig(BaseSettings):
    """Runtime config for the fulfillment adapter."""

    model_config = SettingsConfigDict(
        env_prefix="FULFILLMENT_",
        env_nested_delimiter="__",
    )

    carrier: CarrierSettings = Field(default_factory=CarrierSettings)
    package: PackageSettings = Field(default_factory=PackageSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    pickup_location: str | None = None
    auto_assign_courier_id: int | None = None
    auto_assign_cheapest: bool = False
    retry_enabled: bool = True
    retry_max_attempts: int = 5
    retry_backoff_seconds: int = 60
