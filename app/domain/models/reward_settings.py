"""
Per-store reward settings (persisted as JSON in ``store_settings``)
"""
import enum
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.core.validation import (
    UrlValidator,
    optional_url_validator,
    percentage_validator,
)
from app.domain.models.transaction import Platform


class DeliveryMethod(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"


class FundingSource(str, enum.Enum):
    LIGHTNING = "lightning"
    ONCHAIN = "onchain"
    ECASH = "ecash"


class PlatformFlags(enum.IntFlag):
    NONE = 0
    SHOPIFY = 1
    SQUARE = 2
    BTCPAY = 4
    ALL = SHOPIFY | SQUARE | BTCPAY


PLATFORM_FLAG = {
    Platform.SHOPIFY: PlatformFlags.SHOPIFY,
    Platform.SQUARE: PlatformFlags.SQUARE,
    Platform.BTCPAY: PlatformFlags.BTCPAY,
}

DEFAULT_EMAIL_SUBJECT = "Your Bitcoin Reward - {reward_sats} sats"
DEFAULT_EMAIL_BODY = (
    "Thank you for your purchase{order_suffix}!\n\n"
    "You've earned {reward_sats} sats in Bitcoin rewards.\n\n"
    "Claim your reward: {claim_link}"
)
DEFAULT_SMS_TEMPLATE = "You earned {reward_sats} sats! Claim: {claim_link}"


class _TemplateValues(dict):
    """placeholder לא מוכר נשאר כמו שהוא"""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render_template(
    template: str,
    *,
    reward_sats: int,
    claim_link: str,
    order_id: str | None = None,
) -> str:
    values = _TemplateValues(
        reward_sats=reward_sats,
        claim_link=claim_link,
        order_id=order_id or "",
        order_suffix=f" (order {order_id})" if order_id else "",
    )
    return template.format_map(values)


class ShopifyCredentials(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shop_url: str = ""
    access_token: str = ""
    webhook_secret: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.shop_url and self.access_token)


class SquareCredentials(BaseModel):
    model_config = ConfigDict(extra="ignore")

    application_id: str = ""
    access_token: str = ""
    location_id: str = ""
    environment: str = "production"  # production | sandbox
    webhook_signature_key: str = ""
    notification_url: str = ""

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        v = (v or "production").lower()
        if v not in ("production", "sandbox"):
            raise ValueError("environment must be 'production' or 'sandbox'")
        return v

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token)


class BtcpayCredentials(BaseModel):
    model_config = ConfigDict(extra="ignore")

    webhook_secret: str = ""


class RewardsConfig(BaseModel):
    """Funding and message configuration; read-only to the pipeline"""

    model_config = ConfigDict(extra="ignore")

    funding_source: FundingSource = FundingSource.LIGHTNING
    funding_fallbacks: list[FundingSource] = Field(default_factory=list)
    reward_percentage: Decimal = Decimal("0")
    max_reward_sats: int | None = Field(default=None, ge=0)
    mint_url: str = ""
    unit: str = "sat"
    email_subject_template: str = DEFAULT_EMAIL_SUBJECT
    email_body_template: str = DEFAULT_EMAIL_BODY
    sms_template: str = DEFAULT_SMS_TEMPLATE

    _validate_percentage = field_validator("reward_percentage")(percentage_validator)
    _validate_mint_url = field_validator("mint_url")(optional_url_validator)

    @field_validator("email_subject_template", "email_body_template", "sms_template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        # נבדקת בשמירה, לא אחרי המימון
        try:
            render_template(v, reward_sats=1, claim_link="x", order_id="1")
        except (ValueError, KeyError, IndexError, AttributeError, TypeError) as exc:
            raise ValueError(f"invalid message template: {exc}") from exc
        return v

    @field_validator("funding_source", mode="before")
    @classmethod
    def normalize_funding_source(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("funding_fallbacks", mode="before")
    @classmethod
    def normalize_funding_fallbacks(cls, v):
        if v is None:
            return []
        return [item.lower() if isinstance(item, str) else item for item in v]

    def funding_order(self) -> list[FundingSource]:
        """Preferred source first, then fallbacks; duplicates dropped"""
        order: list[FundingSource] = []
        for source in [self.funding_source, *self.funding_fallbacks]:
            if source not in order:
                order.append(source)
        return order


class StoreRewardSettings(BaseModel):
    """Settings of one store"""

    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    external_reward_percentage: Decimal = Decimal("0")
    btcpay_reward_percentage: Decimal = Decimal("0")
    delivery_method: DeliveryMethod = DeliveryMethod.EMAIL
    # None = בדיקת הפלטפורמה מדולגת
    enabled_platforms: PlatformFlags | None = None
    minimum_transaction_amount: Decimal = Decimal("0")
    maximum_reward_satoshis: int | None = Field(default=None, ge=0)
    maximum_single_reward_satoshis: int = Field(default=1_000_000, ge=0)
    preferred_rate_provider: str = "coingecko"
    server_base_url: str = ""
    display_timeout_seconds: int = Field(default=60, gt=0)
    display_auto_refresh_seconds: int = Field(default=10, gt=0)
    display_timeframe_minutes: int = Field(default=60, gt=0)

    shopify: ShopifyCredentials = Field(default_factory=ShopifyCredentials)
    square: SquareCredentials = Field(default_factory=SquareCredentials)
    btcpay: BtcpayCredentials = Field(default_factory=BtcpayCredentials)
    rewards: RewardsConfig = Field(default_factory=RewardsConfig)

    _validate_external_pct = field_validator("external_reward_percentage")(percentage_validator)
    _validate_btcpay_pct = field_validator("btcpay_reward_percentage")(percentage_validator)
    _validate_base_url = field_validator("server_base_url")(optional_url_validator)

    @field_validator("delivery_method", mode="before")
    @classmethod
    def normalize_delivery_method(cls, v):
        return v.lower() if isinstance(v, str) else v

    @field_validator("enabled_platforms", mode="before")
    @classmethod
    def parse_platform_flags(cls, v):
        """Accepts the int value or a list of platform names"""
        if v is None or isinstance(v, PlatformFlags):
            return v
        if isinstance(v, int) and not isinstance(v, bool):
            return PlatformFlags(v)
        if isinstance(v, (list, tuple)):
            flags = PlatformFlags.NONE
            for name in v:
                flags |= PLATFORM_FLAG[Platform(str(name).lower())]
            return flags
        raise ValueError("enabled_platforms must be an int flag value or a list of platform names")

    @model_validator(mode="after")
    def validate_ecash_mint(self) -> "StoreRewardSettings":
        if FundingSource.ECASH in self.rewards.funding_order() and not self.rewards.mint_url:
            raise ValueError("rewards.mint_url is required when ecash is a funding source")
        return self

    def is_platform_enabled(self, platform: Platform) -> bool:
        if self.enabled_platforms is None:
            return True
        return bool(self.enabled_platforms & PLATFORM_FLAG[platform])

    def reward_percentage_for(self, platform: Platform) -> Decimal:
        if platform == Platform.BTCPAY:
            return self.btcpay_reward_percentage
        return self.external_reward_percentage

    @property
    def normalized_mint_url(self) -> str:
        return UrlValidator.normalize(self.rewards.mint_url) if self.rewards.mint_url else ""
