"""Configuration settings for the SubSync backend.

Wraps environment variables and provides defaults.
"""

from typing import Optional

from pydantic import Field, PostgresDsn, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pydantic settings class.

    Attributes:
    ----------
        PROJECT_NAME (str): The name of the project.
        LOCAL_DEVELOPMENT (bool): Whether the application is running locally.
        ENVIRONMENT (str): The deployment environment (local, dev, test, prod).
        DEBUG (bool): Whether debug mode is enabled.
        LOG_LEVEL (str): The logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        POSTGRES_HOST (str): The PostgreSQL server hostname.
        POSTGRES_PORT (int): The PostgreSQL server port.
        POSTGRES_DB (str): The PostgreSQL database name.
        POSTGRES_USER (str): The PostgreSQL username.
        POSTGRES_PASSWORD (str): The PostgreSQL password.
        SQLALCHEMY_ASYNC_DATABASE_URI (Optional[PostgresDsn]): The SQLAlchemy async database URI.
        REDIS_HOST (str): The Redis server hostname.
        REDIS_PORT (int): The Redis server port.
        REDIS_PASSWORD (Optional[str]): The Redis password (if authentication is enabled).
        REDIS_DB (int): The Redis database number.
        STRIPE_ENABLED (bool): Whether the Stripe integration is enabled.
        STRIPE_SECRET_KEY (Optional[str]): The Stripe secret API key.
        STRIPE_WEBHOOK_SECRET (Optional[str]): The signing secret of the webhook endpoint.
        STRIPE_PRODUCT_* (Optional[str]): The Stripe product id backing each plan tier.
        STRIPE_PRICE_*_MONTHLY / _YEARLY (Optional[str]): Preferred price ids per paid tier.
            When unset, the price is looked up from the tier's product.
        SUBSCRIPTION_CACHE_PREFIX (str): Key prefix of cached subscription snapshots.
        WEBHOOK_EVENT_TTL_SECONDS (int): How long a processed webhook event id is remembered.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "SubSync"
    LOCAL_DEVELOPMENT: bool = False
    ENVIRONMENT: str = "local"

    # Debug configuration
    DEBUG: bool = False

    # Logging configuration
    LOG_LEVEL: str = "INFO"

    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "subsync"
    POSTGRES_USER: str = "subsync"
    POSTGRES_PASSWORD: str = "subsync"
    SQLALCHEMY_ASYNC_DATABASE_URI: Optional[PostgresDsn] = Field(
        default=None, validate_default=True
    )

    # Redis configuration
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_DB: int = 0

    # Stripe configuration
    STRIPE_ENABLED: bool = False
    STRIPE_SECRET_KEY: Optional[str] = Field(default=None, validate_default=True)
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(default=None, validate_default=True)

    STRIPE_PRODUCT_STARTER: Optional[str] = None
    STRIPE_PRODUCT_BASIC: Optional[str] = None
    STRIPE_PRODUCT_ESSENTIALS: Optional[str] = None
    STRIPE_PRODUCT_PLUS: Optional[str] = None
    STRIPE_PRODUCT_ADVANCED: Optional[str] = None

    STRIPE_PRICE_BASIC_MONTHLY: Optional[str] = None
    STRIPE_PRICE_BASIC_YEARLY: Optional[str] = None
    STRIPE_PRICE_ESSENTIALS_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ESSENTIALS_YEARLY: Optional[str] = None
    STRIPE_PRICE_PLUS_MONTHLY: Optional[str] = None
    STRIPE_PRICE_PLUS_YEARLY: Optional[str] = None
    STRIPE_PRICE_ADVANCED_MONTHLY: Optional[str] = None
    STRIPE_PRICE_ADVANCED_YEARLY: Optional[str] = None

    # Subscription cache configuration
    SUBSCRIPTION_CACHE_PREFIX: str = "stripe:subscription:"
    WEBHOOK_EVENT_TTL_SECONDS: int = 86400

    @field_validator("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET", mode="before")
    def validate_stripe_settings(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        """Validate Stripe credentials when STRIPE_ENABLED is True.

        Args:
        ----
            v (Optional[str]): The value of the Stripe setting.
            info (ValidationInfo): The validation context containing all field values.

        Returns:
        -------
            Optional[str]: The validated Stripe setting.

        Raises:
        ------
            ValueError: If STRIPE_ENABLED is True and the Stripe setting is empty.
        """
        if info.data.get("STRIPE_ENABLED", False) and not v:
            raise ValueError(f"{info.field_name} must be set when STRIPE_ENABLED is True")
        return v

    @field_validator("SQLALCHEMY_ASYNC_DATABASE_URI", mode="before")
    def assemble_db_connection(cls, v: Optional[str], info: ValidationInfo) -> PostgresDsn:
        """Build the SQLAlchemy database URI.

        Args:
        ----
            v (Optional[str]): The value of the SQLALCHEMY_ASYNC_DATABASE_URI setting.
            info (ValidationInfo): The validation context containing all field values.

        Returns:
        -------
            PostgresDsn: The assembled SQLAlchemy async database URI.

        """
        if isinstance(v, str):
            return v

        return PostgresDsn.build(
            scheme="postgresql+asyncpg",
            username=info.data.get("POSTGRES_USER"),
            password=info.data.get("POSTGRES_PASSWORD"),
            host=info.data.get("POSTGRES_HOST", "localhost"),
            port=info.data.get("POSTGRES_PORT"),
            path=f"{info.data.get('POSTGRES_DB') or ''}",
        )

    @property
    def stripe_product_ids(self) -> dict[str, Optional[str]]:
        """The configured Stripe product id per plan tier.

        Returns:
            dict[str, Optional[str]]: Plan tier value to product id.
        """
        return {
            "starter": self.STRIPE_PRODUCT_STARTER,
            "basic": self.STRIPE_PRODUCT_BASIC,
            "essentials": self.STRIPE_PRODUCT_ESSENTIALS,
            "plus": self.STRIPE_PRODUCT_PLUS,
            "advanced": self.STRIPE_PRODUCT_ADVANCED,
        }

    @property
    def stripe_price_ids(self) -> dict[tuple[str, str], Optional[str]]:
        """The configured Stripe price id per (plan tier, billing interval).

        Returns:
            dict[tuple[str, str], Optional[str]]: (tier, interval) to price id.
        """
        return {
            ("basic", "monthly"): self.STRIPE_PRICE_BASIC_MONTHLY,
            ("basic", "yearly"): self.STRIPE_PRICE_BASIC_YEARLY,
            ("essentials", "monthly"): self.STRIPE_PRICE_ESSENTIALS_MONTHLY,
            ("essentials", "yearly"): self.STRIPE_PRICE_ESSENTIALS_YEARLY,
            ("plus", "monthly"): self.STRIPE_PRICE_PLUS_MONTHLY,
            ("plus", "yearly"): self.STRIPE_PRICE_PLUS_YEARLY,
            ("advanced", "monthly"): self.STRIPE_PRICE_ADVANCED_MONTHLY,
            ("advanced", "yearly"): self.STRIPE_PRICE_ADVANCED_YEARLY,
        }


settings = Settings()
