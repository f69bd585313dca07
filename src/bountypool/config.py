"""Application configuration using Pydantic settings."""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database - SQLAlchemy (asyncpg)
    database_url: str = Field(
        ...,
        description="SQLAlchemy connection string (postgresql+asyncpg://...)",
    )

    # Database - Procrastinate (psycopg)
    procrastinate_database_url: str = Field(
        ...,
        description="Procrastinate connection string (postgresql://...)",
    )

    # GitHub App
    github_app_id: int = Field(..., description="GitHub App ID")
    github_app_private_key: str = Field(
        ...,
        description="GitHub App private key (PEM format)",
    )
    github_app_name: str = Field(
        ...,
        description="Display name of the GitHub App",
    )
    github_app_slug: str = Field(
        ...,
        description="URL slug of the GitHub App (used for installation links)",
    )
    github_webhook_secret: str = Field(
        ...,
        description="Webhook secret for signature verification",
    )
    github_api_url: str = Field("https://api.github.com")

    # Timeouts (seconds)
    github_timeout_seconds: float = Field(15.0, description="Per-call GitHub timeout")
    chain_timeout_seconds: float = Field(60.0, description="Per-call chain gateway timeout")
    request_timeout_seconds: float = Field(
        90.0,
        description="Overall deadline for one core operation",
    )

    # Installation tokens last one hour; refresh this long before expiry
    token_safety_margin_seconds: int = Field(300)

    # Upper bound on concurrent collaborator probes across all requests
    access_probe_concurrency: int = Field(8, ge=1)

    # Reward ledger
    ledger_window_seconds: int = Field(86400, description="Rolling window length")
    funding_daily_limits: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "XDC": Decimal("100000"),
            "ROXN": Decimal("100000"),
            "USDC": Decimal("10000"),
        },
        description="Per-currency funding ceiling per window",
    )
    transfer_daily_limits: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "XDC": Decimal("50000"),
            "ROXN": Decimal("50000"),
            "USDC": Decimal("5000"),
        },
        description="Per-currency reward transfer ceiling per window",
    )

    # Chain gateway (relayer in front of the reward pool contract)
    chain_gateway_url: str = Field(..., description="Base URL of the chain relayer")
    chain_gateway_api_key: str = Field(..., description="API key for the chain relayer")

    # Reconciliation
    reconcile_batch_size: int = Field(50, description="Open allocations and deposits per sweep")

    # Issues listed as bounties unless the caller names other labels
    bounty_labels: list[str] = Field(default_factory=lambda: ["bounty"])

    # Server
    host: str = Field("0.0.0.0")
    port: int = Field(8000)
    log_level: str = Field("INFO")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
