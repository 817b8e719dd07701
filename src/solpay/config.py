"""Application configuration using pydantic-settings.

Every recognized option maps to an environment variable of the same name in
upper case (e.g. ``ENCRYPTION_KEY``, ``BASE_RPC_URL``, ``QUOTE_LOCK_SECONDS``).
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")
    dry_run: bool = Field(
        default=True, description="Use simulated chain adapters and settlement provider"
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/solpay.db",
        description="Database connection URL",
    )

    # ======================
    # Key custody
    # ======================
    encryption_key: Optional[str] = Field(
        default=None, description="Master secret for private key envelope encryption"
    )
    kdf_iterations: int = Field(default=100_000, description="PBKDF2 iterations per record")
    kdf_workers: int = Field(default=2, description="Threads reserved for key derivation")

    # ======================
    # Solana
    # ======================
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    min_confirmations_solana: int = Field(default=1, description="Required confirmations on Solana")
    solana_treasury_address: Optional[str] = Field(default=None, description="Solana treasury")
    usdc_sol_mint: str = Field(default="EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")
    usdt_sol_mint: str = Field(default="Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB")
    solana_sponsor_min_balance: Decimal = Field(
        default=Decimal("0.01"), description="Minimum SOL kept in the gas sponsor wallet"
    )

    # ======================
    # Base (EVM)
    # ======================
    base_rpc_url: str = Field(default="https://mainnet.base.org", description="Base RPC URL")
    base_chain_id: int = Field(default=8453, description="Base chain id")
    min_confirmations_base: int = Field(default=12, description="Required confirmations on Base")
    base_treasury_address: Optional[str] = Field(default=None, description="Base treasury")
    base_usdc_contract: str = Field(default="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913")
    base_usdt_contract: str = Field(default="0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2")
    base_sponsor_min_balance: Decimal = Field(
        default=Decimal("0.002"), description="Minimum ETH kept in the gas sponsor wallet"
    )

    # ======================
    # Pricing
    # ======================
    pyth_price_service_url: str = Field(
        default="https://hermes.pyth.network", description="Primary price oracle"
    )
    pyth_api_key: Optional[str] = Field(default=None, description="Pyth API key")
    price_fallback_url: Optional[str] = Field(
        default=None, description="Secondary price oracle returning {\"price\": ...}"
    )
    oracle_timeout_seconds: float = Field(default=5.0, description="Oracle request timeout")
    price_cache_ttl_seconds: float = Field(default=30.0, description="Spot/FX cache TTL")
    fx_rates: dict[str, Decimal] = Field(
        default_factory=lambda: {"USD_NGN": Decimal("1600")},
        description="Configured FX rates keyed FROM_TO",
    )

    # ======================
    # Fees & quotes
    # ======================
    default_spread_bps: int = Field(default=50, description="Spread in basis points")
    flat_fee_ngn: Decimal = Field(default=Decimal("100"), description="Flat fee in fiat units")
    variable_fee_bps: int = Field(default=100, description="Variable fee in basis points")
    quote_lock_seconds: int = Field(default=120, description="Quote lock duration")
    slippage_tolerance_bps: int = Field(default=100, description="Max price move at execution")

    # ======================
    # Settlement provider
    # ======================
    bread_api_url: str = Field(default="https://api.bread.africa", description="Offramp API")
    bread_api_key: Optional[str] = Field(default=None, description="Offramp API service key")
    settlement_timeout_seconds: float = Field(default=30.0, description="Provider call timeout")
    reconcile_min_age_seconds: int = Field(default=60, description="Skip payouts younger than this")
    reconcile_lookback_hours: int = Field(default=24, description="Ignore payouts older than this")
    anomaly_age_seconds: int = Field(
        default=300, description="Unresolved payouts older than this are flagged for review"
    )
    reconcile_interval_seconds: int = Field(default=30, description="Payout poll interval")
    verification_tiers: dict[str, int] = Field(
        default_factory=dict,
        description='Static verification tiers as JSON, e.g. {"user-1": 2}',
    )

    # ======================
    # Deposits & sweeps
    # ======================
    max_sweep_attempts: int = Field(default=5, description="Failures before manual review")
    deposit_poll_interval_seconds: int = Field(default=15, description="Deposit poll interval")
    sweep_interval_seconds: int = Field(default=60, description="Sweep pass interval")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_rpc_url(self, chain: str) -> str:
        """Get RPC URL for a specific chain."""
        rpc_map = {
            "solana": self.solana_rpc_url,
            "base": self.base_rpc_url,
        }
        return rpc_map.get(chain.lower(), "")

    def get_required_confirmations(self, chain: str) -> int:
        """Get the confirmation threshold for a chain."""
        confirmations = {
            "solana": self.min_confirmations_solana,
            "base": self.min_confirmations_base,
        }
        return confirmations.get(chain.lower(), 12)

    def get_treasury_address(self, chain: str) -> Optional[str]:
        """Get the configured treasury hot address for a chain."""
        treasury_map = {
            "solana": self.solana_treasury_address,
            "base": self.base_treasury_address,
        }
        return treasury_map.get(chain.lower())

    def get_sponsor_min_balance(self, chain: str) -> Decimal:
        """Get the minimum native balance the sponsor wallet must keep."""
        thresholds = {
            "solana": self.solana_sponsor_min_balance,
            "base": self.base_sponsor_min_balance,
        }
        return thresholds.get(chain.lower(), Decimal("0"))

    def get_token_address(self, chain: str, asset: str) -> Optional[str]:
        """Get the mint/contract address for a token on a chain."""
        token_map = {
            ("solana", "USDC"): self.usdc_sol_mint,
            ("solana", "USDT"): self.usdt_sol_mint,
            ("base", "USDC"): self.base_usdc_contract,
            ("base", "USDT"): self.base_usdt_contract,
        }
        return token_map.get((chain.lower(), asset.upper()))

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "database_url": self._redact_url(self.database_url),
            "encryption_key": "***" if self.encryption_key else "(not set)",
            "chains": {
                "solana": {
                    "rpc": self.solana_rpc_url,
                    "confirmations": self.min_confirmations_solana,
                    "treasury": self.solana_treasury_address or "(not set)",
                },
                "base": {
                    "rpc": self.base_rpc_url,
                    "confirmations": self.min_confirmations_base,
                    "treasury": self.base_treasury_address or "(not set)",
                },
            },
            "fees": {
                "spread_bps": self.default_spread_bps,
                "flat_fee": str(self.flat_fee_ngn),
                "variable_fee_bps": self.variable_fee_bps,
                "quote_lock_seconds": self.quote_lock_seconds,
                "slippage_tolerance_bps": self.slippage_tolerance_bps,
            },
            "settlement": {
                "url": self.bread_api_url,
                "api_key": "***" if self.bread_api_key else "(not set)",
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
