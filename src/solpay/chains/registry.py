"""Supported chains and the assets deposited on them.

- Solana (SOL + SPL tokens), ed25519 keys, explicit token accounts
- Base (ETH + ERC-20 tokens), secp256k1 keys
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ChainConfig:
    """Configuration for a blockchain."""

    # Required fields (no defaults) - must come first
    key: str
    name: str
    family: str  # "evm" or "solana"
    native_asset: str
    explorer_url: str

    # Optional fields (with defaults)
    chain_id: Optional[int] = None  # EVM chains only
    decimals: int = 18
    tokens: dict[str, int] = field(default_factory=dict)  # symbol -> decimals

    @property
    def assets(self) -> list[str]:
        """All deposit assets on this chain, native first."""
        return [self.native_asset, *self.tokens]

    def get_decimals(self, asset: str) -> int:
        """Get decimals for an asset on this chain."""
        asset = asset.upper()
        if asset == self.native_asset:
            return self.decimals
        if asset in self.tokens:
            return self.tokens[asset]
        raise ValueError(f"Asset {asset} is not supported on {self.name}")


# ======================
# Chain Configurations
# ======================

CHAINS: dict[str, ChainConfig] = {
    "solana": ChainConfig(
        key="solana",
        name="Solana",
        family="solana",
        native_asset="SOL",
        explorer_url="https://solscan.io",
        decimals=9,
        tokens={"USDC": 6, "USDT": 6},
    ),
    "base": ChainConfig(
        key="base",
        name="Base",
        family="evm",
        native_asset="ETH",
        explorer_url="https://basescan.org",
        chain_id=8453,
        decimals=18,
        tokens={"USDC": 6, "USDT": 6},
    ),
}


def get_chain_config(chain: str) -> ChainConfig:
    """Get configuration for a chain.

    Raises:
        ValueError: If the chain is not supported
    """
    config = CHAINS.get(chain.lower())
    if config is None:
        raise ValueError(f"Unsupported chain: {chain}")
    return config


def get_supported_chains() -> list[str]:
    """Get list of supported chain keys."""
    return list(CHAINS.keys())


def get_asset_group(chain: str, asset: str) -> str:
    """Get the address-sharing group for an asset.

    Every asset on a chain (native coin and tokens) is received by the same
    owner address, so the group is named after the native asset.
    """
    config = get_chain_config(chain)
    config.get_decimals(asset)  # validates the asset
    return config.native_asset
