"""Factory for creating chain adapters."""

import logging

from solpay.chains.base import ChainAdapter, SimulatedChainAdapter
from solpay.chains.registry import get_chain_config
from solpay.config import get_settings

logger = logging.getLogger(__name__)

# Cache for adapter instances
_adapter_cache: dict[str, ChainAdapter] = {}


def get_chain_adapter(chain: str) -> ChainAdapter:
    """Get the adapter for a chain.

    Args:
        chain: Chain key (solana, base)

    Returns:
        ChainAdapter instance (simulated in dry-run mode)

    Raises:
        ValueError: If the chain is not supported
    """
    config = get_chain_config(chain)
    if config.key in _adapter_cache:
        return _adapter_cache[config.key]

    settings = get_settings()
    confirmations = settings.get_required_confirmations(config.key)
    token_ids = {
        symbol: settings.get_token_address(config.key, symbol)
        for symbol in config.tokens
        if settings.get_token_address(config.key, symbol)
    }

    adapter: ChainAdapter
    if settings.dry_run:
        logger.info(f"Using simulated adapter for {config.name}")
        adapter = SimulatedChainAdapter(config.key, required_confirmations=confirmations)
    elif config.family == "solana":
        from solpay.chains.solana import SolanaChainAdapter

        adapter = SolanaChainAdapter(
            rpc_url=settings.get_rpc_url(config.key),
            token_ids=token_ids,
            required_confirmations=confirmations,
        )
    else:
        from solpay.chains.evm import EVMChainAdapter

        adapter = EVMChainAdapter(
            config.key,
            rpc_url=settings.get_rpc_url(config.key),
            chain_id=settings.base_chain_id if config.key == "base" else config.chain_id,
            token_ids=token_ids,
            required_confirmations=confirmations,
        )

    _adapter_cache[config.key] = adapter
    return adapter


def reset_adapter_cache() -> None:
    """Clear adapter cache (useful for testing)."""
    _adapter_cache.clear()
