"""Chain adapters for balance reads, transfers and confirmation tracking."""

from solpay.chains.base import (
    ChainAdapter,
    IncomingTransfer,
    SignedTx,
    SimulatedChainAdapter,
    TxStatus,
    UnsignedTx,
)
from solpay.chains.factory import get_chain_adapter, reset_adapter_cache
from solpay.chains.registry import CHAINS, ChainConfig, get_asset_group, get_chain_config

__all__ = [
    "CHAINS",
    "ChainAdapter",
    "ChainConfig",
    "IncomingTransfer",
    "SignedTx",
    "SimulatedChainAdapter",
    "TxStatus",
    "UnsignedTx",
    "get_asset_group",
    "get_chain_adapter",
    "get_chain_config",
    "reset_adapter_cache",
]
