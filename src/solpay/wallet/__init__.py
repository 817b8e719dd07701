"""Custodial deposit wallets."""

from solpay.wallet.keys import KeyPair, address_from_private_key, generate_keypair

__all__ = ["KeyPair", "address_from_private_key", "generate_keypair"]
