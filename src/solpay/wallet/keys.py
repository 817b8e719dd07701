"""Random keypair generation per signature curve.

EVM chains use secp256k1 (hex private key), Solana uses ed25519 (base58
encoded 64-byte keypair). Private keys leave this module only to be
encrypted by the KeyVault.
"""

from dataclasses import dataclass, field

from eth_account import Account
from eth_utils import to_hex
from solders.keypair import Keypair


@dataclass
class KeyPair:
    """A freshly generated address and its private key."""

    address: str
    private_key: str = field(repr=False)
    curve: str = "secp256k1"


def generate_keypair(family: str) -> KeyPair:
    """Generate a random keypair for a chain family.

    Args:
        family: "evm" or "solana"

    Returns:
        KeyPair with the on-chain address and the encoded private key
    """
    if family == "evm":
        account = Account.create()
        return KeyPair(address=account.address, private_key=to_hex(account.key))
    if family == "solana":
        keypair = Keypair()
        return KeyPair(address=str(keypair.pubkey()), private_key=str(keypair), curve="ed25519")
    raise ValueError(f"Unsupported chain family: {family}")


def address_from_private_key(family: str, private_key: str) -> str:
    """Derive the address controlled by an encoded private key."""
    if family == "evm":
        return Account.from_key(private_key).address
    if family == "solana":
        return str(Keypair.from_base58_string(private_key).pubkey())
    raise ValueError(f"Unsupported chain family: {family}")
