#!/usr/bin/env python3
"""Generate (or import) a gas sponsor wallet and register it.

The key is encrypted with ENCRYPTION_KEY and stored as the chain's active
sponsor wallet; any previous sponsor on that chain is deactivated. Only the
address is printed. Fund it with native gas before sweeps need it.

Usage:
    python scripts/register_gas_sponsor.py <chain> [min_balance]

    SPONSOR_PRIVATE_KEY=<key> python scripts/register_gas_sponsor.py solana

Example:
    python scripts/register_gas_sponsor.py base 0.002
"""

import asyncio
import os
import sys
from decimal import Decimal
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dotenv import load_dotenv
load_dotenv()

from solpay.chains.factory import get_chain_adapter
from solpay.chains.registry import get_supported_chains
from solpay.crypto import get_key_vault
from solpay.ledger.database import close_db, get_session_factory, init_db
from solpay.services.gas_sponsor import GasSponsor


async def register_sponsor(chain: str, min_balance):
    await init_db()
    vault = get_key_vault()
    try:
        private_key = os.environ.get("SPONSOR_PRIVATE_KEY")
        if not private_key:
            private_key = get_chain_adapter(chain).generate_keypair().private_key

        sponsor = GasSponsor(get_session_factory(), vault)
        wallet = await sponsor.register_wallet(chain, private_key, min_balance)
        del private_key

        print(f"Registered {chain} gas sponsor: {wallet.address}")
        print(f"Minimum balance kept: {wallet.min_balance_threshold}")
        print(f"Fund {wallet.address} with native gas on {chain} before sweeps need it")
    finally:
        vault.close()
        await close_db()


if __name__ == "__main__":
    if len(sys.argv) not in (2, 3):
        print(__doc__)
        sys.exit(1)

    chain = sys.argv[1].lower()
    if chain not in get_supported_chains():
        print(f"Unsupported chain {chain}; expected one of {', '.join(get_supported_chains())}")
        sys.exit(1)
    min_balance = Decimal(sys.argv[2]) if len(sys.argv) == 3 else None

    asyncio.run(register_sponsor(chain, min_balance))
