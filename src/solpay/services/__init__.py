"""Custody and settlement services."""

from solpay.services.deposit_tracker import DepositTracker
from solpay.services.gas_sponsor import GasSponsor, SponsorCapacity
from solpay.services.settlement import ReconcileReport, SettlementDispatcher
from solpay.services.sweeper import SweepResult, Sweeper

__all__ = [
    "DepositTracker",
    "GasSponsor",
    "ReconcileReport",
    "SettlementDispatcher",
    "SponsorCapacity",
    "SweepResult",
    "Sweeper",
]
