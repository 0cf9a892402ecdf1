"""Orchestration layer — multi-step workflows and scheduled sweeps."""

from marketplace_escrow.orchestration.checkout import run_checkout
from marketplace_escrow.orchestration.sweeps import SweepReport, run_sweeps

__all__ = ["SweepReport", "run_checkout", "run_sweeps"]
