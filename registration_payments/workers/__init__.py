"""Background workers for async processing."""
from .reconciliation_worker import run_pending_sweep, start_reconciliation_worker

__all__ = ["run_pending_sweep", "start_reconciliation_worker"]
