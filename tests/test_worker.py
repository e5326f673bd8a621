"""
Unit tests for the reconciliation worker.
"""
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from registration_payments.core.reconciliation import (
    ReconciliationEngine,
    SweepResult,
    SyncResult,
)
from registration_payments.workers import reconciliation_worker
from registration_payments.workers.reconciliation_worker import run_pending_sweep


class TestReconciliationWorker:
    """Test suite for the background sweep."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_pending_sweep(self) -> None:
        engine = AsyncMock(spec=ReconciliationEngine)
        engine.sweep_pending.return_value = SweepResult(
            checked=2,
            updated=1,
            errors=1,
            results=[
                SyncResult(order_id="o1", outcome="confirmed"),
                SyncResult(order_id="o2", outcome="error", message="boom"),
            ],
        )

        await run_pending_sweep(engine)

        engine.sweep_pending.assert_awaited_once_with()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_once_closes_services(self, test_settings: Any) -> None:
        services = AsyncMock()
        services.reconciliation.sweep_pending.side_effect = RuntimeError("database down")

        with patch.object(reconciliation_worker, "build_services", return_value=services), \
                patch.object(reconciliation_worker.signal, "signal"):
            await reconciliation_worker.start_reconciliation_worker(test_settings, run_once=True)

        services.reconciliation.sweep_pending.assert_awaited_once()
        services.close.assert_awaited_once()
