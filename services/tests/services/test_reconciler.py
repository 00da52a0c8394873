"""Tests for the stuck-VM reconciler."""

import asyncio
from unittest.mock import AsyncMock, patch

from vmplane.services import reconciler


class TestReconcileOnce:
    async def test_stuck_vms_without_jobs_are_forced_to_error(self, fake_db, make_vm, running_vm):
        stuck_provisioning = make_vm(user_id="u1", status="provisioning")
        stuck_stopping = running_vm(user_id="u2", status="stopping")
        busy = running_vm(user_id="u3", status="starting")

        async def is_locked(vm_id):
            return vm_id == str(busy.id)

        with (
            patch("vmplane.services.reconciler.get_db_session", fake_db.session),
            patch(
                "vmplane.services.reconciler.vm_service.find_stuck_vms",
                new_callable=AsyncMock,
                return_value=[stuck_provisioning, stuck_stopping, busy],
            ),
            patch("vmplane.services.reconciler.vm_lock.is_locked", side_effect=is_locked),
            patch("vmplane.services.provision_log.add_log", new_callable=AsyncMock) as add_log,
        ):
            forced = await reconciler.reconcile_once()

        assert forced == 2
        assert stuck_provisioning.status == "error"
        assert "Stuck in 'provisioning'" in stuck_provisioning.status_message
        assert stuck_stopping.status == "error"
        assert busy.status == "starting"
        assert {c[0][0] for c in add_log.await_args_list} == {"u1", "u2"}

    async def test_threshold_comes_from_settings(self, fake_db):
        with (
            patch("vmplane.services.reconciler.get_db_session", fake_db.session),
            patch(
                "vmplane.services.reconciler.vm_service.find_stuck_vms",
                new_callable=AsyncMock,
                return_value=[],
            ) as find,
        ):
            assert await reconciler.reconcile_once() == 0

        threshold = find.call_args[0][1]
        assert threshold.total_seconds() == reconciler.settings.reconciler.stuck_after_minutes * 60


class TestRunReconciler:
    async def test_loop_survives_failed_sweep_and_stops_on_cancel(self):
        calls = []

        async def sweep_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("db down")
            return 0

        with (
            patch(
                "vmplane.services.reconciler.reconcile_once",
                side_effect=sweep_once,
            ),
            patch.object(reconciler.settings.reconciler, "interval_seconds", 0),
        ):
            task = asyncio.create_task(reconciler.run_reconciler())
            while len(calls) < 2:
                await asyncio.sleep(0)
            task.cancel()
            await task

        assert task.done() and not task.cancelled()
