"""Tests for job submission and per-VM serialization."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from vmplane.errors import InvalidTransitionError, VMBusyError, VMNotFoundError
from vmplane.services import vm_dispatch
from vmplane.services.job_queue import JobKind


def _queue(enqueued=True):
    queue = MagicMock()
    queue.enqueue = AsyncMock(return_value=enqueued)
    return queue


@pytest.fixture
def lock():
    with (
        patch("vmplane.services.vm_dispatch.vm_lock.acquire", new_callable=AsyncMock) as acquire,
        patch("vmplane.services.vm_dispatch.vm_lock.release", new_callable=AsyncMock) as release,
    ):
        acquire.return_value = True
        yield acquire, release


class TestSubmitProvision:
    async def test_row_committed_before_enqueue(self, fake_db, lock):
        queue = _queue()
        order = []
        queue.enqueue.side_effect = lambda job: order.append(("enqueue", fake_db.commits)) or True

        with patch("vmplane.services.vm_dispatch.get_queue", return_value=queue) as get_queue:
            vm, job = await vm_dispatch.submit_provision(
                fake_db, "user-1", vcpus=2, memory_mb=4096, disk_gb=50
            )

        get_queue.assert_called_once_with("provision")
        assert order == [("enqueue", 1)]
        assert job.kind == JobKind.PROVISION
        assert job.vm_id == str(vm.id)
        assert job.lock_token.startswith(f"provision-{vm.id}:")
        assert vm.status == "provisioning"

    async def test_lock_released_when_enqueue_fails(self, fake_db, lock):
        acquire, release = lock
        queue = _queue()
        queue.enqueue.side_effect = ConnectionError("redis down")

        with patch("vmplane.services.vm_dispatch.get_queue", return_value=queue):
            with pytest.raises(ConnectionError):
                await vm_dispatch.submit_provision(fake_db, "user-1")

        release.assert_awaited_once()


class TestSubmitControl:
    async def test_stop_running_vm(self, fake_db, running_vm, lock):
        acquire, _ = lock
        vm = running_vm()
        fake_db.add(vm)
        queue = _queue()

        with patch("vmplane.services.vm_dispatch.get_queue", return_value=queue) as get_queue:
            job = await vm_dispatch.submit_stop(fake_db, vm.id)

        get_queue.assert_called_once_with("control")
        assert job.id == f"stop-{vm.id}"
        assert job.payload == {"prior_status": "running"}
        acquire.assert_awaited_once_with(str(vm.id), job.lock_token)
        # Submission never writes status
        assert vm.status == "running"

    async def test_unknown_vm(self, fake_db, lock):
        with pytest.raises(VMNotFoundError):
            await vm_dispatch.submit_start(fake_db, "0190d2a4-0000-7000-8000-000000000000")

    @pytest.mark.parametrize(
        ("submit", "status"),
        [
            (vm_dispatch.submit_start, "running"),
            (vm_dispatch.submit_start, "provisioning"),
            (vm_dispatch.submit_stop, "stopped"),
            (vm_dispatch.submit_destroy, "provisioning"),
            (vm_dispatch.submit_destroy, "destroying"),
        ],
    )
    async def test_incompatible_status_rejected(self, fake_db, running_vm, lock, submit, status):
        acquire, _ = lock
        vm = running_vm(status=status)
        fake_db.add(vm)

        with pytest.raises(InvalidTransitionError):
            await submit(fake_db, vm.id)

        acquire.assert_not_awaited()

    async def test_destroy_from_error(self, fake_db, make_vm, lock):
        vm = make_vm(status="error", status_message="boom")
        fake_db.add(vm)

        with patch("vmplane.services.vm_dispatch.get_queue", return_value=_queue()):
            job = await vm_dispatch.submit_destroy(fake_db, vm.id)

        assert job.kind == JobKind.DESTROY
        assert job.payload["prior_status"] == "error"

    async def test_overlapping_submission_is_busy(self, fake_db, running_vm, lock):
        acquire, _ = lock
        acquire.return_value = False
        vm = running_vm()
        fake_db.add(vm)
        queue = _queue()

        with patch("vmplane.services.vm_dispatch.get_queue", return_value=queue):
            with pytest.raises(VMBusyError):
                await vm_dispatch.submit_destroy(fake_db, vm.id)

        queue.enqueue.assert_not_awaited()

    async def test_duplicate_job_releases_lock(self, fake_db, running_vm, lock):
        _, release = lock
        vm = running_vm()
        fake_db.add(vm)

        with patch("vmplane.services.vm_dispatch.get_queue", return_value=_queue(enqueued=False)):
            with pytest.raises(VMBusyError):
                await vm_dispatch.submit_stop(fake_db, vm.id)

        release.assert_awaited_once()
