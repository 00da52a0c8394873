"""Tests for the lifecycle job handlers."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from vmplane.db.models import utc_now
from vmplane.errors import (
    ControlError,
    InvalidTransitionError,
    PollTimeoutError,
    PreconditionError,
    ProvisionError,
    VMNotFoundError,
)
from vmplane.provisioning.protocol import VMDetails
from vmplane.services.job_queue import CONTROL_QUEUE, Job, JobKind, RedisJobQueue
from vmplane.worker import handlers


@pytest.fixture
def provisioner():
    mock = AsyncMock()
    mock.create_vm.return_value = VMDetails("i-1", "10.0.0.5", 2222)
    return mock


@pytest.fixture(autouse=True)
def _wire(fake_db, provisioner):
    with (
        patch("vmplane.worker.handlers.get_db_session", fake_db.session),
        patch("vmplane.worker.handlers.get_provisioner", return_value=provisioner),
        patch("vmplane.services.provision_log.add_log", new_callable=AsyncMock),
        patch("vmplane.services.provision_log.clear_logs", new_callable=AsyncMock),
    ):
        yield


def _job(kind: JobKind, vm, attempts: int = 1, **payload) -> Job:
    job = Job.create(kind, str(vm.id), vm.user_id, payload=payload)
    job.attempts = attempts
    return job


def _assert_network_invariant(vm):
    if vm.status in ("running", "starting"):
        assert vm.ip_address is not None and vm.ssh_port is not None


class TestVMName:
    def test_prefix_and_compact_id(self):
        name = handlers.vm_name("0190d2a4-1234-7000-8000-000000000000")
        assert name == "vmplane-0190d2a41234"


class TestProvision:
    async def test_provision_persists_running_record(self, fake_db, make_vm, provisioner):
        vm = make_vm(vcpus=2, memory_mb=4096, disk_gb=50, environment_vars={"A": "1"})
        fake_db.add(vm)

        await handlers.handle_provision(_job(JobKind.PROVISION, vm))

        spec = provisioner.create_vm.call_args[0][0]
        assert (spec.vcpus, spec.memory_mb, spec.disk_gb) == (2, 4096, 50)
        assert spec.env_vars == {"A": "1"}
        assert vm.status == "running"
        assert vm.vcpus == 2 and vm.memory_mb == 4096
        assert vm.ip_address == "10.0.0.5"
        assert vm.ssh_port == 2222
        assert vm.instance_id == "i-1"
        assert vm.ssh_username == "vmuser"
        _assert_network_invariant(vm)

    async def test_first_delivery_clears_previous_progress_lines(self, fake_db, make_vm):
        vm = make_vm(user_id="user-7")
        fake_db.add(vm)

        with patch(
            "vmplane.services.provision_log.clear_logs", new_callable=AsyncMock
        ) as clear_logs:
            await handlers.handle_provision(_job(JobKind.PROVISION, vm))

        clear_logs.assert_awaited_once_with("user-7")

    async def test_failure_marks_error_and_propagates(self, fake_db, make_vm, provisioner):
        vm = make_vm()
        fake_db.add(vm)
        provisioner.create_vm.side_effect = ProvisionError("quota exceeded")

        with pytest.raises(ProvisionError):
            await handlers.handle_provision(_job(JobKind.PROVISION, vm))

        assert vm.status == "error"
        assert "quota exceeded" in vm.status_message
        assert vm.ip_address is None

    async def test_poll_timeout_marks_error(self, fake_db, make_vm, provisioner):
        vm = make_vm()
        fake_db.add(vm)
        provisioner.create_vm.side_effect = PollTimeoutError("run-1", 60, "applying")

        with pytest.raises(PollTimeoutError):
            await handlers.handle_provision(_job(JobKind.PROVISION, vm))

        assert vm.status == "error"
        assert "PollTimeoutError" in vm.status_message

    async def test_queue_retry_re_enters_from_error(self, fake_db, make_vm, provisioner):
        vm = make_vm(status="error", status_message="first attempt failed")
        fake_db.add(vm)

        with patch(
            "vmplane.services.provision_log.clear_logs", new_callable=AsyncMock
        ) as clear_logs:
            await handlers.handle_provision(_job(JobKind.PROVISION, vm, attempts=2))

        clear_logs.assert_not_awaited()
        assert vm.status == "running"
        assert vm.status_message == ""

    async def test_first_delivery_from_error_is_invalid(self, fake_db, make_vm, provisioner):
        vm = make_vm(status="error")
        fake_db.add(vm)

        with pytest.raises(InvalidTransitionError):
            await handlers.handle_provision(_job(JobKind.PROVISION, vm, attempts=1))

        provisioner.create_vm.assert_not_awaited()

    async def test_redelivery_after_success_is_noop(self, fake_db, running_vm, provisioner):
        vm = running_vm()
        fake_db.add(vm)

        await handlers.handle_provision(_job(JobKind.PROVISION, vm, attempts=2))

        provisioner.create_vm.assert_not_awaited()
        assert vm.status == "running"

    async def test_deleted_vm_is_noop(self, make_vm, provisioner):
        vm = make_vm()

        await handlers.handle_provision(_job(JobKind.PROVISION, vm))

        provisioner.create_vm.assert_not_awaited()

    async def test_row_vanished_during_create_destroys_orphan(self, fake_db, make_vm, provisioner):
        vm = make_vm()
        fake_db.add(vm)

        async def create_and_vanish(spec):
            fake_db.vms.pop(vm.id)
            return VMDetails("i-9", "10.0.0.9", 22)

        provisioner.create_vm.side_effect = create_and_vanish

        await handlers.handle_provision(_job(JobKind.PROVISION, vm))

        provisioner.destroy_vm.assert_awaited_once_with("i-9")


class TestStart:
    async def test_start_stopped_vm(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="stopped", last_started_at=utc_now() - timedelta(days=1))
        fake_db.add(vm)

        await handlers.handle_start(_job(JobKind.START, vm))

        provisioner.start_vm.assert_awaited_once_with("i-1")
        assert vm.status == "running"
        assert vm.last_started_at > utc_now() - timedelta(minutes=1)
        _assert_network_invariant(vm)

    async def test_already_running_is_noop(self, fake_db, running_vm, provisioner):
        vm = running_vm()
        fake_db.add(vm)

        await handlers.handle_start(_job(JobKind.START, vm))

        provisioner.start_vm.assert_not_awaited()

    async def test_redelivery_while_starting_finishes(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="starting")
        fake_db.add(vm)

        await handlers.handle_start(_job(JobKind.START, vm, attempts=2))

        provisioner.start_vm.assert_awaited_once()
        assert vm.status == "running"

    async def test_start_while_provisioning_is_invalid(self, fake_db, make_vm, provisioner):
        vm = make_vm(status="provisioning")
        fake_db.add(vm)

        with pytest.raises(InvalidTransitionError):
            await handlers.handle_start(_job(JobKind.START, vm))

        assert vm.status == "provisioning"
        provisioner.start_vm.assert_not_awaited()

    async def test_start_failure_marks_error(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="stopped")
        fake_db.add(vm)
        provisioner.start_vm.side_effect = ControlError("docker start failed")

        with pytest.raises(ControlError) as exc_info:
            await handlers.handle_start(_job(JobKind.START, vm))

        assert vm.status == "error"
        assert exc_info.value.retryable is False

    async def test_missing_instance_marks_error(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="stopped", instance_id=None)
        fake_db.add(vm)

        with pytest.raises(PreconditionError):
            await handlers.handle_start(_job(JobKind.START, vm))

        assert vm.status == "error"

    async def test_missing_vm_raises(self, make_vm):
        with pytest.raises(VMNotFoundError):
            await handlers.handle_start(_job(JobKind.START, make_vm()))


class TestStop:
    async def test_stop_accrues_floor_minutes(self, fake_db, running_vm, provisioner):
        vm = running_vm(
            total_runtime_minutes=30, last_started_at=utc_now() - timedelta(seconds=125)
        )
        fake_db.add(vm)

        await handlers.handle_stop(_job(JobKind.STOP, vm))

        provisioner.stop_vm.assert_awaited_once_with("i-1")
        assert vm.status == "stopped"
        assert vm.total_runtime_minutes == 32
        assert vm.last_stopped_at is not None

    async def test_stop_twice_equals_stop_once(self, fake_db, running_vm, provisioner):
        vm = running_vm(total_runtime_minutes=0, last_started_at=utc_now() - timedelta(minutes=5))
        fake_db.add(vm)
        job = _job(JobKind.STOP, vm)

        await handlers.handle_stop(job)
        after_first = (vm.status, vm.total_runtime_minutes, vm.last_stopped_at)
        await handlers.handle_stop(job)

        assert (vm.status, vm.total_runtime_minutes, vm.last_stopped_at) == after_first
        assert after_first[1] == 5
        provisioner.stop_vm.assert_awaited_once()

    async def test_redelivery_while_stopping_finishes(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="stopping", last_started_at=utc_now() - timedelta(minutes=3))
        fake_db.add(vm)

        await handlers.handle_stop(_job(JobKind.STOP, vm, attempts=2))

        assert vm.status == "stopped"
        assert vm.total_runtime_minutes == 3

    async def test_stop_failure_marks_error_without_accrual(self, fake_db, running_vm, provisioner):
        vm = running_vm(total_runtime_minutes=7)
        fake_db.add(vm)
        provisioner.stop_vm.side_effect = ControlError("stop rejected")

        with pytest.raises(ControlError):
            await handlers.handle_stop(_job(JobKind.STOP, vm))

        assert vm.status == "error"
        assert vm.total_runtime_minutes == 7

    async def test_stop_failure_fails_job_without_retry(
        self, fake_db, running_vm, provisioner, redis_pipe
    ):
        redis, pipe = redis_pipe
        vm = running_vm()
        fake_db.add(vm)
        provisioner.stop_vm.side_effect = ControlError("stop rejected")
        queue = RedisJobQueue(CONTROL_QUEUE, redis=redis, key_prefix="test:queue")
        job = _job(JobKind.STOP, vm)

        with pytest.raises(ControlError) as exc_info:
            await handlers.handle_stop(job)
        retried = await queue.fail(job, "worker-a", exc_info.value)

        assert queue.policy.attempts > 1
        assert retried is False
        pipe.zadd.assert_not_called()
        failed = Job.model_validate_json(pipe.lpush.call_args[0][1])
        assert failed.last_error == "ControlError: stop rejected"
        provisioner.stop_vm.assert_awaited_once()


class TestDestroy:
    async def test_destroy_deletes_row(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="stopped")
        fake_db.add(vm)

        await handlers.handle_destroy(_job(JobKind.DESTROY, vm, prior_status="stopped"))

        provisioner.destroy_vm.assert_awaited_once_with("i-1")
        assert vm.id not in fake_db.vms

    async def test_destroy_from_error_without_instance(self, fake_db, make_vm, provisioner):
        vm = make_vm(status="error")
        fake_db.add(vm)

        await handlers.handle_destroy(_job(JobKind.DESTROY, vm, prior_status="error"))

        provisioner.destroy_vm.assert_not_awaited()
        assert vm.id not in fake_db.vms

    async def test_missing_row_is_noop(self, make_vm, provisioner):
        await handlers.handle_destroy(_job(JobKind.DESTROY, make_vm()))

        provisioner.destroy_vm.assert_not_awaited()

    async def test_failure_restores_prior_status(self, fake_db, running_vm, provisioner):
        vm = running_vm()
        fake_db.add(vm)
        provisioner.destroy_vm.side_effect = ControlError("destroy rejected")

        with pytest.raises(ControlError):
            await handlers.handle_destroy(_job(JobKind.DESTROY, vm, prior_status="running"))

        assert vm.id in fake_db.vms
        assert vm.status == "running"
        assert "destroy rejected" in vm.status_message
        _assert_network_invariant(vm)

    async def test_redelivery_restores_status_from_payload(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="destroying")
        fake_db.add(vm)
        provisioner.destroy_vm.side_effect = ControlError("still failing")

        with pytest.raises(ControlError):
            await handlers.handle_destroy(
                _job(JobKind.DESTROY, vm, attempts=2, prior_status="stopped")
            )

        assert vm.status == "stopped"

    async def test_destroy_while_starting_is_invalid(self, fake_db, running_vm, provisioner):
        vm = running_vm(status="starting")
        fake_db.add(vm)

        with pytest.raises(InvalidTransitionError):
            await handlers.handle_destroy(_job(JobKind.DESTROY, vm))

        provisioner.destroy_vm.assert_not_awaited()


class TestLifecycle:
    async def test_round_trip_ends_with_no_row(self, fake_db, make_vm, provisioner):
        vm = make_vm(vcpus=2, memory_mb=4096, disk_gb=50)
        fake_db.add(vm)
        runtime_seen = []

        await handlers.handle_job(_job(JobKind.PROVISION, vm))
        _assert_network_invariant(vm)

        for kind in (JobKind.START, JobKind.STOP, JobKind.START, JobKind.STOP):
            if kind == JobKind.STOP:
                vm.last_started_at = utc_now() - timedelta(minutes=4, seconds=30)
            await handlers.handle_job(_job(kind, vm))
            _assert_network_invariant(vm)
            runtime_seen.append(vm.total_runtime_minutes)

        assert runtime_seen == sorted(runtime_seen)
        assert vm.total_runtime_minutes == 8

        await handlers.handle_job(_job(JobKind.DESTROY, vm, prior_status="stopped"))

        assert fake_db.vms == {}
        provisioner.create_vm.assert_awaited_once()
        assert provisioner.start_vm.await_count == 1
        assert provisioner.stop_vm.await_count == 2
        provisioner.destroy_vm.assert_awaited_once_with("i-1")

    def test_every_kind_has_a_handler(self):
        assert set(handlers.HANDLERS) == set(JobKind)
