"""
Exception taxonomy for the VM control plane.

Every error carries a ``retryable`` flag read by the job queue: a job that
fails with a non-retryable error is failed immediately instead of being
redelivered under the queue's retry policy.
"""


class VMPlaneError(Exception):
    """Base exception for control plane operations."""

    retryable: bool = True


class ProvisionError(VMPlaneError):
    """The provisioner rejected a VM creation."""


class ControlError(VMPlaneError):
    """The provisioner rejected a start, stop or destroy."""


class NetworkError(VMPlaneError):
    """A transport failure reaching the provisioning API or the remote machine."""


# --- Run orchestration ---


class RunError(VMPlaneError):
    """Base exception for provisioning run failures."""

    def __init__(self, run_id: str, message: str) -> None:
        self.run_id = run_id
        super().__init__(message)


class RunFailedError(RunError):
    """A run reached a terminal failure status."""

    def __init__(self, run_id: str, status: str) -> None:
        self.status = status
        super().__init__(run_id, f"Run {run_id} failed with status: {status}")


class PollTimeoutError(RunError):
    """A run did not reach a terminal status within the attempt ceiling."""

    def __init__(self, run_id: str, attempts: int, last_status: str = "") -> None:
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            run_id,
            f"Run {run_id} timed out after {attempts} attempts (last status: {last_status or 'unknown'})",
        )


class RunProtocolError(RunError):
    """The provisioning API returned data inconsistent with the run protocol."""


# --- Caller-facing ---


class PreconditionError(VMPlaneError):
    """An operation was attempted against a VM that is not in a usable state."""

    retryable = False


class InvalidTransitionError(VMPlaneError):
    """A lifecycle transition is not allowed from the VM's current status."""

    retryable = False

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid transition: {current} → {target}")


class VMNotFoundError(VMPlaneError):
    """The VM record does not exist."""

    retryable = False

    def __init__(self, vm_id: str) -> None:
        self.vm_id = vm_id
        super().__init__(f"VM not found: {vm_id}")


class VMBusyError(VMPlaneError):
    """Another lifecycle operation for the same VM is already in flight."""

    retryable = False

    def __init__(self, vm_id: str) -> None:
        self.vm_id = vm_id
        super().__init__(f"VM {vm_id} already has an operation in progress")


class VMExistsError(VMPlaneError):
    """The user already owns a VM."""

    retryable = False

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} already has a VM")


def mark_final(exc: BaseException) -> BaseException:
    """Flag exc so the queue fails its job on this attempt instead of retrying."""
    exc.retryable = False  # type: ignore[attr-defined]
    return exc
