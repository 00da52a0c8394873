"""
Provisioner protocol and types for vmplane.

Defines the VMProvisioner Protocol that every provisioning backend must
satisfy. Backends may be asynchronous under the hood (the Terraform backend
drives a remote run to completion) but every method returns only once the
operation has finished, so the worker sees one synchronous-looking contract.
"""

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

# --- Data Types ---


@dataclass(frozen=True)
class VMSpec:
    """What to create."""

    name: str
    vcpus: int
    memory_mb: int
    disk_gb: int = 10
    env_vars: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VMDetails:
    """A fully provisioned, reachable machine."""

    instance_id: str
    ip_address: str
    ssh_port: int


# --- Protocol ---


@runtime_checkable
class VMProvisioner(Protocol):
    """Protocol defining the provisioning interface.

    All methods are async. Implementations must satisfy this interface
    structurally (duck typing), no inheritance required.
    """

    async def create_vm(self, spec: VMSpec) -> VMDetails:
        """Create a machine and wait until it is reachable.

        Either returns fully populated details or raises; on failure the
        caller may assume nothing was left behind that needs cleanup.

        Raises:
            ProvisionError: The backend rejected the creation.
            PollTimeoutError: A remote run did not finish in time.
            NetworkError: The backend API was unreachable.
        """
        ...

    async def start_vm(self, instance_id: str) -> None:
        """Start a stopped machine.

        Raises:
            ControlError: The backend rejected the request.
        """
        ...

    async def stop_vm(self, instance_id: str) -> None:
        """Stop a running machine.

        Raises:
            ControlError: The backend rejected the request.
        """
        ...

    async def destroy_vm(self, instance_id: str) -> None:
        """Destroy a machine and release its resources.

        Not guaranteed idempotent: destroying an already-destroyed machine
        may raise ControlError.

        Raises:
            ControlError: The backend rejected the request.
        """
        ...

    async def check_health(self, ip_address: str, port: int, timeout_ms: int = 5000) -> bool:
        """Probe a machine. Never raises; failures and timeouts return False."""
        ...

    async def close(self) -> None:
        """Release any resources held by the backend."""
        ...
