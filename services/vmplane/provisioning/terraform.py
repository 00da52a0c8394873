"""
Remote-infrastructure provisioner driven by Terraform runs.

Every lifecycle action is one auto-applied run against a single workspace.
The workspace's configuration reads ``target_instance_id`` and
``power_state`` to decide what to touch; creation returns the new machine
through the ``instance_id``, ``ip_address`` and ``ssh_port`` outputs.

Terminal run failures and malformed API responses are wrapped in
ProvisionError / ControlError. Poll timeouts and transport failures
propagate unwrapped so callers can tell them apart.
"""

import httpx

from vmplane.errors import ControlError, ProvisionError, RunFailedError, RunProtocolError
from vmplane.logging_config import get_logger
from vmplane.provisioning.protocol import VMDetails, VMSpec
from vmplane.provisioning.tfc_client import TerraformRunClient

logger = get_logger(__name__)

DEFAULT_SSH_PORT = 22


class TerraformProvisioner:
    """VMProvisioner backed by Terraform Cloud / Enterprise runs."""

    def __init__(
        self,
        client: TerraformRunClient,
        region: str = "GRA9",
        health_path: str = "/health",
    ) -> None:
        self._client = client
        self._region = region
        self._health_path = health_path

    async def create_vm(self, spec: VMSpec) -> VMDetails:
        variables = {
            "instance_name": spec.name,
            "vcpus": spec.vcpus,
            "memory_mb": spec.memory_mb,
            "disk_gb": spec.disk_gb,
            "region": self._region,
            "environment_vars": dict(spec.env_vars),
        }
        try:
            result = await self._client.apply(f"Provision VM {spec.name}", variables)
        except (RunFailedError, RunProtocolError) as e:
            raise ProvisionError(f"Failed to provision {spec.name}: {e}") from e

        outputs = result.outputs
        instance_id = outputs.get("instance_id")
        ip_address = outputs.get("ip_address")
        if not instance_id or not ip_address:
            raise ProvisionError(
                f"Run {result.run_id} finished without instance_id/ip_address outputs"
            )

        try:
            ssh_port = int(outputs.get("ssh_port") or DEFAULT_SSH_PORT)
        except (TypeError, ValueError) as e:
            raise ProvisionError(
                f"Run {result.run_id} returned an invalid ssh_port: {outputs.get('ssh_port')!r}"
            ) from e

        logger.info(
            "VM created",
            name=spec.name,
            run_id=result.run_id,
            instance_id=instance_id,
            ip_address=ip_address,
        )
        return VMDetails(
            instance_id=str(instance_id),
            ip_address=str(ip_address),
            ssh_port=ssh_port,
        )

    async def _power(self, instance_id: str, power_state: str, message: str) -> None:
        variables = {"target_instance_id": instance_id, "power_state": power_state}
        try:
            await self._client.apply(message, variables, fetch_outputs=False)
        except (RunFailedError, RunProtocolError) as e:
            raise ControlError(f"{message} failed: {e}") from e

    async def start_vm(self, instance_id: str) -> None:
        await self._power(instance_id, "running", f"Start VM {instance_id}")
        logger.info("VM started", instance_id=instance_id)

    async def stop_vm(self, instance_id: str) -> None:
        await self._power(instance_id, "stopped", f"Stop VM {instance_id}")
        logger.info("VM stopped", instance_id=instance_id)

    async def destroy_vm(self, instance_id: str) -> None:
        try:
            await self._client.apply(
                f"Destroy VM {instance_id}",
                {"target_instance_id": instance_id},
                is_destroy=True,
                fetch_outputs=False,
            )
        except (RunFailedError, RunProtocolError) as e:
            raise ControlError(f"Destroy VM {instance_id} failed: {e}") from e
        logger.info("VM destroyed", instance_id=instance_id)

    async def check_health(self, ip_address: str, port: int, timeout_ms: int = 5000) -> bool:
        url = f"http://{ip_address}:{port}{self._health_path}"
        try:
            async with httpx.AsyncClient(timeout=timeout_ms / 1000) as client:
                resp = await client.get(url)
            return resp.is_success
        except (httpx.HTTPError, httpx.InvalidURL):
            return False

    async def close(self) -> None:
        await self._client.close()
