"""
Provisioning abstraction layer for vmplane.

Provides init_provisioner() / close_provisioner() for the worker lifecycle
and get_provisioner() for handlers.
"""

from __future__ import annotations

from vmplane.config import ProvisionerBackend, settings
from vmplane.logging_config import get_logger
from vmplane.provisioning.protocol import VMDetails, VMProvisioner, VMSpec

logger = get_logger(__name__)

__all__ = [
    "VMDetails",
    "VMProvisioner",
    "VMSpec",
    "close_provisioner",
    "get_provisioner",
    "init_provisioner",
]

# Module-level provisioner instance
_provisioner: VMProvisioner | None = None


def init_provisioner() -> VMProvisioner:
    """Initialize the provisioning backend based on configuration."""
    global _provisioner  # noqa: PLW0603
    cfg = settings.provisioner

    match cfg.backend:
        case ProvisionerBackend.DOCKER:
            from vmplane.provisioning.docker import DockerProvisioner

            _provisioner = DockerProvisioner(cfg.docker)
            logger.info("Provisioner initialized", backend="docker", image=cfg.docker.image)

        case ProvisionerBackend.TERRAFORM:
            from vmplane.provisioning.terraform import TerraformProvisioner
            from vmplane.provisioning.tfc_client import TerraformRunClient

            tf = cfg.terraform
            if not tf.token or not tf.workspace_id:
                raise RuntimeError(
                    "Terraform provisioner requires VMPLANE_PROVISIONER__TERRAFORM__TOKEN "
                    "and VMPLANE_PROVISIONER__TERRAFORM__WORKSPACE_ID"
                )
            client = TerraformRunClient(
                api_url=tf.api_url,
                token=tf.token,
                workspace_id=tf.workspace_id,
                variable_mode=tf.variable_mode,
                poll_interval_seconds=tf.poll_interval_seconds,
                max_poll_attempts=tf.max_poll_attempts,
                timeout_seconds=tf.request_timeout_seconds,
            )
            _provisioner = TerraformProvisioner(client, region=tf.region, health_path=tf.health_path)
            logger.info(
                "Provisioner initialized",
                backend="terraform",
                workspace_id=tf.workspace_id,
                variable_mode=str(tf.variable_mode),
            )

    assert _provisioner is not None
    return _provisioner


async def close_provisioner() -> None:
    """Close the provisioning backend and release resources."""
    global _provisioner  # noqa: PLW0603
    if _provisioner is not None:
        await _provisioner.close()
        _provisioner = None
        logger.info("Provisioner closed")


def get_provisioner() -> VMProvisioner:
    """Return the provisioning backend.

    Raises RuntimeError if the provisioner has not been initialized.
    """
    if _provisioner is None:
        raise RuntimeError("Provisioner not initialized; call init_provisioner() first")
    return _provisioner
