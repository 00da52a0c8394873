"""
Local-container provisioner for development.

Each VM is a container running an SSH daemon, driven through the docker CLI.
The container's port 22 is published on the host, so the reachable address
is the configured ``ssh_host`` plus the published port rather than the
container's bridge IP.
"""

import asyncio

from vmplane.config import DockerConfig
from vmplane.errors import ControlError, ProvisionError
from vmplane.logging_config import get_logger
from vmplane.provisioning.protocol import VMDetails, VMSpec

logger = get_logger(__name__)


class DockerCommandError(Exception):
    """A docker CLI invocation exited non-zero or could not be started."""

    def __init__(self, args: tuple[str, ...], returncode: int | None, stderr: str) -> None:
        self.args_ = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"docker {' '.join(args)} failed ({returncode}): {stderr}")


class DockerProvisioner:
    """VMProvisioner backed by local docker containers."""

    def __init__(self, config: DockerConfig) -> None:
        self._config = config
        # Serializes port selection with the docker run that claims the port.
        self._port_lock = asyncio.Lock()

    async def _docker(self, *args: str) -> str:
        """Run one docker CLI command and return its stripped stdout."""
        try:
            process = await asyncio.create_subprocess_exec(
                self._config.docker_binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DockerCommandError(args, None, str(e)) from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise DockerCommandError(
                args, process.returncode, stderr.decode("utf-8", errors="replace").strip()
            )
        return stdout.decode("utf-8", errors="replace").strip()

    async def _find_available_port(self) -> int:
        start = self._config.base_ssh_port
        for port in range(start, start + self._config.port_range):
            in_use = await self._docker("ps", "--filter", f"publish={port}", "--format", "{{.ID}}")
            if not in_use:
                return port
        raise ProvisionError(
            f"No free SSH port in {start}-{start + self._config.port_range - 1}"
        )

    async def _remove_stale_container(self, name: str) -> None:
        """Remove a managed container left under name by an interrupted earlier attempt."""
        out = await self._docker(
            "ps",
            "-a",
            "--filter",
            f"name=^/{name}$",
            "--filter",
            f"label={self._config.label_prefix}/managed=true",
            "--format",
            "{{.ID}}",
        )
        for container_id in out.split():
            logger.warning(
                "Removing container left by an earlier attempt",
                name=name,
                container_id=container_id[:12],
            )
            await self._docker("rm", "-f", container_id)

    async def _wait_for_container(self, container_id: str) -> None:
        """Wait for the container to report running, then give sshd time to bind."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.start_timeout_seconds
        while loop.time() < deadline:
            try:
                running = await self._docker("inspect", "-f", "{{.State.Running}}", container_id)
            except DockerCommandError:
                running = ""
            if running == "true":
                await asyncio.sleep(self._config.sshd_grace_seconds)
                return
            await asyncio.sleep(self._config.start_poll_interval_seconds)
        raise TimeoutError(f"Container {container_id[:12]} did not start in time")

    def _run_args(self, spec: VMSpec, port: int) -> list[str]:
        prefix = self._config.label_prefix
        args = [
            "run",
            "-d",
            "--name",
            spec.name,
            f"--cpus={spec.vcpus}",
            f"--memory={spec.memory_mb}m",
            "-p",
            f"{port}:22",
        ]
        for key, value in spec.env_vars.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend(
            [
                "--label",
                f"{prefix}/managed=true",
                "--label",
                f"{prefix}/vm-name={spec.name}",
                "--restart",
                "unless-stopped",
                self._config.image,
            ]
        )
        return args

    async def create_vm(self, spec: VMSpec) -> VMDetails:
        try:
            async with self._port_lock:
                await self._remove_stale_container(spec.name)
                port = await self._find_available_port()
                container_id = await self._docker(*self._run_args(spec, port))
        except DockerCommandError as e:
            raise ProvisionError(f"Failed to create container {spec.name}: {e}") from e

        try:
            await self._wait_for_container(container_id)
        except (DockerCommandError, TimeoutError) as e:
            logger.warning(
                "Container failed to start, removing",
                name=spec.name,
                container_id=container_id[:12],
                error=str(e),
            )
            try:
                await self._docker("rm", "-f", container_id)
            except DockerCommandError as cleanup_error:
                logger.error(
                    "Failed to remove container",
                    container_id=container_id[:12],
                    error=str(cleanup_error),
                )
            raise ProvisionError(f"Container {spec.name} did not start: {e}") from e

        logger.info(
            "Container VM created",
            name=spec.name,
            container_id=container_id[:12],
            ssh_port=port,
        )
        return VMDetails(
            instance_id=container_id,
            ip_address=self._config.ssh_host,
            ssh_port=port,
        )

    async def start_vm(self, instance_id: str) -> None:
        try:
            await self._docker("start", instance_id)
            await self._wait_for_container(instance_id)
        except (DockerCommandError, TimeoutError) as e:
            raise ControlError(f"Failed to start container {instance_id[:12]}: {e}") from e
        logger.info("Container VM started", container_id=instance_id[:12])

    async def stop_vm(self, instance_id: str) -> None:
        try:
            await self._docker("stop", instance_id)
        except DockerCommandError as e:
            raise ControlError(f"Failed to stop container {instance_id[:12]}: {e}") from e
        logger.info("Container VM stopped", container_id=instance_id[:12])

    async def destroy_vm(self, instance_id: str) -> None:
        try:
            await self._docker("stop", instance_id)
        except DockerCommandError as e:
            # May already be stopped
            logger.debug("docker stop before rm failed", container_id=instance_id[:12], error=str(e))
        try:
            await self._docker("rm", instance_id)
        except DockerCommandError as e:
            raise ControlError(f"Failed to remove container {instance_id[:12]}: {e}") from e
        logger.info("Container VM destroyed", container_id=instance_id[:12])

    async def check_health(self, ip_address: str, port: int, timeout_ms: int = 5000) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(ip_address, port), timeout=timeout_ms / 1000
            )
        except (OSError, TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def close(self) -> None:
        pass
