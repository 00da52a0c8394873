"""Streaming remote command execution over SSH.

Output is relayed as an ordered sequence of frames instead of being
buffered, because command duration and output volume are unbounded and the
caller renders progress live:

    {"type": "stdout", "data": "..."}
    {"type": "stderr", "data": "..."}
    {"type": "exit", "code": 0}
    {"type": "error", "error": "..."}

A stream ends with exactly one exit or error frame. Preconditions are
checked against a fresh database read before any connection is attempted;
a failed precondition produces a single error frame and no session.
Closing the generator (``aclose``) cancels the session, which closes the
channel and the connection.
"""

import asyncio
import contextlib
import os
import uuid
from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import asyncssh
from sqlalchemy.exc import SQLAlchemyError

from vmplane.config import settings
from vmplane.db.session import get_db_session
from vmplane.errors import NetworkError, PreconditionError
from vmplane.logging_config import get_logger
from vmplane.services import vm_service

logger = get_logger(__name__)

_READ_CHUNK = 4096


class FrameType(StrEnum):
    STDOUT = "stdout"
    STDERR = "stderr"
    EXIT = "exit"
    ERROR = "error"


@dataclass(frozen=True)
class ExecFrame:
    type: FrameType
    data: str | None = None
    code: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (FrameType.EXIT, FrameType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        return {k: (str(v) if k == "type" else v) for k, v in asdict(self).items() if v is not None}


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


@dataclass(frozen=True)
class SSHTarget:
    host: str
    port: int
    username: str
    key_path: str


async def resolve_target(vm_id: uuid.UUID | str) -> SSHTarget:
    """Check every precondition for opening a session and return where to connect.

    Raises PreconditionError naming the first precondition that failed.
    """
    async with get_db_session() as db:
        vm = await vm_service.get_vm(db, vm_id)

    if vm is None:
        raise PreconditionError(f"VM not found: {vm_id}")
    if not vm_service.has_network(vm):
        raise PreconditionError("VM has no network address yet")

    key_path = Path(settings.ssh.private_key_path)
    if not key_path.is_file() or not os.access(key_path, os.R_OK):
        raise PreconditionError(f"SSH key not readable: {key_path}")

    if vm.status != "running":
        raise PreconditionError(f"VM is not running (status: {vm.status})")

    return SSHTarget(
        host=vm.ip_address,
        port=vm.ssh_port,
        username=vm.ssh_username,
        key_path=str(key_path),
    )


async def _pump(reader: asyncssh.SSHReader, frame_type: FrameType, queue: asyncio.Queue) -> None:
    while True:
        chunk = await reader.read(_READ_CHUNK)
        if not chunk:
            return
        await queue.put(ExecFrame(type=frame_type, data=chunk))


async def _run_session(target: SSHTarget, command: str, queue: asyncio.Queue) -> None:
    """Run command on target, feeding output frames and one terminal frame into queue."""
    try:
        async with asyncssh.connect(
            target.host,
            port=target.port,
            username=target.username,
            client_keys=[target.key_path],
            known_hosts=settings.ssh.known_hosts,
            connect_timeout=settings.ssh.connect_timeout_seconds,
        ) as conn:
            async with conn.create_process(command, errors="replace") as process:
                await asyncio.gather(
                    _pump(process.stdout, FrameType.STDOUT, queue),
                    _pump(process.stderr, FrameType.STDERR, queue),
                )
                completed = await process.wait()
        code = completed.returncode if completed.returncode is not None else -1
        await queue.put(ExecFrame(type=FrameType.EXIT, code=code))
    except (asyncssh.Error, OSError, TimeoutError) as e:
        logger.warning("SSH session failed", host=target.host, port=target.port, error=str(e))
        await queue.put(ExecFrame(type=FrameType.ERROR, error=str(e) or type(e).__name__))
    except Exception as e:
        # Reported to the caller as the stream's terminal frame.
        logger.error("SSH session crashed", host=target.host, error=str(e), exc_info=e)
        await queue.put(ExecFrame(type=FrameType.ERROR, error=str(e) or type(e).__name__))


async def _touch_activity(vm_id: uuid.UUID | str) -> None:
    try:
        async with get_db_session() as db:
            await vm_service.touch_activity(db, vm_id)
    except SQLAlchemyError as e:
        logger.warning("Failed to refresh VM activity", vm_id=str(vm_id), error=str(e))


async def _stream_session(
    vm_id: uuid.UUID | str, target: SSHTarget, command: str
) -> AsyncIterator[ExecFrame]:
    queue: asyncio.Queue[ExecFrame] = asyncio.Queue()
    session = asyncio.create_task(_run_session(target, command, queue))
    logger.info("Remote command started", vm_id=str(vm_id), host=target.host)
    try:
        while True:
            frame = await queue.get()
            if frame.type == FrameType.EXIT:
                await _touch_activity(vm_id)
                logger.info("Remote command exited", vm_id=str(vm_id), code=frame.code)
            yield frame
            if frame.is_terminal:
                return
    finally:
        if not session.done():
            session.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await session
            logger.info("Remote command cancelled", vm_id=str(vm_id))


async def stream_command(vm_id: uuid.UUID | str, command: str) -> AsyncIterator[ExecFrame]:
    """Run command on the VM and yield its output frames."""
    try:
        target = await resolve_target(vm_id)
    except PreconditionError as e:
        logger.info("Remote command rejected", vm_id=str(vm_id), reason=str(e))
        yield ExecFrame(type=FrameType.ERROR, error=str(e))
        return

    async with contextlib.aclosing(_stream_session(vm_id, target, command)) as frames:
        async for frame in frames:
            yield frame


async def run_command(vm_id: uuid.UUID | str, command: str) -> CommandResult:
    """Run command on the VM and return its buffered output.

    Raises PreconditionError if the VM cannot be reached and NetworkError if
    the session fails.
    """
    target = await resolve_target(vm_id)

    stdout: list[str] = []
    stderr: list[str] = []
    async with contextlib.aclosing(_stream_session(vm_id, target, command)) as frames:
        async for frame in frames:
            match frame.type:
                case FrameType.STDOUT:
                    stdout.append(frame.data or "")
                case FrameType.STDERR:
                    stderr.append(frame.data or "")
                case FrameType.EXIT:
                    return CommandResult("".join(stdout), "".join(stderr), frame.code or 0)
                case FrameType.ERROR:
                    raise NetworkError(frame.error or "SSH session failed")

    raise NetworkError("SSH session ended without an exit status")
