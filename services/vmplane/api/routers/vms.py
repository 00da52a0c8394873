"""VM lifecycle endpoints.

Endpoints:
    POST   /api/v1/vms                          (provision a VM for a user)
    GET    /api/v1/vms/{vm_id}                  (show VM)
    GET    /api/v1/users/{user_id}/vm           (show a user's VM)
    POST   /api/v1/vms/{vm_id}/start            (queue start)
    POST   /api/v1/vms/{vm_id}/stop             (queue stop)
    POST   /api/v1/vms/{vm_id}/destroy          (queue destroy)
    GET    /api/v1/vms/{vm_id}/provision-logs   (progress lines for the owner)
    WS     /api/v1/vms/{vm_id}/exec             (streaming command execution)

Lifecycle endpoints answer 202 once the job is queued; the VM's status
changes when the worker picks it up.
"""

import asyncio
import contextlib
import uuid
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from vmplane.db.models import UserVM
from vmplane.db.session import get_db
from vmplane.errors import InvalidTransitionError, VMBusyError, VMExistsError, VMNotFoundError
from vmplane.logging_config import get_logger
from vmplane.services import provision_log, remote_exec, vm_dispatch, vm_service
from vmplane.services.job_queue import Job

router = APIRouter(tags=["vms"])
logger = get_logger(__name__)


class ProvisionRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    tier: str | None = None
    vcpus: int | None = Field(default=None, ge=1)
    memory_mb: int | None = Field(default=None, ge=256)
    disk_gb: int | None = Field(default=None, ge=1)
    environment_vars: dict[str, str] = Field(default_factory=dict)


def _iso(dt) -> str | None:
    return dt.isoformat() if dt is not None else None


def _vm_json(vm: UserVM) -> dict:
    return {
        "id": str(vm.id),
        "user_id": vm.user_id,
        "status": vm.status,
        "status_message": vm.status_message,
        "instance_id": vm.instance_id,
        "vcpus": vm.vcpus,
        "memory_mb": vm.memory_mb,
        "disk_gb": vm.disk_gb,
        "ip_address": vm.ip_address,
        "ssh_port": vm.ssh_port,
        "ssh_username": vm.ssh_username,
        "auto_stop": vm.auto_stop,
        "auto_stop_minutes": vm.auto_stop_minutes,
        "total_runtime_minutes": vm.total_runtime_minutes,
        "last_started_at": _iso(vm.last_started_at),
        "last_stopped_at": _iso(vm.last_stopped_at),
        "last_activity_at": _iso(vm.last_activity_at),
        "created_at": _iso(vm.created_at),
        "updated_at": _iso(vm.updated_at),
    }


def _job_json(job: Job) -> dict:
    return {"id": job.id, "kind": str(job.kind), "vm_id": job.vm_id}


@router.post("/vms", status_code=status.HTTP_202_ACCEPTED)
async def provision_vm(body: ProvisionRequest, db: AsyncSession = Depends(get_db)) -> dict:
    try:
        vm, job = await vm_dispatch.submit_provision(
            db,
            body.user_id,
            tier=body.tier,
            vcpus=body.vcpus,
            memory_mb=body.memory_mb,
            disk_gb=body.disk_gb,
            environment_vars=body.environment_vars,
        )
    except VMExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except VMBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e

    return {"vm": _vm_json(vm), "job": _job_json(job)}


@router.get("/vms/{vm_id}")
async def show_vm(vm_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    vm = await vm_service.get_vm(db, vm_id)
    if vm is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="VM not found")
    return {"vm": _vm_json(vm)}


@router.get("/users/{user_id}/vm")
async def show_user_vm(user_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    vm = await vm_service.get_vm_for_user(db, user_id)
    if vm is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="VM not found")
    return {"vm": _vm_json(vm)}


async def _submit(
    submit: Callable[[AsyncSession, uuid.UUID], Awaitable[Job]],
    db: AsyncSession,
    vm_id: uuid.UUID,
) -> dict:
    try:
        job = await submit(db, vm_id)
    except VMNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (VMBusyError, InvalidTransitionError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return {"job": _job_json(job)}


@router.post("/vms/{vm_id}/start", status_code=status.HTTP_202_ACCEPTED)
async def start_vm(vm_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    return await _submit(vm_dispatch.submit_start, db, vm_id)


@router.post("/vms/{vm_id}/stop", status_code=status.HTTP_202_ACCEPTED)
async def stop_vm(vm_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    return await _submit(vm_dispatch.submit_stop, db, vm_id)


@router.post("/vms/{vm_id}/destroy", status_code=status.HTTP_202_ACCEPTED)
async def destroy_vm(vm_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    return await _submit(vm_dispatch.submit_destroy, db, vm_id)


@router.get("/vms/{vm_id}/provision-logs")
async def get_provision_logs(vm_id: uuid.UUID, db: AsyncSession = Depends(get_db)) -> dict:
    vm = await vm_service.get_vm(db, vm_id)
    if vm is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="VM not found")
    entries = await provision_log.get_logs(vm.user_id)
    return {
        "logs": [
            {"timestamp": e.timestamp, "message": e.message, "level": e.level} for e in entries
        ]
    }


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/vms/{vm_id}/exec")
async def exec_command(websocket: WebSocket, vm_id: uuid.UUID) -> None:
    """Run one command and stream its frames as JSON until exit or error.

    The client sends ``{"command": "..."}`` once. Disconnecting cancels the
    remote command.
    """
    await websocket.accept()
    try:
        message = await websocket.receive_json()
    except WebSocketDisconnect:
        return

    command = message.get("command") if isinstance(message, dict) else None
    if not isinstance(command, str) or not command.strip():
        await websocket.send_json({"type": "error", "error": 'Expected {"command": "..."}'})
        await websocket.close()
        return

    stream = remote_exec.stream_command(vm_id, command)

    async def relay() -> None:
        async for frame in stream:
            await websocket.send_json(frame.to_dict())

    relay_task = asyncio.create_task(relay())
    watch_task = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        await asyncio.wait({relay_task, watch_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (relay_task, watch_task):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                    await task
        await stream.aclose()

    if watch_task.done() and not watch_task.cancelled():
        logger.info("Exec client disconnected", vm_id=str(vm_id))
        return

    if relay_task.exception() is not None:
        logger.warning("Exec relay failed", vm_id=str(vm_id), error=str(relay_task.exception()))
        return
    await websocket.close()
