"""Terraform Cloud / Enterprise run orchestration.

Drives one provisioning run through the remote run API:

1. Create the run with auto-apply (no manual confirmation step).
2. Deliver the run's input variables, either inline with the run
   (``VariableMode.RUN``) or by writing them to the shared workspace after
   the run is registered (``VariableMode.WORKSPACE``). Workspace variables
   are shared mutable state: two runs created concurrently against the same
   workspace can see each other's values. Prefer run mode.
3. Poll the run on a fixed interval up to a fixed attempt ceiling.
4. Resolve outputs via run → state version → outputs.

There is no retry and no cancellation inside this module; a failed or
timed-out run is fatal to the calling job and the queue's retry policy
decides what happens next.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import httpx

from vmplane.config import VariableMode
from vmplane.errors import (
    NetworkError,
    PollTimeoutError,
    RunFailedError,
    RunProtocolError,
)
from vmplane.logging_config import get_logger

logger = get_logger(__name__)

JSONAPI_CONTENT_TYPE = "application/vnd.api+json"

SUCCESS_STATUSES = frozenset({"applied", "planned_and_finished"})
FAILURE_STATUSES = frozenset({"errored", "canceled", "force_canceled", "discarded"})


@dataclass(frozen=True)
class RunResult:
    """Outcome of a run that reached terminal success."""

    run_id: str
    status: str
    outputs: dict[str, Any] = field(default_factory=dict)


def hcl_encode(value: Any) -> str:
    """Encode a Python value as an HCL expression string.

    JSON literals are valid HCL for strings, numbers, booleans, lists and
    objects, which covers everything the provisioner sends.
    """
    return json.dumps(value)


class TerraformRunClient:
    """Client for the run, variable and state-version endpoints of one workspace."""

    def __init__(
        self,
        api_url: str,
        token: str,
        workspace_id: str,
        variable_mode: VariableMode = VariableMode.RUN,
        poll_interval_seconds: float = 10.0,
        max_poll_attempts: int = 60,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._workspace_id = workspace_id
        self._variable_mode = variable_mode
        self._poll_interval = poll_interval_seconds
        self._max_poll_attempts = max_poll_attempts
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": JSONAPI_CONTENT_TYPE,
                "Accept": JSONAPI_CONTENT_TYPE,
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @property
    def max_poll_attempts(self) -> int:
        return self._max_poll_attempts

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        """Send one JSON:API request and return the decoded body."""
        content = json.dumps(payload) if payload is not None else None
        try:
            resp = await self._client.request(method, path, content=content)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        if resp.is_error:
            raise NetworkError(
                f"{method} {path} returned {resp.status_code}: {resp.text[:500]}"
            )
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as e:
            raise RunProtocolError("", f"{method} {path} returned a non-JSON body") from e
        if not isinstance(body, dict):
            raise RunProtocolError("", f"{method} {path} returned a non-object body")
        return body

    # --- Runs ---

    async def create_run(
        self,
        message: str,
        is_destroy: bool = False,
        variables: dict[str, Any] | None = None,
    ) -> str:
        """Create an auto-applying run and deliver its variables. Returns the run ID."""
        attributes: dict[str, Any] = {
            "message": message,
            "is-destroy": is_destroy,
            "auto-apply": True,
        }
        if variables and self._variable_mode == VariableMode.RUN:
            attributes["variables"] = [
                {"key": key, "value": hcl_encode(value)} for key, value in variables.items()
            ]

        body = await self._request(
            "POST",
            f"/workspaces/{self._workspace_id}/runs",
            {
                "data": {
                    "type": "runs",
                    "attributes": attributes,
                    "relationships": {
                        "workspace": {
                            "data": {"type": "workspaces", "id": self._workspace_id}
                        }
                    },
                }
            },
        )
        try:
            run_id = body["data"]["id"]
        except (KeyError, TypeError) as e:
            raise RunProtocolError("", "Run creation response has no run ID") from e

        logger.info(
            "Run created",
            run_id=run_id,
            workspace_id=self._workspace_id,
            is_destroy=is_destroy,
            variable_mode=str(self._variable_mode),
        )

        if variables and self._variable_mode == VariableMode.WORKSPACE:
            await self.set_workspace_variables(variables)

        return run_id

    async def get_run(self, run_id: str) -> dict:
        """Fetch the run resource (the JSON:API ``data`` object)."""
        body = await self._request("GET", f"/runs/{run_id}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise RunProtocolError(run_id, "Run response has no data object")
        return data

    async def get_run_status(self, run_id: str) -> str:
        data = await self.get_run(run_id)
        status = (data.get("attributes") or {}).get("status")
        if not status:
            raise RunProtocolError(run_id, "Run response has no status")
        return status

    async def wait_for_run(self, run_id: str) -> str:
        """Poll until the run reaches a terminal status.

        Returns the success status. Raises RunFailedError as soon as a failure
        status is seen and PollTimeoutError after exactly max_poll_attempts
        non-terminal polls.
        """
        last_status = ""
        for attempt in range(1, self._max_poll_attempts + 1):
            status = await self.get_run_status(run_id)
            last_status = status
            logger.debug("Run polled", run_id=run_id, status=status, attempt=attempt)

            if status in SUCCESS_STATUSES:
                logger.info("Run finished", run_id=run_id, status=status, attempts=attempt)
                return status
            if status in FAILURE_STATUSES:
                logger.warning("Run failed", run_id=run_id, status=status, attempts=attempt)
                raise RunFailedError(run_id, status)

            if attempt < self._max_poll_attempts:
                await asyncio.sleep(self._poll_interval)

        logger.error(
            "Run poll timeout",
            run_id=run_id,
            attempts=self._max_poll_attempts,
            last_status=last_status,
        )
        raise PollTimeoutError(run_id, self._max_poll_attempts, last_status)

    async def get_outputs(self, run_id: str) -> dict[str, Any]:
        """Resolve a finished run's outputs through its state version."""
        data = await self.get_run(run_id)
        state_versions = (
            ((data.get("relationships") or {}).get("state-versions") or {}).get("data") or []
        )
        if isinstance(state_versions, dict):
            state_versions = [state_versions]
        if not state_versions or not state_versions[0].get("id"):
            raise RunProtocolError(run_id, f"No state version found for run {run_id}")

        state_version_id = state_versions[0]["id"]
        body = await self._request("GET", f"/state-versions/{state_version_id}/outputs")

        outputs: dict[str, Any] = {}
        for item in body.get("data") or []:
            attrs = item.get("attributes") or {}
            if "name" in attrs:
                outputs[attrs["name"]] = attrs.get("value")
        return outputs

    async def apply(
        self,
        message: str,
        variables: dict[str, Any] | None = None,
        is_destroy: bool = False,
        fetch_outputs: bool = True,
    ) -> RunResult:
        """Create a run, wait for it to finish and optionally resolve its outputs."""
        run_id = await self.create_run(message, is_destroy=is_destroy, variables=variables)
        status = await self.wait_for_run(run_id)
        outputs = await self.get_outputs(run_id) if fetch_outputs else {}
        return RunResult(run_id=run_id, status=status, outputs=outputs)

    # --- Workspace variables ---

    async def set_workspace_variables(self, variables: dict[str, Any]) -> None:
        """Create or update terraform-category variables on the workspace."""
        body = await self._request("GET", f"/workspaces/{self._workspace_id}/vars")
        existing = {
            item["attributes"]["key"]: item["id"]
            for item in body.get("data") or []
            if (item.get("attributes") or {}).get("category") == "terraform"
        }

        for key, value in variables.items():
            is_hcl = not isinstance(value, str | int | float | bool)
            if is_hcl:
                encoded = hcl_encode(value)
            elif isinstance(value, bool):
                encoded = str(value).lower()
            else:
                encoded = str(value)
            attributes = {
                "key": key,
                "value": encoded,
                "category": "terraform",
                "hcl": is_hcl,
            }
            if key in existing:
                var_id = existing[key]
                await self._request(
                    "PATCH",
                    f"/workspaces/{self._workspace_id}/vars/{var_id}",
                    {"data": {"type": "vars", "id": var_id, "attributes": attributes}},
                )
            else:
                await self._request(
                    "POST",
                    f"/workspaces/{self._workspace_id}/vars",
                    {"data": {"type": "vars", "attributes": attributes}},
                )

        logger.info(
            "Workspace variables set",
            workspace_id=self._workspace_id,
            keys=sorted(variables),
        )

    async def close(self) -> None:
        await self._client.aclose()
