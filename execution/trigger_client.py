"""
Downstream execution trigger client for the SC Event Tracker.

    POST {service_url}/workflow/{workflowId}/execute   body = decoded event payload

Fire-and-forget from the tracker's point of view: the response or failure is
logged and returned, never retried. Retry semantics belong to the execution
service.

Usage:
    trigger = TriggerClient()
    result = await trigger.execute_workflow("w1", payload)
    await trigger.close()
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from config.loader import get_config
from shared.constants import DEFAULT_TRIGGER_TIMEOUT_SECONDS, INTERNAL_TOKEN_HEADER
from shared.serialization_utils import dumps
from tracker_logging.logger_manager import setup_module_logger


class TriggerClientError(Exception):
    """Raised internally when the execution service rejects or fails a call."""


class TriggerClient:
    """Async client for the downstream workflow execution endpoint."""

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        logger_name: str = "trigger_client",
    ) -> None:
        self._session = session
        self._owns_session = session is None

        cfg = get_config()
        services_cfg = cfg.get_services_config()
        http_cfg = cfg.get_timing_config().get("http", {})

        self._service_url: str = services_cfg["service_url"]
        self._execute_path: str = services_cfg.get("execute_path", "/workflow/{workflow_id}/execute")
        self._internal_token: str = services_cfg.get("internal_token", "")
        self._timeout = aiohttp.ClientTimeout(
            total=http_cfg.get("trigger_timeout_seconds", DEFAULT_TRIGGER_TIMEOUT_SECONDS)
        )

        self._logger = setup_module_logger(
            logger_name, f"{logger_name}.log", module_folder="Trigger_Client_Logs"
        )

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying aiohttp session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute_url(self, workflow_id: str) -> str:
        return self._service_url + self._execute_path.format(workflow_id=workflow_id)

    async def execute_workflow(self, workflow_id: str, payload: dict[str, Any]) -> Any | None:
        """
        Trigger a workflow execution.

        Returns the decoded response body on success, None on any failure.
        """
        try:
            result = await self._post(self.execute_url(workflow_id), payload)
        except TriggerClientError as exc:
            self._logger.error("Error executing workflow %s: %s", workflow_id, exc)
            return None
        self._logger.info("Workflow %s execution triggered", workflow_id)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _post(self, url: str, payload: dict[str, Any]) -> Any:
        session = await self._get_session()
        headers = {"Content-Type": "application/json"}
        if self._internal_token:
            headers[INTERNAL_TOKEN_HEADER] = self._internal_token
        try:
            async with session.post(url, data=dumps(payload), headers=headers, timeout=self._timeout) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    raise TriggerClientError(f"HTTP {resp.status} from {url}: {body[:200]}")
                if not body:
                    return {}
                try:
                    return await resp.json(content_type=None)
                except ValueError:
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TriggerClientError(f"Request failed for {url}: {exc}") from exc
