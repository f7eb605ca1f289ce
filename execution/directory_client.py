"""
Workflow directory client for the SC Event Tracker.

Fetches the desired state (active event-triggered workflows plus the network
catalog) from the directory service:

    GET {service_url}/data  ->  {"workflows": [...], "networks": [...] | {chainId: {...}}}

The client never raises. Any transport error, non-200 status, invalid JSON
or a ``workflows`` field that is not a list yields
``DirectorySnapshot.failed()``; the reconciler decides what a failed fetch
means for running listeners.

Usage:
    client = DirectoryClient(session)
    snapshot = await client.fetch_active_workflows()
    if snapshot.ok:
        ...
"""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp

from config.loader import get_config
from shared.constants import DEFAULT_DIRECTORY_TIMEOUT_SECONDS, INTERNAL_TOKEN_HEADER
from shared.types import DirectorySnapshot, WorkflowDefinition, parse_network_catalog
from tracker_logging.logger_manager import setup_module_logger


class DirectoryClientError(Exception):
    """Raised internally when the directory response cannot be used."""


class DirectoryClient:
    """Async client for the workflow directory service."""

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session
        self._owns_session = session is None

        cfg = get_config()
        services_cfg = cfg.get_services_config()
        http_cfg = cfg.get_timing_config().get("http", {})

        self._url = services_cfg["service_url"] + services_cfg.get("directory_path", "/data")
        self._internal_token: str = services_cfg.get("internal_token", "")
        self._timeout = aiohttp.ClientTimeout(
            total=http_cfg.get("directory_timeout_seconds", DEFAULT_DIRECTORY_TIMEOUT_SECONDS)
        )

        self._logger = setup_module_logger(
            "directory_client", "directory_client.log", module_folder="Directory_Client_Logs"
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

    async def fetch_active_workflows(self) -> DirectorySnapshot:
        """Fetch the desired workflow set. Returns a failed snapshot instead of raising."""
        try:
            data = await self._get_json()
            snapshot = self._parse(data)
        except DirectoryClientError as exc:
            self._logger.error("Directory fetch failed: %s", exc)
            return DirectorySnapshot.failed()

        self._logger.info(
            "%d active workflows, %d networks", len(snapshot.workflows), len(snapshot.networks)
        )
        return snapshot

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_json(self) -> Any:
        session = await self._get_session()
        headers = {INTERNAL_TOKEN_HEADER: self._internal_token} if self._internal_token else {}
        try:
            async with session.get(self._url, headers=headers, timeout=self._timeout) as resp:
                if resp.status != 200:
                    raise DirectoryClientError(
                        f"HTTP {resp.status} from {self._url}: {(await resp.text())[:200]}"
                    )
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise DirectoryClientError(f"Request failed for {self._url}: {exc}") from exc

    def _parse(self, data: Any) -> DirectorySnapshot:
        if not isinstance(data, dict):
            raise DirectoryClientError(f"Unexpected response type {type(data).__name__}")

        raw_workflows = data.get("workflows")
        if not isinstance(raw_workflows, list):
            raise DirectoryClientError("Response field 'workflows' is not a list")

        workflows: list[WorkflowDefinition] = []
        for raw in raw_workflows:
            if not isinstance(raw, dict):
                self._logger.warning("Skipping non-object workflow entry: %r", raw)
                continue
            try:
                workflows.append(WorkflowDefinition.from_dict(raw))
            except ValueError as exc:
                self._logger.warning("Skipping malformed workflow %s: %s", raw.get("id"), exc)

        return DirectorySnapshot(
            workflows=tuple(workflows),
            networks=parse_network_catalog(data.get("networks", {})),
            ok=True,
        )
