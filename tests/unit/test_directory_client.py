"""
Unit tests for execution/directory_client.py.

Tests verify:
- Successful fetch parses workflows and the network catalog
- The internal token header is sent when configured
- HTTP errors, timeouts, invalid JSON and a non-list ``workflows`` field
  all yield a failed snapshot instead of raising
- Malformed workflow entries are skipped individually

Mock strategy: HTTP responses via aioresponses, config via a patched loader.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from aioresponses import aioresponses
from yarl import URL

from conftest import build_config_loader, make_workflow_dict

DIRECTORY_URL = "http://tracker.test/data"

NETWORKS = [
    {
        "chainId": 1,
        "name": "Ethereum",
        "defaultPrimaryWss": "wss://eth.test",
        "defaultPrimaryRpc": "https://eth.test",
    }
]


def _make_client(**config_overrides):
    with (
        patch("execution.directory_client.get_config") as mock_cfg,
        patch("execution.directory_client.setup_module_logger") as mock_logger,
    ):
        mock_cfg.return_value = build_config_loader(**config_overrides)
        mock_logger.return_value = MagicMock()

        from execution.directory_client import DirectoryClient

        return DirectoryClient()


@pytest.fixture
async def directory_client():
    client = _make_client()
    yield client
    await client.close()


# ---------------------------------------------------------------------------
# A. Successful fetch
# ---------------------------------------------------------------------------


class TestFetch:
    @pytest.mark.asyncio
    async def test_parses_workflows_and_networks(self, directory_client):
        body = {
            "workflows": [make_workflow_dict("w1"), make_workflow_dict("w2", enabled=False)],
            "networks": NETWORKS,
        }
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, payload=body)
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is True
        assert [w.id for w in snapshot.workflows] == ["w1", "w2"]
        assert [w.id for w in snapshot.enabled_workflows] == ["w1"]
        assert snapshot.networks[1].primary_wss == "wss://eth.test"

    @pytest.mark.asyncio
    async def test_networks_as_mapping(self, directory_client):
        body = {"workflows": [], "networks": {"1": NETWORKS[0]}}
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, payload=body)
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is True
        assert list(snapshot.networks) == [1]

    @pytest.mark.asyncio
    async def test_empty_list_is_a_successful_result(self, directory_client):
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, payload={"workflows": []})
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is True
        assert snapshot.workflows == ()

    @pytest.mark.asyncio
    async def test_sends_internal_token(self, directory_client):
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, payload={"workflows": []})
            await directory_client.fetch_active_workflows()
            call = mocked.requests[("GET", URL(DIRECTORY_URL))][0]

        assert call.kwargs["headers"]["X-Internal-Token"] == "secret-token"

    @pytest.mark.asyncio
    async def test_no_token_header_when_unset(self):
        client = _make_client(services={"service_url": "http://tracker.test", "directory_path": "/data"})
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, payload={"workflows": []})
            await client.fetch_active_workflows()
            call = mocked.requests[("GET", URL(DIRECTORY_URL))][0]
        await client.close()

        assert "X-Internal-Token" not in call.kwargs["headers"]

    @pytest.mark.asyncio
    async def test_skips_malformed_entries(self, directory_client):
        body = {"workflows": [make_workflow_dict("good"), {"id": "bad"}, "junk", {"nodes": []}]}
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, payload=body)
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is True
        assert [w.id for w in snapshot.workflows] == ["good"]


# ---------------------------------------------------------------------------
# B. Failures never raise
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_http_error(self, directory_client):
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, status=500, body="boom")
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is False
        assert snapshot.workflows == ()

    @pytest.mark.asyncio
    async def test_timeout(self, directory_client):
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, exception=asyncio.TimeoutError())
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is False

    @pytest.mark.asyncio
    async def test_invalid_json(self, directory_client):
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, status=200, body="<html>", content_type="text/html")
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"workflows": {"w1": {}}}, {"workflows": None}, {}, ["w1"]])
    async def test_workflows_not_a_list(self, directory_client, body):
        with aioresponses() as mocked:
            mocked.get(DIRECTORY_URL, payload=body)
            snapshot = await directory_client.fetch_active_workflows()

        assert snapshot.ok is False
