"""Tests for sync/client.py: HTTP transport to the hub."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from racelog_sync.core.identity import assign
from racelog_sync.sync.client import HubClient, HubClientError
from racelog_sync.sync.protocol import (
    NoticeAction,
    SyncOutcome,
    TransportError,
    UploadRequest,
)


def _session(status: int = 200, body: object = None, text: str = "") -> MagicMock:
    """aiohttp session double whose request() yields one canned response."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    response.text = AsyncMock(return_value=text)
    session = MagicMock()
    session.closed = False
    session.request.return_value.__aenter__.return_value = response
    return session


# ─────────── Client setup ───────────


class TestHubClientInit:
    def test_trailing_slash_stripped(self) -> None:
        client = HubClient("http://hub.local:8000/")
        assert client.hub_url == "http://hub.local:8000"

    def test_not_connected_initially(self) -> None:
        assert HubClient("http://hub.local").is_connected is False

    async def test_context_manager_opens_and_closes(self) -> None:
        async with HubClient("http://hub.local", api_key="secret") as client:
            assert client.is_connected is True
            assert client._session is not None
            assert client._session.headers["Authorization"] == "Bearer secret"
        assert client.is_connected is False

    def test_client_error_is_transport_error(self) -> None:
        error = HubClientError("Hub error 503", status_code=503)
        assert isinstance(error, TransportError)
        assert error.status_code == 503


# ─────────── _request ───────────


class TestRequest:
    async def test_decodes_json(self) -> None:
        client = HubClient("http://hub.local")
        client._session = _session(body={"status": "healthy"})

        assert await client._request("GET", "/health") == {"status": "healthy"}
        client._session.request.assert_called_once_with(
            "GET", "http://hub.local/health", json=None, params=None
        )

    async def test_error_status(self) -> None:
        client = HubClient("http://hub.local")
        client._session = _session(status=409, text="already resolved")

        with pytest.raises(HubClientError, match="409") as exc_info:
            await client._request("POST", "/api/v1/conflicts/cf-1/resolve")
        assert exc_info.value.status_code == 409

    async def test_connection_error(self) -> None:
        client = HubClient("http://hub.local")
        client._session = _session()
        client._session.request.side_effect = aiohttp.ClientConnectionError("refused")

        with pytest.raises(HubClientError, match="Connection error"):
            await client._request("GET", "/health")

    async def test_timeout(self) -> None:
        client = HubClient("http://hub.local")
        client._session = _session()
        client._session.request.side_effect = TimeoutError()

        with pytest.raises(HubClientError, match="Timed out"):
            await client._request("GET", "/api/v1/sync/status")

    async def test_invalid_json(self) -> None:
        client = HubClient("http://hub.local")
        session = _session()
        response = session.request.return_value.__aenter__.return_value
        response.json.side_effect = ValueError("Expecting value")
        client._session = session

        with pytest.raises(HubClientError, match="Malformed"):
            await client._request("GET", "/api/v1/nodes")


# ─────────── HubTransport methods ───────────


class TestTransportMethods:
    async def test_health_check(self) -> None:
        client = HubClient("http://hub.local")
        with patch.object(client, "_request", AsyncMock(return_value={"status": "healthy"})):
            assert await client.health_check() is True

    async def test_health_check_swallows_errors(self) -> None:
        client = HubClient("http://hub.local")
        failing = AsyncMock(side_effect=HubClientError("Connection error"))
        with patch.object(client, "_request", failing):
            assert await client.health_check() is False

    async def test_health_check_unexpected_body(self) -> None:
        client = HubClient("http://hub.local")
        with patch.object(client, "_request", AsyncMock(return_value={"status": "starting"})):
            assert await client.health_check() is False

    async def test_upload_batch(self, factory) -> None:
        client = HubClient("http://hub.local")
        record = factory.incident(assign())
        body = {
            "batch_id": "b-1",
            "outcomes": [
                {
                    "global_id": record.global_id,
                    "outcome": "synced",
                    "canonical_id": record.global_id,
                }
            ],
        }
        request = UploadRequest(node_id="edge-a", batch_id="b-1", records=[record.to_wire()])
        mock = AsyncMock(return_value=body)

        with patch.object(client, "_request", mock):
            result = await client.upload_batch(request)

        mock.assert_awaited_once_with("POST", "/api/v1/sync/upload", json_data=request.to_dict())
        assert result.batch_id == "b-1"
        assert result.outcomes[0].outcome == SyncOutcome.SYNCED

    async def test_download_scope(self, factory) -> None:
        client = HubClient("http://hub.local")
        competition = factory.competition()
        body = {
            "scope": f"competition:{competition.global_id}",
            "records": [competition.to_wire()],
            "redirects": {},
            "server_time": "2026-03-11T10:00:00",
        }
        mock = AsyncMock(return_value=body)

        with patch.object(client, "_request", mock):
            result = await client.download_scope(body["scope"], "edge-a")

        mock.assert_awaited_once_with(
            "GET",
            "/api/v1/sync/download",
            params={"scope": body["scope"], "node_id": "edge-a"},
        )
        assert [r.global_id for r in result.records] == [competition.global_id]

    async def test_pull_and_ack_resolutions(self, factory) -> None:
        client = HubClient("http://hub.local")
        winner = factory.incident(assign())
        notices = {
            "notices": [
                {
                    "entry_id": 3,
                    "action": "merged",
                    "winner": winner.to_wire(),
                    "superseded": [assign()],
                    "conflict_id": None,
                }
            ]
        }

        with patch.object(client, "_request", AsyncMock(return_value=notices)):
            [notice] = await client.pull_resolutions("edge-a")
        with patch.object(client, "_request", AsyncMock(return_value={"acknowledged": 1})) as ack:
            acked = await client.ack_resolutions("edge-a", [3])

        assert notice.action == NoticeAction.MERGED
        assert notice.winner is not None
        assert notice.winner.global_id == winner.global_id
        assert acked == 1
        ack.assert_awaited_once_with(
            "POST", "/api/v1/sync/resolutions/edge-a/ack", json_data={"entry_ids": [3]}
        )

    async def test_batch_outcomes(self) -> None:
        client = HubClient("http://hub.local")
        gid = assign()
        body = {"batch_id": "b-1", "outcomes": [{"global_id": gid, "outcome": "rejected"}]}

        with patch.object(client, "_request", AsyncMock(return_value=body)):
            [outcome] = await client.get_batch_outcomes("b-1")

        assert outcome.global_id == gid
        assert outcome.outcome == SyncOutcome.REJECTED

    async def test_resolve_conflict_payload(self) -> None:
        client = HubClient("http://hub.local")
        mock = AsyncMock(return_value={"conflict_id": "cf-1", "status": "resolved"})

        with patch.object(client, "_request", mock):
            data = await client.resolve_conflict("cf-1", "pick_left", operator="jury")

        assert data["status"] == "resolved"
        mock.assert_awaited_once_with(
            "POST",
            "/api/v1/conflicts/cf-1/resolve",
            json_data={"choice": "pick_left", "payload": None, "operator": "jury"},
        )


# ─────────── Malformed responses ───────────


class TestDecode:
    async def test_non_object_body(self) -> None:
        client = HubClient("http://hub.local")
        with (
            patch.object(client, "_request", AsyncMock(return_value=["unexpected"])),
            pytest.raises(HubClientError, match="JSON object"),
        ):
            await client.status()

    async def test_missing_fields(self) -> None:
        client = HubClient("http://hub.local")
        with (
            patch.object(client, "_request", AsyncMock(return_value={"records": []})),
            pytest.raises(HubClientError, match="Malformed"),
        ):
            await client.download_scope("race:x", "edge-a")

    async def test_bad_notice(self) -> None:
        client = HubClient("http://hub.local")
        body = {"notices": [{"entry_id": "x", "action": "merged"}]}
        with (
            patch.object(client, "_request", AsyncMock(return_value=body)),
            pytest.raises(HubClientError),
        ):
            await client.pull_resolutions("edge-a")
