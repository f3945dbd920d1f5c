"""HTTP client for talking to the hub."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from racelog_sync.sync.protocol import (
    DownloadResult,
    HubTransport,
    RecordOutcome,
    ResolutionNotice,
    TransportError,
    UploadRequest,
    UploadResult,
)

logger = logging.getLogger(__name__)


class HubClientError(TransportError):
    """Error from a hub HTTP exchange."""


class HubClient(HubTransport):
    """
    aiohttp-based transport to a racelog-sync hub.

    Usage:
        async with HubClient("http://hub.local:8000", api_key="...") as hub:
            if await hub.health_check():
                result = await hub.upload_batch(request)
    """

    def __init__(
        self,
        hub_url: str,
        *,
        timeout: float = 30.0,
        api_key: str | None = None,
    ) -> None:
        """
        Initialize the hub client.

        Args:
            hub_url: Base URL of the hub (e.g., "http://localhost:8000")
            timeout: Total timeout per request in seconds
            api_key: Optional bearer token
        """
        self._hub_url = hub_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._api_key = api_key
        self._session: aiohttp.ClientSession | None = None

    @property
    def hub_url(self) -> str:
        return self._hub_url

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            headers: dict[str, str] = {}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=headers)

    async def disconnect(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> HubClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.disconnect()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an HTTP request and decode the JSON body.

        Raises:
            HubClientError: On connection errors, timeouts, status >= 400 or
                a body that is not JSON.
        """
        if not self.is_connected:
            await self.connect()
        assert self._session is not None

        url = f"{self._hub_url}{path}"
        try:
            async with self._session.request(method, url, json=json_data, params=params) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise HubClientError(
                        f"Hub error {response.status}: {text[:200]}",
                        status_code=response.status,
                    )
                return await response.json()
        except aiohttp.ContentTypeError as e:
            raise HubClientError(f"Malformed response from {path}: {e}") from e
        except aiohttp.ClientError as e:
            raise HubClientError(f"Connection error: {e}") from e
        except TimeoutError as e:
            raise HubClientError(f"Timed out calling {path}") from e
        except ValueError as e:
            raise HubClientError(f"Malformed response from {path}: {e}") from e

    # ── HubTransport ────────────────────────────────────────────────

    async def health_check(self) -> bool:
        try:
            data = await self._request("GET", "/health")
        except HubClientError as e:
            logger.debug("Hub health check failed: %s", e)
            return False
        return isinstance(data, dict) and data.get("status") == "healthy"

    async def download_scope(self, scope: str, node_id: str) -> DownloadResult:
        data = await self._request(
            "GET", "/api/v1/sync/download", params={"scope": scope, "node_id": node_id}
        )
        return self._decode(DownloadResult.from_dict, data)

    async def upload_batch(self, request: UploadRequest) -> UploadResult:
        data = await self._request("POST", "/api/v1/sync/upload", json_data=request.to_dict())
        return self._decode(UploadResult.from_dict, data)

    async def get_batch_outcomes(self, batch_id: str) -> list[RecordOutcome]:
        data = await self._request("GET", f"/api/v1/sync/batches/{batch_id}")
        return self._decode(
            lambda d: [RecordOutcome.from_dict(o) for o in d.get("outcomes", [])], data
        )

    async def pull_resolutions(self, node_id: str) -> list[ResolutionNotice]:
        data = await self._request("GET", f"/api/v1/sync/resolutions/{node_id}")
        return self._decode(
            lambda d: [ResolutionNotice.from_dict(n) for n in d.get("notices", [])], data
        )

    async def ack_resolutions(self, node_id: str, entry_ids: list[int]) -> int:
        data = await self._request(
            "POST",
            f"/api/v1/sync/resolutions/{node_id}/ack",
            json_data={"entry_ids": entry_ids},
        )
        return self._decode(lambda d: int(d.get("acknowledged", 0)), data)

    async def register_node(self, node_id: str, node_name: str = "") -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/api/v1/nodes/register",
            json_data={"node_id": node_id, "node_name": node_name},
        )
        return self._decode(dict, data)

    # ── Hub-side review and status (used by the CLI) ────────────────

    async def list_conflicts(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/api/v1/conflicts")
        return self._decode(lambda d: list(d.get("conflicts", [])), data)

    async def get_conflict(self, conflict_id: str) -> dict[str, Any]:
        return self._decode(dict, await self._request("GET", f"/api/v1/conflicts/{conflict_id}"))

    async def resolve_conflict(
        self,
        conflict_id: str,
        choice: str,
        payload: dict[str, Any] | None = None,
        operator: str = "",
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/api/v1/conflicts/{conflict_id}/resolve",
            json_data={"choice": choice, "payload": payload, "operator": operator},
        )
        return self._decode(dict, data)

    async def add_conflict_note(self, conflict_id: str, operator: str, text: str) -> dict[str, Any]:
        data = await self._request(
            "POST",
            f"/api/v1/conflicts/{conflict_id}/notes",
            json_data={"operator": operator, "text": text},
        )
        return self._decode(dict, data)

    async def list_nodes(self) -> list[dict[str, Any]]:
        data = await self._request("GET", "/api/v1/nodes")
        return self._decode(lambda d: list(d.get("nodes", [])), data)

    async def status(self) -> dict[str, Any]:
        return self._decode(dict, await self._request("GET", "/api/v1/sync/status"))

    @staticmethod
    def _decode(parse: Any, data: Any) -> Any:
        if not isinstance(data, dict):
            raise HubClientError("Malformed response: expected a JSON object")
        try:
            return parse(data)
        except (KeyError, TypeError, ValueError) as e:
            raise HubClientError(f"Malformed response: {e}") from e
