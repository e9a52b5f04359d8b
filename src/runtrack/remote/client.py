"""
Async client for the remote running-session API.

Endpoints (relative to api_base_url):
    POST /running             → begin session, returns {"id": ...}
    PUT  /running/{id}        → in-progress update
    POST /running/{id}/end    → final record, returns the confirmed record

Every transport or HTTP status error is raised as NetworkFailure; the state
machine and the retry sweeper decide how to recover.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx

from runtrack.engine.errors import NetworkFailure
from runtrack.remote.payload import is_placeholder_id

logger = logging.getLogger(__name__)


class SessionApi(Protocol):
    async def begin_session(self, shoe_id: Optional[int] = None) -> str:
        ...

    async def end_session(self, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update_session(self, record: Dict[str, Any]) -> None:
        ...


class SessionApiClient:
    """
    httpx-based SessionApi.

    The underlying AsyncClient is created on first use; use the client as an
    async context manager (or call aclose()) to release it.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. "https://api.example.com/api/v1".
            token: Bearer token; omitted from headers when empty.
            timeout: Per-request timeout in seconds.
            transport: Custom transport (httpx.MockTransport in tests).
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings) -> "SessionApiClient":
        return cls(
            base_url=settings.api_base_url,
            token=settings.api_token,
            timeout=settings.api_timeout_seconds,
        )

    async def __aenter__(self) -> "SessionApiClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ─── Endpoints ───────────────────────────────────────────────────────────

    async def begin_session(self, shoe_id: Optional[int] = None) -> str:
        body = {"shoeId": shoe_id} if shoe_id is not None else {}
        data = await self._request("POST", "/running", json=body)
        session_id = data.get("id") if isinstance(data, dict) else data
        if session_id is None:
            raise NetworkFailure("begin session response carried no id")
        logger.info("Remote session %s started", session_id)
        return str(session_id)

    async def end_session(self, record: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request("POST", f"/running/{record['id']}/end", json=record)
        logger.info("Remote session %s ended", record["id"])
        return data if isinstance(data, dict) else {"id": record["id"]}

    async def update_session(self, record: Dict[str, Any]) -> None:
        await self._request("PUT", f"/running/{record['id']}", json=record)

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise NetworkFailure(f"{method} {url} failed: {exc}") from exc

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise NetworkFailure(f"{method} {url} returned invalid JSON") from exc


async def deliver_session(
    api: SessionApi,
    payload: Dict[str, Any],
    on_remote_id: Optional[Callable[[str], Awaitable[None]]] = None,
) -> Dict[str, Any]:
    """
    Send a finished session's wire payload.

    A payload still carrying a local placeholder id (the begin call failed
    when the run started) first obtains a real id from begin_session().
    on_remote_id is awaited with that id before end_session() is called, so
    the caller can persist it and a failed end never begins a second session.
    """
    if is_placeholder_id(payload.get("id")):
        remote_id = await api.begin_session(payload.get("shoeId"))
        logger.info("Placeholder %s replaced by remote id %s", payload["id"], remote_id)
        payload = {**payload, "id": remote_id}
        if on_remote_id is not None:
            await on_remote_id(remote_id)
    return await api.end_session(payload)
