from __future__ import annotations

import logging

import httpx

from deskbridge.api.models import HealthResponse, SessionCreatedResponse, SessionInfoResponse
from deskbridge.codes import require_valid_code
from deskbridge.errors import CodespaceExhausted, DeskBridgeError, Expired, NotFound


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def _detail(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("detail"), str):
        return body["detail"]
    return None


def _raise_for_session_status(response: httpx.Response) -> None:
    if response.status_code == 404:
        raise NotFound(_detail(response))
    if response.status_code == 410:
        raise Expired(_detail(response))
    if response.status_code == 503:
        raise CodespaceExhausted(_detail(response))
    if response.status_code >= 400:
        raise DeskBridgeError(_detail(response) or f"Server answered {response.status_code}")


class SessionApiClient:
    """REST client for the session endpoints used by participants.

    Every request carries a bounded timeout; 404/410 surface as `NotFound`/`Expired`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def create_session(self) -> SessionCreatedResponse:
        response = await self._client.post("/api/session")
        _raise_for_session_status(response)
        created = SessionCreatedResponse.model_validate(response.json())
        logger.info("Created session %s", created.session_code)
        return created

    async def get_session(self, code: str) -> SessionInfoResponse:
        normalized = require_valid_code(code)
        response = await self._client.get(f"/api/session/{normalized}")
        _raise_for_session_status(response)
        return SessionInfoResponse.model_validate(response.json())

    async def close_session(self, code: str) -> None:
        normalized = require_valid_code(code)
        response = await self._client.delete(f"/api/session/{normalized}")
        _raise_for_session_status(response)

    async def health(self) -> HealthResponse:
        response = await self._client.get("/api/health")
        response.raise_for_status()
        return HealthResponse.model_validate(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
