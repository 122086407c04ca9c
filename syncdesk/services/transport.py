from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional

import httpx

from syncdesk.core.config import get_settings
from syncdesk.models.messages import DecodeError

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """The backend could not be reached or rejected the request."""

    def __init__(self, endpoint: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.status_code = status_code


class HttpTransport:
    """JSON POST requests and server-sent event streams against the backend."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.normalized_backend_url).rstrip("/")
        self._timeout = timeout or settings.request_timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout)
        self._owns_client = client is None
        self._token: Optional[str] = None

    def set_token(self, token: str | None) -> None:
        self._token = token or None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def send(self, endpoint: str, payload: dict[str, Any] | None = None) -> Any:
        """POST ``payload`` and return the decoded JSON body, or ``None`` when empty."""
        try:
            response = await self._client.post(endpoint, json=payload or {}, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(endpoint, str(exc), exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise TransportError(endpoint, str(exc) or exc.__class__.__name__) from exc
        if not response.content or not response.text.strip():
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise DecodeError(f"{endpoint} response not JSON: {exc}") from exc

    async def stream(self, endpoint: str) -> AsyncIterator[str]:
        """Yield the data field of each server-sent event published on ``endpoint``."""
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with self._client.stream("GET", endpoint, headers=headers, timeout=timeout) as response:
                response.raise_for_status()
                logger.debug("Event stream %s opened (status=%s)", endpoint, response.status_code)
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if line == "":
                        if data_lines:
                            yield "\n".join(data_lines)
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    field, _, value = line.partition(":")
                    if field == "data":
                        data_lines.append(value[1:] if value.startswith(" ") else value)
                if data_lines:
                    yield "\n".join(data_lines)
        except httpx.HTTPStatusError as exc:
            raise TransportError(endpoint, str(exc), exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise TransportError(endpoint, str(exc) or exc.__class__.__name__) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["HttpTransport", "TransportError"]
