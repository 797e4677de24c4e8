"""HTTP transport for the sync gateway."""

import logging
from typing import Any, Mapping, Optional

import httpx

from client.config import ClientConfig
from client.errors import TransientError, error_for_status

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[float]:
    """Seconds from a Retry-After header. The HTTP-date form is ignored."""
    value = response.headers.get("retry-after", "").strip()
    if not value.isdigit():
        return None
    return float(value)


class ApiClient:
    """Thin async JSON client. Raises classified SyncErrors, returns decoded bodies.

    Pass `transport` to route requests somewhere other than the network
    (an ASGI app, or `httpx.MockTransport` in tests).
    """

    def __init__(self, config: ClientConfig, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_base_url.rstrip("/"),
            timeout=config.request_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        token: str | None = None,
        phase: str | None = None,
    ) -> Any:
        headers: dict[str, str] = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e!r}", phase=phase) from e

        if response.is_success:
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        try:
            payload: Any = response.json()
        except ValueError:
            payload = response.text
        logger.debug("%s %s -> %d", method, path, response.status_code)
        raise error_for_status(
            response.status_code,
            f"{method} {path} returned {response.status_code}",
            phase=phase,
            payload=payload,
            retry_after=_retry_after(response),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
