"""Shared aiohttp transport for all exchange clients.

One ClientSession serves every platform. The transport knows nothing about
exchange envelopes or retry policy: it returns decoded JSON for 2xx answers
and raises HttpStatusError with the status code otherwise, so that the
exchange client can tell throttling from bans.
"""

import asyncio
from typing import Any, Self

import aiohttp

from perpdata.exceptions import HttpStatusError, TransportError
from perpdata.logging import get_logger

logger = get_logger(__name__)

_USER_AGENT = "perpdata/0.1"


class HttpTransport:
    """Thin JSON-over-HTTP wrapper around an aiohttp ClientSession.

    Usage:
        async with HttpTransport(timeout=30.0) as transport:
            data = await transport.request("GET", url, params={"symbol": "BTCUSDT"})
    """

    def __init__(
        self,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Perform a request and return the decoded JSON body.

        Raises HttpStatusError for status >= 400 and TransportError for
        connection failures, timeouts and undecodable bodies.
        """
        session = self._get_session()
        if params:
            params = {k: _param_value(v) for k, v in params.items() if v is not None}

        try:
            async with session.request(method, url, params=params, json=json) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise HttpStatusError(response.status, body, url)
                return await response.json(content_type=None)
        except HttpStatusError:
            raise
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timeout calling {url}") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"HTTP error calling {url}: {e}") from e
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {url}: {e}") from e

    async def close(self) -> None:
        """Close the underlying session if this transport created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
            logger.info("http_transport_closed")
        self._session = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()


def _param_value(value: Any) -> Any:
    # aiohttp rejects bool query values
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, str)):
        return value
    return str(value)
