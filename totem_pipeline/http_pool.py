"""
Shared aiohttp session handling for the REST provider clients.
"""
from typing import Optional

import aiohttp

from logging_setup import StructuredLogger


class PooledHTTPClient:
    """
    Lazily creates one pooled ClientSession and reuses it across requests.

    Subclasses set self._timeout_s and self._logger.
    """

    _timeout_s: float = 10.0
    _pool_size: int = 10
    _logger: StructuredLogger

    def __init__(self, http_session: Optional[aiohttp.ClientSession] = None):
        self._http_session = http_session
        self._owns_session = http_session is None

    def _get_or_create_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            connector = aiohttp.TCPConnector(
                limit=self._pool_size,
                limit_per_host=self._pool_size,
                ttl_dns_cache=300,
            )
            self._http_session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self._timeout_s, connect=min(3.0, self._timeout_s)),
            )
            self._owns_session = True
            self._logger.debug("HTTP connection pool created", pool_size=self._pool_size)
        return self._http_session

    async def aclose(self) -> None:
        """Close the pooled session if this client created it. Safe to call twice."""
        if self._http_session is not None and self._owns_session:
            try:
                await self._http_session.close()
            except aiohttp.ClientError as e:
                self._logger.warning("Error closing HTTP session", error=str(e), error_type=type(e).__name__)
        self._http_session = None
