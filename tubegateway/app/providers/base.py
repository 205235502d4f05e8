from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx


class BaseProvider(ABC):
    """Transport for one quota-metered data API.

    A provider either borrows the gateway's pooled ``httpx.AsyncClient`` or,
    when none is given, opens a short-lived client per call. The API key is
    kept private to the instance; subclasses decide where it goes on the wire.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        """Initialize the provider.

        Args:
            base_url: Root URL every endpoint path is appended to
            api_key: Caller-held key; never logged or echoed in errors
            http_client: Pooled client owned by the gateway context, if any
            timeout: Default per-call timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._api_key = api_key
        self._http_client = http_client
        self.headers = self._default_headers()

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        """The pooled client, or None when calls open their own."""
        return self._http_client

    def __repr__(self) -> str:
        # No key material in reprs
        return f"{type(self).__name__}(base_url={self.base_url!r})"

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _endpoint(self, path: str) -> str:
        return self.base_url + path

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield the pooled client, or a one-off client closed on exit."""
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    @abstractmethod
    async def fetch(
        self,
        operation_kind: str,
        params: Mapping[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Issue one provider call and return the decoded JSON body.

        Args:
            operation_kind: Named provider operation (e.g. ``videos.list``)
            params: Query parameters for the operation
            timeout: Per-call timeout overriding the provider default

        Returns:
            The raw JSON response body

        Raises:
            httpx.HTTPStatusError: If the provider answers with an error status
            httpx.TransportError: If the request never completed
        """

    @abstractmethod
    async def health_check(self, timeout: float = 2.0) -> bool:
        """Whether the provider answers at all, without spending quota."""
