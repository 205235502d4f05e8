"""YouTube Data API v3 provider implementation."""

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from tubegateway.app.core.security import key_fingerprint
from tubegateway.app.exceptions import ErrorKind, GatewayError
from tubegateway.app.providers.base import BaseProvider

logger = logging.getLogger(__name__)

# operation kind -> (endpoint path, default ``part`` parameter)
ENDPOINTS: Dict[str, tuple[str, str]] = {
    "search": ("/search", "snippet"),
    "videos.list": ("/videos", "snippet,contentDetails,statistics"),
    "channels.list": ("/channels", "snippet,statistics,contentDetails"),
    "playlists.list": ("/playlists", "snippet,contentDetails,status"),
    "playlistItems.list": ("/playlistItems", "snippet,contentDetails"),
    "commentThreads.list": ("/commentThreads", "snippet"),
    "videoCategories.list": ("/videoCategories", "snippet"),
}


def build_query(operation_kind: str, params: Mapping[str, Any]) -> Dict[str, str]:
    """Flatten caller parameters into provider query parameters.

    Sequences become comma-separated lists and None values are dropped.
    The ``part`` parameter defaults to what the transformation pipeline reads.
    """
    try:
        _, default_part = ENDPOINTS[operation_kind]
    except KeyError:
        raise GatewayError.of(
            ErrorKind.INVALID_REQUEST, detail=f"unsupported operation kind: {operation_kind}"
        ) from None

    query: Dict[str, str] = {"part": default_part}
    for name, value in params.items():
        if value is None:
            continue
        if name == "key":
            raise GatewayError.of(
                ErrorKind.INVALID_REQUEST, detail="the API key is configured on the provider"
            )
        if isinstance(value, (list, tuple, set, frozenset)):
            value = ",".join(str(v) for v in value)
        elif isinstance(value, bool):
            value = "true" if value else "false"
        query[name] = str(value)
    return query


class YouTubeProvider(BaseProvider):
    """YouTube Data API provider with support for shared HTTP client connection pooling.

    The API key travels as the ``key`` query parameter. It is added to the
    request at the last moment and never appears in log lines or in the
    message of raised errors.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0
    ):
        super().__init__(base_url, api_key, http_client, timeout)
        self.key_id = key_fingerprint(api_key)

    async def fetch(
        self,
        operation_kind: str,
        params: Mapping[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Call the endpoint for ``operation_kind`` and return its JSON body.

        Raises:
            GatewayError: INVALID_REQUEST for an unknown operation kind
            httpx.HTTPStatusError: If the API returns an error status
            httpx.TransportError: On connection failures and timeouts
        """
        path, _ = ENDPOINTS.get(operation_kind, ("", ""))
        query = build_query(operation_kind, params)
        url = self._endpoint(path)

        logger.debug(
            f"GET {path} part={query.get('part')} params={sorted(k for k in query if k != 'part')} "
            f"key_id={self.key_id}",
            extra={"operation": operation_kind},
        )

        async with self._client_context() as client:
            resp = await client.get(
                url,
                params={**query, "key": self._api_key},
                headers=self.headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
            if resp.is_error:
                # raise_for_status would embed the full URL, key included
                raise httpx.HTTPStatusError(
                    f"{resp.status_code} {resp.reason_phrase} from {path}",
                    request=resp.request,
                    response=resp,
                )
            return resp.json()

    async def health_check(self, timeout: float = 2.0) -> bool:
        """Check if the YouTube API is reachable without spending quota.

        An unauthenticated request is answered with a 4xx when the service
        is up, so anything below 500 counts as healthy.
        """
        try:
            url = self._endpoint("/videoCategories")
            async with self._client_context() as client:
                resp = await client.get(url, params={"part": "snippet"}, timeout=timeout)
                return resp.status_code < 500
        except httpx.HTTPError:
            return False
