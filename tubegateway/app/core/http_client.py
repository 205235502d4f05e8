"""HTTP client construction for provider calls.

The client is owned by ``GatewayContext`` rather than a module global, so
several gateways (or tests) can run side by side with their own pools.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx

from tubegateway.app.core.config import Settings, settings as default_settings


def _build_limits(config: Settings, overrides: dict) -> httpx.Limits:
    return httpx.Limits(
        max_connections=overrides.get("max_connections", config.httpx_max_connections),
        max_keepalive_connections=overrides.get(
            "max_keepalive_connections", config.httpx_max_keepalive_connections
        ),
        keepalive_expiry=overrides.get("keepalive_expiry", config.httpx_keepalive_expiry),
    )


def _build_timeout(config: Settings, overrides: dict) -> httpx.Timeout:
    # A single timeout override replaces all granular timeouts
    timeout_override = overrides.get("timeout")
    if timeout_override is not None:
        return httpx.Timeout(timeout_override)
    return httpx.Timeout(
        connect=overrides.get("connect_timeout", config.httpx_connect_timeout),
        read=overrides.get("read_timeout", config.httpx_read_timeout),
        write=overrides.get("write_timeout", config.httpx_write_timeout),
        pool=overrides.get("pool_timeout", config.httpx_pool_timeout),
    )


def create_http_client(config: Optional[Settings] = None, **kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client for the provider.

    The returned client should be closed when done:
        async with create_http_client(settings) as client:
            ...

    Args:
        config: Settings to read pool limits and timeouts from
        **kwargs: Override default settings. Can include:
            - timeout: Single timeout value (overrides all granular timeouts)
            - connect_timeout, read_timeout, write_timeout, pool_timeout
            - max_connections, max_keepalive_connections, keepalive_expiry
            - transport: Custom httpx transport (tests)

    Returns:
        A new httpx.AsyncClient instance.
    """
    config = config or default_settings
    client_kwargs = {
        "timeout": _build_timeout(config, kwargs),
        "limits": _build_limits(config, kwargs),
        "base_url": config.youtube_base_url,
        "headers": {"Accept": "application/json"},
    }
    if "transport" in kwargs:
        client_kwargs["transport"] = kwargs["transport"]
    return httpx.AsyncClient(**client_kwargs)


@asynccontextmanager
async def init_http_client(
    config: Optional[Settings] = None, **kwargs
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create a client for the lifetime of the block and close it afterwards."""
    client = create_http_client(config, **kwargs)
    try:
        yield client
    finally:
        await client.aclose()
