"""Tests for cooperative cancellation and HTTP client construction."""

import asyncio

import httpx
import pytest

from tubegateway.app.core.cancellation import CancellationToken
from tubegateway.app.core.config import Settings
from tubegateway.app.core.http_client import create_http_client, init_http_client
from tubegateway.app.exceptions import ErrorKind, GatewayError


class TestCancellationToken:
    """Test the one-shot cancellation signal."""

    def test_initial_state(self):
        token = CancellationToken()

        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_first_reason_wins(self):
        token = CancellationToken()

        token.cancel("first")
        token.cancel("second")

        assert token.cancelled is True
        assert token.reason == "first"
        with pytest.raises(GatewayError) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.kind == ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        token = CancellationToken()

        await token.sleep(0.01)

        assert token.cancelled is False

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, token.cancel)
        started = loop.time()

        with pytest.raises(GatewayError) as exc_info:
            await token.sleep(30.0)

        assert exc_info.value.kind == ErrorKind.CANCELLED
        assert loop.time() - started < 5.0


class TestHttpClient:
    """Test HTTP client construction from settings."""

    @pytest.mark.asyncio
    async def test_create_from_settings(self):
        config = Settings(_env_file=None, httpx_max_connections=7, httpx_connect_timeout=1.5)

        async with create_http_client(config) as client:
            assert client.timeout.connect == 1.5
            assert str(client.base_url).startswith("https://www.googleapis.com/youtube/v3")
            assert client.headers["Accept"] == "application/json"

    @pytest.mark.asyncio
    async def test_single_timeout_override(self):
        async with create_http_client(Settings(_env_file=None), timeout=3.0) as client:
            assert client.timeout == httpx.Timeout(3.0)

    @pytest.mark.asyncio
    async def test_init_closes_client(self):
        async with init_http_client(Settings(_env_file=None)) as client:
            assert not client.is_closed

        assert client.is_closed
