"""Cooperative cancellation shared between a caller and an in-flight operation."""

import asyncio
from typing import Optional

from tubegateway.app.exceptions import ErrorKind, GatewayError


class CancellationToken:
    """One-shot cancellation signal.

    The caller keeps the token and calls ``cancel()``; the retry loop checks
    it before every attempt and every backoff sleep, and ``sleep()`` wakes up
    as soon as the token fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise ``GatewayError(CANCELLED)`` when the token has fired."""
        if self._event.is_set():
            raise GatewayError.of(ErrorKind.CANCELLED, detail=self.reason or "")

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds unless cancelled first.

        Raises:
            GatewayError: CANCELLED if the token fires before the delay ends
        """
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(delay, 0.0))
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()
