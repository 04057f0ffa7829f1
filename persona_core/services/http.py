from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, AsyncIterator

import aiohttp

from ..errors import ProviderError, ProviderErrorKind
from .base import RETRIABLE_STATUSES, provider_error_for_exception, provider_error_for_status

logger = logging.getLogger("persona_core")


class HttpProviderClient:
    """Shared aiohttp session handling for JSON-over-HTTP model providers."""

    provider_name = "provider"

    def __init__(self, timeout_seconds: int) -> None:
        self.timeout_seconds = max(5, int(timeout_seconds))
        self.timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        return self._session

    async def _request(self, url: str, payload: dict[str, Any], *, retries: int = 3) -> dict[str, Any]:
        session = await self._ensure_session()
        last_error: ProviderError | None = None

        for attempt in range(1, max(1, retries) + 1):
            try:
                async with session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        parsed = json.loads(text)
                        if isinstance(parsed, dict):
                            return parsed
                        raise ProviderError(
                            ProviderErrorKind.UNAVAILABLE,
                            f"{self.provider_name} returned non-object JSON response",
                        )
                    error = provider_error_for_status(self.provider_name, response.status, text)
                    if response.status not in RETRIABLE_STATUSES:
                        raise error
                    last_error = error
            except asyncio.CancelledError:
                raise
            except ProviderError as exc:
                if exc.status is not None and exc.status not in RETRIABLE_STATUSES:
                    raise
                last_error = exc
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
                last_error = provider_error_for_exception(self.provider_name, exc)

            if attempt < retries:
                logger.debug("%s request attempt %s failed: %s", self.provider_name, attempt, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        assert last_error is not None
        raise last_error

    async def _stream_lines(self, url: str, payload: dict[str, Any]) -> AsyncIterator[str]:
        """Yield decoded non-empty response lines; the response is released when the consumer stops."""
        session = await self._ensure_session()
        stream_timeout = aiohttp.ClientTimeout(total=None, sock_read=self.timeout_seconds)
        try:
            async with session.post(url, json=payload, timeout=stream_timeout) as response:
                if response.status != 200:
                    text = await response.text()
                    raise provider_error_for_status(self.provider_name, response.status, text)
                async for raw_line in response.content:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if line:
                        yield line
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise provider_error_for_exception(self.provider_name, exc) from exc
