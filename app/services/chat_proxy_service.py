from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from app.core.errors import ConfigError, ProxyInternalError, UpstreamError, UpstreamUnreachable
from app.core.logging import STREAM_LOGGER
from app.core.settings import Settings, get_settings
from app.models.chat import ProxyRequest
from app.services.broadcast import BroadcastOverflow, StreamBroadcaster
from app.services.messages import build_upstream_request

logger = logging.getLogger(__name__)
stream_logger = logging.getLogger(STREAM_LOGGER)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

# Relay tasks outlive the response when the client disconnects early.
_relay_tasks: set[asyncio.Task] = set()


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _relay_tasks.add(task)
    task.add_done_callback(_relay_tasks.discard)
    return task


class StreamRelay:
    """Tees one upstream SSE body into the client response and the log.

    Neither view can hold the upstream read back. A client that falls a full
    buffer behind is disconnected; the log view skips chunks instead.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        client: httpx.AsyncClient,
        *,
        max_buffer: int,
    ):
        self._upstream = upstream
        self._client = client
        self._broadcast = StreamBroadcaster(upstream.aiter_bytes(), max_buffer=max_buffer)
        self._client_view = self._broadcast.subscribe("client", lossless=True)
        self._log_view = self._broadcast.subscribe("log", lossless=False)
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [_spawn(self._pump()), _spawn(self._capture_log())]

    async def _pump(self) -> None:
        try:
            await self._broadcast.run()
            error = self._broadcast.error
            if error is not None:
                logger.error(
                    "Upstream stream failed after %d chunks: %r",
                    self._broadcast.chunk_count,
                    error,
                )
        finally:
            await self._close_upstream()

    async def _close_upstream(self) -> None:
        for resource in (self._upstream, self._client):
            try:
                await resource.aclose()
            except Exception:
                logger.warning("Failed to close upstream connection", exc_info=True)

    async def _capture_log(self) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            async for chunk in self._log_view.chunks():
                text = decoder.decode(chunk)
                if text:
                    stream_logger.info("%s", text)
            tail = decoder.decode(b"", final=True)
            if tail:
                stream_logger.info("%s", tail)
        except Exception as e:
            # Upstream failures are already reported by the producer.
            if e is not self._broadcast.error:
                logger.exception("Stream log capture failed")
        finally:
            self._log_view.close()
            if self._log_view.dropped:
                logger.warning(
                    "Stream log skipped %d chunk(s) while lagging behind upstream",
                    self._log_view.dropped,
                )

    async def client_stream(self) -> AsyncIterator[bytes]:
        """Body iterator for the client response."""
        self.start()
        try:
            async for chunk in self._client_view.chunks():
                yield chunk
        except BroadcastOverflow:
            logger.warning("Client fell behind the upstream stream; closing its connection")
            raise
        except Exception:
            logger.error(
                "Upstream stream failed after headers were sent; terminating client connection"
            )
            raise
        else:
            logger.info(
                "Upstream stream finished (%d chunks, %d bytes)",
                self._broadcast.chunk_count,
                self._broadcast.byte_count,
            )
        finally:
            self._client_view.close()

    async def wait_closed(self) -> None:
        """Wait for the producer and the log capture to finish."""
        self.start()
        await asyncio.gather(*self._tasks, return_exceptions=True)


class ChatProxyService:
    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings or get_settings()

        if not self._settings.upstream_api_key:
            logger.error("Server API key (UPSTREAM_API_KEY) not configured.")
            raise ConfigError(
                "Server API Key not configured. Please set UPSTREAM_API_KEY "
                "(or GEMINI_API_KEY_TIU) in the environment."
            )

        self._transport = transport

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self._settings.upstream_timeout_s),
            headers={"Authorization": f"Bearer {self._settings.upstream_api_key}"},
        )

    async def _dispatch(
        self, client: httpx.AsyncClient, request: ProxyRequest
    ) -> httpx.Response:
        body = build_upstream_request(request, self._settings.system_instruction)
        outbound = client.build_request(
            "POST", self._settings.upstream_url, json=body.model_dump()
        )

        logger.info("Sending request to %s", self._settings.upstream_url)
        try:
            response = await client.send(outbound, stream=True)
        except httpx.HTTPError as e:
            logger.exception("Proxy request failed")
            raise UpstreamUnreachable(str(e) or type(e).__name__) from e

        logger.info("Received response from upstream with status: %s", response.status_code)
        if response.is_success:
            return response

        try:
            error_text = (await response.aread()).decode("utf-8", errors="replace")
        except httpx.HTTPError as e:
            logger.exception("Failed to read upstream error body")
            raise UpstreamUnreachable(str(e) or type(e).__name__) from e
        finally:
            await response.aclose()

        logger.error("Error from upstream API: %s", error_text)
        raise UpstreamError.from_body(response.status_code, error_text)

    async def complete(self, request: ProxyRequest) -> Any:
        """Forward a non-streaming request and return the upstream JSON unchanged."""
        async with self._new_client() as client:
            response = await self._dispatch(client, request)
            try:
                await response.aread()
            except httpx.HTTPError as e:
                logger.exception("Failed to read upstream response")
                raise UpstreamUnreachable(str(e) or type(e).__name__) from e
            finally:
                await response.aclose()

        try:
            data = response.json()
        except ValueError as e:
            logger.error("Upstream returned a non-JSON success body: %s", response.text[:500])
            raise ProxyInternalError(f"upstream returned invalid JSON ({e})") from e

        logger.debug("Full JSON response from upstream: %s", data)
        return data

    async def open_stream(self, request: ProxyRequest) -> StreamRelay:
        """Open the upstream stream; errors before the first byte are raised here."""
        client = self._new_client()
        try:
            response = await self._dispatch(client, request)
        except BaseException:
            await client.aclose()
            raise

        logger.info("Piping stream to client...")
        relay = StreamRelay(
            response, client, max_buffer=self._settings.stream_buffer_chunks
        )
        relay.start()
        return relay
