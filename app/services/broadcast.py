"""In-process fan-out of one byte stream to several independent consumers.

A :class:`StreamBroadcaster` reads its source once and hands every chunk to
each :class:`Subscription` through that subscription's own bounded queue, so
consumers advance at their own pace. The producer never waits for a
subscriber; when a queue is full:

* a lossless subscription is detached and flagged as overflowed, and its
  consumer gets :class:`BroadcastOverflow` instead of a gap in the data.
* a lossy subscription skips the chunk, counted in ``Subscription.dropped``.

End of data, and any error raised by the source, reach every subscription
after the chunks already buffered for it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger(__name__)


class BroadcastOverflow(RuntimeError):
    """A lossless subscriber fell a full buffer behind the producer."""


class BroadcastCancelled(RuntimeError):
    """The producer was cancelled before the source was exhausted."""


class _End:
    __slots__ = ("error",)

    def __init__(self, error: BaseException | None = None):
        self.error = error


class Subscription:
    def __init__(self, name: str, *, max_buffer: int, lossless: bool):
        self.name = name
        self.lossless = lossless
        self.dropped = 0
        self.overflowed = False
        self._queue: asyncio.Queue[bytes | _End] = asyncio.Queue(maxsize=max_buffer)
        self._end: _End | None = None
        self._closed = False

    @property
    def active(self) -> bool:
        return not self._closed and self._end is None

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Called by the consumer when it stops reading; buffered chunks are discarded."""
        self._closed = True
        self._discard_buffer()

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            if self._end is not None and self._queue.empty():
                item = self._end
            else:
                item = await self._queue.get()

            if isinstance(item, _End):
                if item.error is not None:
                    raise item.error
                return
            yield item

    def _offer(self, chunk: bytes) -> bool:
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            return False
        return True

    def _overflow(self) -> None:
        self.overflowed = True
        self._discard_buffer()
        self._finish(
            BroadcastOverflow(
                f"subscriber '{self.name}' fell {self._queue.maxsize} chunks behind"
            )
        )

    def _finish(self, error: BaseException | None) -> None:
        if self._end is not None:
            return
        self._end = _End(error)
        try:
            self._queue.put_nowait(self._end)
        except asyncio.QueueFull:
            # The consumer picks up self._end once it has drained the queue.
            pass

    def _discard_buffer(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return


class StreamBroadcaster:
    def __init__(self, source: AsyncIterable[bytes], *, max_buffer: int = 256):
        self._source = source
        self._max_buffer = max_buffer
        self._subscriptions: list[Subscription] = []
        self._started = False
        self.error: BaseException | None = None
        self.chunk_count = 0
        self.byte_count = 0

    def subscribe(self, name: str, *, lossless: bool = True) -> Subscription:
        if self._started:
            raise RuntimeError("Cannot subscribe after the broadcast has started")
        subscription = Subscription(
            name, max_buffer=self._max_buffer, lossless=lossless
        )
        self._subscriptions.append(subscription)
        return subscription

    async def run(self) -> None:
        """Pump the source into every subscription until it ends or fails.

        Source errors are not raised here; they are handed to the subscribers.
        """
        if self._started:
            raise RuntimeError("Broadcast already started")
        self._started = True

        try:
            async for chunk in self._source:
                if not chunk:
                    continue
                self.chunk_count += 1
                self.byte_count += len(chunk)
                self._publish(chunk)
                # Let consumers that keep up take the chunk before the next read.
                await asyncio.sleep(0)
        except asyncio.CancelledError:
            self.error = BroadcastCancelled("broadcast cancelled before end of data")
            raise
        except Exception as exc:
            self.error = exc
        finally:
            for subscription in self._subscriptions:
                subscription._finish(self.error)

    def _publish(self, chunk: bytes) -> None:
        for subscription in self._subscriptions:
            if not subscription.active or subscription._offer(chunk):
                continue

            if subscription.lossless:
                logger.warning(
                    "Subscriber '%s' fell a full buffer behind; detaching it",
                    subscription.name,
                )
                subscription._overflow()
                continue

            subscription.dropped += 1
            if subscription.dropped == 1:
                logger.warning(
                    "Subscriber '%s' is lagging; dropping chunks", subscription.name
                )
