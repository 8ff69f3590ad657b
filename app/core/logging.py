from __future__ import annotations

import atexit
import logging
import queue
import sys
from logging.handlers import QueueHandler, QueueListener

from app.core.settings import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Raw upstream stream text; written from a listener thread, never the event loop.
STREAM_LOGGER = "app.stream"

logger = logging.getLogger(__name__)

_stream_listener: QueueListener | None = None


class DroppingQueueHandler(QueueHandler):
    """Queue handler that drops records instead of raising when the queue is full."""

    def __init__(self, records: queue.Queue):
        super().__init__(records)
        self.dropped = 0

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


def install_stream_log(
    sink: logging.Handler,
    *,
    level: int = logging.INFO,
    max_records: int = 10_000,
) -> QueueListener:
    """Route the stream logger through a bounded queue drained by ``sink`` on a thread.

    Replaces any stream log installed before. The returned listener is already
    started; ``stop_stream_log()`` flushes and stops it.
    """
    global _stream_listener
    stop_stream_log()

    stream_logger = logging.getLogger(STREAM_LOGGER)
    for handler in list(stream_logger.handlers):
        if isinstance(handler, QueueHandler):
            stream_logger.removeHandler(handler)

    records: queue.Queue = queue.Queue(maxsize=max_records)
    stream_logger.addHandler(DroppingQueueHandler(records))
    stream_logger.setLevel(level)
    stream_logger.propagate = False

    _stream_listener = QueueListener(records, sink, respect_handler_level=True)
    _stream_listener.start()
    return _stream_listener


def stop_stream_log() -> None:
    global _stream_listener
    if _stream_listener is None:
        return
    listener, _stream_listener = _stream_listener, None
    listener.stop()

    for handler in logging.getLogger(STREAM_LOGGER).handlers:
        if isinstance(handler, DroppingQueueHandler) and handler.dropped:
            logger.warning("Stream log dropped %d record(s) on a full queue", handler.dropped)


def configure_logging(settings: Settings) -> None:
    level_name = (settings.log_level or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(level=level, format=LOG_FORMAT)

    logging.getLogger("uvicorn.error").setLevel(level)
    logging.getLogger("uvicorn.access").setLevel(level)
    # httpx logs every outbound request at INFO; the proxy logs its own.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    sink = logging.StreamHandler(sys.stdout)
    sink.setFormatter(logging.Formatter(LOG_FORMAT))
    install_stream_log(sink, level=level, max_records=settings.stream_log_queue_size)


atexit.register(stop_stream_log)
