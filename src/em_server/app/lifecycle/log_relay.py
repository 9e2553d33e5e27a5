"""
Streaming log relay.

Forwards a container's live output to one caller. The Docker SDK's follow
stream is blocking, so a reader thread pulls chunks, reassembles lines that
were split across chunks, strips terminal control sequences and pushes
StreamEvent objects into an asyncio queue owned by the caller's event loop.

The relay never writes resource state; it only reads.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import re
import threading
from typing import AsyncIterator, List, Optional

from em_server.app.errors import EngineError
from em_server.app.models import StreamEvent

logger = logging.getLogger("environment_manager.log_relay")

__all__ = ["clean_log_text", "LineAssembler", "LogRelay"]

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
# Everything non-printable except tab and newline.
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")


def clean_log_text(text: str) -> str:
    return _CONTROL_RE.sub("", _ANSI_RE.sub("", text))


class LineAssembler:
    """Turns arbitrary byte chunks into complete, cleaned, non-blank lines."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def feed(self, chunk: bytes) -> List[str]:
        text = self._partial + self._decoder.decode(chunk)
        parts = text.split("\n")
        self._partial = parts.pop()
        return self._clean(parts)

    def flush(self) -> List[str]:
        rest = self._partial + self._decoder.decode(b"", final=True)
        self._partial = ""
        return self._clean([rest])

    @staticmethod
    def _clean(parts: List[str]) -> List[str]:
        lines = (clean_log_text(p).rstrip() for p in parts)
        return [line for line in lines if line.strip()]


class LogRelay:
    def __init__(self, runtime, container_ref: str, *, tail: int = 100) -> None:
        self.runtime = runtime
        self.container_ref = container_ref
        self.tail = tail
        self._closed = threading.Event()
        self._stream = None
        self._thread: Optional[threading.Thread] = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def start(self, queue: "asyncio.Queue[Optional[StreamEvent]]", loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """
        Start the reader thread. Events land in `queue`; None marks the end.
        """
        loop = loop or asyncio.get_running_loop()

        def emit(item: Optional[StreamEvent]) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # consumer's loop already shut down
                logger.debug("Dropping log event for %s: event loop closed", self.container_ref)

        def pump() -> None:
            assembler = LineAssembler()
            try:
                self._stream = self.runtime.follow_logs(self.container_ref, self.tail)
                if self.closed:
                    self._close_stream()
                    return
                for chunk in self._stream:
                    if self.closed:
                        break
                    for line in assembler.feed(chunk):
                        emit(StreamEvent(type="log", message=line))
                for line in assembler.flush():
                    emit(StreamEvent(type="log", message=line))
            except EngineError as e:
                if not self.closed:
                    emit(StreamEvent(type="status", message=f"Log stream ended: {e}"))
            except Exception as e:
                # close() tears the socket down under the reader; that is not an error.
                if not self.closed:
                    logger.warning("Log relay for %s interrupted: %s", self.container_ref, e)
                    emit(StreamEvent(type="status", message=f"Log stream interrupted: {e.__class__.__name__}"))
            finally:
                emit(None)

        self._thread = threading.Thread(target=pump, name=f"log-relay-{self.container_ref[:12]}", daemon=True)
        self._thread.start()

    def close(self) -> None:
        """Unsubscribe. Safe to call more than once and from any thread."""
        self._closed.set()
        self._close_stream()

    def _close_stream(self) -> None:
        stream = self._stream
        if stream is None:
            return
        try:
            stream.close()
        except Exception as e:
            logger.debug("Closing log stream for %s: %s", self.container_ref, e)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield log events until the stream ends; closes the subscription on exit."""
        queue: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
        self.start(queue)
        try:
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            self.close()
