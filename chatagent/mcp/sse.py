"""
Server-Sent Events support for streaming tools.

``SSEParser`` reassembles ``text/event-stream`` frames from arbitrary byte
chunks; ``SSEClient`` owns one long-lived streaming GET and feeds the parser.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class SSEEvent:
    """One dispatched event. ``retry`` is -1 when the server sent none."""

    id: str = ""
    event_type: str = "message"
    data: str = ""
    retry: int = -1


EventListener = Callable[[SSEEvent], None]
ConnectedListener = Callable[[str], None]
DisconnectedListener = Callable[[], None]
ErrorListener = Callable[[str], None]


class SSEParser:
    """
    Incremental ``text/event-stream`` parser.

    Feeding the same bytes in one call or split at any boundary yields the
    same events. The last non-empty event id is kept for reconnection.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self.last_event_id = ""
        self._reset_event()

    def _reset_event(self) -> None:
        self._event_type = ""
        self._event_id = ""
        self._data: List[str] = []
        self._retry = -1

    def reset(self) -> None:
        """Drop buffered bytes and any half-built event."""
        self._buffer = b""
        self._reset_event()

    def feed(self, chunk: bytes) -> List[SSEEvent]:
        """Add bytes and return every event completed by them."""
        data = self._buffer + chunk
        # A trailing CR may be the first half of a CRLF.
        held = b""
        if data.endswith(b"\r"):
            data, held = data[:-1], b"\r"
        data = data.replace(b"\r\n", b"\n").replace(b"\r", b"\n")

        events: List[SSEEvent] = []
        while b"\n\n" in data:
            block, data = data.split(b"\n\n", 1)
            event = self._parse_block(block)
            if event is not None:
                events.append(event)
        self._buffer = data + held
        return events

    def flush(self) -> List[SSEEvent]:
        """Parse whatever is left once the stream has ended."""
        if not self._buffer:
            return []
        block, self._buffer = self._buffer.replace(b"\r", b"\n"), b""
        event = self._parse_block(block)
        return [event] if event is not None else []

    def _parse_block(self, block: bytes) -> Optional[SSEEvent]:
        for line in block.decode("utf-8", errors="replace").split("\n"):
            if not line:
                continue
            if line.startswith(":"):
                logger.debug("SSE comment: %s", line[1:])
                continue
            field_name, colon, value = line.partition(":")
            if not colon:
                logger.warning("SSE: invalid line (no colon): %s", line)
                continue
            if value.startswith(" "):
                value = value[1:]

            if field_name == "event":
                self._event_type = value
            elif field_name == "data":
                self._data.append(value)
            elif field_name == "id":
                self._event_id = value
            elif field_name == "retry":
                try:
                    self._retry = int(value)
                except ValueError:
                    logger.debug("SSE: ignoring non-integer retry %r", value)
            else:
                logger.debug("SSE: unknown field '%s': %s", field_name, value)

        if not (self._data or self._event_type or self._event_id):
            return None

        event = SSEEvent(
            id=self._event_id,
            event_type=self._event_type or "message",
            data="\n".join(self._data),
            retry=self._retry,
        )
        if event.id:
            self.last_event_id = event.id
        self._reset_event()
        return event


class SSEClient:
    """
    One long-lived SSE connection.

    Delivery is callback based: events, connection, disconnection and
    errors each have their own listeners. A transport error is reported to
    error listeners only; a stream that ends (or is closed with
    :meth:`disconnect`) is reported to disconnection listeners.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        self._owns_client = client is None
        self._parser = SSEParser()
        self._task: Optional[asyncio.Task] = None
        self._stream_url = ""
        self._event_listeners: List[EventListener] = []
        self._connected_listeners: List[ConnectedListener] = []
        self._disconnected_listeners: List[DisconnectedListener] = []
        self._error_listeners: List[ErrorListener] = []

    # ── Listeners ─────────────────────────────────────────────────────────

    def add_event_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def add_connected_listener(self, listener: ConnectedListener) -> None:
        self._connected_listeners.append(listener)

    def add_disconnected_listener(self, listener: DisconnectedListener) -> None:
        self._disconnected_listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stream_url(self) -> str:
        return self._stream_url

    @property
    def last_event_id(self) -> str:
        return self._parser.last_event_id

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def connect(self, url: str, last_event_id: str = "") -> None:
        """Open the stream in a background task; returns once it is scheduled."""
        if self.is_connected:
            logger.warning("SSEClient: already connected, disconnecting first")
            await self.disconnect()

        self._stream_url = url
        self._parser.reset()
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if last_event_id:
            headers["Last-Event-ID"] = last_event_id
            logger.debug("SSEClient: resuming from event id %s", last_event_id)

        logger.info("SSEClient: connecting to %s", url)
        self._task = asyncio.get_running_loop().create_task(self._run(url, headers))

    async def disconnect(self) -> None:
        """Close the stream if open and notify disconnection listeners."""
        task, self._task = self._task, None
        if task is not None and not task.done():
            logger.info("SSEClient: disconnecting from %s", self._stream_url)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            self._notify(self._disconnected_listeners)
        self._stream_url = ""
        self._parser.reset()

    async def aclose(self) -> None:
        await self.disconnect()
        if self._owns_client:
            await self._client.aclose()

    async def wait_closed(self) -> None:
        """Wait for the current stream to end on its own."""
        task = self._task
        if task is not None:
            await asyncio.shield(task)

    async def _run(self, url: str, headers: dict) -> None:
        try:
            async with self._client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                self._notify(self._connected_listeners, url)
                async for chunk in response.aiter_bytes():
                    for event in self._parser.feed(chunk):
                        self._dispatch(event)
            for event in self._parser.flush():
                self._dispatch(event)
        except httpx.HTTPError as exc:
            message = f"SSE error: {exc}"
            logger.error(message)
            self._notify(self._error_listeners, message)
            return
        except Exception as exc:
            message = f"SSE error: {exc}"
            logger.exception("SSEClient: stream from %s failed", url)
            self._notify(self._error_listeners, message)
            return

        logger.info("SSEClient: stream finished")
        self._notify(self._disconnected_listeners)

    def _dispatch(self, event: SSEEvent) -> None:
        logger.debug(
            "SSE event - type: %s, id: %s, data length: %d",
            event.event_type, event.id, len(event.data),
        )
        self._notify(self._event_listeners, event)

    @staticmethod
    def _notify(listeners: list, *args) -> None:
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("SSE listener %r failed", listener)
