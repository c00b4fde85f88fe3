"""Server-Sent-Event decoding shared by every streaming provider.

Turns raw transport chunks into StreamEvents: one event per data payload,
never merged, so per-chunk timing reaches the metrics accumulator intact.
"""

import codecs
import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

# payload -> (content delta or None, finished)
DeltaExtractor = Callable[[dict], tuple[str | None, bool]]


@dataclass
class StreamEvent:
    content_delta: str | None = None
    finished: bool = False
    error_payload: str | None = None
    transport_error: bool = False  # connection-level failure rather than a provider payload


def _error_message(payload: dict) -> str | None:
    error = payload.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        message = error.get("message") or json.dumps(error)
        code = error.get("code")
        return f"{code} {message}" if code else str(message)
    return str(error)


class SSEDecoder:
    """Incremental line-buffered decoder for ``data: <json>`` streams.

    The trailing fragment of each chunk stays buffered until its newline
    arrives. Once a terminal event has been produced the decoder ignores
    any further input.
    """

    def __init__(self, provider_name: str, extract: DeltaExtractor) -> None:
        self.provider_name = provider_name
        self._extract = extract
        self._buffer = ""
        self._bytes = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.done = False

    def feed(self, chunk: str | bytes) -> list[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._bytes.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._process(lines)

    def flush(self) -> list[StreamEvent]:
        """Process whatever is left once the transport has closed."""
        tail = self._buffer + self._bytes.decode(b"", final=True)
        self._buffer = ""
        return self._process([tail]) if tail else []

    def _process(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            if self.done:
                break
            event = self._process_line(line.rstrip("\r"))
            if event is None:
                continue
            if event.finished or event.error_payload is not None:
                self.done = True
            events.append(event)
        return events

    def _process_line(self, line: str) -> StreamEvent | None:
        if not line.startswith(DATA_PREFIX):
            return None
        data = line[len(DATA_PREFIX):].strip()
        if not data:
            return None
        if data == DONE_SENTINEL:
            return StreamEvent(finished=True)
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("%s: skipping malformed stream payload: %.80s", self.provider_name, data)
            return None
        if not isinstance(payload, dict):
            logger.warning("%s: skipping non-object stream payload: %.80s", self.provider_name, data)
            return None

        error = _error_message(payload)
        if error is not None:
            return StreamEvent(error_payload=error, finished=True)

        delta, finished = self._extract(payload)
        if not delta and not finished:
            return None
        return StreamEvent(content_delta=delta or None, finished=finished)


async def consume_stream(
    chunks: AsyncIterator[str | bytes],
    decoder: SSEDecoder,
) -> AsyncIterator[StreamEvent]:
    """Yield StreamEvents from a chunk iterator until a terminal event.

    A transport failure becomes a single terminal error event; nothing is
    retried here. A transport that closes cleanly without a done marker is
    treated as a finished stream.
    """
    try:
        async for chunk in chunks:
            for event in decoder.feed(chunk):
                yield event
            if decoder.done:
                return
    except httpx.HTTPError as exc:
        yield StreamEvent(error_payload=str(exc) or type(exc).__name__, finished=True, transport_error=True)
        return

    for event in decoder.flush():
        yield event
    if not decoder.done:
        logger.debug("%s: stream closed without a done marker", decoder.provider_name)
        yield StreamEvent(finished=True)
