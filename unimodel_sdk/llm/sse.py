# unimodel_sdk/llm/sse.py
# SPDX-License-Identifier: Apache-2.0
"""
Server-Sent Events assembly for streaming model responses.

Wire format consumed:

    data: {"output": {...}}\\n
    \\n
    data: {"output": {...}}\\n
    \\n
    data: [DONE]\\n
    \\n

Chunks from the transport may split lines, and even multi-byte UTF-8
characters, at arbitrary boundaries. `SSEDecoder` buffers partial lines and
only dispatches an event once its terminating blank line has arrived.

Layers
------
- SSEDecoder:      incremental, synchronous line/event state machine.
- aiter_sse_data:  async iterator of raw data payloads; stops at [DONE].
- aiter_sse_json:  async iterator of decoded JSON payloads; a malformed event
                   terminates the sequence with MalformedResponse.

Both async helpers close their source iterator when they finish, fail, or
are closed early by the consumer, so the underlying HTTP response is released
promptly.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Callable, List, Optional, Union

from unimodel_sdk.llm.errors import MalformedResponse

LOG = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

# Truncation for payload excerpts attached to MalformedResponse details.
_EXCERPT_CHARS = 200


class SSEDecoder:
    """
    Incremental SSE decoder.

    Feed it text chunks in arrival order; it returns the data payload of every
    event completed by that chunk. Handles LF, CRLF and CR line endings
    (including a CRLF split across two chunks), multi-line `data:` fields,
    comments, and ignores `event:`, `id:` and `retry:` fields.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._data_lines: List[str] = []

    def feed(self, chunk: str) -> List[str]:
        text = self._buffer + chunk
        # A trailing CR may be the first half of a CRLF pair.
        held_cr = text.endswith("\r")
        if held_cr:
            text = text[:-1]
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        *complete, partial = text.split("\n")
        self._buffer = partial + ("\r" if held_cr else "")

        events: List[str] = []
        for line in complete:
            data = self._process_line(line)
            if data is not None:
                events.append(data)
        return events

    def flush(self) -> List[str]:
        """
        Dispatch whatever is pending at end of stream.

        Some servers close the connection without a final blank line; the
        last event is still delivered in that case.
        """
        events: List[str] = []
        if self._buffer:
            line, self._buffer = self._buffer.rstrip("\r"), ""
            data = self._process_line(line)
            if data is not None:
                events.append(data)
        data = self._process_line("")
        if data is not None:
            events.append(data)
        return events

    def _process_line(self, line: str) -> Optional[str]:
        if line == "":
            if not self._data_lines:
                return None
            data = "\n".join(self._data_lines)
            self._data_lines = []
            return data
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data_lines.append(value)
        return None


async def _aclose(source: Any) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


async def aiter_sse_data(
    chunks: AsyncIterable[Union[str, bytes]],
    *,
    sentinel: str = DONE_SENTINEL,
) -> AsyncIterator[str]:
    """
    Decode an SSE chunk stream into event data payloads.

    Empty payloads are skipped. The sequence ends at `sentinel` (which is not
    emitted) or when the source is exhausted.
    """
    decoder = SSEDecoder()
    utf8 = codecs.getincrementaldecoder("utf-8")()

    def _decode(chunk: Union[str, bytes], final: bool = False) -> str:
        if isinstance(chunk, str):
            return chunk
        try:
            return utf8.decode(chunk, final=final)
        except UnicodeDecodeError as e:
            raise MalformedResponse(f"SSE stream is not valid UTF-8: {e}") from e

    try:
        async for chunk in chunks:
            for data in decoder.feed(_decode(chunk)):
                if data.strip() == sentinel:
                    LOG.debug("Received SSE %s marker", sentinel)
                    return
                if data.strip():
                    yield data

        for data in decoder.feed(_decode(b"", final=True)) + decoder.flush():
            if data.strip() == sentinel:
                LOG.debug("Received SSE %s marker", sentinel)
                return
            if data.strip():
                yield data
    finally:
        await _aclose(chunks)


async def aiter_sse_json(
    chunks: AsyncIterable[Union[str, bytes]],
    *,
    sentinel: str = DONE_SENTINEL,
    loads: Callable[[str], Any] = json.loads,
) -> AsyncIterator[Any]:
    """
    Decode an SSE chunk stream into JSON payloads.

    Raises MalformedResponse (terminating the sequence) when one event's data
    is not valid JSON; events before it have already been delivered.
    """
    events = aiter_sse_data(chunks, sentinel=sentinel)
    try:
        async for data in events:
            try:
                payload = loads(data)
            except ValueError as e:
                LOG.warning("Failed to parse SSE data: %s", e)
                raise MalformedResponse(
                    f"malformed SSE event: {e}",
                    details={"data": data[:_EXCERPT_CHARS]},
                ) from e
            yield payload
    finally:
        await events.aclose()


__all__ = ["DONE_SENTINEL", "SSEDecoder", "aiter_sse_data", "aiter_sse_json"]
