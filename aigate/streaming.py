"""Newline-delimited JSON streaming of inference output.

A streamed response body is a sequence of lines, one JSON object each::

    {"delta":"Hel"}
    {"delta":"lo"}
    {"done":true}

Every line is handed to the transport as soon as the backend produces the
fragment, and ``{"done":true}`` is always the last line, written exactly
once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from .errors import UpstreamFailure

logger = logging.getLogger("aigate.streaming")

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"

STREAM_HEADERS = {
    "Transfer-Encoding": "chunked",
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}

_PENDING = object()
_EXHAUSTED = object()


def encode_chunk(obj: dict) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False) + "\n"


class NDJSONStreamWriter:
    """Single-use writer that turns a stream of text deltas into NDJSON lines.

    Call :meth:`prime` before the response is started: it pulls the first
    fragment, so a backend that fails straight away can still be reported
    as an ordinary error response.  :meth:`body` then returns the async
    generator the transport iterates; it can only be obtained once.

    If the transport stops iterating (client disconnect) the backend stream
    is closed and nothing more is written.  If the backend fails after the
    first line went out, a final ``{"error": ..., "code": ...}`` line is
    written instead of the ``done`` marker.
    """

    def __init__(
        self,
        deltas: AsyncIterator[str],
        *,
        idle_timeout: float | None = None,
    ) -> None:
        self._deltas = deltas
        self._idle_timeout = idle_timeout
        self._first: object = _PENDING
        self._used = False
        self.completed = False
        self.aborted = False

    async def _next(self) -> str:
        pending = self._deltas.__anext__()
        if self._idle_timeout is None:
            return await pending
        return await asyncio.wait_for(pending, timeout=self._idle_timeout)

    async def prime(self) -> None:
        """Fetch the first delta ahead of the response.

        Raises whatever the backend raises; the upstream stream is closed
        in that case.
        """
        if self._first is not _PENDING:
            return
        try:
            self._first = await self._next()
        except StopAsyncIteration:
            self._first = _EXHAUSTED
        except BaseException:
            await self._close_upstream()
            raise

    def body(self) -> AsyncIterator[str]:
        if self._used:
            raise RuntimeError("stream writer has already been used")
        self._used = True
        return self._generate()

    async def _generate(self) -> AsyncIterator[str]:
        try:
            if self._first is _PENDING:
                await self.prime()
            first, self._first = self._first, _EXHAUSTED
            if first is not _EXHAUSTED:
                if first:
                    yield encode_chunk({"delta": first})
                while True:
                    try:
                        delta = await self._next()
                    except StopAsyncIteration:
                        break
                    if delta:
                        yield encode_chunk({"delta": delta})
            yield encode_chunk({"done": True})
            self.completed = True
        except (GeneratorExit, asyncio.CancelledError):
            self.aborted = True
            logger.info("Client went away mid-stream; aborting inference stream")
            raise
        except Exception:
            logger.exception("Inference stream failed after the response started")
            yield encode_chunk(UpstreamFailure().to_dict())
        finally:
            await self._close_upstream()

    async def _close_upstream(self) -> None:
        aclose = getattr(self._deltas, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.warning("Error while closing inference stream", exc_info=True)
