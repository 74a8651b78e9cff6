from __future__ import annotations

import asyncio
import itertools
import json
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass

from mcp.types import INTERNAL_ERROR, PARSE_ERROR

from .constants import LOGGER
from .router import RequestRouter, error_response, is_valid_id

Write = Callable[[bytes], None]


@dataclass
class PendingRequest:
    id: object
    raw_payload: bytes
    submitted_at: float


def serialize_message(message: dict) -> bytes:
    return (json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


def _preview(raw: bytes, limit: int = 1000) -> str:
    text = raw.decode("utf-8", errors="replace")
    if len(text) > limit:
        text = text[:limit] + "...<truncated>"
    return text


class BridgeContext:
    """Per-process record of dispatched requests that have not answered yet."""

    def __init__(self) -> None:
        self.pending: dict[int, PendingRequest] = {}
        self._tasks: dict[int, asyncio.Task] = {}
        self._keys = itertools.count()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    def track(self, request: PendingRequest, work: Coroutine) -> asyncio.Task:
        key = next(self._keys)
        task = asyncio.get_running_loop().create_task(work)
        self.pending[key] = request
        self._tasks[key] = task
        self._idle.clear()
        task.add_done_callback(lambda _task: self._finish(key))
        return task

    def _finish(self, key: int) -> None:
        self.pending.pop(key, None)
        self._tasks.pop(key, None)
        if not self.pending:
            self._idle.set()

    async def drain(self) -> None:
        await self._idle.wait()

    def cancel_all(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()


class LineProtocolBridge:
    """Frames a byte stream into JSON-RPC messages and writes one line per reply.

    ``feed`` never waits on a dispatched request; replies are written in
    completion order.
    """

    def __init__(
        self,
        router: RequestRouter,
        write: Write,
        *,
        context: BridgeContext,
        clock=time.time,
    ) -> None:
        self._router = router
        self._write = write
        self._context = context
        self._clock = clock
        self._buffer = bytearray()

    @property
    def buffered(self) -> bytes:
        return bytes(self._buffer)

    def feed(self, chunk: bytes) -> None:
        self._buffer.extend(chunk)
        if b"\n" not in chunk:
            return
        *lines, rest = self._buffer.split(b"\n")
        self._buffer = bytearray(rest)
        for line in lines:
            self._handle_line(line)

    def feed_eof(self) -> None:
        rest = bytes(self._buffer)
        self._buffer.clear()
        self._handle_line(rest)

    def _handle_line(self, line: bytes) -> None:
        raw = line.strip()
        if not raw:
            return

        try:
            message = json.loads(raw.decode("utf-8"))
        except ValueError as error:
            LOGGER.warning("Discarding unparseable input line: %s", error)
            self._emit(error_response(None, PARSE_ERROR, "Parse error", {"detail": str(error)}))
            return

        request_id = None
        if isinstance(message, dict) and is_valid_id(message.get("id")):
            request_id = message.get("id")
        pending = PendingRequest(id=request_id, raw_payload=raw, submitted_at=self._clock())
        self._context.track(pending, self._dispatch(pending, message))

    async def _dispatch(self, pending: PendingRequest, message: object) -> None:
        try:
            response = await self._router.handle(message)
        except Exception as error:
            LOGGER.exception(
                "Dispatch failed for request id=%r: %s",
                pending.id,
                _preview(pending.raw_payload),
            )
            response = error_response(
                pending.id,
                INTERNAL_ERROR,
                "Internal error",
                {"detail": f"{error.__class__.__name__}: {error}"},
            )

        if response is None:
            return
        LOGGER.debug(
            "Request id=%r answered after %.3fs",
            pending.id,
            self._clock() - pending.submitted_at,
        )
        self._emit(response, request_id=pending.id)

    def _emit(self, message: dict, *, request_id=None) -> None:
        try:
            data = serialize_message(message)
        except (TypeError, ValueError) as error:
            LOGGER.error("Response for id=%r is not serializable: %s", request_id, error)
            data = serialize_message(
                error_response(request_id, INTERNAL_ERROR, "Internal error", {"detail": str(error)})
            )
        try:
            self._write(data)
        except OSError as error:
            LOGGER.error("Failed to write response for id=%r: %s", request_id, error)
