from __future__ import annotations

import asyncio
import signal
import sys
from typing import BinaryIO, Protocol

from .constants import LOGGER
from .framing import BridgeContext, LineProtocolBridge

CHUNK_SIZE = 64 * 1024


class ChunkReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class StdoutWriter:
    def __init__(self, stream: BinaryIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout.buffer

    def __call__(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()


class _BlockingReader:
    """Reads a regular file (redirected stdin) off the event loop."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    async def read(self, n: int = -1) -> bytes:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._stream.read, n)


async def open_stdin_reader() -> ChunkReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=CHUNK_SIZE)
    protocol = asyncio.StreamReaderProtocol(reader)
    try:
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    except ValueError:
        # Pipe transports refuse regular files.
        return _BlockingReader(sys.stdin.buffer)
    return reader


async def pump(reader: ChunkReader, bridge: LineProtocolBridge) -> None:
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            bridge.feed_eof()
            return
        bridge.feed(chunk)


def _install_signal_handlers(stop: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig, stop)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


def _on_signal(sig: signal.Signals, stop: asyncio.Event) -> None:
    LOGGER.info("Received %s, exiting", sig.name)
    stop.set()


async def run_stdio(
    bridge: LineProtocolBridge,
    context: BridgeContext,
    *,
    reader: ChunkReader | None = None,
    stop: asyncio.Event | None = None,
    install_signal_handlers: bool = True,
) -> int:
    """Pump input into the bridge until end-of-input, then drain.

    Setting ``stop`` (termination signals do) returns at once without
    waiting for pending requests.
    """
    loop = asyncio.get_running_loop()
    stop = stop or asyncio.Event()
    installed = _install_signal_handlers(stop) if install_signal_handlers else []
    reader = reader or await open_stdin_reader()

    stopper = loop.create_task(stop.wait())
    reading = loop.create_task(pump(reader, bridge))
    try:
        done, _ = await asyncio.wait({reading, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if reading in done:
            reading.result()
            LOGGER.info("stdin closed; waiting for %s pending request(s)", context.pending_count)
            draining = loop.create_task(context.drain())
            await asyncio.wait({draining, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if not draining.done():
                draining.cancel()
        if stop.is_set():
            LOGGER.info("Abandoning %s pending request(s)", context.pending_count)
            context.cancel_all()
        return 0
    finally:
        reading.cancel()
        stopper.cancel()
        for sig in installed:
            loop.remove_signal_handler(sig)
