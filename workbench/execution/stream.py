"""
Engine output streaming and cloud session scanning.

Stdout and stderr are read concurrently and handed to a single consumer
through a queue, so lines of one stream keep their order and the two
streams interleave in arrival order.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from .models import CloudSessionMeta

STDOUT = "stdout"
STDERR = "stderr"

LineHandler = Callable[[str, str], Union[None, Awaitable[None]]]

_SENTINEL = object()


async def _read_line(stream: asyncio.StreamReader) -> bytes:
    """
    Read one line of any length.

    ``StreamReader.readline`` gives up on lines longer than the reader's
    limit and drops them; here the oversized part is drained in chunks.
    """
    chunks = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            break
        except asyncio.IncompleteReadError as e:
            chunks.append(e.partial)
            break
        except asyncio.LimitOverrunError as e:
            chunks.append(await stream.read(max(e.consumed, 1)))
    return b"".join(chunks)


async def _enqueue(stream: Optional[asyncio.StreamReader], name: str, queue: asyncio.Queue) -> None:
    try:
        if stream is not None:
            while True:
                line = await _read_line(stream)
                if not line:
                    break
                await queue.put((name, line.decode("utf-8", errors="replace").rstrip("\r\n")))
    finally:
        # one sentinel per reader, also when reading fails
        queue.put_nowait(_SENTINEL)


async def pump_output(process: asyncio.subprocess.Process, on_line: LineHandler) -> int:
    """
    Forward every output line to ``on_line(stream_name, text)`` and wait
    for the process to exit.

    Returns:
        The process exit code
    """
    queue: asyncio.Queue = asyncio.Queue()
    readers = [
        asyncio.create_task(_enqueue(process.stdout, STDOUT, queue)),
        asyncio.create_task(_enqueue(process.stderr, STDERR, queue)),
    ]

    remaining = len(readers)
    try:
        while remaining:
            item = await queue.get()
            if item is _SENTINEL:
                remaining -= 1
                continue
            result = on_line(*item)
            if asyncio.iscoroutine(result):
                await result
    finally:
        for reader in readers:
            if not reader.done():
                reader.cancel()

    for reader in readers:
        if reader.done() and not reader.cancelled() and reader.exception() is not None:
            raise reader.exception()

    return await process.wait()


# BrowserStack prints 40-character hashed ids in dashboard links and logs
SESSION_PATTERNS = [
    re.compile(r"sessions/([0-9a-f]{40})\b"),
    re.compile(r"session[ _-]?id[\"']?\s*[:=]\s*[\"']?([0-9a-f]{40})\b", re.IGNORECASE),
]
BUILD_PATTERNS = [
    re.compile(r"builds/([0-9a-z]{40})\b"),
    re.compile(r"build[ _-]?(?:hashed[ _-]?)?id[\"']?\s*[:=]\s*[\"']?([0-9a-z]{40})\b", re.IGNORECASE),
]
DASHBOARD_URL = re.compile(
    r"https://(?:automate|observability|app-automate)\.browserstack\.com/[^\s\"'<>]+"
)
TUNNEL_FAILURE = re.compile(
    r"(browserstack[ -]?local|local testing|local binary|local tunnel)"
    r".{0,80}?(fail|error|not running|could not|unable|refused|timed out)",
    re.IGNORECASE,
)

TUNNEL_HINT = (
    "BrowserStack Local tunnel could not be established. Close any other "
    "BrowserStack Local instance and check that your network allows "
    "connections to BrowserStack, then run the test again."
)


@dataclass
class ScanResult:
    """What one line revealed."""

    meta_changed: bool = False
    tunnel_error: Optional[str] = None


class CloudOutputScanner:
    """
    Accumulates cloud session identifiers from streamed engine output and
    recognises the local tunnel failure signature.
    """

    def __init__(self):
        self.meta = CloudSessionMeta()
        self._tunnel_reported = False

    @staticmethod
    def _first(patterns, line: str) -> Optional[str]:
        for pattern in patterns:
            match = pattern.search(line)
            if match:
                return match.group(1)
        return None

    def scan(self, line: str) -> ScanResult:
        result = ScanResult()

        session_id = self._first(SESSION_PATTERNS, line)
        if session_id and session_id != self.meta.session_id:
            self.meta.session_id = session_id
            result.meta_changed = True

        build_id = self._first(BUILD_PATTERNS, line)
        if build_id and build_id != self.meta.build_id:
            self.meta.build_id = build_id
            result.meta_changed = True

        url = DASHBOARD_URL.search(line)
        if url and not self.meta.dashboard_url:
            self.meta.dashboard_url = url.group(0).rstrip(".,;)")
            result.meta_changed = True

        if not self._tunnel_reported and TUNNEL_FAILURE.search(line):
            self._tunnel_reported = True
            result.tunnel_error = TUNNEL_HINT

        return result

    def session_meta(self) -> Optional[CloudSessionMeta]:
        """Collected identifiers, ``None`` when nothing was seen."""
        return None if self.meta.is_empty() else self.meta.model_copy()
