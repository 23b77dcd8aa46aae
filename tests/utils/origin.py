"""Fake upstream mirror and async helpers shared by the test suite."""

from __future__ import annotations

import asyncio
import hashlib
from collections import Counter
from typing import Callable, Optional

import httpx


ORIGIN = "http://origin.test/mirror"


class GatedStream(httpx.AsyncByteStream):
    """Body that pauses before part ``pause_before`` until ``gate`` is set."""

    def __init__(self, parts: list[bytes], gate: asyncio.Event, pause_before: int = 1) -> None:
        self._parts = parts
        self._gate = gate
        self._pause_before = pause_before

    async def __aiter__(self):
        for index, part in enumerate(self._parts):
            if index == self._pause_before:
                await self._gate.wait()
            yield part


class BrokenStream(httpx.AsyncByteStream):
    """Body that drops the connection after the first part."""

    def __init__(self, first: bytes) -> None:
        self._first = first

    async def __aiter__(self):
        yield self._first
        raise httpx.ReadError("connection reset by peer")


class FakeOrigin:
    """In-process upstream driven through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.statuses: dict[str, int] = {}
        self.responders: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.calls: Counter[str] = Counter()
        self.gate: Optional[asyncio.Event] = None

    def hold(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        return self.gate

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/mirror")
        self.calls[path] += 1
        if self.gate is not None:
            await self.gate.wait()
        if path in self.responders:
            return self.responders[path](request)
        if path in self.statuses:
            return httpx.Response(self.statuses[path], text="origin error")
        if path not in self.files:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=self.files[path])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def collect(chunks) -> bytes:
    data = bytearray()
    async for chunk in chunks:
        data.extend(chunk)
    return bytes(data)


async def iter_parts(*parts: bytes):
    for part in parts:
        yield part
