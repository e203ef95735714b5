"""Append-only log of every HTTP exchange passing through the service.

Each exchange produces two entries, request then response::

    > GET /list-installations HTTP/1.1
    > host: localhost:3000
    >
    >
    <body>
    > --------------------------

Bodies are drained into memory, written, and replayed to the next stage so
neither the route handler nor the client can tell the log was there.
"""
from __future__ import annotations

import asyncio
import logging
import os
from http import HTTPStatus
from pathlib import Path
from typing import BinaryIO, Iterable

from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..errors import AuditIOError, BodyReadError, BodyTooLarge

SEPARATOR = b"--------------------------"


def _http_version(scope: Scope) -> str:
    return f"HTTP/{scope.get('http_version', '1.1')}"


def _request_target(scope: Scope) -> bytes:
    raw_path = scope.get("raw_path") or scope["path"].encode()
    target = raw_path.split(b"?", 1)[0]
    if scope.get("query_string"):
        target += b"?" + scope["query_string"]
    return target


def _status_line(status: int) -> str:
    try:
        return f"{status} {HTTPStatus(status).phrase}"
    except ValueError:
        return str(status)


def format_entry(marker: bytes, start_line: bytes, headers: Iterable[tuple[bytes, bytes]], body: bytes) -> bytes:
    lines = [marker + b" " + start_line + b"\n"]
    for name, value in headers:
        lines.append(marker + b" " + name + b": " + value + b"\n")
    lines.append(marker + b"\n" + marker + b"\n")
    lines.append(body)
    lines.append(b"\n" + marker + b" " + SEPARATOR + b"\n\n")
    return b"".join(lines)


def format_request_entry(scope: Scope, body: bytes) -> bytes:
    start = scope["method"].encode() + b" " + _request_target(scope) + b" " + _http_version(scope).encode()
    return format_entry(b">", start, scope.get("headers", []), body)


def format_response_entry(scope: Scope, status: int, headers: Iterable[tuple[bytes, bytes]], body: bytes) -> bytes:
    start = f"{_http_version(scope)} {_status_line(status)}".encode("latin-1")
    return format_entry(b"<", start, headers, body)


class InteractionLog:
    """Single shared append handle; one writer at a time.

    An entry is written in full while the lock is held, so entries of
    concurrent exchanges never interleave.
    """

    def __init__(self, path: Path | str, lock_timeout: float | None = None):
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._lock = asyncio.Lock()
        self._fh: BinaryIO | None = None

    def open(self) -> "InteractionLog":
        self._fh = open(self.path, "ab")
        return self

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def _write(self, entry: bytes) -> None:
        if self._fh is None:
            raise AuditIOError(f"interaction log {self.path} is not open")
        self._fh.write(entry)
        self._fh.flush()
        os.fsync(self._fh.fileno())

    async def append(self, entry: bytes) -> None:
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.lock_timeout)
        except asyncio.TimeoutError as e:
            raise AuditIOError(f"timed out waiting for {self.path}") from e
        write = asyncio.ensure_future(asyncio.to_thread(self._write, entry))
        try:
            await asyncio.shield(write)
        except OSError as e:
            raise AuditIOError(str(e)) from e
        finally:
            if write.done():
                self._lock.release()
            else:
                # cancelled mid-write: the lock stays held until the thread is done
                write.add_done_callback(self._release_after_write)

    def _release_after_write(self, write: asyncio.Future) -> None:
        self._lock.release()
        if not write.cancelled() and write.exception() is not None:
            logging.error("interaction log write to %s failed after cancellation: %s", self.path, write.exception())

    def read(self) -> bytes:
        return self.path.read_bytes() if self.path.exists() else b""


class InteractionLogMiddleware:
    """ASGI middleware: drain, log and replay request and response bodies."""

    def __init__(self, app: ASGIApp, log: InteractionLog, max_body_bytes: int | None = None):
        self.app = app
        self.log = log
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            body = await self._drain_request(receive)
        except AuditIOError as e:
            logging.warning("%s %s: %s", scope["method"], scope["path"], e)
            await self._fail(scope, receive, send, e.status_code, str(e))
            return
        try:
            await self.log.append(format_request_entry(scope, body))
        except AuditIOError as e:
            await self._write_failed(scope, receive, send, "request", e)
            return

        replayed = False

        async def replay() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        start: Message | None = None
        chunks: list[bytes] = []

        async def capture(message: Message) -> None:
            nonlocal start
            if message["type"] == "http.response.start":
                start = message
            elif message["type"] == "http.response.body":
                chunks.append(message.get("body", b""))
            else:
                await send(message)

        try:
            await self.app(scope, replay, capture)
        except Exception as e:
            if start is not None:
                logging.exception("failed to read response body of %s %s", scope["method"], scope["path"])
                await self._fail(scope, receive, send, 500, f"failed to read response body: {e}")
                return
            logging.exception("unhandled error in %s %s", scope["method"], scope["path"])
            await PlainTextResponse("Internal Server Error", status_code=500)(scope, replay, capture)
        if start is None:
            return

        response_body = b"".join(chunks)
        headers = list(start.get("headers", []))
        try:
            await self.log.append(format_response_entry(scope, start["status"], headers, response_body))
        except AuditIOError as e:
            await self._write_failed(scope, receive, send, "response", e)
            return

        await send(start)
        await send({"type": "http.response.body", "body": response_body, "more_body": False})

    async def _drain_request(self, receive: Receive) -> bytes:
        chunks: list[bytes] = []
        size = 0
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise BodyReadError("failed to read request body: client disconnected")
            chunk = message.get("body", b"")
            size += len(chunk)
            if self.max_body_bytes is not None and size > self.max_body_bytes:
                raise BodyTooLarge(f"request body exceeds {self.max_body_bytes} bytes")
            chunks.append(chunk)
            if not message.get("more_body", False):
                return b"".join(chunks)

    async def _write_failed(self, scope: Scope, receive: Receive, send: Send, side: str, exc: AuditIOError) -> None:
        logging.error("failed to log %s of %s %s: %s", side, scope["method"], scope["path"], exc)
        await self._fail(scope, receive, send, 500, f"failed to write {side} to interaction log: {exc}")

    async def _fail(self, scope: Scope, receive: Receive, send: Send, status: int, message: str) -> None:
        response = PlainTextResponse(message, status_code=status)
        await response(scope, receive, send)


__all__ = [
    "InteractionLog",
    "InteractionLogMiddleware",
    "format_entry",
    "format_request_entry",
    "format_response_entry",
]
