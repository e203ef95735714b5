import asyncio
import time

import httpx
import pytest
from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient

from ghrelay.audit.interactions import (
    InteractionLog,
    InteractionLogMiddleware,
    format_request_entry,
    format_response_entry,
)
from ghrelay.audit.reader import read_entries
from ghrelay.errors import AuditIOError


def _scope(**extra):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/hook",
        "raw_path": b"/hook",
        "query_string": b"a=1",
        "http_version": "1.1",
        "headers": [(b"content-type", b"application/json"), (b"x-a", b"1")],
    }
    scope.update(extra)
    return scope


def _echo_app(log: InteractionLog, **kw):
    app = FastAPI()
    calls = []

    @app.post("/echo")
    async def echo(request: Request):
        body = await request.body()
        calls.append(body)
        return Response(content=body + b"|seen", media_type="application/octet-stream")

    @app.get("/ping")
    def ping():
        return PlainTextResponse("pong")

    app.add_middleware(InteractionLogMiddleware, log=log, **kw)
    return app, calls


def test_request_entry_format():
    entry = format_request_entry(_scope(), b"{}")
    assert entry == (
        b"> POST /hook?a=1 HTTP/1.1\n"
        b"> content-type: application/json\n"
        b"> x-a: 1\n"
        b">\n>\n"
        b"{}"
        b"\n> --------------------------\n\n"
    )


def test_response_entry_format():
    entry = format_response_entry(_scope(), 404, [(b"content-length", b"2")], b"{}")
    assert entry == (
        b"< HTTP/1.1 404 Not Found\n"
        b"< content-length: 2\n"
        b"<\n<\n"
        b"{}"
        b"\n< --------------------------\n\n"
    )


def test_raw_path_carrying_query_is_not_doubled():
    entry = format_request_entry(_scope(raw_path=b"/hook?a=1"), b"")
    assert entry.startswith(b"> POST /hook?a=1 HTTP/1.1\n")


def test_bodies_reach_handler_and_client_unchanged(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()
    app, calls = _echo_app(log)
    body = bytes(range(256)) * 4

    r = TestClient(app).post("/echo", content=body)

    assert r.status_code == 200
    assert r.content == body + b"|seen"
    assert calls == [body]
    log.close()
    req, resp = read_entries(log.path.read_bytes())
    assert (req.direction, resp.direction) == ("request", "response")
    assert req.start_line == "POST /echo HTTP/1.1"
    assert req.body == body
    assert resp.start_line == "HTTP/1.1 200 OK"
    assert resp.body == body + b"|seen"
    assert ("content-type", "application/octet-stream") in resp.headers


def test_each_exchange_logs_request_then_response(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()
    app, _ = _echo_app(log)
    c = TestClient(app)
    assert c.get("/ping", params={"x": "1"}).text == "pong"
    assert c.get("/missing").status_code == 404
    log.close()

    entries = read_entries(log.path.read_bytes())
    assert [e.start_line for e in entries] == [
        "GET /ping?x=1 HTTP/1.1",
        "HTTP/1.1 200 OK",
        "GET /missing HTTP/1.1",
        "HTTP/1.1 404 Not Found",
    ]
    assert ("host", "testserver") in entries[0].headers
    assert entries[1].body == b"pong"


def test_concurrent_exchanges_never_interleave(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()
    app = FastAPI()

    @app.post("/slow")
    async def slow(request: Request):
        body = await request.body()
        for _ in range(len(body) % 7):
            await asyncio.sleep(0)
        return Response(content=body)

    app.add_middleware(InteractionLogMiddleware, log=log)
    n = 25

    def marker(i: int) -> bytes:
        return f"m{i:03d};".encode() * (100 + i)

    async def go():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
            return await asyncio.gather(*(c.post("/slow", content=marker(i)) for i in range(n)))

    responses = asyncio.run(go())
    log.close()

    assert [r.content for r in responses] == [marker(i) for i in range(n)]
    entries = read_entries(log.path.read_bytes())
    assert len(entries) == 2 * n
    seen: dict[bytes, list[str]] = {}
    for e in entries:
        tokens = set(e.body.split(b";")) - {b""}
        assert len(tokens) == 1, e.body[:40]
        seen.setdefault(tokens.pop(), []).append(e.direction)
    assert len(seen) == n
    assert all(directions == ["request", "response"] for directions in seen.values())


def test_log_write_failure_aborts_only_that_exchange(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log")  # not opened yet
    app, calls = _echo_app(log)
    c = TestClient(app)

    r = c.post("/echo", content=b"lost")
    assert r.status_code == 500
    assert "failed to write request to interaction log" in r.text
    assert calls == []

    log.open()
    r = c.post("/echo", content=b"kept")
    assert r.status_code == 200
    assert calls == [b"kept"]
    log.close()


def test_oversize_request_body_is_413(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()
    app, calls = _echo_app(log, max_body_bytes=8)
    c = TestClient(app)

    assert c.post("/echo", content=b"123456789").status_code == 413
    assert c.post("/echo", content=b"12345678").status_code == 200
    assert calls == [b"12345678"]
    log.close()


def _drive(middleware, messages):
    sent = []
    pending = iter(messages)

    async def receive():
        return next(pending)

    async def send(message):
        sent.append(message)

    asyncio.run(middleware(_scope(), receive, send))
    return sent


def test_disconnect_while_draining_is_400(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()

    async def app(scope, receive, send):  # pragma: no cover - must not be reached
        raise AssertionError("forwarded")

    sent = _drive(
        InteractionLogMiddleware(app, log),
        [{"type": "http.request", "body": b"part", "more_body": True}, {"type": "http.disconnect"}],
    )
    log.close()
    assert sent[0]["status"] == 400
    assert b"failed to read request body" in sent[1]["body"]


def test_broken_response_stream_is_500(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()

    async def app(scope, receive, send):
        await receive()
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"partial", "more_body": True})
        raise RuntimeError("stream broke")

    sent = _drive(InteractionLogMiddleware(app, log), [{"type": "http.request", "body": b"", "more_body": False}])
    log.close()
    assert sent[0]["status"] == 500
    assert b"failed to read response body: stream broke" in sent[1]["body"]


def test_lock_acquisition_times_out(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log", lock_timeout=0.01).open()

    async def go():
        await log._lock.acquire()
        try:
            with pytest.raises(AuditIOError, match="timed out"):
                await log.append(b"entry")
        finally:
            log._lock.release()
        await log.append(b"entry")

    asyncio.run(go())
    log.close()
    assert log.path.read_bytes() == b"entry"


def test_unhandled_route_error_is_logged_as_500(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()
    app = FastAPI()

    @app.get("/boom")
    def boom():
        raise RuntimeError("boom")

    app.add_middleware(InteractionLogMiddleware, log=log)

    r = TestClient(app).get("/boom")
    log.close()

    assert r.status_code == 500
    assert r.text == "Internal Server Error"
    req, resp = read_entries(log.path.read_bytes())
    assert req.start_line == "GET /boom HTTP/1.1"
    assert resp.start_line == "HTTP/1.1 500 Internal Server Error"
    assert resp.body == b"Internal Server Error"


def test_cancelled_append_holds_lock_until_write_finishes(tmp_path):
    log = InteractionLog(tmp_path / "interactions.log").open()
    real_write = log._write
    writing: list[bytes] = []
    overlapped: list[bool] = []

    def slow_write(entry: bytes) -> None:
        overlapped.append(bool(writing))
        writing.append(entry)
        time.sleep(0.2)
        real_write(entry)
        writing.remove(entry)

    log._write = slow_write

    async def go():
        first = asyncio.create_task(log.append(b"first;"))
        await asyncio.sleep(0.05)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        await log.append(b"second;")

    asyncio.run(go())
    log.close()
    assert overlapped == [False, False]
    assert log.path.read_bytes() == b"first;second;"
