"""Tests for the HTTP remote queue client."""

from typing import Any

import pytest
import pytest_asyncio
from aiohttp import web

from print_relay.adapters import HttpRemoteQueueClient, parse_remote_job
from print_relay.config import ApiConfig
from print_relay.core import RemoteJob, RemoteQueueError


class _QueueServer:
    def __init__(self, port: int) -> None:
        self.port = port
        self.next_responses: list[web.Response] = []
        self.report_status = 200
        self.requests: list[dict[str, Any]] = []

    def make_url(self, path: str = "/") -> str:
        return f"http://127.0.0.1:{self.port}{path}"


@pytest_asyncio.fixture
async def queue_server(unused_tcp_port_factory):
    port = unused_tcp_port_factory()
    server = _QueueServer(port)

    async def next_handler(request: web.Request):
        server.requests.append(
            {"path": request.path, "auth": request.headers.get("Authorization")}
        )
        if server.next_responses:
            return server.next_responses.pop(0)
        return web.Response(status=204)

    async def report_handler(request: web.Request):
        server.requests.append(
            {
                "path": request.path,
                "auth": request.headers.get("Authorization"),
                "body": await request.json(),
            }
        )
        return web.json_response({"ok": True}, status=server.report_status)

    app = web.Application()
    app.router.add_get("/api/printQueue", next_handler)
    app.router.add_post("/api/updatePdfStatus", report_handler)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()

    try:
        yield server
    finally:
        await runner.cleanup()


def make_client(server: _QueueServer, token=None) -> HttpRemoteQueueClient:
    config = ApiConfig(base_url=server.make_url(""), token=token, timeout_seconds=5.0)
    return HttpRemoteQueueClient(config)


@pytest.mark.asyncio
async def test_fetch_next_parses_job(queue_server):
    queue_server.next_responses.append(
        web.json_response(
            {"url": "https://files.example.com/a.pdf", "id": 42, "filename": "a.pdf"}
        )
    )
    client = make_client(queue_server)

    try:
        job = await client.fetch_next("secret")
    finally:
        await client.aclose()

    assert job == RemoteJob(url="https://files.example.com/a.pdf", id=42, filename="a.pdf")
    assert queue_server.requests[0]["auth"] == "Bearer secret"


@pytest.mark.asyncio
async def test_fetch_next_without_token_is_anonymous(queue_server):
    client = make_client(queue_server)

    try:
        assert await client.fetch_next() is None
    finally:
        await client.aclose()

    assert queue_server.requests[0]["auth"] is None


@pytest.mark.asyncio
async def test_configured_token_is_used_as_fallback(queue_server):
    client = make_client(queue_server, token="from-config")

    try:
        await client.fetch_next()
    finally:
        await client.aclose()

    assert queue_server.requests[0]["auth"] == "Bearer from-config"


@pytest.mark.asyncio
async def test_fetch_next_empty_body_means_no_job(queue_server):
    queue_server.next_responses.append(web.Response(status=200, text=""))
    client = make_client(queue_server)

    try:
        assert await client.fetch_next() is None
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_fetch_next_server_error_raises(queue_server):
    queue_server.next_responses.append(web.Response(status=500, text="db down"))
    client = make_client(queue_server)

    try:
        with pytest.raises(RemoteQueueError, match="API 500: db down"):
            await client.fetch_next()
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_fetch_next_connection_error_raises(unused_tcp_port_factory):
    port = unused_tcp_port_factory()
    client = HttpRemoteQueueClient(
        ApiConfig(base_url=f"http://127.0.0.1:{port}", timeout_seconds=2.0)
    )

    try:
        with pytest.raises(RemoteQueueError):
            await client.fetch_next()
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_report_printed_posts_status(queue_server):
    client = make_client(queue_server)

    try:
        assert await client.report_printed(42, "secret") is True
    finally:
        await client.aclose()

    request = queue_server.requests[0]
    assert request["path"] == "/api/updatePdfStatus"
    assert request["body"] == {"id": 42, "status": "printed"}
    assert request["auth"] == "Bearer secret"


@pytest.mark.asyncio
async def test_report_printed_rejection_returns_false(queue_server):
    queue_server.report_status = 409
    client = make_client(queue_server)

    try:
        assert await client.report_printed("abc") is False
    finally:
        await client.aclose()


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ('{"s3_url": "https://b/x.pdf", "id": "7", "name": "x.pdf"}',
         RemoteJob(url="https://b/x.pdf", id="7", filename="x.pdf")),
        ('"https://b/y.pdf"', RemoteJob(url="https://b/y.pdf")),
        ('{"id": 3}', None),
        ('""', None),
        ("[]", None),
        ("not json", None),
        ("", None),
    ],
)
def test_parse_remote_job(body, expected):
    assert parse_remote_job(body) == expected
