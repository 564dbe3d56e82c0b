import asyncio
import contextlib
import json
import socket
from datetime import datetime, timezone

import aiohttp
import pytest
from aiohttp import web

from overseer import publisher as publisher_module
from overseer.nodestate import CoreState, NodeState, SocketState
from overseer.publisher import CRDPublisher, FuncPublisher, HTTPPublisher
from overseer.topology import NodeTopology

TS = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _state(name="worker-1"):
    return NodeState(
        node_name=name,
        timestamp=TS,
        topology=NodeTopology(sockets=1, numa_nodes=1, cores_per_socket=2),
        sockets=[SocketState(socket_id=0, l3_contended=True, cores=[CoreState(core_id=0)])],
    )


def _listening_socket():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    return sock


@contextlib.asynccontextmanager
async def _serving(pub):
    sock = _listening_socket()
    port = sock.getsockname()[1]
    task = asyncio.create_task(pub.serve(sock))
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


@contextlib.asynccontextmanager
async def _fake_api(handler):
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handler)
    runner = web.AppRunner(app)
    await runner.setup()
    sock = _listening_socket()
    port = sock.getsockname()[1]
    await web.SockSite(runner, sock).start()
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        await runner.cleanup()


async def _fetch(url, method="GET"):
    async with aiohttp.ClientSession() as session:
        async with session.request(method, url) as resp:
            return resp.status, resp.content_type, await resp.text()


@pytest.mark.asyncio
async def test_func_publisher_sync_callable():
    captured = []
    await FuncPublisher(captured.append).publish(_state())
    assert captured == [_state()]


@pytest.mark.asyncio
async def test_func_publisher_async_callable():
    captured = []

    async def record(ns):
        captured.append(ns)

    await FuncPublisher(record).publish(_state("worker-9"))
    assert captured == [_state("worker-9")]


@pytest.mark.asyncio
async def test_func_publisher_propagates_errors():
    def fail(ns):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await FuncPublisher(fail).publish(_state())


@pytest.mark.asyncio
async def test_http_state_unavailable_before_publish():
    pub = HTTPPublisher("127.0.0.1:0")
    async with _serving(pub) as base:
        status, _, text = await _fetch(base + "/state")
    assert status == 503
    assert text.strip() == "no snapshot yet"


@pytest.mark.asyncio
async def test_http_state_rejects_post():
    pub = HTTPPublisher("127.0.0.1:0")
    await pub.publish(_state())
    async with _serving(pub) as base:
        status, _, text = await _fetch(base + "/state", method="POST")
    assert status == 405
    assert text.strip() == "method not allowed"


@pytest.mark.asyncio
async def test_http_state_serves_latest_snapshot():
    pub = HTTPPublisher("127.0.0.1:0")
    await pub.publish(_state("first"))
    await pub.publish(_state("second"))
    async with _serving(pub) as base:
        status, content_type, text = await _fetch(base + "/state")
    assert status == 200
    assert content_type == "application/json"
    assert NodeState.from_json(text) == _state("second")


@pytest.mark.asyncio
async def test_http_snapshot_is_taken_at_publish_time():
    pub = HTTPPublisher("127.0.0.1:0")
    ns = _state("original")
    await pub.publish(ns)
    ns.node_name = "mutated"
    async with _serving(pub) as base:
        _, _, text = await _fetch(base + "/state")
    assert NodeState.from_json(text).node_name == "original"


@pytest.mark.asyncio
async def test_listen_and_serve_rejects_address_without_port():
    pub = HTTPPublisher("nohost")
    with pytest.raises(ValueError):
        await pub.listen_and_serve()


def test_crd_build_object():
    pub = CRDPublisher("https://api.example.com:443", "token")
    ns = _state("worker-3")
    obj = pub.build_object(ns)
    assert obj["apiVersion"] == "overseer.io/v1alpha1"
    assert obj["kind"] == "NodeState"
    assert obj["metadata"] == {"name": "worker-3"}
    assert obj["spec"] == ns.to_dict()


def test_crd_from_environment_outside_cluster(monkeypatch):
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)
    assert CRDPublisher.from_environment() is None


def test_crd_from_environment_missing_token(monkeypatch, tmp_path):
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
    monkeypatch.setenv("KUBERNETES_SERVICE_PORT", "443")
    monkeypatch.setattr(publisher_module, "SA_TOKEN_PATH", str(tmp_path / "missing"))
    with pytest.raises(OSError, match="read token"):
        CRDPublisher.from_environment()


def test_crd_from_environment_missing_ca(monkeypatch, tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("token")
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
    monkeypatch.setattr(publisher_module, "SA_TOKEN_PATH", str(token_file))
    monkeypatch.setattr(publisher_module, "SA_CA_CERT_PATH", str(tmp_path / "missing.crt"))
    with pytest.raises(OSError, match="read ca cert"):
        CRDPublisher.from_environment()


def test_crd_from_environment_bad_ca(monkeypatch, tmp_path):
    token_file = tmp_path / "token"
    token_file.write_text("token")
    ca_file = tmp_path / "ca.crt"
    ca_file.write_text("not a certificate")
    monkeypatch.setenv("KUBERNETES_SERVICE_HOST", "10.0.0.1")
    monkeypatch.setattr(publisher_module, "SA_TOKEN_PATH", str(token_file))
    monkeypatch.setattr(publisher_module, "SA_CA_CERT_PATH", str(ca_file))
    with pytest.raises(ValueError, match="parse CA cert"):
        CRDPublisher.from_environment()


@pytest.mark.asyncio
async def test_crd_publish_sends_server_side_apply():
    captured = {}

    async def handler(request):
        captured["method"] = request.method
        captured["path"] = request.path
        captured["query"] = dict(request.query)
        captured["content_type"] = request.headers.get("Content-Type")
        captured["authorization"] = request.headers.get("Authorization")
        captured["body"] = await request.read()
        return web.Response(status=200)

    ns = _state("worker-7")
    async with _fake_api(handler) as base:
        pub = CRDPublisher(base, "token")
        await pub.publish(ns)

    assert captured["method"] == "PATCH"
    assert captured["path"] == "/apis/overseer.io/v1alpha1/nodestates/worker-7"
    assert captured["query"] == {"fieldManager": "overseer-agent", "force": "true"}
    assert captured["content_type"] == "application/apply-patch+yaml"
    assert captured["authorization"] == "Bearer token"
    assert json.loads(captured["body"]) == pub.build_object(ns)


@pytest.mark.asyncio
async def test_crd_publish_error_status():
    async def handler(request):
        return web.Response(status=422)

    async with _fake_api(handler) as base:
        pub = CRDPublisher(base, "token")
        with pytest.raises(RuntimeError, match="422"):
            await pub.publish(_state())


@pytest.mark.asyncio
async def test_crd_publish_connection_refused():
    sock = _listening_socket()
    port = sock.getsockname()[1]
    sock.close()
    pub = CRDPublisher(f"http://127.0.0.1:{port}", "token")
    with pytest.raises(ConnectionError, match="apply patch"):
        await pub.publish(_state())