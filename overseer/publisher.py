"""Delivery of node state snapshots to output channels."""

from __future__ import annotations

import abc
import asyncio
import inspect
import json
import os
import socket
import ssl
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import aiohttp
from aiohttp import web

from overseer.nodestate import NodeState

SA_TOKEN_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/token"
SA_CA_CERT_PATH = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"

API_VERSION = "overseer.io/v1alpha1"
KIND = "NodeState"
FIELD_MANAGER = "overseer-agent"
APPLY_CONTENT_TYPE = "application/apply-patch+yaml"


class Publisher(abc.ABC):
    """Accepts node state snapshots for delivery to one output channel."""

    @abc.abstractmethod
    async def publish(self, ns: NodeState) -> None:
        """Deliver ``ns``; raise on failure."""


class FuncPublisher(Publisher):
    """Adapts a plain or async callable taking a :class:`NodeState`."""

    def __init__(self, func: Callable[[NodeState], Optional[Awaitable[Any]]]) -> None:
        self._func = func

    async def publish(self, ns: NodeState) -> None:
        result = self._func(ns)
        if inspect.isawaitable(result):
            await result


def _split_addr(addr: str) -> tuple[str | None, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r}: missing port")
    try:
        port_number = int(port) if port else 0
    except ValueError:
        raise ValueError(f"address {addr!r}: invalid port {port!r}") from None
    return (host.strip("[]") or None), port_number


class HTTPPublisher(Publisher):
    """Serves the latest snapshot as JSON at ``GET /state``."""

    def __init__(self, addr: str) -> None:
        self.addr = addr
        self._snapshot: str | None = None

    async def publish(self, ns: NodeState) -> None:
        self._snapshot = ns.to_json() + "\n"

    async def listen_and_serve(self) -> None:
        """Bind to the configured address and serve until cancelled."""
        host, port = _split_addr(self.addr)
        await self._serve_site(lambda runner: web.TCPSite(runner, host, port))

    async def serve(self, sock: socket.socket) -> None:
        """Serve on an already bound, listening socket until cancelled."""
        await self._serve_site(lambda runner: web.SockSite(runner, sock))

    async def _serve_site(self, make_site: Callable[[web.AppRunner], web.BaseSite]) -> None:
        app = web.Application()
        app.router.add_route("*", "/state", self._handle_state)
        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        try:
            await make_site(runner).start()
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    async def _handle_state(self, request: web.Request) -> web.Response:
        if request.method != "GET":
            return web.Response(text="method not allowed\n", status=405)
        snapshot = self._snapshot
        if snapshot is None:
            return web.Response(text="no snapshot yet\n", status=503)
        return web.Response(text=snapshot, content_type="application/json")


class CRDPublisher(Publisher):
    """Applies snapshots to the API server as NodeState custom resources."""

    def __init__(self, base: str, token: str, ssl_context: ssl.SSLContext | None = None) -> None:
        self.base = base
        self.token = token
        self._ssl_context = ssl_context

    @classmethod
    def from_environment(cls) -> "CRDPublisher | None":
        """Build a publisher from in-cluster settings, or return None outside a cluster."""
        host = os.environ.get("KUBERNETES_SERVICE_HOST", "")
        port = os.environ.get("KUBERNETES_SERVICE_PORT", "")
        if not host:
            return None
        try:
            token = Path(SA_TOKEN_PATH).read_text(encoding="utf-8")
        except OSError as err:
            raise OSError(f"crd publisher: read token: {err}") from err
        try:
            ca_pem = Path(SA_CA_CERT_PATH).read_text(encoding="ascii", errors="replace")
        except OSError as err:
            raise OSError(f"crd publisher: read ca cert: {err}") from err
        try:
            context = ssl.create_default_context(cadata=ca_pem)
        except (ssl.SSLError, ValueError) as err:
            raise ValueError("crd publisher: parse CA cert") from err
        return cls(f"https://{host}:{port}", token.strip(), context)

    def build_object(self, ns: NodeState) -> dict[str, Any]:
        """Return the custom-resource envelope for ``ns``."""
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": {"name": ns.node_name},
            "spec": ns.to_dict(),
        }

    async def publish(self, ns: NodeState) -> None:
        body = json.dumps(self.build_object(ns)).encode("utf-8")
        url = (
            f"{self.base}/apis/{API_VERSION}/nodestates/{ns.node_name}"
            f"?fieldManager={FIELD_MANAGER}&force=true"
        )
        headers = {
            "Content-Type": APPLY_CONTENT_TYPE,
            "Authorization": f"Bearer {self.token}",
        }
        options: dict[str, Any] = {}
        if self._ssl_context is not None:
            options["ssl"] = self._ssl_context
        try:
            async with aiohttp.ClientSession() as session:
                async with session.patch(url, data=body, headers=headers, **options) as resp:
                    status = resp.status
        except aiohttp.ClientError as err:
            raise ConnectionError(f"crd publisher: apply patch: {err}") from err
        if status >= 300:
            raise RuntimeError(f"crd publisher: server returned {status}")