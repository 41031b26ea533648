"""Relaying tunnel upgrades to an external wisp-style server."""

import asyncio
import socket

import pytest
from websockets.asyncio.client import connect
from websockets.asyncio.server import serve

from front_server import AssetMountEntry
from tests._harness import (
    RecordingBackend,
    build_request,
    read_until_eof,
    running_server,
)
from tunnel_bridge.relay import (
    CallableTunnelBackend,
    RelayTunnelBackend,
    load_backend,
    split_address,
)

UPGRADE_HEADERS = [
    ("Upgrade", "websocket"),
    ("Connection", "Upgrade"),
    ("Sec-WebSocket-Key", "dGhlIHNhbXBsZSBub25jZQ=="),
    ("Sec-WebSocket-Version", "13"),
]


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _echo(ws):
    async for message in ws:
        await ws.send(message)


@pytest.mark.timeout(30)
class TestRelayTunnelBackend:
    def test_websocket_round_trip_through_front(self, assets):
        seen_paths = []

        async def echo(ws):
            seen_paths.append(ws.request.path)
            await _echo(ws)

        async def run():
            async with serve(echo, "127.0.0.1", 0) as upstream:
                port = upstream.sockets[0].getsockname()[1]
                backend = RelayTunnelBackend(f"127.0.0.1:{port}")
                mounts = [AssetMountEntry("/", assets["public"])]
                async with running_server(mounts, backend=backend) as front:
                    uri = f"ws://127.0.0.1:{front.port}/wisp/"
                    async with connect(uri) as ws:
                        await ws.send("hello")
                        text = await asyncio.wait_for(ws.recv(), timeout=5)
                        await ws.send(b"\x00\x01\x02")
                        binary = await asyncio.wait_for(ws.recv(), timeout=5)
                    return text, binary

        assert asyncio.run(run()) == ("hello", b"\x00\x01\x02")
        assert seen_paths == ["/wisp/"]

    def test_plain_http_still_served_beside_tunnel(self, assets):
        async def run():
            async with serve(_echo, "127.0.0.1", 0) as upstream:
                port = upstream.sockets[0].getsockname()[1]
                backend = RelayTunnelBackend(f"127.0.0.1:{port}")
                mounts = [AssetMountEntry("/", assets["public"])]
                async with running_server(mounts, backend=backend) as front:
                    async with connect(f"ws://127.0.0.1:{front.port}/wisp/") as ws:
                        reader, writer = await asyncio.open_connection(
                            "127.0.0.1", front.port
                        )
                        writer.write(
                            build_request("GET", "/app.js", [("Connection", "close")])
                        )
                        data = await read_until_eof(reader)
                        writer.close()
                        await ws.send("still open")
                        echoed = await asyncio.wait_for(ws.recv(), timeout=5)
                    return data, echoed

        data, echoed = asyncio.run(run())
        assert data.startswith(b"HTTP/1.1 200 OK")
        assert echoed == "still open"

    def test_unreachable_upstream_closes_client(self, assets):
        async def run():
            backend = RelayTunnelBackend(f"127.0.0.1:{_unused_port()}", connect_timeout=2)
            async with running_server([], backend=backend) as front:
                reader, writer = await asyncio.open_connection("127.0.0.1", front.port)
                writer.write(build_request("GET", "/wisp/", UPGRADE_HEADERS))
                await writer.drain()
                data = await read_until_eof(reader)
                writer.close()
                return data

        assert asyncio.run(run()) == b""

    def test_upstream_not_available_yet(self, assets):
        async def run():
            backend = RelayTunnelBackend(lambda: None)
            async with running_server([], backend=backend) as front:
                reader, writer = await asyncio.open_connection("127.0.0.1", front.port)
                writer.write(build_request("GET", "/wisp/", UPGRADE_HEADERS))
                await writer.drain()
                data = await read_until_eof(reader)
                writer.close()
                return data

        assert asyncio.run(run()) == b""

    def test_upstream_callable_is_read_each_time(self):
        addresses = iter(["127.0.0.1:1", "127.0.0.1:2"])
        backend = RelayTunnelBackend(lambda: next(addresses))
        assert backend.upstream == "127.0.0.1:1"
        assert backend.upstream == "127.0.0.1:2"


class TestSplitAddress:
    @pytest.mark.parametrize(
        "addr,expected",
        [
            ("127.0.0.1:6001", ("127.0.0.1", 6001)),
            ("localhost", ("localhost", 0)),
            ("[::1]:6001", ("::1", 6001)),
            ("[::1]", ("::1", 0)),
            ("::1", ("::1", 0)),
            (" wisp.internal:80 ", ("wisp.internal", 80)),
        ],
    )
    def test_valid(self, addr, expected):
        assert split_address(addr) == expected

    def test_default_port(self):
        assert split_address("localhost", default_port=6001) == ("localhost", 6001)

    @pytest.mark.parametrize("addr", [":6001", "host:http", "host:70000"])
    def test_invalid(self, addr):
        with pytest.raises(ValueError):
            split_address(addr)


class TestLoadBackend:
    def test_coroutine_function_is_wrapped(self):
        backend = load_backend("tests._harness:echo_tunnel")
        assert isinstance(backend, CallableTunnelBackend)
        assert backend.name == "tests._harness:echo_tunnel"

    def test_class_is_instantiated(self):
        assert isinstance(load_backend("tests._harness:RecordingBackend"), RecordingBackend)

    def test_rejects_non_backends(self):
        with pytest.raises(TypeError):
            load_backend("tests._harness:POLICY_NAMES")

    def test_rejects_bad_spec(self):
        with pytest.raises(ValueError):
            load_backend("tests._harness")

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            load_backend("tests._harness:no_such_backend")
