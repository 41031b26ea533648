"""
relay.py — tunnel backends that take over an upgraded connection.

``UpgradeRouter`` hands every tunnel-endpoint upgrade to an object with
an ``async route_request(request, reader, writer)`` method.  Two
adapters are provided:

* **RelayTunnelBackend**: forwards the connection to an external wisp
  server over TCP: the original request head is replayed verbatim, then
  bytes are piped both ways.  The upstream performs the protocol switch
  itself, so nothing about the tunnel is interpreted here.
* **CallableTunnelBackend**: wraps an in-process coroutine function,
  usually obtained with :func:`load_backend` from a
  ``"module:attribute"`` string in the configuration.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from asyncio import StreamReader, StreamWriter
from typing import Any, Awaitable, Callable, Optional, Union

from front_server import DEFAULT_CONFIG, FrontConfig, HttpRequest, ManagedConnection

logger = logging.getLogger(__name__)

TunnelHandler = Callable[[HttpRequest, StreamReader, StreamWriter], Awaitable[None]]


def split_address(addr: str, default_port: int = 0) -> tuple[str, int]:
    """``"host:port"`` / ``"[::1]:port"`` / ``"host"`` → ``(host, port)``."""
    addr = addr.strip()
    if addr.startswith("["):
        host, _, rest = addr[1:].partition("]")
        port_str = rest.lstrip(":")
    elif addr.count(":") == 1:
        host, port_str = addr.rsplit(":", 1)
    else:
        host, port_str = addr, ""
    if not host:
        raise ValueError(f"Missing host in address {addr!r}")
    if not port_str:
        return host, default_port
    if not port_str.isdigit() or not 0 <= int(port_str) <= 65535:
        raise ValueError(f"Bad port in address {addr!r}")
    return host, int(port_str)


class RelayTunnelBackend:
    """Relays upgraded connections to an external wisp server.

    Parameters
    ----------
    upstream:
        ``"host:port"`` of the wisp server, or a zero-argument callable
        returning it (``None`` while unavailable), e.g.
        ``lambda: sidecar.addr``.
    config:
        Supplies ``read_buffer_size`` for the pipe.
    connect_timeout:
        Limit for opening the upstream connection.
    idle_timeout:
        Close the tunnel when neither side sends anything for this long.
        ``None`` (the default) leaves tunnel lifetime to the endpoints.
    """

    __slots__ = ("_upstream", "config", "connect_timeout", "idle_timeout")

    def __init__(
        self,
        upstream: Union[str, Callable[[], Optional[str]]],
        config: FrontConfig = DEFAULT_CONFIG,
        connect_timeout: float = 10.0,
        idle_timeout: Optional[float] = None,
    ):
        self._upstream = upstream
        self.config = config
        self.connect_timeout = connect_timeout
        self.idle_timeout = idle_timeout

    @property
    def upstream(self) -> Optional[str]:
        if callable(self._upstream):
            return self._upstream()
        return self._upstream

    async def route_request(
        self, request: HttpRequest, reader: StreamReader, writer: StreamWriter
    ) -> None:
        client = ManagedConnection(reader, writer)
        target: Optional[ManagedConnection] = None
        addr = self.upstream

        try:
            if not addr:
                raise ConnectionError("tunnel upstream not available")
            host, port = split_address(addr)
            up_reader, up_writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.connect_timeout
            )
            target = ManagedConnection(up_reader, up_writer)

            target.writer.write(request.raw)
            await target.writer.drain()
            logger.debug("[RELAY] %s from %s -> %s", request.path, client.peer, addr)

            await self._bidirectional_pipe(client, target)

        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("[RELAY] Upstream %s unavailable: %s", addr, e)
        finally:
            if target:
                await target.close()
            await client.close()

    async def _bidirectional_pipe(
        self, client: ManagedConnection, target: ManagedConnection
    ) -> None:
        """Full-duplex byte pipe until either side closes."""

        async def pipe(src: ManagedConnection, dst: ManagedConnection) -> None:
            try:
                while not src.closed and not dst.closed:
                    try:
                        async with asyncio.timeout(self.idle_timeout):
                            data = await src.reader.read(self.config.read_buffer_size)
                    except asyncio.TimeoutError:
                        break
                    if not data:
                        break
                    src.touch()
                    dst.writer.write(data)
                    await dst.writer.drain()
                    dst.touch()
            except (ConnectionResetError, BrokenPipeError):
                pass

        t1 = asyncio.create_task(pipe(client, target))
        t2 = asyncio.create_task(pipe(target, client))
        try:
            _, pending = await asyncio.wait(
                [t1, t2], return_when=asyncio.FIRST_COMPLETED
            )
            for t in pending:
                t.cancel()
                try:
                    await t
                except asyncio.CancelledError:
                    pass
        except asyncio.CancelledError:
            t1.cancel()
            t2.cancel()
            raise


class CallableTunnelBackend:
    """Adapts a ``handler(request, reader, writer)`` coroutine function."""

    __slots__ = ("handler", "name")

    def __init__(self, handler: TunnelHandler, name: Optional[str] = None):
        self.handler = handler
        self.name = name or getattr(handler, "__qualname__", repr(handler))

    async def route_request(
        self, request: HttpRequest, reader: StreamReader, writer: StreamWriter
    ) -> None:
        await self.handler(request, reader, writer)

    def __repr__(self) -> str:
        return f"<CallableTunnelBackend {self.name}>"


def load_backend(spec: str) -> Any:
    """Import a tunnel backend from a ``"package.module:attribute"`` string.

    The attribute may be an object with ``route_request``, a class whose
    no-argument instance has one, or a coroutine function taking
    ``(request, reader, writer)``.

    Raises
    ------
    ValueError
        If *spec* is not of the ``module:attribute`` form.
    TypeError
        If the attribute is none of the accepted shapes.
    ImportError, AttributeError
        If the module or attribute does not exist.
    """
    module_name, sep, attr_path = spec.strip().partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"Tunnel backend must look like 'module:attribute', got {spec!r}")

    obj: Any = importlib.import_module(module_name)
    for part in attr_path.split("."):
        obj = getattr(obj, part)

    if inspect.isclass(obj):
        obj = obj()
    if callable(getattr(obj, "route_request", None)):
        return obj
    if inspect.iscoroutinefunction(obj):
        return CallableTunnelBackend(obj, spec)
    raise TypeError(f"{spec!r} is not a tunnel backend")
