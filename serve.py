"""
serve.py — process entry point for the isolating front server.

Reads the configuration (CLI over ``PORT`` over ``config.ini``), builds
the component graph in one place (``build_server``), then hands it to
``Lifecycle``, which binds, reports the reachable URLs, and drains on
SIGINT/SIGTERM.

Exit status: 0 after a clean shutdown, 1 when the port cannot be bound,
2 for an unusable configuration.
"""

from __future__ import annotations

import argparse
import asyncio
import configparser
import logging
import os
import signal
import socket
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Sequence, TextIO

import uvloop

from front_server import (
    DEFAULT_EMBED_ORIGINS,
    DEFAULT_PORT,
    DEFAULT_TUNNEL_PATH,
    AssetMount,
    AssetMountEntry,
    BindError,
    ColoredFormatter,
    Dotfiles,
    FrontConfig,
    FrontServer,
    MountTable,
    ServerConfig,
    TunnelBackend,
    UpgradeRouter,
)
from tunnel_bridge.relay import RelayTunnelBackend, load_backend, split_address
from tunnel_bridge.sidecar import TunnelSidecar, format_addr

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration
# ============================================================================


def resolve_port(
    cli_port: Optional[int], env_value: Optional[str], ini_port: Optional[int]
) -> int:
    """Pick the listen port: CLI, then ``PORT``, then the INI file, then 8080.

    A ``PORT`` value that is not a number, is zero or is out of range is
    ignored.  An explicit ``0`` from the CLI or INI file lets the OS
    choose.
    """
    if cli_port is not None:
        return cli_port
    if env_value is not None and env_value.strip():
        try:
            port = int(env_value.strip())
        except ValueError:
            port = 0
        if 0 < port <= 65535:
            return port
        logger.warning("Ignoring invalid PORT=%r", env_value)
    if ini_port is not None:
        return ini_port
    return DEFAULT_PORT


def parse_origins(value: str) -> tuple[str, ...]:
    """Whitespace- or comma-separated origins, order kept, duplicates dropped."""
    origins: list[str] = []
    for item in value.replace(",", " ").split():
        if item not in origins:
            origins.append(item)
    return tuple(origins)


@dataclass
class TunnelSettings:
    path: str = DEFAULT_TUNNEL_PATH
    upstream: Optional[str] = None
    command: Optional[str] = None
    backend: Optional[str] = None
    auto_restart: bool = True
    startup_timeout: float = 15.0


@dataclass
class Settings:
    """Everything the process needs, resolved from CLI, env and INI."""

    server: ServerConfig
    front: FrontConfig = field(default_factory=FrontConfig)
    mounts: list[AssetMountEntry] = field(default_factory=list)
    tunnel: TunnelSettings = field(default_factory=TunnelSettings)

    @classmethod
    def load(
        cls,
        args: argparse.Namespace,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Settings:
        """Layer *args* over ``PORT`` in *environ* over the INI file.

        Raises
        ------
        ValueError, configparser.Error
            On values that cannot be parsed.
        """
        environ = os.environ if environ is None else environ
        config = configparser.ConfigParser(interpolation=None)
        config_path = Path(args.config)
        config.read(config_path)
        base_dir = config_path.resolve().parent

        ini_port = (
            config.getint("server", "port") if config.has_option("server", "port") else None
        )
        port = resolve_port(args.port, environ.get("PORT"), ini_port)
        host: str = (
            args.host
            if args.host is not None
            else config.get("server", "host", fallback="0.0.0.0")
        )
        origins = (
            parse_origins(args.origins)
            if args.origins is not None
            else parse_origins(
                config.get("server", "origins", fallback=" ".join(DEFAULT_EMBED_ORIGINS))
            )
        )
        tunnel_path = (
            args.tunnel_path
            if args.tunnel_path is not None
            else config.get("tunnel", "path", fallback=DEFAULT_TUNNEL_PATH)
        )

        defaults = FrontConfig()
        front = FrontConfig(
            request_timeout=config.getfloat(
                "server", "request_timeout", fallback=defaults.request_timeout
            ),
            idle_timeout=config.getfloat(
                "server", "idle_timeout", fallback=defaults.idle_timeout
            ),
            send_timeout=config.getfloat(
                "server", "send_timeout", fallback=defaults.send_timeout
            ),
            shutdown_grace=(
                args.grace
                if args.grace is not None
                else config.getfloat(
                    "server", "shutdown_grace", fallback=defaults.shutdown_grace
                )
            ),
            read_buffer_size=config.getint(
                "server", "read_buffer_size", fallback=defaults.read_buffer_size
            ),
        )

        mounts: list[AssetMountEntry] = []
        for section in config.sections():
            if not section.startswith("mount "):
                continue
            prefix = section[len("mount "):].strip()
            root = Path(config.get(section, "root")).expanduser()
            if not root.is_absolute():
                root = base_dir / root
            mounts.append(
                AssetMountEntry(
                    url_prefix=prefix,
                    root_directory=root,
                    serves_index=config.getboolean(section, "serve_index", fallback=True),
                    index_file=config.get(section, "index", fallback="index.html"),
                    list_directories=config.getboolean(section, "list", fallback=False),
                    dotfiles=Dotfiles(config.get(section, "dotfiles", fallback="ignore")),
                )
            )

        tunnel = TunnelSettings(
            path=tunnel_path,
            upstream=(
                args.tunnel_upstream
                if args.tunnel_upstream is not None
                else config.get("tunnel", "upstream", fallback=None)
            ),
            command=config.get("tunnel", "command", fallback=None),
            backend=config.get("tunnel", "backend", fallback=None),
            auto_restart=config.getboolean("tunnel", "auto_restart", fallback=True),
            startup_timeout=config.getfloat("tunnel", "startup_timeout", fallback=15.0),
        )

        return cls(
            server=ServerConfig(
                bind_host=host,
                bind_port=port,
                allowed_embed_origins=origins,
                tunnel_path=tunnel_path,
            ),
            front=front,
            mounts=mounts,
            tunnel=tunnel,
        )


def build_server(settings: Settings) -> tuple[FrontServer, Optional[TunnelSidecar]]:
    """Construct the mount table, tunnel backend, router and server."""
    mounts = MountTable([AssetMount(entry, settings.front) for entry in settings.mounts])
    for mount in mounts:
        if not mount.root.is_dir():
            logger.warning("Mount %s: %s is not a directory", mount.prefix, mount.root)
    if not len(mounts):
        logger.warning("No asset mounts configured, every HTTP request will 404")

    tunnel = settings.tunnel
    sidecar: Optional[TunnelSidecar] = None
    backend: Optional[TunnelBackend] = None

    if tunnel.backend:
        backend = load_backend(tunnel.backend)
    elif tunnel.command:
        host, port = split_address(tunnel.upstream or "127.0.0.1")
        sidecar = TunnelSidecar(
            tunnel.command,
            listen_host=host,
            listen_port=port,
            auto_restart=tunnel.auto_restart,
            startup_timeout=tunnel.startup_timeout,
        )
        backend = RelayTunnelBackend(lambda: sidecar.addr, settings.front)
    elif tunnel.upstream:
        host, port = split_address(tunnel.upstream)
        if not port:
            raise ValueError(f"Tunnel upstream {tunnel.upstream!r} needs a port")
        backend = RelayTunnelBackend(format_addr(host, port), settings.front)
    else:
        logger.warning(
            "No tunnel backend configured, upgrades to %s will be closed", tunnel.path
        )

    router = UpgradeRouter(tunnel.path, backend)
    return FrontServer(settings.server, mounts, router, settings.front), sidecar


# ============================================================================
# Lifecycle
# ============================================================================


class State(Enum):
    UNBOUND = "unbound"
    LISTENING = "listening"
    DRAINING = "draining"
    CLOSED = "closed"


def listening_urls(host: str, port: int, hostname: Optional[str] = None) -> list[str]:
    """The URL forms a local user can reach the server on."""
    hostname = hostname if hostname is not None else socket.gethostname()
    bound = f"[{host}]" if ":" in host else host
    return [
        f"http://localhost:{port}",
        f"http://{hostname}:{port}",
        f"http://{bound}:{port}",
    ]


class Lifecycle:
    """UNBOUND → LISTENING → DRAINING → CLOSED for one ``FrontServer``."""

    def __init__(self, server: FrontServer, sidecar: Optional[TunnelSidecar] = None):
        self.server = server
        self.sidecar = sidecar
        self.state = State.UNBOUND
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.in_progress = False
        self._closed = asyncio.Event()

    async def start(self) -> None:
        if self.sidecar:
            await self.sidecar.start()
        try:
            await self.server.start()
        except BindError:
            if self.sidecar:
                await self.sidecar.stop()
            raise
        self.state = State.LISTENING
        self.report_addresses()

    def report_addresses(self) -> list[str]:
        urls: list[str] = []
        for host, port in self.server.addresses:
            for url in listening_urls(host, port):
                if url not in urls:
                    urls.append(url)
        logger.info("Listening on:")
        for url in urls:
            logger.info("\t%s", url)
        return urls

    async def shutdown(self) -> None:
        if self.state is not State.LISTENING:
            return
        self.state = State.DRAINING
        logger.info("Signal received: closing HTTP server")
        try:
            await self.server.stop()
        finally:
            if self.sidecar:
                await self.sidecar.stop()
            self.state = State.CLOSED
        logger.info("HTTP server closed")

    async def serve(self) -> None:
        """Start, then block until a shutdown has completed."""
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        await self.start()
        if self.in_progress and self.state is State.LISTENING:
            await self.shutdown()
            return
        await self._closed.wait()

    async def graceful_shutdown(self) -> None:
        try:
            await self.shutdown()
        except Exception:
            logger.error("Shutdown error: %s", traceback.format_exc())
        finally:
            self._closed.set()

    def terminated(self) -> None:
        logger.debug("Terminated")
        if self.in_progress:
            logger.info("Received second signal, exiting...")
            sys.exit(1)

        self.in_progress = True
        if self.state is State.UNBOUND:
            return

        assert self.loop is not None
        shutdown_task = self.loop.create_task(self.graceful_shutdown(), name="Shutdown")

        def shutdown_done(task: asyncio.Task[None]) -> None:
            if not task.cancelled() and task.exception() is not None:
                logger.error("On exit: %s", task.exception())

        shutdown_task.add_done_callback(shutdown_done)

    def run(self) -> int:
        """Run on a fresh uvloop event loop until shut down.  Returns the exit code."""
        self.loop = uvloop.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.loop.add_signal_handler(signal.SIGTERM, self.terminated)
        self.loop.add_signal_handler(signal.SIGINT, self.terminated)

        try:
            self.loop.run_until_complete(self.serve())
        except BindError as e:
            logger.critical("Error starting server: %s", e)
            return 1
        except RuntimeError as e:
            logger.critical("Error starting tunnel sidecar: %s", e)
            return 1
        finally:
            self.loop.remove_signal_handler(signal.SIGTERM)
            self.loop.remove_signal_handler(signal.SIGINT)
            self._abandon_tasks()
            self.loop.close()
            asyncio.set_event_loop(None)
        return 0

    def _abandon_tasks(self) -> None:
        """Cancel what is left on the loop (tunnels owned by the backend)."""
        assert self.loop is not None
        leftover = [t for t in asyncio.all_tasks(self.loop) if not t.done()]
        if not leftover:
            return
        logger.debug("Abandoning %d task(s) at exit", len(leftover))
        for t in leftover:
            t.cancel()
        self.loop.run_until_complete(asyncio.gather(*leftover, return_exceptions=True))


# ============================================================================
# Entry point
# ============================================================================


parser = argparse.ArgumentParser(description="Isolating front server for a browser web proxy")
parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config")
parser.add_argument('--host', dest='host', type=str, metavar='HOST', default=None, help='Host/IP to bind (default: 0.0.0.0)')
parser.add_argument('--port', dest='port', type=int, metavar='PORT', default=None, help='Port to listen on (default: $PORT or 8080)')
parser.add_argument('--origins', dest='origins', type=str, metavar='ORIGINS', default=None, help='Origins allowed to frame the pages, space separated')
parser.add_argument('--tunnel-path', dest='tunnel_path', type=str, metavar='PATH', default=None, help='Upgrade path handed to the tunnel (default: /wisp/)')
parser.add_argument('--tunnel-upstream', dest='tunnel_upstream', type=str, metavar='HOST:PORT', default=None, help='Address of the wisp server to relay to')
parser.add_argument('--grace', dest='grace', type=float, metavar='SECONDS', default=None, help='Shutdown grace period (default: 10)')
parser.add_argument('--log-level', dest='log_level', type=str, default='INFO', choices=['TRACE', 'DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Log level (default: INFO)')


def configure_logging(level: str) -> None:
    handler: logging.StreamHandler[TextIO] = logging.StreamHandler()
    handler.setFormatter(
        ColoredFormatter(
            "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"
        )
    )
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(5 if level == "TRACE" else getattr(logging, level))


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = Settings.load(args)
        server, sidecar = build_server(settings)
    except (ValueError, TypeError, ImportError, AttributeError, configparser.Error) as e:
        logger.critical("Invalid configuration: %s", e)
        return 2

    return Lifecycle(server, sidecar).run()


if __name__ == "__main__":
    sys.exit(main())
