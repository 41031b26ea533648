"""
TunnelSidecar — manages an external wisp server subprocess from Python.

The tunnel protocol itself lives in a separate program (any wisp server
implementation).  This module handles the lifecycle of that process:
spawning, readiness detection, health checks, graceful shutdown, and
automatic restart on crash.

Architecture
~~~~~~~~~~~~
The sidecar is a single long-lived process.  ``RelayTunnelBackend``
asks it for its address on every handoff, so a restarted sidecar is
picked up without reconfiguring the front server.

The command is a template: ``{host}`` and ``{port}`` in any argument are
replaced with the address the sidecar must listen on.  Readiness is
detected by polling that address until it accepts a TCP connection.  If
the process crashes, the monitor loop restarts it on the **same port**.

Thread safety
~~~~~~~~~~~~~
Designed for use from a single asyncio event loop; no cross-thread
synchronisation.

Usage::

    async with TunnelSidecar("wisp-server --host {host} --port {port}") as sidecar:
        backend = RelayTunnelBackend(lambda: sidecar.addr)
        ...
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import signal
import socket
import time
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


def format_addr(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _free_port(host: str) -> int:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class TunnelSidecar:
    """Manages the wisp server process lifecycle.

    Parameters
    ----------
    command:
        Command line as a string (split with :func:`shlex.split`) or an
        argument list.  ``{host}`` / ``{port}`` placeholders are filled
        in with the listen address.
    listen_host:
        Host the sidecar binds to.  Default ``127.0.0.1``.
    listen_port:
        Port to listen on.  ``0`` picks a free port before spawning.
    auto_restart:
        If ``True``, restart the process when it exits unexpectedly.
    restart_delay:
        Seconds to wait before restarting after a crash.
    max_restarts:
        Maximum consecutive restarts before giving up.  The counter
        resets on a successful ``ping()``.
    startup_timeout:
        Max seconds to wait for the port to accept connections.
    poll_interval:
        Delay between readiness probes during startup.
    monitor_interval:
        How often the monitor loop checks the process.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        listen_host: str = "127.0.0.1",
        listen_port: int = 0,
        auto_restart: bool = True,
        restart_delay: float = 1.0,
        max_restarts: int = 10,
        startup_timeout: float = 15.0,
        poll_interval: float = 0.1,
        monitor_interval: float = 5.0,
    ):
        self.command: list[str] = (
            shlex.split(command) if isinstance(command, str) else list(command)
        )
        if not self.command:
            raise ValueError("Tunnel sidecar command is empty")
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.auto_restart = auto_restart
        self.restart_delay = restart_delay
        self.max_restarts = max_restarts
        self.startup_timeout = startup_timeout
        self.poll_interval = poll_interval
        self.monitor_interval = monitor_interval

        # ── Runtime state ──
        self._process: Optional[asyncio.subprocess.Process] = None
        self._addr: Optional[str] = None
        self._bound_port: Optional[int] = None  # remembered for stable restarts
        self._monitor_task: Optional[asyncio.Task] = None
        self._io_tasks: list[asyncio.Task] = []  # stdout/stderr forwarders
        self._stopping = False
        self._restart_count = 0
        self._started_at: Optional[float] = None

    # ── properties ────────────────────────────────────────────────────────

    @property
    def addr(self) -> Optional[str]:
        """The sidecar's address (``"127.0.0.1:PORT"``) or ``None`` while down."""
        return self._addr

    @property
    def running(self) -> bool:
        """``True`` if the sidecar process is alive."""
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def uptime(self) -> float:
        """Seconds since the sidecar was started (0.0 if not running)."""
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> str:
        """Start the sidecar and wait until its port accepts connections.

        Returns
        -------
        str
            The listen address (``"host:port"``).

        Raises
        ------
        RuntimeError
            If the process exits during startup or is not ready within
            ``startup_timeout``.
        """
        if self.running:
            logger.warning("Tunnel sidecar already running (pid=%d)", self.pid)
            if self._addr is None:
                raise RuntimeError("Tunnel sidecar running but addr not set")
            return self._addr

        self._stopping = False
        self._addr = await self._spawn()
        self._started_at = time.monotonic()
        self._restart_count = 0

        if self.auto_restart:
            self._monitor_task = asyncio.create_task(
                self._monitor_loop(), name="sidecar-monitor"
            )

        logger.info("Tunnel sidecar started on %s (pid=%d)", self._addr, self.pid)
        return self._addr

    async def stop(self, timeout: float = 10.0) -> None:
        """Gracefully stop the sidecar.

        Sends ``SIGTERM``, waits up to *timeout* seconds, then ``SIGKILL``.
        """
        self._stopping = True
        # Handoffs from now on fail fast instead of hitting a dying process.
        self._addr = None

        if self._monitor_task and not self._monitor_task.done():
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None

        await self._cancel_io_tasks()

        if not self._process:
            return

        proc = self._process
        if proc.returncode is not None:
            logger.debug("Tunnel sidecar already exited (rc=%d)", proc.returncode)
            self._process = None
            return

        logger.info("Stopping tunnel sidecar (pid=%d)...", proc.pid)
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            self._process = None
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
            logger.info("Tunnel sidecar stopped (rc=%d)", proc.returncode)
        except asyncio.TimeoutError:
            logger.warning(
                "Tunnel sidecar didn't stop in %.1fs, sending SIGKILL", timeout
            )
            try:
                proc.kill()
                await asyncio.wait_for(proc.wait(), timeout=3.0)
            except (ProcessLookupError, asyncio.TimeoutError):
                pass
            logger.info("Tunnel sidecar killed")

        self._process = None

    # ── health checks ─────────────────────────────────────────────────────

    async def ping(self, timeout: float = 5.0) -> bool:
        """Return ``True`` if the sidecar's port accepts a connection.

        A successful ping resets the consecutive restart counter, so a
        sidecar that crashes once but then runs stably doesn't use up
        the restart budget.
        """
        if not self._addr:
            return False
        ok = await self._probe(self.listen_host, self._bound_port or 0, timeout)
        if ok:
            self._restart_count = 0
        return ok

    # ── internal ──────────────────────────────────────────────────────────

    def _build_args(self) -> list[str]:
        """Fill the command template, reusing the previous port on restart."""
        if self._bound_port is None:
            self._bound_port = self.listen_port or _free_port(self.listen_host)
        port = str(self._bound_port)
        return [
            arg.replace("{host}", self.listen_host).replace("{port}", port)
            for arg in self.command
        ]

    async def _spawn(self) -> str:
        """Spawn the process and wait for its port to come up.

        Raises
        ------
        RuntimeError
            If the process exits during startup or doesn't become ready
            within ``startup_timeout``.
        """
        await self._cancel_io_tasks()

        args = self._build_args()
        logger.debug("Spawning tunnel sidecar: %s", " ".join(args))

        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise RuntimeError(f"Cannot start tunnel sidecar {args[0]!r}: {e}") from e

        self._io_tasks.append(
            asyncio.create_task(
                self._forward(self._process.stdout, "stdout"), name="sidecar-stdout"
            )
        )
        self._io_tasks.append(
            asyncio.create_task(
                self._forward(self._process.stderr, "stderr"), name="sidecar-stderr"
            )
        )

        try:
            return await asyncio.wait_for(
                self._wait_ready(), timeout=self.startup_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "Tunnel sidecar failed to start within %.1fs", self.startup_timeout
            )
            await self._kill_process()
            raise RuntimeError(
                f"Tunnel sidecar failed to start within {self.startup_timeout}s"
            )
        except Exception:
            await self._kill_process()
            raise

    async def _wait_ready(self) -> str:
        """Poll the listen address until it accepts a connection."""
        assert self._process is not None
        port = self._bound_port or 0

        while True:
            if self._process.returncode is not None:
                raise RuntimeError(
                    f"Tunnel sidecar exited during startup (rc={self._process.returncode})"
                )
            if await self._probe(self.listen_host, port, self.poll_interval * 5):
                addr = format_addr(self.listen_host, port)
                logger.debug("Tunnel sidecar accepting on %s", addr)
                return addr
            await asyncio.sleep(self.poll_interval)

    @staticmethod
    async def _probe(host: str, port: int, timeout: float) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    async def _forward(self, stream: Optional[asyncio.StreamReader], tag: str) -> None:
        """Forward the sidecar's output to the Python logger."""
        if stream is None:
            return
        try:
            async for line in stream:
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if decoded:
                    logger.debug("[sidecar:%s] %s", tag, decoded)
        except asyncio.CancelledError:
            pass
        except (OSError, ValueError) as e:
            logger.debug("[sidecar:%s] forwarder stopped: %s", tag, e)

    async def _cancel_io_tasks(self) -> None:
        tasks = self._io_tasks[:]
        self._io_tasks.clear()
        for t in tasks:
            if not t.done():
                t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _kill_process(self) -> None:
        """Force-kill the process if it's still running."""
        await self._cancel_io_tasks()
        if self._process and self._process.returncode is None:
            try:
                self._process.kill()
                await asyncio.wait_for(self._process.wait(), timeout=3.0)
            except (ProcessLookupError, asyncio.TimeoutError):
                pass

    async def _monitor_loop(self) -> None:
        """Background task: detect crashes and restart on the same port.

        On crash detection:

        1. Sets ``_addr = None`` so handoffs fail fast.
        2. Checks the restart budget (``max_restarts``).
        3. Waits ``restart_delay`` seconds.
        4. Spawns a new process on the same port.

        A failed restart is logged and retried on the next poll.
        Each healthy tick after a restart pings the process; a successful
        ping resets the budget, so only consecutive crashes count.
        """
        try:
            while not self._stopping:
                await asyncio.sleep(self.monitor_interval)

                if self._stopping:
                    break
                if not self._process:
                    continue
                if self._process.returncode is None:
                    if self._restart_count and self._addr:
                        await self.ping(timeout=max(self.monitor_interval, 1.0))
                    continue

                logger.warning(
                    "Tunnel sidecar exited unexpectedly (rc=%d)",
                    self._process.returncode,
                )
                self._addr = None

                if self._restart_count >= self.max_restarts:
                    logger.error(
                        "Tunnel sidecar crashed %d times, giving up",
                        self._restart_count,
                    )
                    break

                self._restart_count += 1
                logger.info(
                    "Restarting tunnel sidecar (attempt %d/%d) in %.1fs...",
                    self._restart_count,
                    self.max_restarts,
                    self.restart_delay,
                )
                await asyncio.sleep(self.restart_delay)
                if self._stopping:
                    break

                try:
                    self._addr = await self._spawn()
                    self._started_at = time.monotonic()
                    logger.info(
                        "Tunnel sidecar restarted on %s (pid=%d)", self._addr, self.pid
                    )
                except RuntimeError as e:
                    logger.error("Tunnel sidecar restart failed: %s", e)
                except asyncio.CancelledError:
                    await self._kill_process()
                    raise

        except asyncio.CancelledError:
            pass

    # ── context manager ───────────────────────────────────────────────────

    async def __aenter__(self) -> TunnelSidecar:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def __repr__(self) -> str:
        status = "running" if self.running else "stopped"
        return f"<TunnelSidecar addr={self._addr} {status} pid={self.pid}>"
