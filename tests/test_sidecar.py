"""TunnelSidecar process management, using ``python -m http.server`` as the child."""

import asyncio
import sys

import pytest

from tunnel_bridge.sidecar import TunnelSidecar, format_addr

HTTP_SERVER = [sys.executable, "-m", "http.server", "{port}", "--bind", "{host}"]


def test_format_addr():
    assert format_addr("127.0.0.1", 80) == "127.0.0.1:80"
    assert format_addr("::1", 80) == "[::1]:80"
    assert format_addr("[::1]", 80) == "[::1]:80"


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        TunnelSidecar("   ")


def test_string_command_is_split():
    sidecar = TunnelSidecar("wisp-server --port {port} --host {host}", listen_port=6001)
    assert sidecar._build_args() == ["wisp-server", "--port", "6001", "--host", "127.0.0.1"]


@pytest.mark.timeout(60)
class TestLifecycle:
    def test_start_ping_stop(self):
        async def run():
            sidecar = TunnelSidecar(HTTP_SERVER, auto_restart=False)
            addr = await sidecar.start()
            try:
                assert sidecar.running
                assert sidecar.addr == addr
                assert addr.startswith("127.0.0.1:")
                assert await sidecar.ping()
            finally:
                await sidecar.stop(timeout=5)
            return sidecar

        sidecar = asyncio.run(run())
        assert not sidecar.running
        assert sidecar.addr is None
        assert sidecar.uptime >= 0.0

    def test_context_manager(self):
        async def run():
            async with TunnelSidecar(HTTP_SERVER, auto_restart=False) as sidecar:
                alive = await sidecar.ping()
            return alive, await sidecar.ping()

        assert asyncio.run(run()) == (True, False)

    def test_exit_during_startup(self):
        async def run():
            sidecar = TunnelSidecar(
                [sys.executable, "-c", "raise SystemExit(3)"], startup_timeout=10
            )
            await sidecar.start()

        with pytest.raises(RuntimeError, match="rc=3"):
            asyncio.run(run())

    def test_missing_executable(self):
        async def run():
            await TunnelSidecar(["/nonexistent/wisp-server"]).start()

        with pytest.raises(RuntimeError, match="Cannot start"):
            asyncio.run(run())

    def test_never_ready(self):
        async def run():
            sidecar = TunnelSidecar(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                startup_timeout=0.5,
            )
            await sidecar.start()

        with pytest.raises(RuntimeError, match="failed to start"):
            asyncio.run(run())

    def test_crash_restarts_on_same_port(self):
        async def run():
            sidecar = TunnelSidecar(
                HTTP_SERVER, restart_delay=0.1, monitor_interval=0.1
            )
            addr = await sidecar.start()
            first_pid = sidecar.pid
            try:
                sidecar._process.kill()
                for _ in range(200):
                    await asyncio.sleep(0.05)
                    if sidecar.addr and sidecar.pid != first_pid:
                        break
                return addr, sidecar.addr, first_pid, sidecar.pid, await sidecar.ping()
            finally:
                await sidecar.stop(timeout=5)

        addr, new_addr, first_pid, new_pid, alive = asyncio.run(run())
        assert new_addr == addr
        assert new_pid != first_pid
        assert alive

    def test_stable_period_resets_restart_budget(self):
        async def wait_for_new_pid(sidecar, old_pid):
            for _ in range(200):
                await asyncio.sleep(0.05)
                if sidecar.addr and sidecar.pid != old_pid:
                    return
            raise AssertionError("sidecar was not restarted")

        async def run():
            sidecar = TunnelSidecar(
                HTTP_SERVER, max_restarts=1, restart_delay=0.1, monitor_interval=0.1
            )
            await sidecar.start()
            try:
                first_pid = sidecar.pid
                sidecar._process.kill()
                await wait_for_new_pid(sidecar, first_pid)

                # several healthy monitor ticks
                await asyncio.sleep(1.0)
                second_pid = sidecar.pid
                sidecar._process.kill()
                await wait_for_new_pid(sidecar, second_pid)
                return sidecar.addr, await sidecar.ping()
            finally:
                await sidecar.stop(timeout=5)

        addr, alive = asyncio.run(run())
        assert addr is not None
        assert alive
