"""Path resolution, mount lookup and the small parsing helpers."""

import asyncio
import os
from pathlib import Path

import pytest

from front_server import (
    AssetForbidden,
    AssetMount,
    AssetMountEntry,
    AssetNotFound,
    Dotfiles,
    MalformedRequest,
    MountTable,
    RangeNotSatisfiable,
    content_type_for,
    normalise_prefix,
    parse_byte_range,
    read_request,
)


def _mount(root, prefix="/", **kwargs):
    return AssetMount(AssetMountEntry(prefix, Path(root), **kwargs))


class TestResolve:
    def test_plain_file(self, assets):
        mount = _mount(assets["public"])
        assert mount.resolve("app.js") == assets["public"].resolve() / "app.js"

    def test_empty_path_is_root(self, assets):
        mount = _mount(assets["public"])
        assert mount.resolve("") == assets["public"].resolve()

    @pytest.mark.parametrize(
        "relative", ["../secret.txt", "assets/../../secret.txt", "..\\secret.txt"]
    )
    def test_traversal_is_forbidden(self, assets, relative):
        mount = _mount(assets["public"])
        with pytest.raises(AssetForbidden):
            mount.resolve(relative)

    def test_dotdot_inside_root_is_allowed(self, assets):
        mount = _mount(assets["public"])
        assert mount.resolve("assets/../app.js").name == "app.js"

    def test_nul_byte_is_forbidden(self, assets):
        with pytest.raises(AssetForbidden):
            _mount(assets["public"]).resolve("app.js\x00.png")

    def test_symlink_escaping_root_is_forbidden(self, assets):
        link = assets["public"] / "leak.txt"
        os.symlink(assets["base"] / "secret.txt", link)
        with pytest.raises(AssetForbidden):
            _mount(assets["public"]).resolve("leak.txt")

    def test_dotfiles_hidden_by_default(self, assets):
        with pytest.raises(AssetNotFound):
            _mount(assets["public"]).resolve(".env")

    def test_dotfiles_deny(self, assets):
        with pytest.raises(AssetForbidden):
            _mount(assets["public"], dotfiles=Dotfiles.DENY).resolve(".env")

    def test_dotfiles_allow(self, assets):
        mount = _mount(assets["public"], dotfiles=Dotfiles.ALLOW)
        assert mount.resolve(".env").name == ".env"


class TestMountTable:
    def test_longest_prefix_wins(self, assets):
        root = _mount(assets["public"], "/")
        uv = _mount(assets["uv"], "/uv/")
        table = MountTable([root, uv])

        assert table.match("/uv/uv.bundle.js") == (uv, "uv.bundle.js")
        assert table.match("/uvx/file.js") == (root, "uvx/file.js")
        assert table.match("/index.html") == (root, "index.html")

    def test_registration_order_does_not_matter(self, assets):
        uv = _mount(assets["uv"], "/uv/")
        root = _mount(assets["public"], "/")
        assert MountTable([root, uv]).match("/uv/a")[0] is uv
        assert MountTable([uv, root]).match("/uv/a")[0] is uv

    def test_prefix_without_trailing_slash(self, assets):
        uv = _mount(assets["uv"], "/uv/")
        assert MountTable([uv]).match("/uv") == (uv, "")

    def test_no_match(self, assets):
        table = MountTable([_mount(assets["uv"], "/uv/")])
        assert table.match("/index.html") is None

    def test_duplicate_prefix_rejected(self, assets):
        table = MountTable([_mount(assets["uv"], "/uv/")])
        with pytest.raises(ValueError):
            table.register(_mount(assets["public"], "uv"))

    def test_len_and_iter(self, assets):
        mounts = [_mount(assets["public"], "/"), _mount(assets["uv"], "/uv/")]
        table = MountTable(mounts)
        assert len(table) == 2
        assert list(table) == mounts


@pytest.mark.parametrize(
    "prefix,expected",
    [("", "/"), ("/", "/"), ("uv", "/uv/"), ("/uv", "/uv/"), ("//a//b/", "/a/b/")],
)
def test_normalise_prefix(prefix, expected):
    assert normalise_prefix(prefix) == expected


class TestByteRange:
    def test_absent_or_unsupported(self):
        assert parse_byte_range("", 10) is None
        assert parse_byte_range("items=0-1", 10) is None
        assert parse_byte_range("bytes=0-1,4-5", 10) is None
        assert parse_byte_range("bytes=a-b", 10) is None
        assert parse_byte_range("bytes=5-2", 10) is None

    def test_explicit_range(self):
        assert parse_byte_range("bytes=2-5", 10) == (2, 5)

    def test_open_ended_and_clamped(self):
        assert parse_byte_range("bytes=7-", 10) == (7, 9)
        assert parse_byte_range("bytes=7-100", 10) == (7, 9)

    def test_suffix(self):
        assert parse_byte_range("bytes=-3", 10) == (7, 9)
        assert parse_byte_range("bytes=-30", 10) == (0, 9)

    def test_unsatisfiable(self):
        with pytest.raises(RangeNotSatisfiable) as exc:
            parse_byte_range("bytes=10-", 10)
        assert exc.value.headers == [("Content-Range", "bytes */10")]


class TestContentType:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("index.html", "text/html; charset=utf-8"),
            ("uv.bundle.js", "text/javascript; charset=utf-8"),
            ("worker.mjs", "text/javascript; charset=utf-8"),
            ("epoxy.wasm", "application/wasm"),
            ("logo.png", "image/png"),
            ("blob", "application/octet-stream"),
        ],
    )
    def test_guess(self, name, expected):
        assert content_type_for(Path(name)) == expected


def _parse(data: bytes):
    async def run():
        reader = asyncio.StreamReader()
        reader.feed_data(data)
        reader.feed_eof()
        line = await reader.readline()
        return await read_request(reader, line)

    return asyncio.run(run())


class TestReadRequest:
    def test_basic_head(self):
        raw = b"GET /uv/a%20b.js?x=1 HTTP/1.1\r\nHost: h\r\nConnection: keep-alive\r\n\r\n"
        request = _parse(raw)

        assert request.method == "GET"
        assert request.path == "/uv/a b.js"
        assert request.query == "x=1"
        assert request.raw == raw
        assert request.keep_alive
        assert not request.wants_upgrade

    def test_upgrade_detection(self):
        request = _parse(
            b"GET /wisp/ HTTP/1.1\r\nUpgrade: websocket\r\n"
            b"Connection: keep-alive, Upgrade\r\n\r\n"
        )
        assert request.wants_upgrade

    def test_upgrade_needs_connection_token(self):
        request = _parse(b"GET /wisp/ HTTP/1.1\r\nUpgrade: websocket\r\n\r\n")
        assert not request.wants_upgrade

    def test_http10_defaults_to_close(self):
        assert not _parse(b"GET / HTTP/1.0\r\n\r\n").keep_alive

    def test_absolute_form(self):
        request = _parse(b"GET http://example.org/uv/?q HTTP/1.1\r\n\r\n")
        assert (request.path, request.query) == ("/uv/", "q")

    @pytest.mark.parametrize(
        "raw",
        [
            b"GARBAGE\r\n\r\n",
            b"GET / SPDY/3\r\n\r\n",
            b"GET / HTTP/1.1\r\nno-colon-here\r\n\r\n",
            b"GET / HTTP/1.1\r\nHost: h\r\n",
            b"GET relative HTTP/1.1\r\n\r\n",
        ],
    )
    def test_malformed(self, raw):
        with pytest.raises(MalformedRequest):
            _parse(raw)
