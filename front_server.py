"""
front_server.py — Isolating front server for a browser web proxy.

Architecture
------------
A single ``FrontServer`` owns one listening socket.  Every accepted
connection goes through ``_FrontHandler``, which reads just the request
head and classifies it:

* **Upgrade requests** (``Upgrade`` + ``Connection: upgrade``) go to the
  ``UpgradeRouter``.  If the path is the tunnel endpoint the raw
  connection is detached and handed to the tunnel backend; any other
  upgrade is closed without a single byte written back.
* **HTTP requests** are matched against the ``MountTable`` and served
  from disk by an ``AssetMount`` through a ``ResponseWriter``.

Key components:

* **HeaderPolicy**: the frame-ancestors / COOP / COEP header set built
  from the allowed embedding origins.
* **ResponseWriter**: the only path to the wire for HTTP responses.  It
  merges the policy into the head last, so the asset layer cannot
  override or forget it, whatever the status code.
* **AssetMount / MountTable**: URL prefix → directory tree, with
  traversal protection, index files, listings, conditional and range
  requests.
* **UpgradeRouter**: the single seam to the external tunnel backend
  (see ``tunnel_bridge.relay``).

Threading model
~~~~~~~~~~~~~~~
Everything runs on one asyncio event loop.  File reads are pushed to
worker threads with ``asyncio.to_thread``.  Configuration, policy and
mounts are immutable once the server is started, so nothing is locked.
"""

from __future__ import annotations

import asyncio
import email.utils
import html
import logging
import mimetypes
import os
import re
import stat
import time
import traceback
from asyncio import StreamReader, StreamWriter
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol, Sequence
from urllib.parse import quote, unquote, urlsplit


# ============================================================================
# Configuration
# ============================================================================


DEFAULT_PORT = 8080
DEFAULT_TUNNEL_PATH = "/wisp/"
DEFAULT_EMBED_ORIGINS: tuple[str, ...] = ("https://sites.google.com",)


@dataclass(frozen=True)
class FrontConfig:
    """Tunable knobs for connection handling.

    All timeouts are in seconds.  Buffer sizes are in bytes.

    Attributes
    ----------
    request_timeout:
        Maximum time allowed for reading one request head (request line
        plus headers) once the first byte has arrived, and for the first
        request on a fresh connection.
    idle_timeout:
        How long a keep-alive connection may sit idle between requests
        before it is closed.
    send_timeout:
        Deadline for a single write + drain.  A client that stops
        reading for longer than this loses its connection.
    shutdown_grace:
        How long ``FrontServer.stop()`` waits for in-flight responses
        before force-closing what is left.
    read_buffer_size:
        Chunk size used when streaming files from disk.
    max_header_bytes:
        Upper bound for the whole request head.
    max_headers:
        Upper bound for the number of header lines.
    """

    request_timeout: float = 30.0
    idle_timeout: float = 70.0
    send_timeout: float = 60.0
    shutdown_grace: float = 10.0

    read_buffer_size: int = 65536
    max_header_bytes: int = 65536
    max_headers: int = 100


DEFAULT_CONFIG = FrontConfig()


@dataclass(frozen=True)
class ServerConfig:
    """Where to listen and what to allow.  Built once at startup."""

    bind_host: str = "0.0.0.0"
    bind_port: int = DEFAULT_PORT
    allowed_embed_origins: tuple[str, ...] = DEFAULT_EMBED_ORIGINS
    tunnel_path: str = DEFAULT_TUNNEL_PATH


# ============================================================================
# Errors
# ============================================================================


class BindError(OSError):
    """The configured host/port could not be bound."""


class MalformedRequest(ValueError):
    """The request line or headers could not be parsed."""


class AssetError(Exception):
    """Base class for failures that map onto an HTTP error status.

    ``headers`` are extra response headers that belong to the error
    (``Allow`` for 405, ``Content-Range`` for 416).
    """

    status: int = 500

    def __init__(
        self, message: str = "", headers: Optional[Sequence[tuple[str, str]]] = None
    ) -> None:
        super().__init__(message)
        self.headers: list[tuple[str, str]] = list(headers or ())


class AssetNotFound(AssetError):
    status = 404


class AssetForbidden(AssetError):
    """Raised for paths that resolve outside a mount root."""

    status = 403


class MethodNotAllowed(AssetError):
    status = 405


class RangeNotSatisfiable(AssetError):
    status = 416


class AssetReadError(AssetError):
    status = 500


# ============================================================================
# Header Policy
# ============================================================================


@dataclass(frozen=True)
class HeaderPolicy:
    """The isolation and embedding headers stamped on every response.

    Built deterministically from the ordered list of origins that may
    frame this server's pages:

    * ``Content-Security-Policy: frame-ancestors <origins>;`` (an empty
      list yields ``'none'``, framing denied).
    * ``X-Frame-Options: ALLOW-FROM <first origin>`` for clients that
      predate ``frame-ancestors``; ``DENY`` for an empty list.
    * ``Cross-Origin-Opener-Policy: same-origin``
    * ``Cross-Origin-Embedder-Policy: require-corp``

    Examples::

        >>> HeaderPolicy.from_origins(["https://sites.google.com"]).get(
        ...     "content-security-policy")
        'frame-ancestors https://sites.google.com;'
    """

    headers: tuple[tuple[str, str], ...]

    @classmethod
    def from_origins(cls, origins: Sequence[str]) -> HeaderPolicy:
        cleaned = tuple(o.strip() for o in origins if o and o.strip())
        if cleaned:
            frame_ancestors = " ".join(cleaned)
            frame_options = f"ALLOW-FROM {cleaned[0]}"
        else:
            frame_ancestors = "'none'"
            frame_options = "DENY"
        return cls(
            (
                ("Content-Security-Policy", f"frame-ancestors {frame_ancestors};"),
                ("X-Frame-Options", frame_options),
                ("Cross-Origin-Opener-Policy", "same-origin"),
                ("Cross-Origin-Embedder-Policy", "require-corp"),
            )
        )

    @property
    def names(self) -> frozenset[str]:
        return frozenset(k.lower() for k, _ in self.headers)

    def get(self, name: str) -> Optional[str]:
        lower = name.lower()
        for k, v in self.headers:
            if k.lower() == lower:
                return v
        return None

    def apply(self, headers: Sequence[tuple[str, str]]) -> list[tuple[str, str]]:
        """Return *headers* with the policy merged in last.

        Any header already present under a policy name is dropped, so
        the policy value is the only one that reaches the client.
        """
        names = self.names
        merged = [(k, v) for k, v in headers if k.lower() not in names]
        merged.extend(self.headers)
        return merged


# ============================================================================
# Request Parsing
# ============================================================================


_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


@dataclass
class HttpRequest:
    """A parsed request head.

    ``raw`` holds the head exactly as it arrived on the wire (request
    line, headers and the terminating blank line), which is what an
    upgrade handoff forwards to the tunnel backend.
    """

    method: str
    target: str
    version: str
    headers: list[tuple[str, str]]
    raw: bytes
    path: str = "/"
    query: str = ""

    def header(self, name: str, default: str = "") -> str:
        """Return the first value of header *name* (case-insensitive)."""
        lower = name.lower()
        for k, v in self.headers:
            if k.lower() == lower:
                return v
        return default

    def header_tokens(self, name: str) -> set[str]:
        """Comma-separated tokens across every *name* header, lowercased."""
        lower = name.lower()
        tokens: set[str] = set()
        for k, v in self.headers:
            if k.lower() == lower:
                tokens.update(t.strip().lower() for t in v.split(",") if t.strip())
        return tokens

    @property
    def wants_upgrade(self) -> bool:
        return bool(self.header("upgrade").strip()) and (
            "upgrade" in self.header_tokens("connection")
        )

    @property
    def keep_alive(self) -> bool:
        tokens = self.header_tokens("connection")
        if "close" in tokens:
            return False
        if self.version == "HTTP/1.0":
            return "keep-alive" in tokens
        return True

    @property
    def has_body(self) -> bool:
        if self.header("transfer-encoding"):
            return True
        length = self.header("content-length").strip()
        return bool(length) and length != "0"


async def read_request(
    reader: StreamReader,
    request_line: bytes,
    config: FrontConfig = DEFAULT_CONFIG,
) -> HttpRequest:
    """Read the rest of a request head whose first line was *request_line*.

    Raises
    ------
    MalformedRequest
        If the request line or a header line is not valid HTTP/1.x, the
        head exceeds the configured limits, or the peer closes the
        connection before the blank line.
    """
    raw = bytearray(request_line)
    decoded = request_line.decode("latin-1").rstrip("\r\n")
    parts = decoded.split(" ")
    if len(parts) != 3:
        raise MalformedRequest(f"Bad request line: {decoded[:100]!r}")

    method, target, version = parts
    if not _TOKEN.match(method) or not version.startswith("HTTP/1."):
        raise MalformedRequest(f"Bad request line: {decoded[:100]!r}")

    headers: list[tuple[str, str]] = []
    while True:
        line = await reader.readline()
        if not line:
            raise MalformedRequest("Connection closed inside request head")
        raw.extend(line)
        if len(raw) > config.max_header_bytes:
            raise MalformedRequest("Request head too large")
        if line in (b"\r\n", b"\n"):
            break

        text = line.decode("latin-1").rstrip("\r\n")
        if ":" not in text or text[0] in " \t":
            raise MalformedRequest(f"Bad header line: {text[:100]!r}")
        name, value = text.split(":", 1)
        if not _TOKEN.match(name):
            raise MalformedRequest(f"Bad header name: {name[:100]!r}")
        headers.append((name, value.strip()))
        if len(headers) > config.max_headers:
            raise MalformedRequest("Too many headers")

    if target.startswith("/"):
        raw_path, _, query = target.partition("?")
    elif target.lower().startswith(("http://", "https://")):
        parsed = urlsplit(target)
        raw_path, query = parsed.path or "/", parsed.query
    elif target == "*":
        raw_path, query = "*", ""
    else:
        raise MalformedRequest(f"Bad request target: {target[:100]!r}")

    return HttpRequest(
        method=method,
        target=target,
        version=version,
        headers=headers,
        raw=bytes(raw),
        path=unquote(raw_path, errors="strict"),
        query=query,
    )


# ============================================================================
# Connection Wrapper
# ============================================================================


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Tracks last-activity time, whether a request is currently being
    served (``busy``), whether the server has started draining
    (``draining``), and whether ownership of the socket has been
    transferred elsewhere (``detached``).  A detached connection is
    never written to or closed by the HTTP path again.
    """

    __slots__ = (
        "reader",
        "writer",
        "peer",
        "task",
        "busy",
        "draining",
        "detached",
        "last_activity",
        "_closed",
    )

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        self.peer = writer.get_extra_info("peername")
        self.task: Optional[asyncio.Task[Any]] = None
        self.busy = False
        self.draining = False
        self.detached = False
        self.last_activity = time.monotonic()
        self._closed = False

    def touch(self) -> None:
        """Update the last-activity timestamp (call on every successful I/O)."""
        self.last_activity = time.monotonic()

    def detach(self) -> None:
        """Give up ownership of the socket (tunnel handoff)."""
        self.detached = True
        self.busy = False

    def abort(self) -> None:
        """Drop the transport immediately, without a graceful close."""
        if self._closed:
            return
        self._closed = True
        transport = self.writer.transport
        if transport is not None and not transport.is_closing():
            transport.abort()

    async def close(self, force: bool = False) -> None:
        """Close the underlying transport.

        Parameters
        ----------
        force:
            If ``True``, abort the transport immediately.  Used when a
            response was cut short and the peer must not mistake a
            truncated body for a complete one, and when the shutdown
            grace period has run out.
        """
        if force:
            self.abort()
            return
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if transport is None or transport.is_closing():
                return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            transport = self.writer.transport
            if transport and not transport.is_closing():
                transport.abort()
            logger.trace("Connection close timed out, aborted")
        except Exception as e:
            logger.debug("Connection close error: %s", e)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()


# ============================================================================
# Response Writer
# ============================================================================


def _reason(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Unknown"


# Framing headers are owned by the writer, not by whoever builds the response.
_WRITER_HEADERS = frozenset({"connection", "date", "keep-alive"})


class ResponseWriter:
    """Serialises one HTTP/1.1 response onto a ``ManagedConnection``.

    ``start()`` writes the status line and headers; the header policy is
    merged in there, after every caller-supplied header, so it happens
    before the first body byte and cannot be overridden.  ``write()``
    streams body bytes (a no-op for ``HEAD``).
    """

    __slots__ = (
        "_conn",
        "_policy",
        "_config",
        "head_only",
        "keep_alive",
        "status",
        "started",
        "body_bytes",
    )

    def __init__(
        self,
        conn: ManagedConnection,
        policy: HeaderPolicy,
        config: FrontConfig = DEFAULT_CONFIG,
        *,
        head_only: bool = False,
        keep_alive: bool = True,
    ):
        self._conn = conn
        self._policy = policy
        self._config = config
        self.head_only = head_only
        self.keep_alive = keep_alive
        self.status = 0
        self.started = False
        self.body_bytes = 0

    async def start(
        self, status: int, headers: Sequence[tuple[str, str]] = ()
    ) -> None:
        if self.started:
            raise RuntimeError("Response already started")
        if self._conn.draining:
            self.keep_alive = False

        head = [(k, v) for k, v in headers if k.lower() not in _WRITER_HEADERS]
        head.append(("Date", email.utils.formatdate(usegmt=True)))
        head.append(("Connection", "keep-alive" if self.keep_alive else "close"))
        head = self._policy.apply(head)

        lines = [f"HTTP/1.1 {status} {_reason(status)}"]
        lines.extend(f"{k}: {v}" for k, v in head)
        self.started = True
        self.status = status
        await self._send(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))

    async def write(self, data: bytes) -> None:
        if self.head_only or not data:
            return
        await self._send(data)
        self.body_bytes += len(data)

    async def send(
        self,
        status: int,
        body: bytes = b"",
        headers: Sequence[tuple[str, str]] = (),
    ) -> None:
        """Send a complete response with a fixed body."""
        await self.start(status, [*headers, ("Content-Length", str(len(body)))])
        await self.write(body)

    async def send_error(
        self, status: int, headers: Sequence[tuple[str, str]] = ()
    ) -> None:
        body = f"{status} {_reason(status)}\n".encode("utf-8")
        await self.send(
            status,
            body,
            [("Content-Type", "text/plain; charset=utf-8"), *headers],
        )

    async def _send(self, data: bytes) -> None:
        self._conn.writer.write(data)
        async with asyncio.timeout(self._config.send_timeout):
            await self._conn.writer.drain()
        self._conn.touch()


# ============================================================================
# Static Assets
# ============================================================================


mimetypes.add_type("text/javascript", ".js")
mimetypes.add_type("text/javascript", ".mjs")
mimetypes.add_type("text/javascript", ".cjs")
mimetypes.add_type("application/wasm", ".wasm")
mimetypes.add_type("application/json", ".map")
mimetypes.add_type("application/manifest+json", ".webmanifest")

_TEXTUAL_TYPES = frozenset(
    {
        "text/javascript",
        "application/javascript",
        "application/json",
        "application/manifest+json",
        "application/xml",
        "image/svg+xml",
    }
)


def content_type_for(path: Path) -> str:
    mime, _ = mimetypes.guess_type(path.name)
    if mime is None:
        return "application/octet-stream"
    if mime.startswith("text/") or mime in _TEXTUAL_TYPES:
        return f"{mime}; charset=utf-8"
    return mime


class Dotfiles(Enum):
    """What to do with path segments that start with a dot."""

    ALLOW = "allow"
    DENY = "deny"
    IGNORE = "ignore"


def normalise_prefix(prefix: str) -> str:
    """``"uv"`` / ``"/uv"`` / ``"/uv/"`` → ``"/uv/"``; ``""`` → ``"/"``."""
    segments = [s for s in prefix.split("/") if s]
    if not segments:
        return "/"
    return "/" + "/".join(segments) + "/"


@dataclass(frozen=True)
class AssetMountEntry:
    """A URL prefix bound to a directory of static files.

    Attributes
    ----------
    url_prefix:
        Path prefix the mount answers for; normalised to ``/x/`` form.
    root_directory:
        Directory whose contents are served.
    serves_index:
        Serve ``index_file`` for directory requests.
    index_file:
        Name of the index document looked up inside directories.
    list_directories:
        Render an HTML listing for directories without an index.
    dotfiles:
        Policy for hidden path segments; hidden by default.
    """

    url_prefix: str
    root_directory: Path
    serves_index: bool = True
    index_file: str = "index.html"
    list_directories: bool = False
    dotfiles: Dotfiles = Dotfiles.IGNORE


def parse_byte_range(value: str, size: int) -> Optional[tuple[int, int]]:
    """Parse a single ``Range: bytes=...`` value against a file of *size*.

    Returns the inclusive ``(start, end)`` pair, or ``None`` when the
    header should be ignored (absent, not bytes, multiple ranges,
    syntactically invalid) and the whole file sent.

    Raises
    ------
    RangeNotSatisfiable
        If the range is valid but lies outside the file.
    """
    if not value:
        return None
    unit, _, spec = value.partition("=")
    spec = spec.strip()
    if unit.strip().lower() != "bytes" or not spec or "," in spec:
        return None
    first, sep, last = spec.partition("-")
    first, last = first.strip(), last.strip()
    if not sep or (first and not first.isdigit()) or (last and not last.isdigit()):
        return None

    unsatisfiable = RangeNotSatisfiable(
        f"Range {spec!r} outside {size} bytes",
        headers=[("Content-Range", f"bytes */{size}")],
    )
    if not first:
        if not last:
            return None
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise unsatisfiable
        return max(size - suffix, 0), size - 1

    start = int(first)
    end = int(last) if last else size - 1
    if last and end < start:
        return None
    if start >= size:
        raise unsatisfiable
    return start, min(end, size - 1)


def _not_modified(request: HttpRequest, etag: str, mtime: float) -> bool:
    if_none_match = request.header("if-none-match")
    if if_none_match:
        tags = {t.strip().removeprefix("W/") for t in if_none_match.split(",")}
        return "*" in tags or etag.removeprefix("W/") in tags

    if_modified_since = request.header("if-modified-since")
    if if_modified_since:
        try:
            since = email.utils.parsedate_to_datetime(if_modified_since)
        except (TypeError, ValueError):
            return False
        return int(mtime) <= since.timestamp()
    return False


def _render_listing(url_path: str, entries: list[tuple[str, bool]]) -> bytes:
    title = html.escape(url_path)
    rows = []
    if url_path != "/":
        rows.append('<li><a href="../">../</a></li>')
    for name, is_dir in entries:
        label = name + "/" if is_dir else name
        href = quote(name) + ("/" if is_dir else "")
        rows.append(f'<li><a href="{href}">{html.escape(label)}</a></li>')
    page = (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        f"<title>Index of {title}</title></head>\n"
        f"<body><h1>Index of {title}</h1>\n<ul>\n"
        + "\n".join(rows)
        + "\n</ul></body></html>\n"
    )
    return page.encode("utf-8")


class AssetMount:
    """Serves one ``AssetMountEntry`` from disk.

    ``resolve()`` is the traversal guard: every request path is joined
    to the root, fully resolved (``..`` and symlinks included) and must
    still live under the resolved root, or ``AssetForbidden`` is raised.
    """

    __slots__ = ("entry", "prefix", "root", "config")

    def __init__(self, entry: AssetMountEntry, config: FrontConfig = DEFAULT_CONFIG):
        self.entry = entry
        self.prefix = normalise_prefix(entry.url_prefix)
        self.root = Path(entry.root_directory).resolve()
        self.config = config

    def __repr__(self) -> str:
        return f"<AssetMount {self.prefix} -> {self.root}>"

    # -- resolution --------------------------------------------------------

    def resolve(self, relative: str) -> Path:
        """Map a path relative to the mount prefix onto the filesystem."""
        if "\x00" in relative:
            raise AssetForbidden(f"NUL byte in {relative!r}")

        segments = [s for s in relative.replace("\\", "/").split("/") if s not in ("", ".")]
        resolved = self.root.joinpath(*segments).resolve()
        if resolved != self.root and not resolved.is_relative_to(self.root):
            raise AssetForbidden(f"{relative!r} escapes {self.root}")

        policy = self.entry.dotfiles
        if policy is not Dotfiles.ALLOW and any(
            part.startswith(".") for part in resolved.relative_to(self.root).parts
        ):
            if policy is Dotfiles.DENY:
                raise AssetForbidden(f"Hidden path {relative!r}")
            raise AssetNotFound(relative)
        return resolved

    # -- serving -----------------------------------------------------------

    async def serve(
        self, request: HttpRequest, relative: str, response: ResponseWriter
    ) -> None:
        if request.method not in ("GET", "HEAD"):
            raise MethodNotAllowed(
                f"{request.method} {request.path}", headers=[("Allow", "GET, HEAD")]
            )

        path = await asyncio.to_thread(self.resolve, relative)
        st = await self._stat(path, request.path)

        if stat.S_ISDIR(st.st_mode):
            if not request.path.endswith("/"):
                location = quote(request.path + "/")
                if request.query:
                    location = f"{location}?{request.query}"
                await response.send(301, b"", [("Location", location)])
                return

            if self.entry.serves_index:
                index = path / self.entry.index_file
                try:
                    index_st = await asyncio.to_thread(index.stat)
                except (FileNotFoundError, NotADirectoryError):
                    index_st = None
                except OSError as e:
                    raise AssetReadError(f"stat {index}: {e}") from e
                if index_st is not None and stat.S_ISREG(index_st.st_mode):
                    await self._send_file(request, index, index_st, response)
                    return

            if self.entry.list_directories:
                await self._send_listing(request, path, response)
                return
            raise AssetNotFound(request.path)

        if not stat.S_ISREG(st.st_mode) or request.path.endswith("/"):
            raise AssetNotFound(request.path)
        await self._send_file(request, path, st, response)

    async def _stat(self, path: Path, url_path: str) -> os.stat_result:
        try:
            return await asyncio.to_thread(path.stat)
        except (FileNotFoundError, NotADirectoryError) as e:
            raise AssetNotFound(url_path) from e
        except OSError as e:
            raise AssetReadError(f"stat {path}: {e}") from e

    async def _send_file(
        self,
        request: HttpRequest,
        path: Path,
        st: os.stat_result,
        response: ResponseWriter,
    ) -> None:
        size = st.st_size
        etag = f'W/"{size:x}-{int(st.st_mtime * 1000):x}"'
        headers = [
            ("Accept-Ranges", "bytes"),
            ("Cache-Control", "public, max-age=0"),
            ("Last-Modified", email.utils.formatdate(st.st_mtime, usegmt=True)),
            ("ETag", etag),
        ]

        if _not_modified(request, etag, st.st_mtime):
            await response.start(304, headers)
            return

        headers.append(("Content-Type", content_type_for(path)))
        status = 200
        start, end = 0, size - 1
        byte_range = parse_byte_range(request.header("range"), size)
        if byte_range is not None:
            status = 206
            start, end = byte_range
            headers.append(("Content-Range", f"bytes {start}-{end}/{size}"))
        length = end - start + 1
        headers.append(("Content-Length", str(length)))

        try:
            f = await asyncio.to_thread(open, path, "rb")
        except OSError as e:
            raise AssetReadError(f"open {path}: {e}") from e

        try:
            await response.start(status, headers)
            if response.head_only:
                return
            if start:
                await asyncio.to_thread(f.seek, start)
            remaining = length
            while remaining > 0:
                try:
                    chunk = await asyncio.to_thread(
                        f.read, min(self.config.read_buffer_size, remaining)
                    )
                except OSError as e:
                    raise AssetReadError(f"read {path}: {e}") from e
                if not chunk:
                    raise AssetReadError(f"{path} shrank while streaming")
                await response.write(chunk)
                remaining -= len(chunk)
        finally:
            f.close()

    async def _send_listing(
        self, request: HttpRequest, path: Path, response: ResponseWriter
    ) -> None:
        show_hidden = self.entry.dotfiles is Dotfiles.ALLOW

        def scan() -> list[tuple[str, bool]]:
            with os.scandir(path) as it:
                return sorted(
                    (e.name, e.is_dir())
                    for e in it
                    if show_hidden or not e.name.startswith(".")
                )

        try:
            entries = await asyncio.to_thread(scan)
        except OSError as e:
            raise AssetReadError(f"scandir {path}: {e}") from e

        await response.send(
            200,
            _render_listing(request.path, entries),
            [("Content-Type", "text/html; charset=utf-8")],
        )


class MountTable:
    """Longest-prefix lookup over the registered mounts.

    Registration happens at startup only.  Equal-length prefixes cannot
    collide (a normalised prefix may be registered once), and the sort
    is stable, so among candidates the first registered wins.
    """

    __slots__ = ("_mounts", "_ordered")

    def __init__(self, mounts: Sequence[AssetMount] = ()):
        self._mounts: list[AssetMount] = []
        self._ordered: list[AssetMount] = []
        for mount in mounts:
            self.register(mount)

    def register(self, mount: AssetMount) -> None:
        if any(m.prefix == mount.prefix for m in self._mounts):
            raise ValueError(f"Duplicate mount prefix: {mount.prefix}")
        self._mounts.append(mount)
        self._ordered = sorted(self._mounts, key=lambda m: -len(m.prefix))

    def match(self, path: str) -> Optional[tuple[AssetMount, str]]:
        """Return ``(mount, relative_path)`` for *path*, or ``None``.

        ``/uv`` matches the ``/uv/`` mount with an empty relative path so
        the mount can redirect it to the directory form.
        """
        for mount in self._ordered:
            if path.startswith(mount.prefix):
                return mount, path[len(mount.prefix):]
            if mount.prefix != "/" and path == mount.prefix[:-1]:
                return mount, ""
        return None

    def __iter__(self) -> Iterator[AssetMount]:
        return iter(self._mounts)

    def __len__(self) -> int:
        return len(self._mounts)


# ============================================================================
# Upgrade Routing
# ============================================================================


class TunnelBackend(Protocol):
    """Entry point of the external tunnel implementation.

    Receives the unmodified request head plus the raw stream pair and
    owns them from then on, including closing them.
    """

    async def route_request(
        self, request: HttpRequest, reader: StreamReader, writer: StreamWriter
    ) -> None: ...


class UpgradeRouter:
    """Hands tunnel-endpoint upgrades to the backend; refuses the rest.

    ``route()`` never awaits the tunnel: the backend runs in its own
    task whose lifetime is independent of any request timeout and of
    server shutdown.
    """

    __slots__ = ("tunnel_path", "backend", "_tasks")

    def __init__(
        self,
        tunnel_path: str = DEFAULT_TUNNEL_PATH,
        backend: Optional[TunnelBackend] = None,
    ):
        self.tunnel_path = tunnel_path
        self.backend = backend
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active(self) -> int:
        """Number of tunnels currently owned by the backend."""
        return len(self._tasks)

    def matches(self, path: str) -> bool:
        """Suffix match on the decoded path.

        The query string is not part of *path*, so ``/wisp/?v=1`` is
        routed as well; a match on the raw request target would close it.
        """
        return path.endswith(self.tunnel_path)

    def route(self, request: HttpRequest, client: ManagedConnection) -> bool:
        """Transfer *client* to the backend if *request* targets the tunnel.

        Returns ``False`` when the upgrade is not routable; the caller
        then closes the connection without writing anything.
        """
        if self.backend is None or not self.matches(request.path):
            logger.debug(
                "[UPGRADE] Closing unroutable upgrade to %s from %s",
                request.path,
                client.peer,
            )
            return False

        client.detach()
        task = asyncio.create_task(
            self._handoff(self.backend, request, client.reader, client.writer),
            name="tunnel",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.trace("[UPGRADE] %s from %s handed to tunnel", request.path, client.peer)
        return True

    async def _handoff(
        self,
        backend: TunnelBackend,
        request: HttpRequest,
        reader: StreamReader,
        writer: StreamWriter,
    ) -> None:
        try:
            await backend.route_request(request, reader, writer)
        except Exception as e:
            logger.debug("[UPGRADE] Tunnel backend failed for %s: %s", request.path, e)
            transport = writer.transport
            if transport is not None and not transport.is_closing():
                transport.abort()


# ============================================================================
# Connection Handler
# ============================================================================


class _FrontHandler:
    """Reads request heads off each connection and dispatches them."""

    __slots__ = ("_server", "policy", "mounts", "router", "config")

    def __init__(self, server: FrontServer):
        self._server = server
        self.policy = server.policy
        self.mounts = server.mounts
        self.router = server.router
        self.config = server.front_config

    async def handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        """Entry point for each new connection (called by ``asyncio.Server``)."""
        client = ManagedConnection(reader, writer)
        client.task = asyncio.current_task()
        self._server._track_connection(client)
        served = 0

        try:
            while not client.closed:
                wait = self.config.idle_timeout if served else self.config.request_timeout
                async with asyncio.timeout(wait):
                    line = await reader.readline()
                if not line:
                    break

                client.busy = True
                async with asyncio.timeout(self.config.request_timeout):
                    request = await read_request(reader, line, self.config)
                served += 1
                client.touch()

                if request.wants_upgrade:
                    self.router.route(request, client)
                    break

                keep_alive = (
                    request.keep_alive
                    and not request.has_body
                    and not self._server.draining
                )
                keep_alive = await self._serve_http(client, request, keep_alive)
                client.busy = False
                if not keep_alive or self._server.draining:
                    break

        except TimeoutError:
            logger.trace("[%s] Timed out after %d request(s)", client.peer, served)
        except ValueError as e:
            # MalformedRequest, or a line longer than the reader limit
            logger.debug("[%s] Dropping malformed request: %s", client.peer, e)
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("[%s] Connection closed: %s", client.peer, e)
        except Exception:
            logger.error("Client handler error: %s", traceback.format_exc())
        finally:
            client.busy = False
            self._server._untrack_connection(client)
            if not client.detached:
                await client.close()

    async def _serve_http(
        self, client: ManagedConnection, request: HttpRequest, keep_alive: bool
    ) -> bool:
        """Serve one request.  Returns whether the connection may be reused."""
        response = ResponseWriter(
            client,
            self.policy,
            self.config,
            head_only=request.method == "HEAD",
            keep_alive=keep_alive,
        )

        try:
            match = self.mounts.match(request.path)
            if match is None:
                raise AssetNotFound(request.path)
            mount, relative = match
            await mount.serve(request, relative, response)

        except AssetError as e:
            self._log_asset_error(client, request, e)
            if response.started:
                await client.close(force=True)
                return False
            await response.send_error(e.status, e.headers)

        except (ConnectionResetError, BrokenPipeError, TimeoutError):
            raise
        except Exception:
            logger.error(
                "[HTTP] Error serving %s: %s", request.path, traceback.format_exc()
            )
            if response.started:
                await client.close(force=True)
                return False
            await response.send_error(500)

        logger.trace(
            "[HTTP] %s %s -> %d (%d bytes)",
            request.method,
            request.target,
            response.status,
            response.body_bytes,
        )
        return response.keep_alive

    @staticmethod
    def _log_asset_error(
        client: ManagedConnection, request: HttpRequest, error: AssetError
    ) -> None:
        if isinstance(error, AssetForbidden):
            logger.warning(
                "[SECURITY] Refused %s %r from %s: %s",
                request.method,
                request.target,
                client.peer,
                error,
            )
        elif error.status >= 500:
            logger.error("[HTTP] %s %s failed: %s", request.method, request.path, error)
        else:
            logger.debug(
                "[HTTP] %s %s -> %d", request.method, request.path, error.status
            )


# ============================================================================
# FrontServer
# ============================================================================


class FrontServer:
    """The listening socket plus everything needed to answer on it.

    Usage::

        mounts = MountTable([AssetMount(AssetMountEntry("/", Path("public")))])
        router = UpgradeRouter("/wisp/", RelayTunnelBackend("127.0.0.1:6001"))
        server = FrontServer(ServerConfig(bind_port=8080), mounts, router)

        port = await server.start()
        ...
        await server.stop()

    ``stop()`` closes the listener first (new connections are refused),
    closes idle keep-alive connections, waits up to the grace period for
    in-flight responses and force-closes whatever is still busy.
    Connections handed to the tunnel backend are not tracked and are
    left alone.
    """

    def __init__(
        self,
        config: ServerConfig,
        mounts: MountTable,
        router: UpgradeRouter,
        front_config: FrontConfig = DEFAULT_CONFIG,
    ):
        self.config = config
        self.front_config = front_config
        self.policy = HeaderPolicy.from_origins(config.allowed_embed_origins)
        self.mounts = mounts
        self.router = router
        self.port = config.bind_port

        self._server: Optional[asyncio.Server] = None
        self._addresses: list[tuple[str, int]] = []
        self._active_connections: set[ManagedConnection] = set()
        self._draining = False

    # -- state -------------------------------------------------------------

    @property
    def draining(self) -> bool:
        return self._draining

    @property
    def serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    @property
    def addresses(self) -> list[tuple[str, int]]:
        """``(host, port)`` of every bound socket."""
        return list(self._addresses)

    @property
    def active_connections(self) -> int:
        return len(self._active_connections)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Bind and start accepting.  Returns the bound port number.

        Raises
        ------
        BindError
            If the host/port cannot be bound.  No other port is tried.
        """
        handler = _FrontHandler(self)
        host, port = self.config.bind_host, self.config.bind_port
        try:
            self._server = await asyncio.start_server(
                handler.handle_client,
                host,
                port,
                reuse_address=True,
            )
        except OSError as e:
            raise BindError(e.errno, f"Cannot bind {host}:{port}: {e.strerror or e}") from e

        self._draining = False
        self._addresses = [
            (sock.getsockname()[0], sock.getsockname()[1]) for sock in self._server.sockets
        ]
        self.port = self._addresses[0][1]
        logger.info(
            "FrontServer listening on %s:%d (%d mount(s), tunnel: %s)",
            host,
            self.port,
            len(self.mounts),
            self.router.tunnel_path if self.router.backend else "disabled",
        )
        return self.port

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop accepting, drain in-flight responses, close the rest."""
        if grace is None:
            grace = self.front_config.shutdown_grace
        self._draining = True

        if self._server is not None:
            self._server.close()
            self._server = None

        for conn in self._active_connections:
            conn.draining = True
        for conn in [c for c in self._active_connections if not c.busy]:
            conn.abort()

        current = asyncio.current_task()
        tasks = {
            c.task
            for c in self._active_connections
            if c.task is not None and c.task is not current
        }
        if tasks:
            logger.info("Draining %d in-flight connection(s)", len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=grace)
            if pending:
                logger.warning(
                    "Grace period of %.1fs expired, force-closing %d connection(s)",
                    grace,
                    len(pending),
                )
                for conn in list(self._active_connections):
                    conn.abort()
                await asyncio.wait(pending, timeout=2.0)

        logger.info("FrontServer stopped (was :%d)", self.port)

    # -- connection tracking -----------------------------------------------

    def _track_connection(self, conn: ManagedConnection) -> None:
        self._active_connections.add(conn)

    def _untrack_connection(self, conn: ManagedConnection) -> None:
        self._active_connections.discard(conn)


# ============================================================================
# Logging
# ============================================================================


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(5):
            self._log(5, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(5, "TRACE")


class ColoredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        colors = {
            5: "\033[0;37m",
            logging.DEBUG: "\033[0m",
            logging.INFO: "\033[34m",
            logging.WARNING: "\033[1;33m",
            logging.ERROR: "\033[1;31m",
            logging.CRITICAL: "\033[1;37;41m",
        }
        c = colors.get(record.levelno, "\033[0m")
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        message = super().format(record)
        return f"{c}{message}\033[0m"


logger: CustomLogger = logging.getLogger(__name__)  # type: ignore[assignment]
