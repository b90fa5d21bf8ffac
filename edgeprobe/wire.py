"""Raw connection helpers shared by the probe and speed engines.

A candidate is dialled once with :func:`open_connection`; the same
``StreamReader``/``StreamWriter`` pair is then optionally upgraded to TLS
in place and used for a single HTTP/1.1 exchange.  No HTTP client library
is involved on this path, so nothing can silently open a second
connection and the connect time stays separate from the request time.

Every read is bounded by an absolute ``deadline`` expressed on the
``time.perf_counter()`` clock, so a whole exchange shares one budget.
"""

from __future__ import annotations

import asyncio
import functools
import ipaddress
import logging
import ssl
import time
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import urlsplit

import dns.asyncresolver
import dns.rdatatype

from edgeprobe.config import USER_AGENT

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    """Lightweight container for the HTTP response collected on the raw socket."""

    status_code: int = 0
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    http_version: str = ""


@dataclass
class StreamStats:
    """Outcome of a streamed download: status and number of body bytes seen."""

    status_code: int = 0
    bytes_received: int = 0
    completed: bool = False  # False when the deadline cut the body short


# ---------------------------------------------------------------------------
# Deadlines
# ---------------------------------------------------------------------------

def remaining(deadline: float) -> float:
    """Seconds left before *deadline*; raises ``asyncio.TimeoutError`` when spent."""
    left = deadline - time.perf_counter()
    if left <= 0:
        raise asyncio.TimeoutError("deadline exceeded")
    return left


async def _read(reader: asyncio.StreamReader, size: int, deadline: float) -> bytes:
    return await asyncio.wait_for(reader.read(size), timeout=remaining(deadline))


# ---------------------------------------------------------------------------
# Name resolution
# ---------------------------------------------------------------------------

def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


async def resolve_host(host: str, timeout: float) -> str:
    """Return an IP address for *host*, resolving DNS names via dnspython.

    IP literals are returned unchanged.  A records are preferred, AAAA is
    tried when the name has no A record.

    Raises
    ------
    dns.exception.DNSException
        On resolution failure (caller drops the candidate).
    """
    if is_ip_literal(host):
        return host

    resolver = dns.asyncresolver.Resolver()
    resolver.lifetime = timeout

    last_error: Exception | None = None
    for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
        try:
            answer = await resolver.resolve(host, rdtype)
            return str(answer[0])
        except Exception as exc:
            last_error = exc
            continue

    raise last_error  # type: ignore[misc]


# ---------------------------------------------------------------------------
# TCP connect
# ---------------------------------------------------------------------------

async def open_connection(
    ip: str,
    port: int,
    timeout: float,
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter, float]:
    """Open a raw TCP connection to *ip*:*port* and return (reader, writer, ms).

    The caller is responsible for closing the writer when done.
    """
    t0 = time.perf_counter()
    reader, writer = await asyncio.wait_for(
        asyncio.open_connection(ip, port),
        timeout=timeout,
    )
    elapsed_ms = (time.perf_counter() - t0) * 1000.0
    return reader, writer, round(elapsed_ms, 3)


def safe_close(writer: asyncio.StreamWriter | None) -> None:
    """Close a stream writer without raising on already-closed transports."""
    if writer is None:
        return
    try:
        writer.close()
    except Exception as exc:
        logger.debug("Ignoring error while closing connection: %s", exc)


# ---------------------------------------------------------------------------
# TLS upgrade
# ---------------------------------------------------------------------------

@functools.lru_cache(maxsize=None)
def build_ssl_context(ca_file: Optional[str] = None) -> ssl.SSLContext:
    """Return the shared client SSL context that validates server certificates.

    One context is built per *ca_file* and shared by every connection; the
    trust store is loaded synchronously, so it must not happen per probe.
    *ca_file*, when given, replaces the system trust store.
    """
    ctx = ssl.create_default_context(cafile=ca_file)
    ctx.set_alpn_protocols(["http/1.1"])
    return ctx


async def upgrade_tls(
    writer: asyncio.StreamWriter,
    hostname: str,
    deadline: float,
    ca_file: Optional[str] = None,
) -> Optional[str]:
    """Upgrade an existing TCP connection to TLS with SNI *hostname*.

    The reader paired with *writer* keeps working and yields decrypted data
    afterwards.  Returns the negotiated TLS version string, if known.
    """
    await asyncio.wait_for(
        writer.start_tls(build_ssl_context(ca_file), server_hostname=hostname),
        timeout=remaining(deadline),
    )
    ssl_obj = writer.transport.get_extra_info("ssl_object")
    if ssl_obj is not None:
        return ssl_obj.version()
    return None


# ---------------------------------------------------------------------------
# HTTP/1.1 on an existing connection
# ---------------------------------------------------------------------------

def split_target(target: str, default_path: str = "/") -> tuple[str, str]:
    """Split ``host/path?query`` (scheme optional) into (hostname, path)."""
    if "://" not in target:
        target = f"//{target}"
    parts = urlsplit(target)
    path = parts.path or default_path
    if parts.query:
        path = f"{path}?{parts.query}"
    return parts.netloc, path


def build_request(hostname: str, path: str) -> bytes:
    request_lines = [
        f"GET {path} HTTP/1.1",
        f"Host: {hostname}",
        f"User-Agent: {USER_AGENT}",
        "Accept: */*",
        "Connection: close",
        "",
        "",
    ]
    return "\r\n".join(request_lines).encode()


async def _read_head(
    reader: asyncio.StreamReader,
    deadline: float,
) -> tuple[str, int, dict[str, str], bytes]:
    """Read the status line and headers.

    Returns (http_version, status_code, headers, body_bytes_already_read).
    """
    header_buf = b""
    while b"\r\n\r\n" not in header_buf:
        chunk = await _read(reader, 4096, deadline)
        if not chunk:
            raise ConnectionError("connection closed before response headers")
        header_buf += chunk

    header_end = header_buf.index(b"\r\n\r\n")
    header_block = header_buf[:header_end].decode(errors="replace")
    body_so_far = header_buf[header_end + 4:]

    lines = header_block.split("\r\n")
    parts = lines[0].split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/"):
        raise ValueError(f"malformed status line: {lines[0]!r}")
    http_version = parts[0]
    status_code = int(parts[1])

    headers: dict[str, str] = {}
    for line in lines[1:]:
        if ":" in line:
            name, _, value = line.partition(":")
            headers[name.strip().lower()] = value.strip()

    return http_version, status_code, headers, body_so_far


async def http_get(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    hostname: str,
    path: str,
    deadline: float,
) -> HttpResult:
    """Send one GET on an open connection and read the full response body.

    Raises ``asyncio.TimeoutError`` if the body is not complete by *deadline*.
    """
    writer.write(build_request(hostname, path))
    await asyncio.wait_for(writer.drain(), timeout=remaining(deadline))

    http_version, status_code, headers, body_so_far = await _read_head(reader, deadline)

    content_length = headers.get("content-length")
    transfer_encoding = headers.get("transfer-encoding", "").lower()

    if transfer_encoding == "chunked":
        body = await _read_chunked_body(reader, body_so_far, deadline)
    elif content_length is not None:
        remaining_bytes = int(content_length) - len(body_so_far)
        body_parts = [body_so_far]
        while remaining_bytes > 0:
            chunk = await _read(reader, min(remaining_bytes, 65535), deadline)
            if not chunk:
                break
            body_parts.append(chunk)
            remaining_bytes -= len(chunk)
        body = b"".join(body_parts)
    else:
        # Read until EOF (Connection: close)
        body_parts = [body_so_far]
        while True:
            chunk = await _read(reader, 65535, deadline)
            if not chunk:
                break
            body_parts.append(chunk)
        body = b"".join(body_parts)

    return HttpResult(
        status_code=status_code,
        headers=headers,
        body=body,
        http_version=http_version,
    )


async def _read_chunked_body(
    reader: asyncio.StreamReader,
    initial_data: bytes,
    deadline: float,
) -> bytes:
    """Read a chunked transfer-encoded body."""
    buf = initial_data
    body_parts: list[bytes] = []

    while True:
        while b"\r\n" not in buf:
            chunk = await _read(reader, 4096, deadline)
            if not chunk:
                return b"".join(body_parts)
            buf += chunk

        line_end = buf.index(b"\r\n")
        size_str = buf[:line_end].decode(errors="replace").strip()
        buf = buf[line_end + 2:]

        # Ignore chunk extensions after the semicolon
        if ";" in size_str:
            size_str = size_str.split(";")[0]
        chunk_size = int(size_str, 16)

        if chunk_size == 0:
            break

        needed = chunk_size + 2  # data + \r\n
        while len(buf) < needed:
            data = await _read(reader, min(needed - len(buf), 65535), deadline)
            if not data:
                break
            buf += data

        body_parts.append(buf[:chunk_size])
        buf = buf[chunk_size + 2:]

    return b"".join(body_parts)


async def stream_download(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    hostname: str,
    path: str,
    deadline: float,
) -> StreamStats:
    """Send one GET and count response body bytes until EOF or *deadline*.

    The response headers must arrive before *deadline*, otherwise
    ``asyncio.TimeoutError`` propagates.  Once the body is streaming, hitting
    the deadline or a connection reset just ends the measurement.  Chunk
    framing bytes of a chunked body are counted as received.
    """
    writer.write(build_request(hostname, path))
    await asyncio.wait_for(writer.drain(), timeout=remaining(deadline))

    _, status_code, headers, body_so_far = await _read_head(reader, deadline)
    stats = StreamStats(status_code=status_code, bytes_received=len(body_so_far))

    content_length = headers.get("content-length")
    expected = int(content_length) if content_length is not None else None

    while expected is None or stats.bytes_received < expected:
        try:
            chunk = await _read(reader, 65535, deadline)
        except (asyncio.TimeoutError, ConnectionError):
            return stats
        if not chunk:
            break
        stats.bytes_received += len(chunk)

    stats.completed = True
    return stats
