import asyncio
import datetime
import socket
import ssl
import struct
from dataclasses import dataclass

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from edgeprobe import wire
from edgeprobe.location import LocationDirectory
from edgeprobe.models import ScanConfig

EDGE_NAMES = ["www.speedtest.net", "speed.example.com", "localhost"]


def trace_body(colo: str = "LAX", marker: bool = True) -> bytes:
    lines = [
        "fl=29f1",
        "h=www.speedtest.net",
        "ip=127.0.0.1",
        "ts=1700000000.1",
        "visit_scheme=http",
    ]
    if marker:
        lines.append("uag=Mozilla/5.0")
    lines += [f"colo={colo}", "http=http/1.1", "loc=US", "tls=off", "warp=off"]
    return ("\n".join(lines) + "\n").encode()


def http_response(body: bytes, status: str = "200 OK") -> bytes:
    head = (
        f"HTTP/1.1 {status}\r\n"
        "Content-Type: text/plain\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode() + body


# ---- TLS material ----

@dataclass
class TlsMaterial:
    ca_file: str
    cert_file: str
    key_file: str

    def server_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        ctx.load_cert_chain(self.cert_file, self.key_file)
        return ctx


def _key_usage(**enabled) -> x509.KeyUsage:
    flags = dict(
        digital_signature=False, content_commitment=False, key_encipherment=False,
        data_encipherment=False, key_agreement=False, key_cert_sign=False,
        crl_sign=False, encipher_only=False, decipher_only=False,
    )
    flags.update(enabled)
    return x509.KeyUsage(**flags)


def _issue_certificates(directory) -> TlsMaterial:
    """A throwaway CA plus a server certificate for every name in EDGE_NAMES."""
    now = datetime.datetime.now(datetime.timezone.utc)
    valid_from, valid_to = now - datetime.timedelta(days=1), now + datetime.timedelta(days=1)

    ca_key = ec.generate_private_key(ec.SECP256R1())
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "edgeprobe test CA")])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_to)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_key_usage(digital_signature=True, key_cert_sign=True, crl_sign=True), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
        .sign(ca_key, hashes.SHA256())
    )

    key = ec.generate_private_key(ec.SECP256R1())
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, EDGE_NAMES[0])]))
        .issuer_name(ca_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_to)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(_key_usage(digital_signature=True), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in EDGE_NAMES]),
            critical=False,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )

    ca_file = directory / "ca.pem"
    cert_file = directory / "edge.pem"
    key_file = directory / "edge.key"
    ca_file.write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return TlsMaterial(str(ca_file), str(cert_file), str(key_file))


# ---- fake edge server ----

class FakeEdge:
    """Stand-in for an edge node listening on 127.0.0.1.

    *behaviour* is a coroutine ``(edge, reader, writer)`` run once the
    request head has been read.  Stalling behaviours wait on ``edge.stopped``
    so the server can shut down promptly.  With *tls* the server terminates
    TLS and records the SNI names clients sent.
    """

    def __init__(self, behaviour, tls: TlsMaterial | None = None):
        self.behaviour = behaviour
        self.tls = tls
        self.requests: list[bytes] = []
        self.server_names: list[str | None] = []
        self.stopped = asyncio.Event()
        self.server: asyncio.AbstractServer | None = None
        self.port = 0

    async def __aenter__(self) -> "FakeEdge":
        ssl_context = None
        if self.tls is not None:
            ssl_context = self.tls.server_context()
            ssl_context.sni_callback = self._record_sni
        self.server = await asyncio.start_server(
            self._handle, "127.0.0.1", 0, ssl=ssl_context,
        )
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.stopped.set()
        self.server.close()
        await self.server.wait_closed()

    def _record_sni(self, ssl_object, server_name, context) -> None:
        self.server_names.append(server_name)

    async def _handle(self, reader, writer) -> None:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            self.requests.append(head)
            await self.behaviour(self, reader, writer)
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def stall(self, seconds: float = 5.0) -> None:
        try:
            await asyncio.wait_for(self.stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ---- canned behaviours ----

    @staticmethod
    def trace(colo: str = "LAX", marker: bool = True):
        async def _behaviour(edge, reader, writer):
            writer.write(http_response(trace_body(colo, marker)))
        return _behaviour

    @staticmethod
    def slow_trace(delay: float, colo: str = "LAX"):
        async def _behaviour(edge, reader, writer):
            await edge.stall(delay)
            writer.write(http_response(trace_body(colo)))
        return _behaviour

    @staticmethod
    def download(size: int):
        async def _behaviour(edge, reader, writer):
            writer.write(
                f"HTTP/1.1 200 OK\r\nContent-Length: {size}\r\n\r\n".encode()
            )
            writer.write(b"x" * size)
        return _behaviour

    @staticmethod
    def trickle(first: int, stall: float):
        """Announce a large body, send *first* bytes, then go quiet."""
        async def _behaviour(edge, reader, writer):
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 100000000\r\n\r\n")
            writer.write(b"x" * first)
            await writer.drain()
            await edge.stall(stall)
        return _behaviour

    @staticmethod
    def reset_after(sent: int):
        """Announce a large body, send *sent* bytes, then reset the connection."""
        async def _behaviour(edge, reader, writer):
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 100000000\r\n\r\n")
            writer.write(b"x" * sent)
            await writer.drain()
            await edge.stall(0.2)
            sock = writer.get_extra_info("socket")
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            writer.transport.abort()
        return _behaviour

    @staticmethod
    def silent(stall: float = 5.0):
        async def _behaviour(edge, reader, writer):
            await edge.stall(stall)
        return _behaviour


@pytest.fixture
def fake_edge():
    return FakeEdge


@pytest.fixture(scope="session")
def tls_material(tmp_path_factory) -> TlsMaterial:
    return _issue_certificates(tmp_path_factory.mktemp("tls"))


@pytest.fixture
def make_config():
    def _make(**overrides) -> ScanConfig:
        values = dict(
            connect_timeout=0.5,
            overall_budget=1.0,
            use_tls=False,
            classify_host="www.speedtest.net",
            max_concurrency=10,
            speed_workers=0,
            speed_test_url="speed.example.com/__down?bytes=1000",
            speed_timeout=1.0,
        )
        values.update(overrides)
        return ScanConfig(**values)
    return _make


@pytest.fixture(scope="session")
def locations() -> LocationDirectory:
    return LocationDirectory.load()


@pytest.fixture
def blackhole(monkeypatch):
    """Ports added to the returned set never finish connecting."""
    ports: set[int] = set()
    real_open = wire.open_connection

    async def _open(ip, port, timeout):
        if port in ports:
            await asyncio.wait_for(asyncio.Event().wait(), timeout=timeout)
        return await real_open(ip, port, timeout)

    monkeypatch.setattr(wire, "open_connection", _open)
    return ports


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
