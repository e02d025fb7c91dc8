import asyncio
import struct
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional
from urllib.parse import urlsplit

from .browser_automation import debug_print
from .config import get_proxy_config

SOCKS5_REPLY_ERRORS = {
    1: "General failure",
    2: "Not allowed",
    3: "Network unreachable",
    4: "Host unreachable",
    5: "Connection refused",
    6: "TTL expired",
    7: "Command not supported",
    8: "Address type not supported",
}

MAX_REQUEST_HEAD_BYTES = 64 * 1024
PIPE_CHUNK_BYTES = 64 * 1024

# Stripped from forwarded plain-HTTP requests
HOP_BY_HOP_PREFIXES = ("proxy-", "connection:", "keep-alive:")


@dataclass(frozen=True)
class ProxySpec:
    type: str
    host: str
    port: int
    user: Optional[str] = None
    passwd: Optional[str] = None

    @classmethod
    def from_config(cls, proxy_config: Optional[dict]) -> Optional["ProxySpec"]:
        if not isinstance(proxy_config, dict) or not proxy_config.get("enable"):
            return None
        return cls(
            type=str(proxy_config.get("type") or "http").strip().lower(),
            host=str(proxy_config.get("host") or "127.0.0.1").strip(),
            port=int(proxy_config.get("port") or 0),
            user=proxy_config.get("user") or None,
            passwd=proxy_config.get("passwd") or None,
        )

    def describe(self) -> str:
        auth = " (with auth)" if self.user else ""
        return f"{self.type}://{self.host}:{self.port}{auth}"


# ============================================================
# SOCKS5 CLIENT
# ============================================================

async def _socks5_handshake(reader, writer, spec: ProxySpec, target_host: str, target_port: int) -> None:  # noqa: ANN001
    if spec.user:
        writer.write(b"\x05\x02\x00\x02")
    else:
        writer.write(b"\x05\x01\x00")
    await writer.drain()

    resp = await reader.readexactly(2)
    if resp[0] != 0x05 or resp[1] == 0xFF:
        raise ConnectionError("SOCKS5 handshake failed")

    if resp[1] == 0x02:
        user = str(spec.user or "").encode("utf-8")
        passwd = str(spec.passwd or "").encode("utf-8")
        writer.write(b"\x01" + bytes([len(user)]) + user + bytes([len(passwd)]) + passwd)
        await writer.drain()
        auth_resp = await reader.readexactly(2)
        if auth_resp[1] != 0x00:
            raise ConnectionError("SOCKS5 authentication rejected")

    domain = target_host.encode("utf-8")
    writer.write(b"\x05\x01\x00\x03" + bytes([len(domain)]) + domain + struct.pack(">H", target_port))
    await writer.drain()

    resp = await reader.readexactly(4)
    if resp[1] != 0x00:
        raise ConnectionError(f"SOCKS5: {SOCKS5_REPLY_ERRORS.get(resp[1], 'Unknown error')}")

    atyp = resp[3]
    if atyp == 0x01:
        await reader.readexactly(6)
    elif atyp == 0x03:
        length = (await reader.readexactly(1))[0]
        await reader.readexactly(length + 2)
    elif atyp == 0x04:
        await reader.readexactly(18)

async def open_socks5_connection(spec: ProxySpec, target_host: str, target_port: int, *, timeout: float = 30.0):
    reader, writer = await asyncio.wait_for(asyncio.open_connection(spec.host, spec.port), timeout=timeout)
    try:
        await asyncio.wait_for(_socks5_handshake(reader, writer, spec, target_host, target_port), timeout=timeout)
    except Exception:
        writer.close()
        raise
    return reader, writer


# ============================================================
# LOCAL HTTP -> SOCKS5 BRIDGE
# ============================================================

def _split_host_port(authority: str, default_port: int) -> tuple[str, int]:
    authority = authority.strip()
    if authority.startswith("["):
        host, _, rest = authority[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    else:
        host, _, port = authority.rpartition(":") if ":" in authority else (authority, "", "")
    return host, int(port) if port else default_port

def _content_length(headers: list) -> int:
    for header in headers:
        name, _, value = header.partition(":")
        if name.strip().lower() == "content-length":
            try:
                return max(0, int(value.strip()))
            except ValueError:
                return 0
    return 0

async def _pipe(reader, writer) -> None:  # noqa: ANN001
    try:
        while True:
            chunk = await reader.read(PIPE_CHUNK_BYTES)
            if not chunk:
                break
            writer.write(chunk)
            await writer.drain()
    except (ConnectionError, asyncio.IncompleteReadError):
        pass
    finally:
        try:
            writer.close()
        except Exception:
            pass


class Socks5HttpBridge:
    """
    Local HTTP proxy endpoint that tunnels every request through an upstream SOCKS5 proxy.

    Browsers get a plain `http://127.0.0.1:<port>` proxy; authentication towards the SOCKS5
    server happens here.
    """

    def __init__(self, spec: ProxySpec, *, listen_host: str = "127.0.0.1", connect_timeout: float = 30.0) -> None:
        self.spec = spec
        self.listen_host = listen_host
        self.connect_timeout = float(connect_timeout)
        self._server: Optional[asyncio.AbstractServer] = None
        self.url: Optional[str] = None

    async def start(self) -> str:
        if self.url:
            return self.url
        self._server = await asyncio.start_server(
            self._handle_client, self.listen_host, 0, limit=MAX_REQUEST_HEAD_BYTES
        )
        port = self._server.sockets[0].getsockname()[1]
        self.url = f"http://{self.listen_host}:{port}"
        return self.url

    async def close(self) -> None:
        server, self._server = self._server, None
        self.url = None
        if server is not None:
            server.close()
            await server.wait_closed()

    async def _handle_client(self, client_reader, client_writer) -> None:  # noqa: ANN001
        try:
            head = await client_reader.readuntil(b"\r\n\r\n")
        except asyncio.LimitOverrunError:
            await self._reply_error(client_writer, 431, "Request Header Fields Too Large")
            return
        except (asyncio.IncompleteReadError, ConnectionError):
            client_writer.close()
            return

        lines = head.decode("latin-1").split("\r\n")
        try:
            method, target, version = lines[0].split(" ", 2)
        except ValueError:
            await self._reply_error(client_writer, 400, "Bad Request")
            return

        if method.upper() == "CONNECT":
            host, port = _split_host_port(target, 443)
            forward = b""
            body_length = 0
        else:
            parts = urlsplit(target)
            if not parts.hostname:
                await self._reply_error(client_writer, 400, "Bad Request")
                return
            host, port = parts.hostname, parts.port or 80
            path = parts.path or "/"
            if parts.query:
                path = f"{path}?{parts.query}"
            headers = [h for h in lines[1:] if h and not h.lower().startswith(HOP_BY_HOP_PREFIXES)]
            if any(h.lower().startswith("transfer-encoding:") for h in headers):
                await self._reply_error(client_writer, 411, "Length Required")
                return
            body_length = _content_length(headers)
            # One request per connection: the browser opens a new one for the next host.
            headers.append("Connection: close")
            forward = ("\r\n".join([f"{method} {path} {version}", *headers]) + "\r\n\r\n").encode("latin-1")

        try:
            upstream_reader, upstream_writer = await open_socks5_connection(
                self.spec, host, port, timeout=self.connect_timeout
            )
        except Exception as e:
            debug_print(f"⚠️ Proxy bridge: upstream connect to {host}:{port} failed: {e}")
            await self._reply_error(client_writer, 502, "Bad Gateway")
            return

        if forward:
            try:
                upstream_writer.write(forward)
                if body_length:
                    upstream_writer.write(await client_reader.readexactly(body_length))
                await upstream_writer.drain()
            except (asyncio.IncompleteReadError, ConnectionError):
                upstream_writer.close()
                client_writer.close()
                return
            await _pipe(upstream_reader, client_writer)
            upstream_writer.close()
            return

        client_writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
        await client_writer.drain()
        await asyncio.gather(
            _pipe(client_reader, upstream_writer),
            _pipe(upstream_reader, client_writer),
        )

    @staticmethod
    async def _reply_error(writer, status: int, reason: str) -> None:  # noqa: ANN001
        try:
            writer.write(f"HTTP/1.1 {status} {reason}\r\nContent-Length: 0\r\nConnection: close\r\n\r\n".encode("latin-1"))
            await writer.drain()
        except Exception:
            pass
        finally:
            writer.close()


# ============================================================
# PROXY HANDLE LIFECYCLE
# ============================================================

@dataclass
class ProxyHandle:
    server: str
    username: Optional[str] = None
    password: Optional[str] = None
    bridge: Optional[Socks5HttpBridge] = None

    @property
    def kind(self) -> str:
        return "bridged" if self.bridge is not None else "direct"

    def as_browser_proxy(self) -> dict:
        settings = {"server": self.server}
        if self.username:
            settings["username"] = str(self.username)
            settings["password"] = str(self.password or "")
        return settings


async def acquire_proxy(config: dict) -> Optional[ProxyHandle]:
    """
    Resolve the configured proxy into a browser-usable endpoint.

    HTTP proxies pass through; SOCKS5 proxies get a local HTTP bridge. Bridge start-up
    failures propagate (startup cannot continue without the configured proxy).
    """
    spec = ProxySpec.from_config(get_proxy_config(config))
    if spec is None:
        debug_print("🌐 Direct connection (no proxy)")
        return None

    if spec.type == "http":
        debug_print(f"🌐 Using HTTP proxy: {spec.describe()}")
        return ProxyHandle(server=f"http://{spec.host}:{spec.port}", username=spec.user, password=spec.passwd)

    if spec.type == "socks5":
        debug_print(f"🌐 SOCKS5 proxy detected, starting local HTTP bridge: {spec.describe()}")
        bridge = Socks5HttpBridge(spec)
        try:
            url = await bridge.start()
        except Exception as e:
            debug_print(f"❌ SOCKS5 bridge failed to start: {e}")
            raise
        debug_print(f"✅ SOCKS5 proxy bridged at {url}")
        return ProxyHandle(server=url, bridge=bridge)

    debug_print(f"⚠️ Unsupported proxy type: {spec.type}")
    return None

async def release_proxy(handle: Optional[ProxyHandle]) -> None:
    if handle is None or handle.bridge is None:
        return
    try:
        await handle.bridge.close()
        debug_print("🌐 Local proxy bridge closed")
    except Exception as e:
        debug_print(f"❌ Failed to close local proxy bridge: {e}")

@asynccontextmanager
async def proxy_lifespan(config: dict) -> AsyncIterator[Optional[ProxyHandle]]:
    handle = await acquire_proxy(config)
    try:
        yield handle
    finally:
        await release_proxy(handle)
