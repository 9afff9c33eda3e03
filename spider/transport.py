"""
Transport construction: dial policy, timeouts, proxy, redirects and cookie jar.

Every connection gets an absolute deadline when it is dialed. Reads and writes
on it are bounded by whatever time remains, so a server trickling bytes cannot
hold a fetch open past the configured timeout. Keep-alive is off: each request
dials a fresh connection, which keeps the source IP and proxy choice honest.
"""

import contextlib
import logging
import socket
import time
from dataclasses import dataclass, replace
from http.cookiejar import CookieJar
from typing import Iterator, Optional

import httpcore
import httpx

from .cookies import disabled_cookie_jar, new_cookie_jar

logger = logging.getLogger(__name__)

KIND_PLAIN = 'plain'
KIND_FIXED_IP = 'fixed_ip'
KIND_PROXY = 'proxy'

DEFAULT_MAX_REDIRECTS = 10

_HTTPCORE_ERRORS = (
    (httpcore.ConnectTimeout, httpx.ConnectTimeout),
    (httpcore.ReadTimeout, httpx.ReadTimeout),
    (httpcore.WriteTimeout, httpx.WriteTimeout),
    (httpcore.PoolTimeout, httpx.PoolTimeout),
    (httpcore.TimeoutException, httpx.TimeoutException),
    (httpcore.ProxyError, httpx.ProxyError),
    (httpcore.ConnectError, httpx.ConnectError),
    (httpcore.ReadError, httpx.ReadError),
    (httpcore.WriteError, httpx.WriteError),
    (httpcore.NetworkError, httpx.NetworkError),
    (httpcore.UnsupportedProtocol, httpx.UnsupportedProtocol),
    (httpcore.RemoteProtocolError, httpx.RemoteProtocolError),
    (httpcore.LocalProtocolError, httpx.LocalProtocolError),
    (httpcore.ProtocolError, httpx.ProtocolError),
)


@contextlib.contextmanager
def _httpx_errors() -> Iterator[None]:
    """Re-raise httpcore failures as the matching httpx exception."""
    try:
        yield
    except tuple(core_type for core_type, _ in _HTTPCORE_ERRORS) as e:
        for core_type, httpx_type in _HTTPCORE_ERRORS:
            if isinstance(e, core_type):
                raise httpx_type(str(e)) from e
        raise


@dataclass(frozen=True)
class TransportConfig:
    """Policy a Transport is built from.

    Args:
        timeout: Seconds for the connection deadline and the response-header timeout.
        source_ip: Local address every connection is dialed from.
        proxy: Upstream proxy URL (http or https).
        follow_redirects: Follow 3xx responses; when False they are returned as-is.
        cookie_jar: Install a persistent cookie jar.
        max_redirects: Redirect hops followed before the request fails.
    """
    timeout: float = 30
    source_ip: Optional[str] = None
    proxy: Optional[str] = None
    follow_redirects: bool = True
    cookie_jar: bool = False
    max_redirects: int = DEFAULT_MAX_REDIRECTS

    @classmethod
    def from_dict(cls, values: dict) -> "TransportConfig":
        """Build a config from the `fetcher` section of the application config."""
        values = values or {}
        return cls(
            timeout=float(values.get('timeout', 30)),
            source_ip=values.get('source_ip') or None,
            proxy=values.get('proxy') or None,
            follow_redirects=bool(values.get('follow_redirects', True)),
            cookie_jar=bool(values.get('cookie_jar', False)),
            max_redirects=int(values.get('max_redirects', DEFAULT_MAX_REDIRECTS)),
        )


class DeadlineStream(httpcore.NetworkStream):
    """Network stream whose I/O never runs past an absolute deadline."""

    def __init__(self, stream: httpcore.NetworkStream, deadline: float):
        self._stream = stream
        self._deadline = deadline

    def _remaining(self, timeout: Optional[float], exc_type) -> float:
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise exc_type("connection deadline exceeded")
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        return self._stream.read(max_bytes, self._remaining(timeout, httpcore.ReadTimeout))

    def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        self._stream.write(buffer, self._remaining(timeout, httpcore.WriteTimeout))

    def close(self) -> None:
        self._stream.close()

    def start_tls(self, ssl_context, server_hostname=None, timeout=None):
        stream = self._stream.start_tls(
            ssl_context,
            server_hostname=server_hostname,
            timeout=self._remaining(timeout, httpcore.ConnectTimeout),
        )
        return DeadlineStream(stream, self._deadline)

    def get_extra_info(self, info: str):
        return self._stream.get_extra_info(info)


class DeadlineBackend(httpcore.NetworkBackend):
    """Dials TCP connections stamped with an absolute deadline.

    With a `source_ip`, both ends are resolved up front and the connection is
    dialed from exactly that local address to the resolved remote address.
    """

    def __init__(self, timeout: float, source_ip: Optional[str] = None):
        self._timeout = timeout
        self._source_ip = source_ip
        self._backend = httpcore.SyncBackend()

    def _resolve_pair(self, host: str, port: int):
        try:
            local = socket.getaddrinfo(self._source_ip, 0, type=socket.SOCK_STREAM)
        except (OSError, UnicodeError) as e:
            raise httpcore.ConnectError(f"resolve local address {self._source_ip}: {e}") from e
        family, _, _, _, local_addr = local[0]
        logger.debug(f"get local_ip: {local_addr[0]}")

        try:
            remote = socket.getaddrinfo(host, port, family=family, type=socket.SOCK_STREAM)
        except (OSError, UnicodeError) as e:
            raise httpcore.ConnectError(f"resolve remote address {host}:{port}: {e}") from e
        remote_addr = remote[0][4]
        logger.debug(f"local_ip: {local_addr[0]} remote_ip: {remote_addr[0]}")
        return local_addr[0], remote_addr[0]

    def connect_tcp(self, host, port, timeout=None, local_address=None, socket_options=None):
        deadline = time.monotonic() + self._timeout
        if self._source_ip:
            local_address, host = self._resolve_pair(host, port)

        connect_timeout = self._timeout if timeout is None else min(timeout, self._timeout)
        stream = self._backend.connect_tcp(
            host,
            port,
            timeout=connect_timeout,
            local_address=local_address,
            socket_options=socket_options,
        )
        return DeadlineStream(stream, deadline)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class _RoundTripStream(httpx.SyncByteStream):
    def __init__(self, stream):
        self._stream = stream

    def __iter__(self):
        with _httpx_errors():
            for part in self._stream:
                yield part

    def close(self) -> None:
        if hasattr(self._stream, 'close'):
            self._stream.close()


class RoundTripper(httpx.BaseTransport):
    """Single request/response exchange over a deadline-dialed connection.

    Performs no redirect following and no cookie handling; the client wrapping
    it adds those.
    """

    def __init__(self, config: TransportConfig, proxy: Optional[httpx.Proxy] = None):
        backend = DeadlineBackend(config.timeout, config.source_ip)
        ssl_context = httpx.create_ssl_context(verify=False)

        if proxy is None:
            self._pool = httpcore.ConnectionPool(
                ssl_context=ssl_context,
                max_connections=None,
                max_keepalive_connections=0,
                network_backend=backend,
            )
        else:
            self._pool = httpcore.HTTPProxy(
                proxy_url=httpcore.URL(
                    scheme=proxy.url.raw_scheme,
                    host=proxy.url.raw_host,
                    port=proxy.url.port,
                    target=proxy.url.raw_path,
                ),
                proxy_auth=proxy.raw_auth,
                proxy_headers=proxy.headers.raw,
                ssl_context=ssl_context,
                proxy_ssl_context=ssl_context if proxy.url.scheme == 'https' else None,
                max_connections=None,
                max_keepalive_connections=0,
                network_backend=backend,
            )

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        core_request = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=request.url.raw_scheme,
                host=request.url.raw_host,
                port=request.url.port,
                target=request.url.raw_path,
            ),
            headers=request.headers.raw,
            content=request.stream,
            extensions=request.extensions,
        )
        with _httpx_errors():
            core_response = self._pool.handle_request(core_request)

        return httpx.Response(
            status_code=core_response.status,
            headers=core_response.headers,
            stream=_RoundTripStream(core_response.stream),
            extensions=core_response.extensions,
        )

    def close(self) -> None:
        self._pool.close()


@dataclass(frozen=True)
class Transport:
    """Built transport: the pipeline client plus the raw round-tripper under it.

    Immutable and safe to share between threads. `client` applies the cookie
    jar and redirect policy; `round_tripper` performs one bare exchange.
    """
    config: TransportConfig
    client: httpx.Client
    round_tripper: RoundTripper
    jar: Optional[CookieJar] = None

    @property
    def timeout(self) -> httpx.Timeout:
        return self.client.timeout

    @property
    def source_ip(self) -> Optional[str]:
        return self.config.source_ip

    @property
    def follow_redirects(self) -> bool:
        return self.config.follow_redirects

    @property
    def has_cookie_jar(self) -> bool:
        return self.jar is not None

    def round_trip(self, request: httpx.Request) -> httpx.Response:
        """Send `request` once, bypassing cookies and redirects."""
        response = self.round_tripper.handle_request(request)
        response.request = request
        return response

    def close(self):
        self.client.close()


def _parse_proxy(proxy: str) -> Optional[httpx.Proxy]:
    try:
        parsed = httpx.Proxy(url=proxy)
    except (httpx.InvalidURL, ValueError, TypeError) as e:
        logger.error(f"error, got not valid proxy: {proxy} get err: {e}")
        return None

    if parsed.url.scheme not in ('http', 'https') or not parsed.url.host:
        logger.error(f"error, got not valid proxy: {proxy} unsupported scheme or missing host")
        return None
    return parsed


def _assemble(config: TransportConfig, jar: Optional[CookieJar]) -> Optional[Transport]:
    proxy = None
    if config.proxy:
        proxy = _parse_proxy(config.proxy)
        if proxy is None:
            return None

    round_tripper = RoundTripper(config, proxy)
    client = httpx.Client(
        transport=round_tripper,
        timeout=httpx.Timeout(config.timeout),
        follow_redirects=config.follow_redirects,
        max_redirects=config.max_redirects,
        cookies=jar if jar is not None else disabled_cookie_jar(),
        trust_env=False,
    )
    return Transport(config=config, client=client, round_tripper=round_tripper, jar=jar)


def build_transport(config: TransportConfig) -> Optional[Transport]:
    """Build a Transport for `config`, or None when the config is unusable."""
    jar = new_cookie_jar() if config.cookie_jar else None
    return _assemble(config, jar)


def new_transport(kind: str, timeout: float, extra: Optional[str] = None) -> Optional[Transport]:
    """Build one of the named transport kinds.

    Args:
        kind: ``plain``, ``fixed_ip`` or ``proxy``.
        timeout: Deadline in seconds.
        extra: Source IP for ``fixed_ip``, proxy URL for ``proxy``.
    """
    if kind == KIND_PLAIN:
        config = TransportConfig(timeout=timeout)
    elif kind == KIND_FIXED_IP:
        config = TransportConfig(timeout=timeout, source_ip=extra)
    elif kind == KIND_PROXY:
        if not extra:
            logger.error("error, got not valid proxy: empty proxy url")
            return None
        config = TransportConfig(timeout=timeout, proxy=extra)
    else:
        raise ValueError(f"Unknown transport kind: {kind}")
    return build_transport(config)


def with_no_redirect(transport: Transport) -> Transport:
    """Return a transport that hands redirect responses back unfollowed."""
    return _assemble(replace(transport.config, follow_redirects=False), transport.jar)


def with_cookie_jar(transport: Transport) -> Transport:
    """Return a transport with a fresh persistent cookie jar, replacing any existing one."""
    return _assemble(replace(transport.config, cookie_jar=True), new_cookie_jar())
