import contextlib
import logging
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from .decoder import decode_body
from .response import (
    STATUS_BODY_TOO_BIG,
    STATUS_DO_REQUEST_ERR,
    STATUS_NEW_REQUEST_ERR,
    STATUS_READ_TIMEOUT,
    STATUS_UNEXPECTED,
    CookieRecord,
    HttpResponse,
)
from .transport import Transport, TransportConfig, build_transport

logger = logging.getLogger(__name__)

WEB_USER_AGENT = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_10_0) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/38.0.2125.122 Safari/537.36'
)
WAP_USER_AGENT = (
    'Mozilla/5.0 (iPad; U; CPU OS 3_2 like Mac OS X; en-us) AppleWebKit/531.21.10 '
    '(KHTML, like Gecko) Version/4.0.4 Mobile/7B334b Safari/531.21.10'
)

FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'

HeaderValues = Union[str, Sequence[str]]


class BodyTooBigError(Exception):
    """Raised while reading a body that exceeds the configured size limit."""


def _values(value: HeaderValues) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _cookie_pairs(cookies) -> List[str]:
    pairs = []
    for cookie in cookies or []:
        if isinstance(cookie, tuple):
            name, value = cookie
        else:
            name, value = cookie.name, cookie.value
        pairs.append(f"{name}={value or ''}")
    return pairs


def _attach_cookies(request: httpx.Request, cookies) -> None:
    pairs = _cookie_pairs(cookies)
    if not pairs:
        return
    existing = request.headers.get('Cookie')
    if existing:
        pairs.insert(0, existing)
    request.headers['Cookie'] = '; '.join(pairs)


def _parse_url(url: str) -> httpx.URL:
    parsed = httpx.URL(url)
    if parsed.scheme not in ('http', 'https') or not parsed.host:
        raise httpx.InvalidURL(f"unsupported url: {url!r}")
    return parsed


def _header_map(response: httpx.Response) -> Dict[str, List[str]]:
    headers: Dict[str, List[str]] = {}
    for key, value in response.headers.raw:
        headers.setdefault(key.decode('latin-1'), []).append(value.decode('latin-1'))
    return headers


class Fetcher:
    """Issues GET/POST requests over a Transport and normalizes the outcome.

    Network and protocol failures never raise; they come back as an
    HttpResponse carrying one of the sentinel statuses.
    """

    def __init__(self, transport: Transport, max_body_size: Optional[int] = None):
        self._transport = transport
        self.max_body_size = max_body_size

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def local_ip(self) -> Optional[str]:
        """Source IP the transport dials from, if pinned."""
        return self._transport.source_ip

    @staticmethod
    def user_agent(use_wap_ua: bool = False) -> str:
        return WAP_USER_AGENT if use_wap_ua else WEB_USER_AGENT

    def _default_headers(self, use_wap_ua: bool) -> List[Tuple[str, str]]:
        return [
            ('Connection', 'close'),
            ('Cache-Control', 'no-cache'),
            ('Accept', 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8'),
            ('Accept-Encoding', 'gzip,deflate,sdch'),
            ('User-Agent', self.user_agent(use_wap_ua)),
        ]

    def _build_get_request(
        self,
        url: str,
        headers: Optional[Mapping[str, HeaderValues]],
        cookies,
        use_wap_ua: bool,
        bypass_pipeline: bool
    ) -> httpx.Request:
        target = _parse_url(url)
        header_list = self._default_headers(use_wap_ua)
        host = None
        for key, value in (headers or {}).items():
            if key.lower() == 'host':
                host = _values(value)[-1]
                continue
            header_list.extend((key, v) for v in _values(value))

        if bypass_pipeline:
            request = httpx.Request(
                'GET',
                target,
                headers=header_list,
                extensions={'timeout': self._transport.timeout.as_dict()},
            )
        else:
            request = self._transport.client.build_request('GET', target, headers=header_list)

        if host:
            request.headers['Host'] = host
        _attach_cookies(request, cookies)
        return request

    def _build_post_request(
        self,
        url: str,
        headers: Optional[Mapping[str, HeaderValues]],
        form: Optional[Mapping[str, str]],
        cookies,
        use_wap_ua: bool
    ) -> httpx.Request:
        target = _parse_url(url)
        merged = httpx.Headers(self._default_headers(use_wap_ua))
        merged['Content-Type'] = FORM_CONTENT_TYPE
        for key, value in (headers or {}).items():
            merged[key] = _values(value)[-1]

        request = self._transport.client.build_request(
            'POST',
            target,
            headers=merged,
            data=dict(form or {}),
        )
        _attach_cookies(request, cookies)
        return request

    @contextlib.contextmanager
    def _exchange(self, request: httpx.Request, bypass_pipeline: bool = False) -> Iterator[httpx.Response]:
        """Send `request` and yield the streamed response, closing it on every exit path."""
        response = None
        try:
            if bypass_pipeline:
                response = self._transport.round_trip(request)
            else:
                response = self._transport.client.send(request, stream=True)
            yield response
        finally:
            if response is not None:
                response.close()

    def _read_body(self, response: httpx.Response) -> bytes:
        limit = self.max_body_size
        declared = response.headers.get('content-length', '')
        if limit is not None and declared.isdigit() and int(declared) > limit:
            raise BodyTooBigError(f"declared content length {declared} > {limit} bytes")

        chunks = []
        size = 0
        for chunk in response.iter_raw():
            size += len(chunk)
            if limit is not None and size > limit:
                raise BodyTooBigError(f"body exceeds {limit} bytes")
            chunks.append(chunk)
        return b''.join(chunks)

    def _interpret(self, response: httpx.Response, url: str, sentinel_on_read_error: bool) -> HttpResponse:
        status = response.status_code
        headers = _header_map(response)
        cookies = [CookieRecord.from_cookiejar(c) for c in response.cookies.jar]

        if status != httpx.codes.OK:
            logger.info(f"status: {status} url: {url}")
            return HttpResponse(status=status, headers=headers, cookies=cookies)

        try:
            raw = self._read_body(response)
        except httpx.HTTPError as e:
            logger.warning(f"read body got error: {e!r} url: {url}")
            if sentinel_on_read_error:
                status = STATUS_READ_TIMEOUT
            return HttpResponse(status=status, headers=headers, cookies=cookies)
        except BodyTooBigError as e:
            logger.warning(f"{e} url: {url}")
            if sentinel_on_read_error:
                status = STATUS_BODY_TOO_BIG
            return HttpResponse(status=status, headers=headers, cookies=cookies)

        content = decode_body(raw, response.headers)
        if not content:
            status = STATUS_UNEXPECTED

        return HttpResponse(
            status=status,
            content=content,
            headers=headers,
            cookies=cookies,
            encoding=response.charset_encoding,
        )

    def get(
        self,
        url: str,
        headers: Optional[Mapping[str, HeaderValues]] = None,
        cookies: Optional[Sequence] = None,
        use_wap_ua: bool = False,
        bypass_pipeline: bool = False
    ) -> HttpResponse:
        """Fetch `url` with GET.

        Args:
            url: Absolute http(s) URL.
            headers: Extra headers, added on top of the defaults. A ``host``
                entry replaces the Host header instead.
            cookies: Cookies sent with this request only (records or
                ``(name, value)`` pairs).
            use_wap_ua: Send the mobile User-Agent.
            bypass_pipeline: Do a single round trip, skipping the cookie jar
                and redirect handling.

        Returns:
            HttpResponse; `status` is a sentinel when the fetch failed.
        """
        try:
            request = self._build_get_request(url, headers, cookies, use_wap_ua, bypass_pipeline)
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            logger.warning(f"NewRequest got error: {e} for url: {url}")
            return HttpResponse(status=STATUS_NEW_REQUEST_ERR)

        try:
            with self._exchange(request, bypass_pipeline) as response:
                return self._interpret(response, url, sentinel_on_read_error=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"http do req got error: {e!r} ip: {self.local_ip} url: {url}")
            return HttpResponse(status=STATUS_DO_REQUEST_ERR)

    def post(
        self,
        url: str,
        headers: Optional[Mapping[str, HeaderValues]] = None,
        form: Optional[Mapping[str, str]] = None,
        cookies: Optional[Sequence] = None,
        use_wap_ua: bool = False
    ) -> HttpResponse:
        """Submit `form` URL-encoded to `url` with POST.

        Caller headers replace defaults of the same name. Unlike `get`, a body
        read failure keeps the real status and only empties the body.
        """
        try:
            request = self._build_post_request(url, headers, form, cookies, use_wap_ua)
        except (httpx.InvalidURL, ValueError, TypeError) as e:
            logger.warning(f"NewRequest got error: {e} url: {url}")
            return HttpResponse(status=STATUS_NEW_REQUEST_ERR)

        try:
            with self._exchange(request) as response:
                return self._interpret(response, url, sentinel_on_read_error=False)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Client.Do got error: {e!r} url: {url}")
            return HttpResponse(status=STATUS_DO_REQUEST_ERR)


def create_fetcher(fetcher_config: dict = None) -> Optional[Fetcher]:
    """Create a Fetcher from the `fetcher` config section, or None if its transport cannot be built."""
    fetcher_config = fetcher_config or {}
    transport = build_transport(TransportConfig.from_dict(fetcher_config))
    if transport is None:
        return None

    max_body_size = fetcher_config.get('max_body_size')
    return Fetcher(transport, max_body_size=int(max_body_size) if max_body_size else None)
