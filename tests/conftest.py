"""
Shared fixtures: a threaded local HTTP server with canned routes.
"""

import gzip
import json
import socket
import threading
import time
import zlib
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

import pytest

from spider.fetcher import Fetcher
from spider.transport import TransportConfig, build_transport


def raw_deflate(data: bytes) -> bytes:
    compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
    return compressor.compress(data) + compressor.flush()


class CannedHandler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass

    def _send(self, status, body=b'', headers=None):
        self.send_response(status)
        for key, value in headers or []:
            self.send_header(key, value)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _stall_body(self):
        self.send_response(200)
        self.send_header('Content-Length', '100')
        self.end_headers()
        try:
            self.wfile.write(b'0123456789')
            self.wfile.flush()
            time.sleep(3)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def _echo(self, body=b''):
        payload = {
            'path': self.path,
            'headers': [[k, v] for k, v in self.headers.items()],
            'body': body.decode('latin-1'),
        }
        self._send(200, json.dumps(payload).encode(), [('Content-Type', 'application/json')])

    def do_GET(self):
        if self.path.startswith('http://'):
            # absolute-form target: we are being used as a forward proxy
            self._send(200, f"proxied {self.path}".encode())
            return

        parts = urlsplit(self.path)
        query = parse_qs(parts.query)
        route = parts.path

        if route == '/hello':
            self._send(200, b'hello world', [('Content-Type', 'text/plain; charset=utf-8')])
        elif route == '/gzip':
            self._send(200, gzip.compress(b'hello'), [('Content-Encoding', 'gzip')])
        elif route == '/deflate':
            self._send(200, raw_deflate(b'deflated body'), [('Content-Encoding', 'deflate')])
        elif route == '/deflate-prefixed':
            self._send(200, zlib.compress(b'deflated body'), [('Content-Encoding', 'deflate')])
        elif route == '/bad-gzip':
            self._send(200, b'not gzip', [('Content-Encoding', 'gzip')])
        elif route == '/latin1':
            self._send(200, 'caf\xe9'.encode('latin-1'), [('Content-Type', 'text/html; charset=iso-8859-1')])
        elif route == '/empty':
            self._send(200)
        elif route == '/missing':
            self._send(404, b'nope', [('Set-Cookie', 'trace=404; Path=/')])
        elif route == '/redirect':
            self._send(302, b'', [('Location', '/hello')])
        elif route == '/redirect-loop':
            self._send(302, b'', [('Location', '/redirect-loop')])
        elif route == '/set-cookie':
            self._send(200, b'ok', [('Set-Cookie', 'session=abc123; Path=/; HttpOnly')])
        elif route == '/read-cookie':
            self._send(200, (self.headers.get('Cookie') or 'none').encode())
        elif route == '/echo':
            self._echo()
        elif route == '/id':
            time.sleep(0.01 * (int(query['n'][0]) % 5))
            self._send(200, query['n'][0].encode(), [('X-Request-Id', query['n'][0])])
        elif route == '/big':
            self._send(200, b'x' * 4096)
        elif route == '/slow-body':
            self._stall_body()
        elif route == '/slow-headers':
            time.sleep(3)
            self._send(200, b'late')
        else:
            self._send(404)

    def do_POST(self):
        length = int(self.headers.get('Content-Length') or 0)
        body = self.rfile.read(length) if length else b''

        if self.path == '/form':
            self._echo(body)
        elif self.path == '/slow-body':
            self._stall_body()
        elif self.path == '/set-cookie':
            self._send(200, b'ok', [('Set-Cookie', 'posted=yes; Path=/')])
        else:
            self._send(404, b'nope')


class CannedServer(ThreadingHTTPServer):
    daemon_threads = True
    request_queue_size = 128


@pytest.fixture(scope='session')
def http_server():
    """Base URL of a local server running CannedHandler."""
    server = CannedServer(('127.0.0.1', 0), CannedHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address
    yield f"http://{host}:{port}"
    server.shutdown()
    server.server_close()


@pytest.fixture
def refused_url():
    """URL of a local port nothing listens on."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(('127.0.0.1', 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}/"


@pytest.fixture
def transport():
    built = build_transport(TransportConfig(timeout=5))
    yield built
    built.close()


@pytest.fixture
def fetcher(transport):
    return Fetcher(transport)
