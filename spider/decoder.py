"""
Content-Encoding handling for fetched bodies.

Servers in the wild mislabel or mangle compressed bodies, so every stage falls
back to the bytes it was given instead of failing the fetch.
"""

import gzip
import logging
import zlib
from typing import Mapping

logger = logging.getLogger(__name__)

# zlib header some servers prepend to what they label as raw deflate
DEFLATE_ZLIB_PREFIX = b'\x78\x9c'


def _content_encoding(headers) -> str:
    if not headers:
        return ''
    values = []
    for key, value in headers.items():
        if key.lower() != 'content-encoding':
            continue
        if isinstance(value, (list, tuple)):
            values.extend(value)
        else:
            values.append(value)
    return ','.join(values).lower()


def gunzip(data: bytes) -> bytes:
    """Gunzip `data`, returning it unchanged when it does not decode."""
    try:
        content = gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        logger.warning(f"gzip decode error: {e}, body length: {len(data)}")
        return data

    if not content:
        return data
    return content


def inflate(data: bytes) -> bytes:
    """Inflate a raw deflate stream, tolerating a leading zlib header."""
    stream = data
    if stream.startswith(DEFLATE_ZLIB_PREFIX):
        stream = stream[len(DEFLATE_ZLIB_PREFIX):]

    decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
    try:
        content = decompressor.decompress(stream)
        content += decompressor.flush()
    except zlib.error as e:
        logger.warning(f"deflate decode error: {e}, body length: {len(data)}")
        return data

    if not decompressor.eof:
        logger.debug(f"deflate stream truncated, body length: {len(data)}, inflated length: {len(content)}")

    if not content:
        return data
    return content


def decode_body(raw: bytes, headers: Mapping) -> bytes:
    """Decode `raw` according to the Content-Encoding in `headers`.

    The gzip and deflate stages are checked independently, in that order, so
    a header such as ``gzip, deflate`` runs both.
    """
    encoding = _content_encoding(headers)
    body = raw

    if 'gzip' in encoding:
        body = gunzip(body)

    if 'deflate' in encoding:
        body = inflate(body)

    return body
