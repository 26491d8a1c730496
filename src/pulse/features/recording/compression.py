from __future__ import annotations

import base64
import gzip
import zlib


def compress_to_base64(text: str) -> str:
    """
    gzip the UTF-8 text and return it base64 encoded.
    mtime is pinned so equal input gives equal output.
    """
    raw = gzip.compress(text.encode("utf-8"), mtime=0)
    return base64.b64encode(raw).decode("ascii")


def encode_plain_base64(text: str) -> str:
    """
    Uncompressed base64 of the UTF-8 text. Used on teardown where there is no
    time to compress.
    """
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decompress_from_base64(data: str) -> str:
    """
    Inverse of compress_to_base64. Falls back to plain base64 for payloads
    that were sent uncompressed.
    """
    raw = base64.b64decode(data)
    try:
        return gzip.decompress(raw).decode("utf-8")
    except (gzip.BadGzipFile, EOFError, zlib.error):
        return raw.decode("utf-8")


def estimate_size(text: str) -> int:
    """
    Approximate UTF-8 size counted per UTF-16 code unit, matching what a
    browser client reports (a surrogate pair counts 3 + 3 bytes).
    """
    units = text.encode("utf-16-le", "surrogatepass")
    size = 0
    for i in range(0, len(units), 2):
        code = units[i] | (units[i + 1] << 8)
        if code < 0x80:
            size += 1
        elif code < 0x800:
            size += 2
        else:
            size += 3
    return size

