"""httpx transport serving ``file://`` URIs from the local filesystem.

Local sources go through the same streaming and progress path as remote
ones. Both ``file:///abs/path`` and the relative ``file://name`` form (host
component treated as the first path segment) are accepted. Missing files
answer 404, unreadable ones 403, and directories 400.

httpx treats a host-less ``file:///`` URL as relative, so this transport is
driven directly rather than mounted on a client. The original URI string is
passed in ``request.extensions["file_uri"]`` to keep the case of the
relative form, which URL normalisation would lowercase.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import BinaryIO, Iterator
from urllib.parse import unquote, urlsplit

import httpx

__all__ = ["FileTransport", "file_uri_to_path", "is_file_uri"]

LOGGER = logging.getLogger(__name__)


def is_file_uri(uri: str) -> bool:
    return urlsplit(uri).scheme.lower() == "file"


def file_uri_to_path(uri: str) -> Path:
    """Map a ``file://`` URI onto a filesystem path."""
    parts = urlsplit(uri)
    path = unquote(parts.path)
    if parts.netloc and parts.netloc.lower() != "localhost":
        path = unquote(parts.netloc) + path
    return Path(path)


class _FileStream(httpx.SyncByteStream):
    def __init__(self, handle: BinaryIO, chunk_size: int) -> None:
        self._handle = handle
        self._chunk_size = chunk_size

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self._handle.read(self._chunk_size)
            if not chunk:
                break
            yield chunk

    def close(self) -> None:
        self._handle.close()


class FileTransport(httpx.BaseTransport):
    def __init__(self, chunk_size: int = 1 << 16) -> None:
        self._chunk_size = chunk_size

    def request(self, uri: str, method: str = "GET") -> httpx.Response:
        """Build a request for ``uri`` and answer it."""
        request = httpx.Request(method, uri, extensions={"file_uri": uri})
        return self.handle_request(request)

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        path = file_uri_to_path(request.extensions.get("file_uri") or str(request.url))
        if request.method not in ("GET", "HEAD"):
            return httpx.Response(405, request=request)
        try:
            if path.is_dir():
                return httpx.Response(400, request=request)
            handle = path.open("rb")
        except ValueError:
            return httpx.Response(400, request=request)
        except FileNotFoundError:
            return httpx.Response(404, request=request)
        except PermissionError:
            return httpx.Response(403, request=request)

        size = os.fstat(handle.fileno()).st_size
        headers = {"Content-Length": str(size), "Content-Type": "application/octet-stream"}
        if request.method == "HEAD":
            handle.close()
            return httpx.Response(200, headers=headers, request=request)
        LOGGER.debug("Serving %s (%d bytes) from disk", path, size)
        return httpx.Response(
            200,
            headers=headers,
            stream=_FileStream(handle, self._chunk_size),
            request=request,
        )
