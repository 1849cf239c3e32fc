"""Fetching files over HTTP(S) into memory or onto disk."""

from __future__ import annotations

import os
import ssl
import urllib.request
from contextlib import closing
from typing import IO, Any
from urllib.error import HTTPError, URLError

from devrestore import log
from devrestore.common import USER_AGENT_STRING, RestoreError

_CHUNK_SIZE = 16 * 1024


class DownloadError(RestoreError):
    """Raised when a download yields no data."""


def _open(url: str) -> Any:
    # Certificate checks are off so that downloads from untrusted https hosts work.
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    level = 1 if log.debug_level() else 0
    opener = urllib.request.build_opener(
        urllib.request.HTTPSHandler(context=context, debuglevel=level),
        urllib.request.HTTPHandler(debuglevel=level),
    )
    request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT_STRING})
    try:
        return opener.open(request)
    except HTTPError as exc:
        # The body of an error response is delivered like any other.
        return exc
    except (URLError, OSError, ValueError) as exc:
        raise DownloadError(f"unable to fetch {url}: {exc}") from exc


def download_to_buffer(url: str) -> bytes:
    """Return the body fetched from ``url``; raises DownloadError if it is empty."""
    try:
        response = _open(url)
    except DownloadError:
        raise DownloadError(f"no data received from {url}") from None
    with closing(response):
        try:
            body = response.read() or b""
        except OSError:
            body = b""
    if not body:
        raise DownloadError(f"no data received from {url}")
    return body


def _copy_with_progress(response: Any, out: IO[bytes], enable_progress: bool) -> int:
    length = response.headers.get("Content-Length") if response.headers else None
    total = int(length) if length and length.isdigit() else 0
    received = 0
    last_progress = 0
    while True:
        try:
            chunk = response.read(_CHUNK_SIZE)
        except OSError:
            break
        if not chunk:
            break
        out.write(chunk)
        received += len(chunk)
        if enable_progress and total:
            percent = received / total * 100
            if percent < 100.0 and int(percent) > last_progress:
                log.info(f"downloading: {int(percent)}%\n")
                last_progress = int(percent)
    return received


def download_to_file(url: str, filename: str | os.PathLike, enable_progress: int = 0) -> None:
    """Save the body fetched from ``url`` to ``filename``.

    An empty download leaves no file behind and raises DownloadError.
    """
    try:
        out = open(filename, "wb")
    except OSError as exc:
        log.error(f"ERROR: cannot open '{os.fspath(filename)}' for writing\n")
        raise DownloadError(f"cannot open '{os.fspath(filename)}' for writing") from exc

    received = 0
    with out:
        try:
            response = _open(url)
        except DownloadError:
            response = None
        if response is not None:
            with closing(response):
                received = _copy_with_progress(response, out, enable_progress > 0)

    if received == 0:
        try:
            os.remove(filename)
        except OSError:
            pass
        raise DownloadError(f"no data received from {url}")