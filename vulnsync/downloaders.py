"""HTTP helpers for feed payloads and their metadata.

All network I/O is isolated here.  Failures are raised as
``TransientNetworkError`` and are not retried: a failed partition is simply
fetched again on the next sync run.
"""

import datetime as dt
import email.utils
import logging
from pathlib import Path

import requests

from .errors import MetadataUnavailable, TransientNetworkError

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = (10, 300)  # (connect, read)
CHUNK_SIZE = 1024 * 1024
META_SUFFIXES = (".json.gz", ".xml.gz", ".json.zip", ".xml.zip", ".json", ".xml", ".gz")


def requests_session(user_agent: str = "vulnsync/0.1") -> requests.Session:
    """Create a requests session with the client's headers.

    Args:
        user_agent: ``User-Agent`` header value.

    Returns:
        Configured ``requests.Session``.
    """
    s = requests.Session()
    s.headers.update({"User-Agent": user_agent, "Accept": "*/*"})
    return s


def download_file(
    session: requests.Session,
    url: str,
    dest: Path,
    timeout: tuple[float, float] = DEFAULT_HTTP_TIMEOUT,
) -> int:
    """Stream a URL to a local file.

    Args:
        session: Requests session.
        url: URL to fetch.
        dest: Destination path; overwritten if present.
        timeout: ``(connect, read)`` timeout in seconds.

    Returns:
        Number of bytes written.

    Raises:
        TransientNetworkError: on any HTTP or connection failure.
    """
    written = 0
    try:
        with session.get(url, stream=True, timeout=timeout) as r:
            r.raise_for_status()
            with open(dest, "wb") as fh:
                for chunk in r.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        fh.write(chunk)
                        written += len(chunk)
    except requests.RequestException as e:
        raise TransientNetworkError(f"Unable to download {url}: {e}", url=url) from e
    logger.debug("Downloaded %s (%d bytes)", url, written)
    return written


def fetch_text(
    session: requests.Session,
    url: str,
    timeout: tuple[float, float] = DEFAULT_HTTP_TIMEOUT,
) -> str:
    """Fetch a small text document.

    Raises:
        TransientNetworkError: on any HTTP or connection failure.
    """
    try:
        r = session.get(url, timeout=timeout)
        r.raise_for_status()
    except requests.RequestException as e:
        raise TransientNetworkError(f"Unable to fetch {url}: {e}", url=url) from e
    return r.text


def meta_url(url: str) -> str:
    """URL of the ``.meta`` document published next to a feed payload.

    ``…/nvdcve-2.0-2021.json.gz`` becomes ``…/nvdcve-2.0-2021.meta``.
    """
    for suffix in META_SUFFIXES:
        if url.endswith(suffix):
            return url[: -len(suffix)] + ".meta"
    return url + ".meta"


def parse_meta(text: str) -> int:
    """Extract ``lastModifiedDate`` from a ``.meta`` document.

    The document is a list of ``key:value`` lines, e.g.::

        lastModifiedDate:2024-03-04T03:00:01-05:00
        size:16412873

    Returns:
        The last-modified time in epoch milliseconds.

    Raises:
        ValueError: if the field is missing or unreadable.
    """
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip() == "lastModifiedDate":
            stamp = dt.datetime.fromisoformat(value.strip())
            if stamp.tzinfo is None:
                stamp = stamp.replace(tzinfo=dt.timezone.utc)
            return int(stamp.timestamp() * 1000)
    raise ValueError("lastModifiedDate not found")


class MetadataClient:
    """Resolves a feed URL to the remote last-modified time.

    Attributes:
        session: Requests session.
        mode: ``meta`` to read the companion ``.meta`` document, ``head`` to
            use the ``Last-Modified`` header of a HEAD request.
        timeout: ``(connect, read)`` timeout in seconds.
    """

    def __init__(self, session: requests.Session, mode: str = "meta", timeout: tuple[float, float] = (10, 60)):
        self.session = session
        self.mode = mode
        self.timeout = timeout

    def last_modified(self, url: str) -> int:
        """Remote last-modified time of ``url`` in epoch milliseconds.

        Raises:
            TransientNetworkError: if the metadata request fails.
            MetadataUnavailable: if the response carries no usable timestamp.
        """
        if self.mode == "head":
            return self._from_head(url)
        return self._from_meta(url)

    def _from_meta(self, url: str) -> int:
        target = meta_url(url)
        text = fetch_text(self.session, target, self.timeout)
        try:
            return parse_meta(text)
        except ValueError as e:
            raise MetadataUnavailable(f"Invalid metadata document at {target}: {e}") from e

    def _from_head(self, url: str) -> int:
        return head_last_modified(self.session, url, self.timeout)


def head_last_modified(
    session: requests.Session,
    url: str,
    timeout: tuple[float, float] = DEFAULT_HTTP_TIMEOUT,
) -> int:
    """``Last-Modified`` of ``url`` from a HEAD request, in epoch milliseconds.

    Raises:
        TransientNetworkError: if the request fails.
        MetadataUnavailable: if the header is missing or unreadable.
    """
    try:
        r = session.head(url, timeout=timeout, allow_redirects=True)
        r.raise_for_status()
    except requests.RequestException as e:
        raise TransientNetworkError(f"Unable to check {url}: {e}", url=url) from e
    header = r.headers.get("Last-Modified")
    if not header:
        raise MetadataUnavailable(f"No Last-Modified header returned for {url}")
    try:
        stamp = email.utils.parsedate_to_datetime(header)
    except (TypeError, ValueError) as e:
        raise MetadataUnavailable(f"Invalid Last-Modified header for {url}: {header!r}") from e
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=dt.timezone.utc)
    return int(stamp.timestamp() * 1000)
