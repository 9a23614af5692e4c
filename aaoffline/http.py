"""Network client shared by every stage of a run.

One httpx.AsyncClient is opened per run. Requests pass through a request
initializer (referer fix, proxy rewrite) before being sent, and transient
failures are retried with exponential backoff. Callers get a Download:
the final URL after redirects, the body and the response headers.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
import re
from pathlib import PurePosixPath
from typing import Literal, Protocol

import httpx

from aaoffline.constants import AAONLINE_BASE, USER_AGENT

logger = logging.getLogger(__name__)

HttpHandling = Literal["allow", "redirect", "disallow"]

MAX_REDIRECTS = 10

_CONTENT_DISPOSITION_FILENAME = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.I)
_QUERY_PARAMETERS = re.compile(r"\?.*$")

# (offset, magic bytes, mime type), checked in order.
_MAGIC_NUMBERS: list[tuple[int, bytes, str]] = [
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (8, b"WEBP", "image/webp"),
    (8, b"WAVE", "audio/x-wav"),
    (0, b"OggS", "audio/ogg"),
    (0, b"ID3", "audio/mpeg"),
    (0, b"\xff\xfb", "audio/mpeg"),
    (0, b"\xff\xf3", "audio/mpeg"),
    (0, b"fLaC", "audio/x-flac"),
    (4, b"ftyp", "video/mp4"),
    (0, b"BM", "image/bmp"),
]


def sniff_mime_type(content: bytes) -> str | None:
    for offset, magic, mime in _MAGIC_NUMBERS:
        if content[offset:offset + len(magic)] == magic:
            return mime
    return None


def extension_for_mime(mime: str) -> str | None:
    """Return an extension (without dot) for `mime`, if one is known."""
    ext = mimetypes.guess_extension(mime, strict=False)
    return ext.lstrip(".") if ext else None


# ---------------------------------------------------------------------------
# Download: a fetched response body with the metadata we care about
# ---------------------------------------------------------------------------

class Download:
    def __init__(self, url: httpx.URL | str, content: bytes, headers: httpx.Headers | None = None) -> None:
        self.url = httpx.URL(url)
        self.content = content
        self.headers = headers if headers is not None else httpx.Headers()

    def text(self) -> str:
        try:
            return self.content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DownloadError(f"Content of {self.url} could not be decoded as text") from e

    def content_type(self) -> str | None:
        """The Content-Type header without its parameters."""
        value = self.headers.get("Content-Type")
        if not value:
            return None
        return value.split(";", 1)[0].strip() or None

    def mime_type(self) -> str | None:
        return self.content_type() or sniff_mime_type(self.content)

    def data_url(self) -> str:
        mime = self.mime_type() or "application/octet-stream"
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{mime};base64,{encoded}"

    def filename(self) -> str:
        """Name to save this download under.

        Content-Disposition wins; otherwise the last segment of the final
        URL, with an extension derived from the MIME type if it has none.
        """
        disposition = self.headers.get("Content-Disposition")
        if disposition:
            match = _CONTENT_DISPOSITION_FILENAME.search(disposition)
            if match:
                name = PurePosixPath(match.group(1).strip()).name
                if name:
                    return name

        segment = self.url.path.rsplit("/", 1)[-1]
        path = PurePosixPath(_QUERY_PARAMETERS.sub("", segment) or "download")
        if not path.suffix:
            mime = self.mime_type()
            ext = extension_for_mime(mime) if mime else None
            if ext:
                path = path.with_suffix(f".{ext}")
        return path.name


# ---------------------------------------------------------------------------
# Request initializers: adjust a request right before it is sent
# ---------------------------------------------------------------------------

class RequestInitializer(Protocol):
    def __call__(self, request: httpx.Request) -> httpx.Request: ...


class AaofflineInitializer:
    """Adds the photobucket referer and applies the proxy prefix.

    Photobucket replaces hotlinked images with a watermark unless the
    request claims to come from photobucket itself. The proxy prefix is
    prepended to the full URL (`{proxy}{url}`), as CORS proxies expect.
    """

    def __init__(self, fix_photobucket: bool = True, proxy: str | None = None) -> None:
        self._fix_photobucket = fix_photobucket
        self._proxy = proxy or None

    def __call__(self, request: httpx.Request) -> httpx.Request:
        if self._fix_photobucket and "photobucket.com" in request.url.host:
            request.headers["Referer"] = "https://photobucket.com/"
        if self._proxy:
            # Host must follow the new URL.
            headers = [(k, v) for k, v in request.headers.items() if k.lower() != "host"]
            request = httpx.Request(request.method, f"{self._proxy}{request.url}", headers=headers)
        return request


# ---------------------------------------------------------------------------
# HttpClient
# ---------------------------------------------------------------------------

class HttpClient:
    """Async GET client with retries, URL normalization and a request hook.

    Args:
        connect_timeout: Seconds to wait for a connection; 0 disables it.
        read_timeout:    Seconds to wait for data; 0 disables it.
        retries:         Extra attempts for transient failures.
        http_handling:   What to do with plain `http://` URLs.
        initializer:     Hook applied to each request before sending.
        transport:       Optional httpx transport (tests use MockTransport).
        backoff:         Base delay in seconds between retries.
    """

    def __init__(
        self,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        retries: int = 3,
        http_handling: HttpHandling = "redirect",
        initializer: RequestInitializer | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff: float = 0.5,
    ) -> None:
        self._retries = retries
        self._http_handling = http_handling
        self._initializer = initializer
        self._backoff = backoff
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                None,
                connect=connect_timeout or None,
                read=read_timeout or None,
            ),
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    async def __aenter__(self) -> HttpClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def http_handling(self) -> HttpHandling:
        return self._http_handling

    def resolve_url(self, url: str) -> str:
        """Make `url` absolute and apply the insecure-HTTP policy."""
        if url.startswith("http://"):
            if self._http_handling == "allow":
                return url
            if self._http_handling == "redirect":
                return "https://" + url[len("http://"):]
            raise DownloadError(f"Blocking insecure HTTP request to {url}.")
        if url.startswith("https://"):
            return url
        # Anything else is relative to the site.
        return f"{AAONLINE_BASE}/{url.lstrip('/')}"

    async def get(self, url: str) -> Download:
        target = self.resolve_url(url)
        logger.debug("Downloading %s...", target)

        for attempt in range(self._retries + 1):
            last = attempt == self._retries
            try:
                resp = await self._send(target)
                if _is_transient_status(resp.status_code) and not last:
                    logger.debug("HTTP %d for %s, retrying", resp.status_code, target)
                else:
                    resp.raise_for_status()
                    return self._to_download(resp, target)
            except httpx.HTTPStatusError as e:
                raise DownloadError(
                    f"{target} returned HTTP {e.response.status_code}"
                ) from e
            except httpx.TooManyRedirects as e:
                raise DownloadError(f"Too many redirects for {target}") from e
            except httpx.TimeoutException as e:
                if last:
                    raise DownloadError(f"Request to {target} timed out") from e
                logger.debug("timeout for %s, retrying", target)
            except httpx.TransportError as e:
                if last:
                    raise DownloadError(
                        f"Could not download file from {target}. "
                        "Please check your internet connection."
                    ) from e
                logger.debug("transport error for %s (%s), retrying", target, e)
            except httpx.InvalidURL as e:
                raise DownloadError(f"Invalid URL {target}: {e}") from e
            except httpx.HTTPError as e:
                raise DownloadError(f"Could not download file from {target}: {e}") from e
            await asyncio.sleep(self._backoff * 2 ** attempt)

        raise AssertionError("unreachable")

    async def get_text(self, url: str) -> str:
        return (await self.get(url)).text()

    async def _send(self, url: str) -> httpx.Response:
        request = self._client.build_request("GET", url)
        if self._initializer is not None:
            request = self._initializer(request)
        return await self._client.send(request)

    def _to_download(self, resp: httpx.Response, target: str) -> Download:
        if self._http_handling == "disallow" and resp.url.scheme == "http":
            raise DownloadError(f"Blocking insecure HTTP redirect from {target} to {resp.url}.")
        return Download(resp.url, resp.content, resp.headers)


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


# ---------------------------------------------------------------------------
# DownloadError: raised for every failed fetch
# ---------------------------------------------------------------------------

class DownloadError(RuntimeError):
    """Raised when a resource cannot be fetched or decoded."""
