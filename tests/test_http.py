"""Tests for HttpClient, Download and the request initializer."""

import httpx
import pytest

from aaoffline.constants import AAONLINE_BASE
from aaoffline.http import AaofflineInitializer, Download, DownloadError, HttpClient
from conftest import GIF, PNG


class _Flaky:
    """Fails `failures` times with `status`, then serves `body`."""

    def __init__(self, failures: int, status: int = 500, body: bytes = b"ok") -> None:
        self.failures = failures
        self.status = status
        self.body = body
        self.calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        if self.calls <= self.failures:
            return httpx.Response(self.status)
        return httpx.Response(200, content=self.body)


def _client(handler, **kwargs) -> HttpClient:
    kwargs.setdefault("backoff", 0)
    return HttpClient(transport=httpx.MockTransport(handler), **kwargs)


# ---------------------------------------------------------------------------
# URL handling
# ---------------------------------------------------------------------------

class TestResolveUrl:
    def test_relative_urls_point_at_site(self) -> None:
        client = _client(_Flaky(0))
        assert client.resolve_url("images/a.png") == f"{AAONLINE_BASE}/images/a.png"
        assert client.resolve_url("/images/a.png") == f"{AAONLINE_BASE}/images/a.png"

    def test_https_unchanged(self) -> None:
        assert _client(_Flaky(0)).resolve_url("https://x.org/a") == "https://x.org/a"

    def test_http_upgraded_by_default(self) -> None:
        assert _client(_Flaky(0)).resolve_url("http://x.org/a") == "https://x.org/a"

    def test_http_allowed(self) -> None:
        client = _client(_Flaky(0), http_handling="allow")
        assert client.resolve_url("http://x.org/a") == "http://x.org/a"

    def test_http_disallowed(self) -> None:
        client = _client(_Flaky(0), http_handling="disallow")
        with pytest.raises(DownloadError):
            client.resolve_url("http://x.org/a")


# ---------------------------------------------------------------------------
# Retries and errors
# ---------------------------------------------------------------------------

class TestGet:
    async def test_retries_transient_errors(self) -> None:
        handler = _Flaky(2)
        async with _client(handler, retries=3) as client:
            download = await client.get("https://x.org/a")
        assert download.content == b"ok"
        assert handler.calls == 3

    async def test_gives_up_after_retries(self) -> None:
        handler = _Flaky(10, status=503)
        async with _client(handler, retries=2) as client:
            with pytest.raises(DownloadError, match="HTTP 503"):
                await client.get("https://x.org/a")
        assert handler.calls == 3

    async def test_not_found_is_not_retried(self) -> None:
        handler = _Flaky(10, status=404)
        async with _client(handler, retries=3) as client:
            with pytest.raises(DownloadError, match="HTTP 404"):
                await client.get("https://x.org/a")
        assert handler.calls == 1

    async def test_transport_errors_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, content=b"ok")

        async with _client(handler, retries=1) as client:
            assert (await client.get("https://x.org/a")).content == b"ok"
        assert len(calls) == 2

    async def test_transport_error_message(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler, retries=0) as client:
            with pytest.raises(DownloadError, match="internet connection"):
                await client.get("https://x.org/a")

    async def test_follows_redirects(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/old":
                return httpx.Response(301, headers={"Location": "https://x.org/new.gif"})
            return httpx.Response(200, content=GIF)

        async with _client(handler) as client:
            download = await client.get("https://x.org/old")
        assert str(download.url) == "https://x.org/new.gif"

    async def test_disallow_blocks_insecure_redirect(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.scheme == "https":
                return httpx.Response(302, headers={"Location": "http://x.org/plain"})
            return httpx.Response(200, content=b"plain")

        async with _client(handler, http_handling="disallow") as client:
            with pytest.raises(DownloadError, match="insecure"):
                await client.get("https://x.org/a")

    async def test_get_text_rejects_binary(self) -> None:
        async with _client(lambda request: httpx.Response(200, content=b"\xff\xfe\xfa")) as client:
            with pytest.raises(DownloadError):
                await client.get_text("https://x.org/a")

    async def test_user_agent_sent(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["User-Agent"])
            return httpx.Response(200)

        async with _client(handler) as client:
            await client.get("https://x.org/a")
        assert seen == ["aaoffline"]

    async def test_invalid_url_is_a_download_error(self) -> None:
        async with _client(lambda request: httpx.Response(200)) as client:
            with pytest.raises(DownloadError, match="Invalid URL"):
                await client.get("https://x.org:abc/a.png")


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------

class TestDownload:
    def test_filename_from_url(self) -> None:
        assert Download("https://x.org/dir/a.png?v=2", PNG).filename() == "a.png"

    def test_filename_from_content_disposition(self) -> None:
        headers = httpx.Headers({"Content-Disposition": 'attachment; filename="real.gif"'})
        assert Download("https://x.org/get?id=1", GIF, headers).filename() == "real.gif"

    def test_filename_extension_from_content(self) -> None:
        assert Download("https://x.org/image", GIF).filename() == "image.gif"

    def test_filename_without_any_hint(self) -> None:
        assert Download("https://x.org/blob", b"plain").filename() == "blob"

    def test_filename_for_bare_host(self) -> None:
        assert Download("https://x.org/", PNG).filename() == "download.png"

    def test_empty_content_disposition_name_ignored(self) -> None:
        headers = httpx.Headers({"Content-Disposition": 'attachment; filename="/"'})
        assert Download("https://x.org/a.gif", GIF, headers).filename() == "a.gif"

    def test_mime_prefers_header(self) -> None:
        headers = httpx.Headers({"Content-Type": "image/webp; charset=binary"})
        assert Download("https://x.org/a", GIF, headers).mime_type() == "image/webp"

    def test_mime_sniffed(self) -> None:
        assert Download("https://x.org/a", PNG).mime_type() == "image/png"

    def test_data_url(self) -> None:
        assert Download("https://x.org/a", b"GIF89a").data_url() == "data:image/gif;base64,R0lGODlh"

    def test_data_url_unknown_type(self) -> None:
        assert Download("https://x.org/a", b"??").data_url().startswith("data:application/octet-stream;base64,")


# ---------------------------------------------------------------------------
# AaofflineInitializer
# ---------------------------------------------------------------------------

class TestInitializer:
    def test_photobucket_referer(self) -> None:
        request = httpx.Request("GET", "https://i.photobucket.com/a.png")
        assert AaofflineInitializer()(request).headers["Referer"] == "https://photobucket.com/"

    def test_photobucket_fix_disabled(self) -> None:
        request = httpx.Request("GET", "https://i.photobucket.com/a.png")
        assert "Referer" not in AaofflineInitializer(fix_photobucket=False)(request).headers

    def test_other_hosts_untouched(self) -> None:
        request = httpx.Request("GET", "https://x.org/a.png")
        assert "Referer" not in AaofflineInitializer()(request).headers

    def test_proxy_prefix(self) -> None:
        request = httpx.Request("GET", "https://x.org/a.png", headers={"X-Test": "1"})
        proxied = AaofflineInitializer(proxy="https://proxy.example/")(request)
        assert str(proxied.url) == "https://proxy.example/https://x.org/a.png"
        assert proxied.headers["X-Test"] == "1"
        assert proxied.headers["Host"] == "proxy.example"

    async def test_applied_to_every_request(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200)

        initializer = AaofflineInitializer(proxy="https://proxy.example/")
        async with _client(handler, initializer=initializer) as client:
            await client.get("https://x.org/a")
        assert seen == ["https://proxy.example/https://x.org/a"]
