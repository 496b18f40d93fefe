import tempfile
import unittest
from pathlib import Path

import httpx

from lichupdate.client import HTTPStatusError, MetadataClient, NetworkFailure

LATEST_URL = "https://api.github.com/repos/elanthia-online/lich-5/releases/latest"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _client(handler, *, reports: list[str] | None = None, clock: FakeClock | None = None, **kwargs) -> MetadataClient:
    return MetadataClient(
        report=reports.append if reports is not None else (lambda message: None),
        transport=httpx.MockTransport(handler),
        clock=clock or FakeClock(),
        **kwargs,
    )


class TestFetchJsonCache(unittest.TestCase):
    def test_repeated_calls_within_ttl_issue_one_request(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, json={"tag_name": "v5.14.3"})

        clock = FakeClock()
        client = _client(handler, clock=clock, cache_ttl_s=300)
        try:
            self.assertEqual(client.fetch_json(LATEST_URL), {"tag_name": "v5.14.3"})
            clock.now += 299
            self.assertEqual(client.fetch_json(LATEST_URL), {"tag_name": "v5.14.3"})
            self.assertEqual(len(calls), 1)

            clock.now += 1
            client.fetch_json(LATEST_URL)
            self.assertEqual(len(calls), 2)
        finally:
            client.close()

    def test_cache_is_keyed_by_exact_url(self) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, json=[])

        client = _client(handler)
        try:
            client.fetch_json(LATEST_URL)
            client.fetch_json(LATEST_URL + "?per_page=100")
        finally:
            client.close()
        self.assertEqual(len(calls), 2)

    def test_failures_are_reported_and_not_cached(self) -> None:
        responses = [httpx.Response(500, text="boom"), httpx.Response(200, json={"tag_name": "v5.14.3"})]
        reports: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        client = _client(handler, reports=reports)
        try:
            self.assertIsNone(client.fetch_json(LATEST_URL))
            self.assertEqual(client.fetch_json(LATEST_URL), {"tag_name": "v5.14.3"})
        finally:
            client.close()

        self.assertEqual(len(reports), 1)
        self.assertIn("network error", reports[0])
        self.assertIn("HTTP 500", reports[0])

    def test_missing_ok_lookup_is_quiet_only_for_404(self) -> None:
        responses = [httpx.Response(404, json={"message": "Not Found"}), httpx.Response(502)]
        reports: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        client = _client(handler, reports=reports)
        try:
            self.assertIsNone(client.fetch_json(LATEST_URL, missing_ok=True))
            self.assertEqual(reports, [])
            self.assertIsNone(client.fetch_json(LATEST_URL, missing_ok=True))
        finally:
            client.close()
        self.assertEqual(len(reports), 1)
        self.assertIn("HTTP 502", reports[0])

    def test_transport_errors_return_none(self) -> None:
        reports: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler, reports=reports)
        try:
            self.assertIsNone(client.fetch_json(LATEST_URL))
        finally:
            client.close()
        self.assertIn("connection refused", reports[0])

    def test_malformed_json_returns_none(self) -> None:
        reports: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>rate limited</html>")

        client = _client(handler, reports=reports)
        try:
            self.assertIsNone(client.fetch_json(LATEST_URL))
        finally:
            client.close()
        self.assertIn("malformed JSON", reports[0])


class TestAuth(unittest.TestCase):
    def test_token_is_only_sent_to_the_api(self) -> None:
        seen: dict[str, str | None] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen[request.url.host] = request.headers.get("authorization")
            if request.url.host == "api.github.com":
                return httpx.Response(200, json={})
            return httpx.Response(200, content=b"payload")

        client = _client(handler, token="ghp_secret")
        try:
            with tempfile.TemporaryDirectory() as td:
                client.fetch_json(LATEST_URL)
                client.download("https://github.com/elanthia-online/lich-5/archive/refs/heads/main.tar.gz", Path(td) / "a")
        finally:
            client.close()

        self.assertEqual(seen["api.github.com"], "Bearer ghp_secret")
        self.assertIsNone(seen["github.com"])


class TestDownload(unittest.TestCase):
    def test_download_writes_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"tarball-bytes")

        client = _client(handler)
        try:
            with tempfile.TemporaryDirectory() as td:
                dest = Path(td) / "nested" / "lich.tar.gz"
                self.assertEqual(client.download("https://example.com/lich.tar.gz", dest), dest)
                self.assertEqual(dest.read_bytes(), b"tarball-bytes")
        finally:
            client.close()

    def test_http_error_leaves_no_file(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, text="missing")

        client = _client(handler)
        try:
            with tempfile.TemporaryDirectory() as td:
                dest = Path(td) / "go2.lic"
                with self.assertRaises(HTTPStatusError) as ctx:
                    client.download("https://example.com/go2.lic", dest)
                self.assertEqual(ctx.exception.status_code, 404)
                self.assertFalse(dest.exists())
        finally:
            client.close()

    def test_transport_error_leaves_no_file(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(handler)
        try:
            with tempfile.TemporaryDirectory() as td:
                dest = Path(td) / "go2.lic"
                with self.assertRaises(NetworkFailure):
                    client.download("https://example.com/go2.lic", dest)
                self.assertFalse(dest.exists())
        finally:
            client.close()


if __name__ == "__main__":
    unittest.main()
