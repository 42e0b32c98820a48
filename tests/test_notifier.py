"""Download notifications: minimal payload, best-effort delivery."""

import json

import httpx

from notifier import EVENT_DOWNLOAD, notify_download

HOOK = "http://hooks.test/zkshare"


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestNotifyDownload:

    def test_payload_has_only_non_sensitive_fields(self):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(204)

        assert notify_download("share-1", "203.0.113.5", 4096, client=_client(handler), url=HOOK)
        assert len(received) == 1
        event = received[0]
        assert set(event) == {"event", "share_id", "timestamp", "ip", "bytes"}
        assert event["event"] == EVENT_DOWNLOAD
        assert event["bytes"] == 4096

    def test_server_error_is_not_raised(self):
        client = _client(lambda request: httpx.Response(500))
        assert notify_download("share-1", None, 1, client=client, url=HOOK) is False

    def test_timeout_is_not_raised(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        assert notify_download("share-1", None, 1, client=_client(handler), url=HOOK) is False

    def test_unreachable_is_not_raised(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert notify_download("share-1", None, 1, client=_client(handler), url=HOOK) is False

    def test_disabled_without_url(self):
        def handler(request):
            raise AssertionError("webhook must not be called")

        assert notify_download("share-1", None, 1, client=_client(handler), url="") is False
