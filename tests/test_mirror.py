import json

import httpx
import pytest

from common import config
from common.errors import MirrorSyncError
from common.mirror import sync_order


@pytest.fixture(autouse=True)
def mirror_config(monkeypatch):
    monkeypatch.setattr(config, "MIRROR_URL", "https://records.example.com/")
    monkeypatch.setattr(config, "MIRROR_API_KEY", "secret")


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_skipped_when_mirror_not_configured(monkeypatch):
    monkeypatch.setattr(config, "MIRROR_URL", None)

    def handler(request):
        raise AssertionError("no request expected")

    assert sync_order("o1", ["u"], True, client=_client(handler)) is False


def test_updates_existing_row():
    requests = []

    def handler(request):
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=[{"id": "o1", "status": "pending", "image_urls": []}])
        return httpx.Response(204)

    urls = ["https://cdn.example.com/a.jpg", "https://cdn.example.com/b.jpg"]
    assert sync_order("o1", urls, True, client=_client(handler)) is True

    get, patch = requests
    assert get.url.path == "/rest/v1/orders"
    assert get.url.params["id"] == "eq.o1"
    assert get.headers["apikey"] == "secret"
    assert get.headers["authorization"] == "Bearer secret"
    assert patch.method == "PATCH"
    assert patch.url.params["id"] == "eq.o1"
    assert json.loads(patch.content) == {"image_urls": urls, "is_upload_completed": True}


def test_missing_row_is_not_an_error():
    methods = []

    def handler(request):
        methods.append(request.method)
        return httpx.Response(200, json=[])

    assert sync_order("o1", [], False, client=_client(handler)) is False
    assert methods == ["GET"]


def test_unreachable_on_check_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(MirrorSyncError, match="Failed check order"):
        sync_order("o1", [], True, client=_client(handler))


def test_error_status_on_update_raises():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=[{"id": "o1"}])
        return httpx.Response(500, json={"message": "down"})

    with pytest.raises(MirrorSyncError, match="Failed update order"):
        sync_order("o1", ["u"], True, client=_client(handler))


def test_malformed_check_response_raises():
    def handler(request):
        return httpx.Response(200, content=b"<html>")

    with pytest.raises(MirrorSyncError):
        sync_order("o1", [], True, client=_client(handler))
