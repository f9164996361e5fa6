"""
Unit tests for the same-origin upload relay.
"""
import httpx
import pytest
from fastapi.testclient import TestClient

from ghostkey.base.config import BlobStoreConfig
from ghostkey.storage.relay import RELAY_PATH, create_relay_app

STORE = BlobStoreConfig(publisher_url="https://publisher.test", aggregator_url="https://aggregator.test")


def _relay(handler):
    return TestClient(create_relay_app(STORE, transport=httpx.MockTransport(handler)))


def test_put_is_forwarded_with_epochs():
    upstream = []

    def handler(request):
        upstream.append(request)
        return httpx.Response(200, json={"newlyCreated": {"blobObject": {"blobId": "abc123"}}})

    client = _relay(handler)
    response = client.put(RELAY_PATH, content=b"envelope")

    assert response.status_code == 200
    assert response.json()["newlyCreated"]["blobObject"]["blobId"] == "abc123"
    assert response.headers["access-control-allow-origin"] == "*"

    forwarded = upstream[0]
    assert forwarded.method == "PUT"
    assert forwarded.url.host == "publisher.test"
    assert forwarded.url.path == "/v1/blobs"
    assert forwarded.url.params["epochs"] == "5"
    assert forwarded.content == b"envelope"


def test_upstream_status_is_mirrored():
    client = _relay(lambda request: httpx.Response(400, json={"error": "too large"}))
    response = client.put(RELAY_PATH, content=b"x")
    assert response.status_code == 400
    assert response.json() == {"error": "too large"}
    assert response.headers["access-control-allow-origin"] == "*"


@pytest.mark.parametrize("method", ["GET", "POST", "DELETE", "PATCH"])
def test_other_methods_rejected(method):
    upstream = []
    client = _relay(lambda request: upstream.append(request) or httpx.Response(200))
    response = client.request(method, RELAY_PATH)
    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}
    assert upstream == []


def test_upstream_transport_failure_returns_503():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    response = _relay(handler).put(RELAY_PATH, content=b"x")
    assert response.status_code == 503
    assert response.json() == {"error": "Upload failed"}


def test_health():
    response = _relay(lambda request: httpx.Response(200)).get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
