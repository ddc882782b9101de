"""Unit tests for store.py - Kubernetes resource store."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import aiohttp
import pytest

from config import KubernetesConfig
from events import EventType
from resources import DEPLOYMENTS, MEMCACHEDS
from store import (
    MERGE_PATCH_CONTENT_TYPE,
    ConflictError,
    ExpiredError,
    KubernetesResourceStore,
    NotFoundError,
    StoreError,
    error_for_status,
)

API_URL = "https://api.test:6443"

# ==================== Test Helpers ====================


class FakeContent:
    """Stand-in for aiohttp's StreamReader, iterating line by line."""

    def __init__(self, lines: List[bytes]):
        self._lines = lines

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for line in self._lines:
            yield line


class FakeResponse:
    def __init__(self, status: int, body: Any = None, lines: Optional[List[bytes]] = None):
        self.status = status
        self._body = body
        self.content = FakeContent(lines or [])

    async def json(self):
        return self._body

    async def text(self):
        if isinstance(self._body, (dict, list)):
            return json.dumps(self._body)
        return self._body or ""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Records requests and replays queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def _request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def get(self, url, **kwargs):
        return self._request("GET", url, **kwargs)

    def patch(self, url, **kwargs):
        return self._request("PATCH", url, **kwargs)

    async def close(self):
        self.closed = True


def make_store(*responses):
    session = FakeSession(*responses)
    return KubernetesResourceStore(API_URL, session=session), session


def status_body(code, reason, message):
    return {"kind": "Status", "code": code, "reason": reason, "message": message}


# ==================== Error mapping ====================


class TestErrorForStatus:
    @pytest.mark.parametrize(
        "status,error_class",
        [(404, NotFoundError), (409, ConflictError), (410, ExpiredError)],
    )
    def test_specific_statuses(self, status, error_class):
        error = error_for_status(status, "boom", "Reason")
        assert type(error) is error_class
        assert error.status == status
        assert error.reason == "Reason"
        assert error.message == "boom"

    def test_other_status(self):
        error = error_for_status(500, "boom")
        assert type(error) is StoreError
        assert isinstance(error, Exception)

    def test_subclasses_are_store_errors(self):
        assert issubclass(NotFoundError, StoreError)
        assert issubclass(ConflictError, StoreError)
        assert issubclass(ExpiredError, StoreError)


# ==================== KubernetesResourceStore ====================


class TestKubernetesResourceStoreInit:
    def test_from_config(self):
        cfg = KubernetesConfig(
            api_url="https://k8s:443/",
            token="abc",
            ca_file="",
            insecure=True,
            request_timeout=3.0,
        )
        store = KubernetesResourceStore.from_config(cfg)
        assert store.api_url == "https://k8s:443"
        assert store.request_timeout == 3.0
        assert store._get_headers()["Authorization"] == "Bearer abc"

    def test_headers_without_token(self):
        store = KubernetesResourceStore(API_URL)
        assert "Authorization" not in store._get_headers()

    def test_insecure_disables_verification(self):
        store = KubernetesResourceStore(API_URL, insecure=True)
        assert store._ssl_context() is False

    @pytest.mark.asyncio
    async def test_not_connected(self):
        store = KubernetesResourceStore(API_URL)
        with pytest.raises(RuntimeError, match="not connected"):
            await store.get(DEPLOYMENTS, "ns", "web")

    @pytest.mark.asyncio
    async def test_injected_session_not_closed(self):
        store, session = make_store()
        await store.close()
        assert session.closed is False


@pytest.mark.asyncio
class TestKubernetesResourceStoreGet:
    async def test_get(self):
        obj = {"metadata": {"name": "web"}}
        store, session = make_store(FakeResponse(200, obj))

        result = await store.get(DEPLOYMENTS, "ns", "web")

        assert result == obj
        assert session.requests[0]["method"] == "GET"
        assert (
            session.requests[0]["url"]
            == f"{API_URL}/apis/apps/v1/namespaces/ns/deployments/web"
        )

    async def test_get_not_found(self):
        store, _ = make_store(
            FakeResponse(404, status_body(404, "NotFound", 'deployments "web" not found'))
        )

        with pytest.raises(NotFoundError) as exc_info:
            await store.get(DEPLOYMENTS, "ns", "web")

        assert exc_info.value.reason == "NotFound"
        assert 'deployments "web" not found' in exc_info.value.message

    async def test_get_server_error_plain_text(self):
        store, _ = make_store(FakeResponse(503, "service unavailable"))

        with pytest.raises(StoreError) as exc_info:
            await store.get(DEPLOYMENTS, "ns", "web")

        assert type(exc_info.value) is StoreError
        assert exc_info.value.status == 503

    async def test_get_transport_error(self):
        store, _ = make_store(aiohttp.ClientConnectionError("refused"))

        with pytest.raises(StoreError, match="refused"):
            await store.get(DEPLOYMENTS, "ns", "web")


@pytest.mark.asyncio
class TestKubernetesResourceStorePatch:
    async def test_patch_is_conditional_merge_patch(self):
        updated = {"metadata": {"name": "cache-1"}, "spec": {"size": 5}}
        store, session = make_store(FakeResponse(200, updated))

        result = await store.patch(
            MEMCACHEDS, "ns", "cache-1", {"spec": {"size": 5}}, resource_version="17"
        )

        assert result == updated
        request = session.requests[0]
        assert request["method"] == "PATCH"
        assert request["url"] == (
            f"{API_URL}/apis/cache.example.com/v1alpha1/namespaces/ns/memcacheds/cache-1"
        )
        assert request["headers"]["Content-Type"] == MERGE_PATCH_CONTENT_TYPE
        assert json.loads(request["data"]) == {
            "spec": {"size": 5},
            "metadata": {"resourceVersion": "17"},
        }

    async def test_patch_conflict(self):
        store, _ = make_store(
            FakeResponse(409, status_body(409, "Conflict", "the object has been modified"))
        )

        with pytest.raises(ConflictError) as exc_info:
            await store.patch(
                MEMCACHEDS, "ns", "cache-1", {"spec": {"size": 5}}, resource_version="1"
            )

        assert exc_info.value.status == 409

    async def test_patch_timeout(self):
        store, _ = make_store(asyncio.TimeoutError())

        with pytest.raises(StoreError):
            await store.patch(MEMCACHEDS, "ns", "cache-1", {"spec": {"size": 5}})


@pytest.mark.asyncio
class TestKubernetesResourceStoreList:
    async def test_list(self):
        body = {
            "metadata": {"resourceVersion": "300"},
            "items": [{"metadata": {"name": "a"}}, {"metadata": {"name": "b"}}],
        }
        store, session = make_store(FakeResponse(200, body))

        items, version = await store.list(DEPLOYMENTS)

        assert [i["metadata"]["name"] for i in items] == ["a", "b"]
        assert version == "300"
        assert session.requests[0]["url"] == f"{API_URL}/apis/apps/v1/deployments"

    async def test_list_namespaced_empty(self):
        store, session = make_store(FakeResponse(200, {"metadata": {}, "items": None}))

        items, version = await store.list(DEPLOYMENTS, "ns")

        assert items == []
        assert version is None
        assert session.requests[0]["url"].endswith("/namespaces/ns/deployments")

    async def test_list_forbidden(self):
        store, _ = make_store(FakeResponse(403, status_body(403, "Forbidden", "no")))

        with pytest.raises(StoreError) as exc_info:
            await store.list(DEPLOYMENTS)
        assert exc_info.value.status == 403


@pytest.mark.asyncio
class TestKubernetesResourceStoreWatch:
    async def test_watch_streams_events(self):
        lines = [
            json.dumps(
                {"type": "ADDED", "object": {"metadata": {"name": "a", "namespace": "ns"}}}
            ).encode()
            + b"\n",
            b"\n",
            json.dumps(
                {"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "9"}}}
            ).encode()
            + b"\n",
        ]
        store, session = make_store(FakeResponse(200, lines=lines))

        events = [
            e
            async for e in store.watch(
                DEPLOYMENTS, resource_version="5", timeout_seconds=60
            )
        ]

        assert [e.event_type for e in events] == [EventType.ADDED, EventType.BOOKMARK]
        params = session.requests[0]["params"]
        assert params["watch"] == "true"
        assert params["resourceVersion"] == "5"
        assert params["timeoutSeconds"] == "60"

    async def test_watch_without_version(self):
        store, session = make_store(FakeResponse(200, lines=[]))

        events = [e async for e in store.watch(DEPLOYMENTS, "ns")]

        assert events == []
        assert "resourceVersion" not in session.requests[0]["params"]

    async def test_watch_expired(self):
        lines = [
            json.dumps(
                {
                    "type": "ERROR",
                    "object": status_body(410, "Expired", "too old resource version"),
                }
            ).encode()
        ]
        store, _ = make_store(FakeResponse(200, lines=lines))

        with pytest.raises(ExpiredError, match="too old resource version"):
            async for _ in store.watch(DEPLOYMENTS, resource_version="1"):
                pass

    async def test_watch_rejected(self):
        store, _ = make_store(FakeResponse(410, status_body(410, "Gone", "gone")))

        with pytest.raises(ExpiredError):
            async for _ in store.watch(DEPLOYMENTS, resource_version="1"):
                pass
