"""
Resource Store - Read and conditionally patch objects on the API server.

Defines the store interface the reconciler and controller depend on, the
error taxonomy they branch on, and a Kubernetes implementation over aiohttp.
"""

import asyncio
import json
import logging
import os
import ssl
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiohttp

from config import KubernetesConfig
from events import EventType, WatchEvent
from resources import ResourceKind, with_optimistic_lock

logger = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


class StoreError(Exception):
    """Raised when a read or write against the store fails."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        self.message = message
        self.status = status
        self.reason = reason
        super().__init__(message)


class NotFoundError(StoreError):
    """The requested object does not exist."""


class ConflictError(StoreError):
    """A conditional write was rejected because the object changed."""


class ExpiredError(StoreError):
    """A watch was started from a resourceVersion that is no longer served."""


def error_for_status(
    status: int, message: str, reason: Optional[str] = None
) -> StoreError:
    """Map an HTTP status code to the matching StoreError subclass."""
    if status == 404:
        return NotFoundError(message, status=status, reason=reason)
    if status == 409:
        return ConflictError(message, status=status, reason=reason)
    if status == 410:
        return ExpiredError(message, status=status, reason=reason)
    return StoreError(message, status=status, reason=reason)


class ResourceStore(ABC):
    """
    Abstract interface to the cluster's object store.

    The operator only ever reads and patches; it never creates or deletes.
    """

    @abstractmethod
    async def get(self, kind: ResourceKind, namespace: str, name: str) -> Dict[str, Any]:
        """
        Fetch a single object.

        Raises:
            NotFoundError: If the object does not exist
            StoreError: On any other failure
        """
        pass

    @abstractmethod
    async def patch(
        self,
        kind: ResourceKind,
        namespace: str,
        name: str,
        patch: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply a merge patch, conditional on ``resource_version`` when given.

        Raises:
            ConflictError: If the object changed since ``resource_version``
            NotFoundError: If the object no longer exists
            StoreError: On any other failure
        """
        pass

    @abstractmethod
    async def list(
        self, kind: ResourceKind, namespace: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """
        List objects of a kind.

        Returns:
            Tuple of (items, collection resourceVersion)
        """
        pass

    @abstractmethod
    def watch(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> AsyncIterator[WatchEvent]:
        """
        Stream changes to objects of a kind.

        Raises:
            ExpiredError: If ``resource_version`` is too old to watch from
        """
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass


class KubernetesResourceStore(ResourceStore):
    """
    ResourceStore backed by the Kubernetes API server REST interface.

    Uses a single shared aiohttp session with bearer-token authentication.
    Every request is bounded by ``request_timeout`` except watches, which are
    bounded by the server-side ``timeoutSeconds``.
    """

    def __init__(
        self,
        api_url: str,
        token: Optional[str] = None,
        ca_file: Optional[str] = None,
        insecure: bool = False,
        request_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.request_timeout = request_timeout
        self._token = token
        self._ca_file = ca_file
        self._insecure = insecure
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config: KubernetesConfig) -> "KubernetesResourceStore":
        """Create a store from configuration, reading the service account token."""
        return cls(
            api_url=config.api_url,
            token=config.read_token(),
            ca_file=config.ca_file if os.path.exists(config.ca_file) else None,
            insecure=config.insecure,
            request_timeout=config.request_timeout,
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get HTTP headers for API server requests."""
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _ssl_context(self) -> Any:
        if self._insecure:
            logger.warning("TLS verification against the API server is disabled")
            return False
        if self._ca_file:
            return ssl.create_default_context(cafile=self._ca_file)
        return True

    async def connect(self) -> None:
        """Open the HTTP session."""
        if self._session is not None:
            return
        connector = aiohttp.TCPConnector(ssl=self._ssl_context())
        self._session = aiohttp.ClientSession(
            connector=connector,
            headers=self._get_headers(),
            # Watch lines carry whole objects
            read_bufsize=2**20,
        )
        self._owns_session = True
        logger.info(f"Connected to Kubernetes API at {self.api_url}")

    async def close(self) -> None:
        """Close the HTTP session if this store created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Store not connected. Call connect() first.")
        return self._session

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.request_timeout)

    async def _error_from_response(
        self, response: aiohttp.ClientResponse, action: str
    ) -> StoreError:
        """Build a StoreError from a non-success API response."""
        text = await response.text()
        message = text
        reason = None
        try:
            status_obj = json.loads(text)
            if isinstance(status_obj, dict):
                message = status_obj.get("message") or text
                reason = status_obj.get("reason")
        except json.JSONDecodeError:
            pass
        return error_for_status(
            response.status, f"Failed to {action}: {response.status} - {message}", reason
        )

    async def get(self, kind: ResourceKind, namespace: str, name: str) -> Dict[str, Any]:
        url = f"{self.api_url}{kind.api_path(namespace, name)}"
        action = f"get {kind.kind} {namespace}/{name}"

        try:
            async with self._get_session().get(url, timeout=self._timeout()) as response:
                if response.status == 200:
                    return await response.json()
                raise await self._error_from_response(response, action)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    async def patch(
        self,
        kind: ResourceKind,
        namespace: str,
        name: str,
        patch: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_url}{kind.api_path(namespace, name)}"
        action = f"patch {kind.kind} {namespace}/{name}"
        body = with_optimistic_lock(patch, resource_version)

        try:
            async with self._get_session().patch(
                url,
                data=json.dumps(body),
                headers={"Content-Type": MERGE_PATCH_CONTENT_TYPE},
                timeout=self._timeout(),
            ) as response:
                if response.status == 200:
                    return await response.json()
                raise await self._error_from_response(response, action)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StoreError(f"Failed to {action}: {e}") from e

    async def list(
        self, kind: ResourceKind, namespace: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        url = f"{self.api_url}{kind.api_path(namespace)}"
        action = f"list {kind.plural}"

        try:
            async with self._get_session().get(url, timeout=self._timeout()) as response:
                if response.status != 200:
                    raise await self._error_from_response(response, action)
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StoreError(f"Failed to {action}: {e}") from e

        items = data.get("items") or []
        resource_version = (data.get("metadata") or {}).get("resourceVersion")
        return items, resource_version

    async def watch(
        self,
        kind: ResourceKind,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> AsyncIterator[WatchEvent]:
        url = f"{self.api_url}{kind.api_path(namespace)}"
        action = f"watch {kind.plural}"
        params = {
            "watch": "true",
            "allowWatchBookmarks": "true",
            "timeoutSeconds": str(timeout_seconds),
        }
        if resource_version:
            params["resourceVersion"] = resource_version

        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=self.request_timeout,
            sock_read=timeout_seconds + self.request_timeout,
        )

        try:
            async with self._get_session().get(
                url, params=params, timeout=timeout
            ) as response:
                if response.status != 200:
                    raise await self._error_from_response(response, action)

                async for line in response.content:
                    line = line.strip()
                    if not line:
                        continue

                    event = WatchEvent.from_line(line)
                    if event.event_type == EventType.ERROR:
                        status = event.status_code or 500
                        raise error_for_status(
                            status,
                            f"Watch error: {event.object.get('message', 'unknown')}",
                            event.object.get("reason"),
                        )
                    yield event
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StoreError(f"Failed to {action}: {e}") from e
