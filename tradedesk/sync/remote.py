"""Remote per-user document stores.

A store keeps one JSON document per ``(user_id, namespace)``. Stores never
raise past their boundary: a failed load returns None and a failed save
returns False, with the reason kept in ``last_error``.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

import aiohttp

from tradedesk.sync.versioning import document_version

logger = logging.getLogger(__name__)

RemoteCallback = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]


class DocumentStore(ABC):
    def __init__(self) -> None:
        self.last_error: str | None = None

    @abstractmethod
    async def load(self, user_id: str, namespace: str) -> dict[str, Any] | None:
        """Fetch the stored document, or None if there is none or it failed."""

    @abstractmethod
    async def save(self, user_id: str, namespace: str, document: dict[str, Any]) -> bool:
        """Overwrite the stored document; True on success."""

    @abstractmethod
    def subscribe(self, user_id: str, namespace: str, callback: RemoteCallback) -> Unsubscribe:
        """Call *callback* with every new version of the document."""

    async def close(self) -> None:
        """Release connections and stop subscriptions."""


class InMemoryDocumentStore(DocumentStore):
    """Process-local store; several coordinators sharing one instance act
    like several devices signed in to the same account.

    Subscribers are called synchronously from ``save``, including the
    subscriber belonging to the writer, the same echo a hosted document
    database produces.
    """

    def __init__(self) -> None:
        super().__init__()
        self.online = True
        self._documents: dict[tuple[str, str], dict[str, Any]] = {}
        self._subscribers: dict[tuple[str, str], list[RemoteCallback]] = {}

    def peek(self, user_id: str, namespace: str) -> dict[str, Any] | None:
        document = self._documents.get((user_id, namespace))
        return copy.deepcopy(document) if document is not None else None

    async def load(self, user_id: str, namespace: str) -> dict[str, Any] | None:
        if not self.online:
            self.last_error = "store offline"
            return None
        self.last_error = None
        return self.peek(user_id, namespace)

    async def save(self, user_id: str, namespace: str, document: dict[str, Any]) -> bool:
        if not self.online:
            self.last_error = "store offline"
            logger.warning("Save of %s/%s failed: store offline", user_id, namespace)
            return False
        self.last_error = None
        key = (user_id, namespace)
        self._documents[key] = copy.deepcopy(document)
        for callback in list(self._subscribers.get(key, [])):
            try:
                callback(copy.deepcopy(document))
            except Exception:
                logger.exception("Subscriber of %s/%s failed", user_id, namespace)
        return True

    def subscribe(self, user_id: str, namespace: str, callback: RemoteCallback) -> Unsubscribe:
        key = (user_id, namespace)
        self._subscribers.setdefault(key, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(key, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return _unsubscribe

    def subscriber_count(self, user_id: str, namespace: str) -> int:
        return len(self._subscribers.get((user_id, namespace), []))


class HttpDocumentStore(DocumentStore):
    """JSON documents behind a REST endpoint.

    ``GET``/``PUT {base_url}/users/{user_id}/{namespace}``; a 404 means no
    document yet. Subscriptions poll the document and report each new
    ``lastUpdated`` stamp.

    Parameters
    ----------
    base_url:
        Root URL of the document API.
    api_token:
        Sent as a bearer token when set.
    poll_interval:
        Seconds between polls of a subscribed document.
    timeout:
        Total timeout of one request, in seconds.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        poll_interval: float = 5.0,
        timeout: float = 10.0,
    ) -> None:
        super().__init__()
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._poll_interval = poll_interval
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._pollers: set[asyncio.Task] = set()  # type: ignore[type-arg]

    def _url(self, user_id: str, namespace: str) -> str:
        return f"{self._base_url}/users/{user_id}/{namespace}"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Accept": "application/json"}
            if self._api_token:
                headers["Authorization"] = f"Bearer {self._api_token}"
            self._session = aiohttp.ClientSession(headers=headers, timeout=self._timeout)
        return self._session

    async def load(self, user_id: str, namespace: str) -> dict[str, Any] | None:
        try:
            session = await self._get_session()
            async with session.get(self._url(user_id, namespace)) as response:
                if response.status == 404:
                    self.last_error = None
                    return None
                if response.status != 200:
                    body = await response.text()
                    self.last_error = f"HTTP {response.status}"
                    logger.error("Load of %s failed: %s - %s", namespace, response.status, body[:200])
                    return None
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.last_error = str(exc) or type(exc).__name__
            logger.warning("Load of %s failed: %s", namespace, self.last_error)
            return None
        if not isinstance(data, dict):
            self.last_error = "document is not an object"
            logger.warning("Remote %s document is not an object, ignoring it", namespace)
            return None
        self.last_error = None
        return data

    async def save(self, user_id: str, namespace: str, document: dict[str, Any]) -> bool:
        try:
            session = await self._get_session()
            async with session.put(self._url(user_id, namespace), json=document) as response:
                if response.status in (200, 201, 204):
                    self.last_error = None
                    return True
                body = await response.text()
                self.last_error = f"HTTP {response.status}"
                logger.error("Save of %s failed: %s - %s", namespace, response.status, body[:200])
                return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.last_error = str(exc) or type(exc).__name__
            logger.warning("Save of %s failed: %s", namespace, self.last_error)
            return False

    def subscribe(self, user_id: str, namespace: str, callback: RemoteCallback) -> Unsubscribe:
        task = asyncio.create_task(self._poll(user_id, namespace, callback))
        self._pollers.add(task)
        task.add_done_callback(self._pollers.discard)
        return task.cancel

    async def _poll(self, user_id: str, namespace: str, callback: RemoteCallback) -> None:
        seen = -1
        while True:
            document = await self.load(user_id, namespace)
            if document is not None:
                version = document_version(document)
                if version != seen:
                    seen = version
                    try:
                        callback(document)
                    except Exception:
                        logger.exception("Subscriber of %s failed", namespace)
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        for task in list(self._pollers):
            task.cancel()
        if self._pollers:
            await asyncio.gather(*self._pollers, return_exceptions=True)
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
