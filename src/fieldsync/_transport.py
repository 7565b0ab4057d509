"""Remote document store adapter.

The remote store is an opaque authoritative document store reached over
HTTP. Replay goes exclusively through :meth:`RemoteStore.commit_batch`;
:meth:`RemoteStore.set_document` exists only for the optimistic direct
write path.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import quote

import aiohttp

from fieldsync._constants import QUOTA_ERROR_MARKERS
from fieldsync._redact import redact_for_log
from fieldsync.exceptions import (
    RemoteQuotaExceededError,
    RemoteStoreError,
    RemoteUnavailableError,
)

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteWrite:
    """One set-with-merge write inside an atomic batch."""

    collection: str
    doc_id: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {"collection": self.collection, "docId": self.doc_id, "data": dict(self.payload), "merge": True}


class RemoteStore(Protocol):
    """Structural interface of the remote store.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (:class:`HttpRemoteStore`) concrete.
    Implementations must raise :class:`RemoteStoreError` subclasses only.
    """

    async def commit_batch(self, writes: Sequence[RemoteWrite]) -> None:
        """Apply every write or none of them."""
        ...

    async def set_document(self, collection: str, doc_id: str, payload: Mapping[str, Any]) -> None: ...

    async def fetch_collection(self, collection: str) -> list[tuple[str, dict[str, Any]]]: ...


def is_quota_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in QUOTA_ERROR_MARKERS)


def classify_remote_error(
    status: int | None,
    message: str,
    *,
    collection: str = "",
) -> RemoteStoreError:
    """Map an HTTP status and error text onto the remote error taxonomy."""
    if status == 429 or is_quota_message(message):
        return RemoteQuotaExceededError(message, status_code=status, collection=collection)
    if status is None or status == 408 or status >= 500:
        return RemoteUnavailableError(message, status_code=status, collection=collection)
    return RemoteStoreError(message, status_code=status, collection=collection)


class HttpRemoteStore:
    """JSON-over-HTTP remote store.

    Endpoints, relative to *base_url*:

    * ``POST /batch`` - ``{"writes": [{"collection", "docId", "data", "merge"}]}``
    * ``PATCH /collections/{collection}/documents/{id}`` - merge one document
    * ``GET /collections/{collection}/documents`` - ``{"documents": [{"id", "data"}]}``
    """

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        api_key: str | None = None,
        timeout: float = 15.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"accept": "application/json", "content-type": "application/json; charset=UTF-8"}
        if self._api_key:
            headers["authorization"] = f"Bearer {self._api_key}"
        return headers

    def _document_url(self, collection: str, doc_id: str | None = None) -> str:
        url = f"{self._base_url}/collections/{quote(collection, safe='')}/documents"
        if doc_id is not None:
            url = f"{url}/{quote(doc_id, safe='')}"
        return url

    async def _request(
        self,
        method: str,
        url: str,
        *,
        body: Any = None,
        collection: str = "",
    ) -> Any:
        data = json.dumps(body, ensure_ascii=False) if body is not None else None
        _logger.debug("%s %s %s", method, url, redact_for_log(body))
        try:
            async with self._http.request(
                method, url, data=data, headers=self._headers(), timeout=self._timeout
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise classify_remote_error(
                        resp.status,
                        f"HTTP {resp.status} from {method} {url}: {text[:200]}",
                        collection=collection,
                    )
        except RemoteStoreError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RemoteUnavailableError(
                f"{method} {url} failed: {exc!r}",
                collection=collection,
            ) from exc

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise RemoteStoreError(
                f"Invalid JSON from {method} {url}: {text[:200]}",
                status_code=resp.status,
                collection=collection,
            ) from exc

    async def commit_batch(self, writes: Sequence[RemoteWrite]) -> None:
        if not writes:
            return
        await self._request(
            "POST",
            f"{self._base_url}/batch",
            body={"writes": [write.to_json() for write in writes]},
            collection=writes[0].collection,
        )

    async def set_document(self, collection: str, doc_id: str, payload: Mapping[str, Any]) -> None:
        await self._request(
            "PATCH",
            self._document_url(collection, doc_id),
            body=dict(payload),
            collection=collection,
        )

    async def fetch_collection(self, collection: str) -> list[tuple[str, dict[str, Any]]]:
        decoded = await self._request("GET", self._document_url(collection), collection=collection)
        items = decoded.get("documents") if isinstance(decoded, dict) else decoded
        documents: list[tuple[str, dict[str, Any]]] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            data = item.get("data")
            documents.append((str(item.get("id", "")), data if isinstance(data, dict) else {}))
        return documents
