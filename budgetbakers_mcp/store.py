"""Thin async CouchDB document client bound to one BudgetBakers session.

The user's data lives in a CouchDB database reachable at the replication
URL handed out by the session endpoint. Requests authenticate with
``login:token`` embedded in the URL authority, and every request must carry
``Referer: <replication url>``. The store rejects requests that lack it.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import aiohttp
import structlog
from yarl import URL

from .errors import (
    ConflictError,
    IncompleteSession,
    StoreAuthError,
    StoreError,
    StoreWriteError,
    TransportError,
)
from .models import SessionDescriptor

log = structlog.get_logger(__name__)

Document = Dict[str, Any]
HttpFactory = Callable[[Mapping[str, str], aiohttp.ClientTimeout], aiohttp.ClientSession]

_DESCRIPTOR_FIELDS = ("url", "db_name", "login", "token", "owner_id")


def missing_descriptor_fields(descriptor: Optional[SessionDescriptor]) -> List[str]:
    if descriptor is None:
        return list(_DESCRIPTOR_FIELDS)
    return [name for name in _DESCRIPTOR_FIELDS if not getattr(descriptor, name, None)]


def quote_doc_id(doc_id: str) -> str:
    """Encode a document id as a single path segment under the database.

    Slashes become ``%2F`` and dot-only ids are escaped so URL normalisation
    cannot walk out of the database path.
    """
    segment = quote(doc_id, safe="")
    if segment in (".", ".."):
        segment = segment.replace(".", "%2E")
    return segment


def authenticated_url(descriptor: SessionDescriptor) -> URL:
    """Replication URL with ``login:token`` embedded in its authority."""
    return URL(descriptor.url).with_user(descriptor.login).with_password(descriptor.token)


class DocumentStoreClient:
    """CRUD over one CouchDB database. Use as an async context manager."""

    def __init__(self, descriptor: SessionDescriptor, http: aiohttp.ClientSession, timeout: float = 30.0) -> None:
        self.descriptor = descriptor
        self.database_url = authenticated_url(descriptor) / descriptor.db_name
        self.timeout = timeout
        self._http = http

    async def __aenter__(self) -> "DocumentStoreClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    def _doc_url(self, doc_id: str) -> URL:
        return self.database_url.joinpath(quote_doc_id(doc_id), encoded=True)

    async def _send(self, method: str, url: URL, operation: str, **kwargs: Any) -> Tuple[int, Any]:
        try:
            async with self._http.request(method, url, **kwargs) as response:
                text = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise TransportError(f"Document store {operation} timed out after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Document store {operation} failed: {e}") from e

        try:
            body = json.loads(text) if text else None
        except json.JSONDecodeError:
            body = text

        if status in (401, 403):
            log.warning("Document store rejected session", operation=operation, status=status)
            raise StoreAuthError(f"Document store rejected credentials during {operation}", status, text)
        if status == 409:
            raise ConflictError(f"Revision conflict during {operation}", status, text)
        return status, body

    async def all_documents(self) -> List[Document]:
        """Full collection scan via ``_all_docs?include_docs=true``."""
        status, body = await self._send(
            "GET", (self.database_url / "_all_docs").with_query(include_docs="true"), "list"
        )
        if status != 200 or not isinstance(body, dict):
            raise StoreError(f"Listing documents failed (status {status})", status, str(body))
        rows = body.get("rows")
        if not isinstance(rows, list):
            log.warning("Unexpected _all_docs response structure", keys=list(body.keys()))
            return []
        return [row["doc"] for row in rows if isinstance(row, dict) and isinstance(row.get("doc"), dict)]

    async def get(self, doc_id: str) -> Optional[Document]:
        status, body = await self._send("GET", self._doc_url(doc_id), "get")
        if status == 404:
            return None
        if status != 200 or not isinstance(body, dict):
            raise StoreError(f"Reading document {doc_id} failed (status {status})", status, str(body))
        return body

    async def put(self, document: Document) -> Document:
        """Create or update a document; ``_rev`` must be current for updates."""
        doc_id = document["_id"]
        status, body = await self._send("PUT", self._doc_url(doc_id), "put", json=document)
        if status not in (200, 201, 202) or not isinstance(body, dict) or not body.get("ok"):
            raise StoreWriteError(f"Writing document {doc_id} was not acknowledged (status {status})", status, str(body))
        return body

    async def destroy(self, doc_id: str, rev: str) -> Optional[Document]:
        status, body = await self._send("DELETE", self._doc_url(doc_id).with_query(rev=rev), "destroy")
        if status == 404:
            return None
        if status not in (200, 202) or not isinstance(body, dict) or not body.get("ok"):
            raise StoreWriteError(f"Deleting document {doc_id} was not acknowledged (status {status})", status, str(body))
        return body


class DocumentStoreClientFactory:
    """Builds store clients for a session descriptor."""

    def __init__(self, timeout: float = 30.0, http_factory: Optional[HttpFactory] = None) -> None:
        self.timeout = timeout
        self._http_factory = http_factory or self._default_http

    @staticmethod
    def _default_http(headers: Mapping[str, str], timeout: aiohttp.ClientTimeout) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(headers=dict(headers), timeout=timeout)

    def build(self, descriptor: SessionDescriptor) -> DocumentStoreClient:
        missing = missing_descriptor_fields(descriptor)
        if missing:
            raise IncompleteSession(missing)
        http = self._http_factory({"Referer": descriptor.url}, aiohttp.ClientTimeout(total=self.timeout))
        return DocumentStoreClient(descriptor, http, timeout=self.timeout)
