"""Shared fakes: a scripted aiohttp-like transport and an in-memory CouchDB."""

import asyncio
import copy
import json
import uuid
from http.cookies import Morsel
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import pytest

from budgetbakers_mcp.errors import ConflictError, StoreAuthError
from budgetbakers_mcp.handshake import HandshakeResult
from budgetbakers_mcp.models import Credentials, SessionDescriptor
from budgetbakers_mcp.session import SessionProvider

BASE_URL = "https://web.example.com"

REPLICATION = {
    "url": "https://couch.example.com",
    "dbName": "bb-user-db",
    "login": "couch-login",
    "token": "couch-token",
    "ownerId": "owner-1",
}


def make_morsel(name: str, value: str, **attrs: Any) -> "Morsel[str]":
    morsel: "Morsel[str]" = Morsel()
    morsel.set(name, value, value)
    for key, attr in attrs.items():
        morsel[key] = attr
    return morsel


class FakeResponse:
    def __init__(self, status: int = 200, body: Union[str, Dict[str, Any], List[Any], None] = None,
                 cookies: Optional[List["Morsel[str]"]] = None) -> None:
        self.status = status
        self._body = body if isinstance(body, str) or body is None else json.dumps(body)
        self.cookies = cookies or []

    async def text(self) -> str:
        return self._body or ""


class _RequestContext:
    def __init__(self, transport: "FakeTransport", method: str, url: Any, kwargs: Dict[str, Any]) -> None:
        self._transport = transport
        self._method = method
        self._url = url
        self._kwargs = kwargs

    async def __aenter__(self) -> FakeResponse:
        return await self._transport.dispatch(self._method, self._url, self._kwargs)

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


Route = Union[FakeResponse, BaseException, Callable[[Dict[str, Any]], FakeResponse]]


class FakeTransport:
    """Stands in for ``aiohttp.ClientSession``: routes by (method, path) and keeps a cookie jar."""

    def __init__(self, routes: Optional[Dict[Tuple[str, str], Route]] = None) -> None:
        self.routes: Dict[Tuple[str, str], Route] = dict(routes or {})
        self.cookie_jar: List["Morsel[str]"] = []
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.closed = False

    def request(self, method: str, url: Any, **kwargs: Any) -> _RequestContext:
        return _RequestContext(self, method, url, kwargs)

    async def dispatch(self, method: str, url: Any, kwargs: Dict[str, Any]) -> FakeResponse:
        await asyncio.sleep(0)
        url_text = str(url)
        self.calls.append((method, url_text, kwargs))
        for (route_method, path), route in self.routes.items():
            if route_method == method and path in url_text:
                if isinstance(route, BaseException):
                    raise route
                response = route(kwargs) if callable(route) else route
                self.cookie_jar.extend(response.cookies)
                return response
        return FakeResponse(404, {"error": "not_found"})

    async def close(self) -> None:
        self.closed = True


def nextauth_routes(
    csrf: Optional[Route] = None,
    sign_in: Optional[Route] = None,
    session: Optional[Route] = None,
) -> Dict[Tuple[str, str], Route]:
    """Routes for a successful NextAuth login unless overridden."""
    return {
        ("GET", "/api/auth/csrf"): csrf or FakeResponse(200, {"csrfToken": "csrf-abc"}),
        ("POST", "/api/auth/callback/sign-in"): sign_in or FakeResponse(
            200,
            {"url": f"{BASE_URL}/es-ES/dashboard"},
            cookies=[
                make_morsel("__Secure-next-auth.session-token", "session-xyz",
                            path="/", secure=True, httponly=True, samesite="Lax"),
                make_morsel("__Host-next-auth.csrf-token", "csrf-cookie", path="/", secure=True),
                make_morsel("__Secure-next-auth.callback-url", "https%3A%2F%2Fweb.example.com"),
            ],
        ),
        ("GET", "/api/auth/session"): session or FakeResponse(
            200, {"user": {"email": "user@example.com", "replication": dict(REPLICATION)}}
        ),
    }


class TransportRecorder:
    """Transport factory that hands out fresh ``FakeTransport`` instances."""

    def __init__(self, routes_factory: Callable[[], Dict[Tuple[str, str], Route]] = nextauth_routes) -> None:
        self.routes_factory = routes_factory
        self.created: List[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport(self.routes_factory())
        self.created.append(transport)
        return transport


class StubEngine:
    """Handshake engine double counting calls; results and errors are scripted."""

    def __init__(self, outcomes: Optional[List[Union[HandshakeResult, BaseException]]] = None,
                 delay: float = 0.0) -> None:
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls: List[Credentials] = []

    async def authenticate(self, credentials: Credentials) -> HandshakeResult:
        self.calls.append(credentials)
        await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else make_handshake_result()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_descriptor(**overrides: Any) -> SessionDescriptor:
    return SessionDescriptor.model_validate({**REPLICATION, **overrides})


def make_handshake_result(with_cookies: bool = True, **overrides: Any) -> HandshakeResult:
    transport = FakeTransport()
    if with_cookies:
        transport.cookie_jar.append(make_morsel("__Secure-next-auth.session-token", "session-xyz"))
        transport.cookie_jar.append(make_morsel("__Host-next-auth.csrf-token", "csrf-cookie"))
    return HandshakeResult(descriptor=make_descriptor(**overrides), csrf_token="csrf-abc",
                           transport=transport)  # type: ignore[arg-type]


def default_credentials() -> Credentials:
    return Credentials(email="user@example.com", password="secret")


# In-memory document store

class FakeDocumentStore:
    """Revisioned in-memory CouchDB database shared by every client."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.order: List[str] = []
        self.auth_failures = 0
        self.writes = 0

    def seed(self, *documents: Dict[str, Any]) -> None:
        for document in documents:
            doc = copy.deepcopy(document)
            doc.setdefault("_rev", f"1-{uuid.uuid4().hex}")
            self.docs[doc["_id"]] = doc
            if doc["_id"] not in self.order:
                self.order.append(doc["_id"])

    async def _enter(self) -> None:
        await asyncio.sleep(0)
        if self.auth_failures:
            self.auth_failures -= 1
            raise StoreAuthError("Document store rejected credentials", 401, "unauthorized")

    @staticmethod
    def _next_rev(rev: Optional[str]) -> str:
        generation = int(rev.split("-", 1)[0]) if rev else 0
        return f"{generation + 1}-{uuid.uuid4().hex}"

    async def all_documents(self) -> List[Dict[str, Any]]:
        await self._enter()
        return [copy.deepcopy(self.docs[doc_id]) for doc_id in self.order if doc_id in self.docs]

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        await self._enter()
        doc = self.docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def put(self, document: Dict[str, Any]) -> Dict[str, Any]:
        await self._enter()
        doc_id = document["_id"]
        current = self.docs.get(doc_id)
        supplied = document.get("_rev")
        if current is not None and current["_rev"] != supplied:
            raise ConflictError("Revision conflict during put", 409, "conflict")
        if current is None and supplied:
            raise ConflictError("Revision conflict during put", 409, "conflict")
        rev = self._next_rev(supplied)
        self.docs[doc_id] = {**copy.deepcopy(document), "_rev": rev}
        if doc_id not in self.order:
            self.order.append(doc_id)
        self.writes += 1
        return {"ok": True, "id": doc_id, "rev": rev}

    async def destroy(self, doc_id: str, rev: str) -> Optional[Dict[str, Any]]:
        await self._enter()
        current = self.docs.get(doc_id)
        if current is None:
            return None
        if current["_rev"] != rev:
            raise ConflictError("Revision conflict during destroy", 409, "conflict")
        del self.docs[doc_id]
        self.writes += 1
        return {"ok": True, "id": doc_id, "rev": self._next_rev(rev)}


class FakeStoreClient:
    def __init__(self, store: FakeDocumentStore, descriptor: SessionDescriptor) -> None:
        self.store = store
        self.descriptor = descriptor

    async def __aenter__(self) -> FakeDocumentStore:
        return self.store

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeStoreFactory:
    def __init__(self, store: FakeDocumentStore) -> None:
        self.store = store
        self.descriptors: List[SessionDescriptor] = []

    def build(self, descriptor: SessionDescriptor) -> FakeStoreClient:
        self.descriptors.append(descriptor)
        return FakeStoreClient(self.store, descriptor)


@pytest.fixture
def store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def provider(engine: StubEngine) -> SessionProvider:
    return SessionProvider(engine, default_credentials)  # type: ignore[arg-type]


@pytest.fixture
def store_factory(store: FakeDocumentStore) -> FakeStoreFactory:
    return FakeStoreFactory(store)

