"""Programmatic replay of the BudgetBakers web login (NextAuth credentials flow).

The handshake runs three ordered steps over one cookie-bearing transport:

1. ``GET /api/auth/csrf`` to obtain the anti-forgery token.
2. ``POST /api/auth/callback/sign-in`` with the token and credentials.
3. ``GET /api/auth/session`` to read the CouchDB replication credentials.

A failure at any step closes the transport and propagates; no partial
session ever leaves this module. The engine never touches the session
cache, that is the provider's job.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from http.cookies import Morsel
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
import pydantic
import structlog
from dateutil import parser as date_parser

from .errors import LoginRejected, SessionDataMissing, TokenMissing, TransportError
from .models import Credentials, SameSite, SessionCookie, SessionDescriptor

log = structlog.get_logger(__name__)

# HTTPS deployments prefix these with __Secure- / __Host-
SESSION_COOKIE_SUFFIX = "next-auth.session-token"
CSRF_COOKIE_SUFFIX = "next-auth.csrf-token"

TransportFactory = Callable[[], aiohttp.ClientSession]


@dataclass(frozen=True)
class SignInResult:
    """State after steps 1-2: an authenticated transport and its CSRF token."""

    transport: aiohttp.ClientSession
    csrf_token: str


@dataclass(frozen=True)
class HandshakeResult:
    """Outcome of a complete handshake."""

    descriptor: SessionDescriptor
    csrf_token: str
    transport: aiohttp.ClientSession

    @property
    def cookies(self) -> List[SessionCookie]:
        return extract_cookies(self.transport)


def _parse_json(body: str) -> Any:
    try:
        return json.loads(body) if body else None
    except json.JSONDecodeError:
        return None


def _same_site(value: Any) -> SameSite:
    normalized = str(value or "").lower()
    if normalized in ("lax", "strict", "none"):
        return normalized  # type: ignore[return-value]
    return "lax"


def _expiry(morsel: "Morsel[str]") -> Optional[datetime]:
    if morsel.get("expires"):
        try:
            parsed = date_parser.parse(morsel["expires"])
        except (ValueError, OverflowError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if morsel.get("max-age"):
        try:
            return datetime.now(timezone.utc) + timedelta(seconds=int(morsel["max-age"]))
        except ValueError:
            return None
    return None


def _to_session_cookie(morsel: "Morsel[str]") -> SessionCookie:
    return SessionCookie(
        name=morsel.key,
        value=morsel.value,
        domain=morsel.get("domain") or None,
        path=morsel.get("path") or "/",
        secure=bool(morsel.get("secure")),
        http_only=bool(morsel.get("httponly")),
        expires=_expiry(morsel),
        same_site=_same_site(morsel.get("samesite")),
    )


def extract_cookies(transport: aiohttp.ClientSession) -> List[SessionCookie]:
    """Return only the session-identity and anti-forgery cookies held by a transport."""
    selected: Dict[str, SessionCookie] = {}
    for morsel in transport.cookie_jar:
        if morsel.key.endswith(SESSION_COOKIE_SUFFIX) or morsel.key.endswith(CSRF_COOKIE_SUFFIX):
            selected[morsel.key] = _to_session_cookie(morsel)
    return list(selected.values())


def has_session_cookie(cookies: List[SessionCookie]) -> bool:
    return any(cookie.name.endswith(SESSION_COOKIE_SUFFIX) for cookie in cookies)


class HandshakeEngine:
    """Runs the three-step BudgetBakers login against a configured base URL."""

    def __init__(
        self,
        base_url: str,
        locale: str = "es-ES",
        timeout: float = 30.0,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.locale = locale
        self.timeout = timeout
        self._client_timeout = aiohttp.ClientTimeout(total=timeout)
        self._transport_factory = transport_factory or self._default_transport

    @property
    def csrf_url(self) -> str:
        return f"{self.base_url}/api/auth/csrf"

    @property
    def sign_in_url(self) -> str:
        return f"{self.base_url}/api/auth/callback/sign-in"

    @property
    def session_url(self) -> str:
        return f"{self.base_url}/api/auth/session"

    @property
    def login_page_url(self) -> str:
        return f"{self.base_url}/{self.locale}/sign-in?callbackUrl=%2Fdashboard"

    @property
    def dashboard_url(self) -> str:
        return f"{self.base_url}/{self.locale}/dashboard"

    def _default_transport(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(), timeout=self._client_timeout)

    async def _send(
        self, transport: aiohttp.ClientSession, method: str, url: str, step: str, **kwargs: Any
    ) -> Tuple[int, str]:
        try:
            async with transport.request(method, url, timeout=self._client_timeout, **kwargs) as response:
                body = await response.text()
                log.debug("Handshake response", step=step, status=response.status)
                return response.status, body
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out during handshake step '{step}' after {self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Network error during handshake step '{step}': {e}") from e

    async def fetch_csrf_token(self, transport: aiohttp.ClientSession) -> str:
        """Step 1: read the anti-forgery token from the response body."""
        status, body = await self._send(
            transport, "GET", self.csrf_url, "csrf", headers={"Referer": self.login_page_url}
        )
        payload = _parse_json(body)
        token = payload.get("csrfToken") if isinstance(payload, dict) else None
        if status != 200 or not isinstance(token, str) or not token:
            log.error("CSRF token missing", status=status)
            raise TokenMissing(f"CSRF token missing from auth/csrf response (status {status})")
        log.info("Handshake step complete", step="csrf")
        return token

    async def submit_credentials(
        self, transport: aiohttp.ClientSession, credentials: Credentials, csrf_token: str
    ) -> None:
        """Step 2: post the sign-in form; session cookies land in the transport's jar."""
        form = {
            "callbackUrl": f"/{self.locale}/dashboard",
            "redirect": "false",
            "email": credentials.email,
            "password": credentials.password,
            "csrfToken": csrf_token,
            "json": "true",
        }
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Origin": self.base_url,
            "Referer": self.login_page_url,
        }
        status, body = await self._send(
            transport, "POST", self.sign_in_url, "sign-in", data=form, headers=headers, allow_redirects=False
        )
        if status != 200:
            log.error("Login rejected", status=status, email=credentials.email)
            raise LoginRejected(status, body)

        # NextAuth answers 200 with an error callback URL for bad credentials
        payload = _parse_json(body)
        if isinstance(payload, dict) and "error=" in str(payload.get("url", "")):
            log.error("Login rejected by credentials callback", email=credentials.email)
            raise LoginRejected(status, body)
        log.info("Handshake step complete", step="sign-in", email=credentials.email)

    async def fetch_session(self, transport: aiohttp.ClientSession) -> SessionDescriptor:
        """Step 3: extract the replication credentials from the session endpoint."""
        status, body = await self._send(
            transport, "GET", self.session_url, "session", headers={"Referer": self.dashboard_url}
        )
        payload = _parse_json(body)
        user = payload.get("user") if isinstance(payload, dict) else None
        replication = user.get("replication") if isinstance(user, dict) else None
        if status != 200 or not isinstance(replication, dict):
            log.error("Session data missing", status=status)
            raise SessionDataMissing()

        try:
            descriptor = SessionDescriptor.model_validate(replication)
        except pydantic.ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            log.error("Session data incomplete", fields=fields)
            raise SessionDataMissing(
                f"Replication credentials incomplete in auth/session response: {', '.join(fields)}"
            ) from e
        log.info("Handshake step complete", step="session", db_name=descriptor.db_name)
        return descriptor

    async def sign_in(self, credentials: Credentials) -> SignInResult:
        """Run steps 1-2 on a fresh transport."""
        transport = self._transport_factory()
        try:
            csrf_token = await self.fetch_csrf_token(transport)
            await self.submit_credentials(transport, credentials, csrf_token)
        except BaseException:
            await transport.close()
            raise
        return SignInResult(transport=transport, csrf_token=csrf_token)

    async def authenticate(self, credentials: Credentials) -> HandshakeResult:
        """Run the full handshake and return the session descriptor and transport."""
        log.info("Starting BudgetBakers handshake", email=credentials.email, base_url=self.base_url)
        signed_in = await self.sign_in(credentials)
        try:
            descriptor = await self.fetch_session(signed_in.transport)
        except BaseException:
            await signed_in.transport.close()
            raise
        return HandshakeResult(descriptor=descriptor, csrf_token=signed_in.csrf_token, transport=signed_in.transport)
