"""Process-wide BudgetBakers session cache.

``SessionProvider`` owns the only cross-request mutable state in the bridge:
the most recent session descriptor, its CSRF token and the cookie-bearing
transport that produced it. State is swapped as one immutable
``CachedSession`` so readers never see a half-updated pair, and every
replacement happens under a single ``asyncio.Lock`` so at most one
handshake is in flight at a time.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import aiohttp
import structlog

from .errors import SessionCookieMissing, SessionDataMissing
from .handshake import HandshakeEngine, HandshakeResult, has_session_cookie
from .models import Credentials, SessionCookie, SessionDescriptor

log = structlog.get_logger(__name__)

CredentialsSource = Callable[[], Credentials]


class AuthState(Enum):
    """Track authentication state for diagnostics and logging."""
    NOT_INITIALIZED = "not_initialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class CacheUpdatePolicy(Enum):
    """What a failed handshake does to the existing cache."""
    # Implicit authentication: keep whatever was there before
    KEEP_ON_FAILURE = "keep_on_failure"
    # Explicit login: a session-retrieval failure empties the cache
    CLEAR_ON_FAILURE = "clear_on_failure"


@dataclass(frozen=True)
class CachedSession:
    descriptor: SessionDescriptor
    csrf_token: str
    transport: aiohttp.ClientSession


class SessionProvider:
    """Single-flight "authenticate if absent" access to the BudgetBakers session."""

    def __init__(self, engine: HandshakeEngine, credentials_source: CredentialsSource) -> None:
        self._engine = engine
        self._credentials_source = credentials_source
        self._cached: Optional[CachedSession] = None
        self._lock = asyncio.Lock()
        self._state = AuthState.NOT_INITIALIZED
        self._last_error: Optional[str] = None
        self.handshake_count = 0

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def cached(self) -> Optional[CachedSession]:
        return self._cached

    async def get_or_authenticate(self) -> CachedSession:
        """Return the cached session, running one shared handshake if there is none."""
        cached = self._cached
        if cached is not None:
            log.debug("Using cached BudgetBakers session")
            return cached

        async with self._lock:
            # Another task may have finished the handshake while we waited
            if self._cached is not None:
                log.info("Session populated by concurrent handshake")
                return self._cached

            try:
                credentials = self._credentials_source()
            except ValueError as e:
                self._state = AuthState.FAILED
                self._last_error = str(e)
                log.error("Cannot authenticate", error=str(e))
                raise

            log.info("No cached session, authenticating", state=self._state.value)
            result = await self._handshake(credentials, CacheUpdatePolicy.KEEP_ON_FAILURE)
            return await self._install(result)

    async def login(self, credentials: Credentials) -> List[SessionCookie]:
        """Always run a fresh handshake for explicit credentials.

        Returns the session and CSRF cookies for the caller's browser, and
        replaces the process cache with the new session.
        """
        async with self._lock:
            log.info("Explicit login requested", email=credentials.email)
            result = await self._handshake(credentials, CacheUpdatePolicy.CLEAR_ON_FAILURE)
            cookies = result.cookies
            if not has_session_cookie(cookies):
                await result.transport.close()
                self._state = AuthState.AUTHENTICATED if self._cached is not None else AuthState.FAILED
                self._last_error = "session cookie missing"
                raise SessionCookieMissing()
            await self._install(result)
            return cookies

    async def invalidate(self, session: Optional[CachedSession] = None, reason: str = "unknown") -> None:
        """Drop the cached session.

        When ``session`` is given, only drop it if it is still the cached
        object; a concurrent task may already have replaced it, possibly with
        identical replication credentials.
        """
        async with self._lock:
            current = self._cached
            if current is None:
                return
            if session is not None and current is not session:
                log.info("Session already replaced, skipping invalidation", reason=reason)
                return
            log.warning("Invalidating cached session", reason=reason)
            self._cached = None
            self._state = AuthState.NOT_INITIALIZED
            await current.transport.close()

    async def aclose(self) -> None:
        await self.invalidate(reason="shutdown")

    async def _handshake(self, credentials: Credentials, policy: CacheUpdatePolicy) -> HandshakeResult:
        """Run the engine; the caller must hold the lock."""
        self._state = AuthState.INITIALIZING
        self.handshake_count += 1
        try:
            return await self._engine.authenticate(credentials)
        except SessionDataMissing as e:
            if policy is CacheUpdatePolicy.CLEAR_ON_FAILURE:
                log.warning("Login succeeded but session data missing, clearing cache")
                await self._clear()
            self._record_failure(e)
            raise
        except BaseException as e:
            self._record_failure(e)
            raise

    def _record_failure(self, error: BaseException) -> None:
        self._last_error = str(error) or type(error).__name__
        self._state = AuthState.AUTHENTICATED if self._cached is not None else AuthState.FAILED

    async def _install(self, result: HandshakeResult) -> CachedSession:
        """Replace the cache wholesale; the caller must hold the lock."""
        previous = self._cached
        installed = CachedSession(
            descriptor=result.descriptor,
            csrf_token=result.csrf_token,
            transport=result.transport,
        )
        self._cached = installed
        self._state = AuthState.AUTHENTICATED
        self._last_error = None
        log.info("Session cached", db_name=result.descriptor.db_name)
        if previous is not None and previous.transport is not installed.transport:
            await previous.transport.close()
        return installed

    async def _clear(self) -> None:
        previous = self._cached
        self._cached = None
        if previous is not None:
            await previous.transport.close()
