"""Async bridge to a BudgetBakers Wallet user's CouchDB data."""

from .config import Settings, load_env_file
from .errors import (
    AuthError,
    BudgetBakersError,
    ConfigurationError,
    ConflictError,
    IncompleteSession,
    LoginRejected,
    SessionCookieMissing,
    SessionDataMissing,
    StoreAuthError,
    StoreError,
    StoreWriteError,
    TokenMissing,
    TransportError,
    ValidationError,
)
from .handshake import HandshakeEngine, HandshakeResult
from .models import Credentials, DeleteResult, SessionCookie, SessionDescriptor
from .repository import EntityRepository, FullScanQuery
from .service import BudgetBakersService
from .session import AuthState, CacheUpdatePolicy, SessionProvider
from .store import DocumentStoreClient, DocumentStoreClientFactory

__all__ = [
    "AuthError",
    "AuthState",
    "BudgetBakersError",
    "BudgetBakersService",
    "CacheUpdatePolicy",
    "ConfigurationError",
    "ConflictError",
    "Credentials",
    "DeleteResult",
    "DocumentStoreClient",
    "DocumentStoreClientFactory",
    "EntityRepository",
    "FullScanQuery",
    "HandshakeEngine",
    "HandshakeResult",
    "IncompleteSession",
    "LoginRejected",
    "SessionCookie",
    "SessionCookieMissing",
    "SessionDataMissing",
    "SessionDescriptor",
    "SessionProvider",
    "Settings",
    "StoreAuthError",
    "StoreError",
    "StoreWriteError",
    "TokenMissing",
    "TransportError",
    "ValidationError",
    "load_env_file",
]
