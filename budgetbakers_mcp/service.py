"""Wires the handshake engine, session provider and repositories from Settings."""

from typing import Dict, List, Optional

import structlog

from .config import Settings
from .entities import ACCOUNT, CATEGORY, LABEL, RECORD
from .handshake import HandshakeEngine
from .models import Credentials, SessionCookie
from .repository import EntityRepository, FullScanQuery, validate_model
from .session import SessionProvider
from .store import DocumentStoreClientFactory

log = structlog.get_logger(__name__)


class BudgetBakersService:
    """One per process: a shared session provider and a repository per kind."""

    def __init__(
        self,
        settings: Settings,
        engine: Optional[HandshakeEngine] = None,
        provider: Optional[SessionProvider] = None,
        store_factory: Optional[DocumentStoreClientFactory] = None,
    ) -> None:
        self.settings = settings
        self.engine = engine or HandshakeEngine(
            settings.api_url, locale=settings.locale, timeout=settings.request_timeout
        )
        self.provider = provider or SessionProvider(self.engine, settings.default_credentials)
        self.store_factory = store_factory or DocumentStoreClientFactory(timeout=settings.request_timeout)

        query = FullScanQuery()
        self.accounts = EntityRepository(ACCOUNT, self.provider, self.store_factory, query)
        self.records = EntityRepository(RECORD, self.provider, self.store_factory, query)
        self.categories = EntityRepository(CATEGORY, self.provider, self.store_factory, query)
        self.labels = EntityRepository(LABEL, self.provider, self.store_factory, query)

    @property
    def repositories(self) -> Dict[str, EntityRepository]:
        return {
            repo.kind.name: repo
            for repo in (self.accounts, self.records, self.categories, self.labels)
        }

    async def login(self, email: str, password: str) -> List[SessionCookie]:
        """Explicit login; the new session also becomes the process session."""
        credentials = validate_model(Credentials, {"email": email, "password": password})
        return await self.provider.login(credentials)

    async def aclose(self) -> None:
        log.info("Closing BudgetBakers service")
        await self.provider.aclose()
