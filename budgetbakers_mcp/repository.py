"""Generic create/read/update/delete over one BudgetBakers document kind.

Every stored document carries a ``reservedModelType`` discriminator. A
repository only ever surfaces documents of its own kind: anything else,
including ids that exist under a different kind, reads as absent (``None``).
"""

import uuid
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

import pydantic
import structlog
from pydantic import BaseModel, create_model

from .dates import utc_now
from .errors import StoreAuthError, ValidationError
from .models import DeleteResult, SessionDescriptor
from .session import SessionProvider
from .store import Document, DocumentStoreClient, DocumentStoreClientFactory

log = structlog.get_logger(__name__)

DISCRIMINATOR_FIELD = "reservedModelType"
RESERVED_FIELDS = (
    "_id",
    "_rev",
    DISCRIMINATOR_FIELD,
    "reservedOwnerId",
    "reservedAuthorId",
    "reservedCreatedAt",
    "reservedUpdatedAt",
)

Predicate = Callable[[Document], bool]
T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)


def validate_model(model: Type[ModelT], data: Any) -> ModelT:
    """Validate caller input, reporting the first problem as a ``ValidationError``."""
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ValidationError("__root__", "mapping_type", "Fields must be a JSON object")
    try:
        return model.model_validate(dict(data))
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "__root__"
        raise ValidationError(field, first["type"], f"Invalid field '{field}': {first['msg']}") from e


def derive_patch_model(model: Type[BaseModel]) -> Type[BaseModel]:
    """Same fields, constraints, validators and config as ``model``, but every field optional."""
    overrides: Dict[str, Any] = {}
    for name, field in model.model_fields.items():
        annotation: Any = Optional[field.annotation]
        if field.metadata:
            annotation = Annotated[(annotation, *field.metadata)]
        overrides[name] = (annotation, None)
    return create_model(f"{model.__name__}Patch", __base__=model, **overrides)


class EntityKind:
    """Business rules for one document kind.

    Subclasses set ``name``, ``discriminator``, ``fields_model`` (the create
    schema, which doubles as the patchable-field allowlist) and
    ``filters_model``, and override the hooks they need.
    """

    name: str = ""
    discriminator: str = ""
    fields_model: Type[BaseModel]
    filters_model: Type[BaseModel]

    def __init__(self) -> None:
        self.patch_model = derive_patch_model(self.fields_model)

    @property
    def required_fields(self) -> Tuple[str, ...]:
        return tuple(
            field.alias or name
            for name, field in self.fields_model.model_fields.items()
            if field.is_required()
        )

    def new_id(self) -> str:
        return f"{self.discriminator}_{uuid.uuid4()}"

    def dump(self, model: BaseModel, *, exclude_unset: bool = False) -> Document:
        return model.model_dump(by_alias=True, exclude_none=not exclude_unset, exclude_unset=exclude_unset)

    def defaults(self, fields: Document) -> Document:
        """Values derived from the caller's fields, applied underneath them."""
        return {}

    def stamped(self) -> Document:
        """Extra reserved fields written on create; callers cannot override them."""
        return {}

    def merge(self, existing: Document, changes: Document) -> Document:
        return {**existing, **changes}

    def check_mutable(self, document: Document) -> None:
        """Raise ``ValidationError`` if this document may not be written or deleted."""

    def predicates(self, filters: BaseModel) -> List[Predicate]:
        return []


class FullScanQuery:
    """Scan the whole database, keep one kind, then filter in memory.

    The store is only queried through ``_all_docs``; there is no indexed path.
    """

    async def run(
        self, store: DocumentStoreClient, discriminator: str, predicates: Sequence[Predicate]
    ) -> List[Document]:
        documents = await store.all_documents()
        seen = set()
        matches: List[Document] = []
        for document in documents:
            if document.get(DISCRIMINATOR_FIELD) != discriminator:
                continue
            doc_id = document.get("_id")
            if doc_id in seen:
                continue
            seen.add(doc_id)
            if all(predicate(document) for predicate in predicates):
                matches.append(document)
        return matches


class EntityRepository:
    """Scan-filter reads and revision-checked writes for one ``EntityKind``."""

    def __init__(
        self,
        kind: EntityKind,
        provider: SessionProvider,
        store_factory: DocumentStoreClientFactory,
        query: Optional[FullScanQuery] = None,
    ) -> None:
        self.kind = kind
        self._provider = provider
        self._store_factory = store_factory
        self._query = query or FullScanQuery()

    async def _with_store(
        self,
        descriptor: SessionDescriptor,
        operation: Callable[[DocumentStoreClient, SessionDescriptor], Awaitable[T]],
    ) -> T:
        async with self._store_factory.build(descriptor) as store:
            return await operation(store, descriptor)

    async def _run(
        self,
        operation: Callable[[DocumentStoreClient, SessionDescriptor], Awaitable[T]],
        name: str,
    ) -> T:
        """Run against the current session, re-authenticating once if the store rejects it."""
        cached = await self._provider.get_or_authenticate()
        try:
            return await self._with_store(cached.descriptor, operation)
        except StoreAuthError as e:
            log.warning(
                "Store rejected cached session, re-authenticating",
                kind=self.kind.name, operation=name, status=e.status,
            )
            await self._provider.invalidate(cached, reason=f"store rejected {name}")
            cached = await self._provider.get_or_authenticate()
            log.info("Retrying store operation after re-authentication", kind=self.kind.name, operation=name)
            return await self._with_store(cached.descriptor, operation)

    def _matching(self, document: Optional[Document], doc_id: str) -> Optional[Document]:
        if document is None:
            return None
        if document.get(DISCRIMINATOR_FIELD) != self.kind.discriminator:
            log.warning(
                "Document found with a different kind",
                doc_id=doc_id, expected=self.kind.discriminator, actual=document.get(DISCRIMINATOR_FIELD),
            )
            return None
        return document

    def _check_required(self, document: Document) -> None:
        for field in self.kind.required_fields:
            value = document.get(field)
            if value is None or value == "":
                raise ValidationError(field, "missing", f"Field '{field}' is required")

    async def list(self, filters: Optional[Mapping[str, Any]] = None) -> List[Document]:
        """All documents of this kind matching ``filters``, in store order."""
        parsed = validate_model(self.kind.filters_model, filters)
        predicates = self.kind.predicates(parsed)

        async def operation(store: DocumentStoreClient, _: SessionDescriptor) -> List[Document]:
            return await self._query.run(store, self.kind.discriminator, predicates)

        documents = await self._run(operation, "list")
        log.info("Listed documents", kind=self.kind.name, count=len(documents))
        return documents

    async def get(self, doc_id: str) -> Optional[Document]:
        if not doc_id:
            return None

        async def operation(store: DocumentStoreClient, _: SessionDescriptor) -> Optional[Document]:
            return self._matching(await store.get(doc_id), doc_id)

        return await self._run(operation, "get")

    async def create(self, fields: Mapping[str, Any]) -> Document:
        validated = validate_model(self.kind.fields_model, fields)
        business = self.kind.dump(validated)
        proposed = {**self.kind.defaults(business), **business}
        self.kind.check_mutable(proposed)
        doc_id = self.kind.new_id()

        async def operation(store: DocumentStoreClient, descriptor: SessionDescriptor) -> Document:
            now = utc_now()
            document = {
                **proposed,
                **self.kind.stamped(),
                "_id": doc_id,
                DISCRIMINATOR_FIELD: self.kind.discriminator,
                "reservedOwnerId": descriptor.owner_id,
                "reservedAuthorId": descriptor.owner_id,
                "reservedCreatedAt": now,
                "reservedUpdatedAt": now,
            }
            ack = await store.put(document)
            return {**document, "_id": ack.get("id", doc_id), "_rev": ack["rev"]}

        created = await self._run(operation, "create")
        log.info("Created document", kind=self.kind.name, doc_id=created["_id"])
        return created

    async def update(
        self, doc_id: str, patch: Mapping[str, Any], rev: Optional[str] = None
    ) -> Optional[Document]:
        """Merge ``patch`` onto the stored document.

        ``rev`` pins the write to a revision the caller has seen; by default
        the revision just read is used.
        """
        changes = self.kind.dump(validate_model(self.kind.patch_model, patch), exclude_unset=True)
        if not doc_id:
            return None

        async def operation(store: DocumentStoreClient, _: SessionDescriptor) -> Optional[Document]:
            existing = self._matching(await store.get(doc_id), doc_id)
            if existing is None:
                return None
            self.kind.check_mutable(existing)
            merged = self.kind.merge(existing, changes)
            self._check_required(merged)
            self.kind.check_mutable(merged)
            merged["_id"] = existing["_id"]
            merged["_rev"] = rev or existing.get("_rev")
            merged["reservedUpdatedAt"] = utc_now()
            ack = await store.put(merged)
            return {**merged, "_rev": ack["rev"]}

        updated = await self._run(operation, "update")
        if updated is not None:
            log.info("Updated document", kind=self.kind.name, doc_id=doc_id, fields=sorted(changes))
        return updated

    async def delete(self, doc_id: str, rev: Optional[str] = None) -> Optional[DeleteResult]:
        if not doc_id:
            return None

        async def operation(store: DocumentStoreClient, _: SessionDescriptor) -> Optional[DeleteResult]:
            existing = self._matching(await store.get(doc_id), doc_id)
            if existing is None:
                return None
            self.kind.check_mutable(existing)
            ack = await store.destroy(existing["_id"], rev or existing["_rev"])
            if ack is None:
                return None
            return DeleteResult(id=ack.get("id", existing["_id"]), rev=ack["rev"])

        result = await self._run(operation, "delete")
        if result is not None:
            log.info("Deleted document", kind=self.kind.name, doc_id=doc_id)
        return result
