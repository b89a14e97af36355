"""Field schemas and business rules for accounts, records, categories and labels.

Field names are snake_case in Python and camelCase in the stored documents,
matching what the BudgetBakers apps write.
"""

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .dates import parse_flexible_date, parse_timestamp, to_store_timestamp
from .errors import ValidationError
from .repository import EntityKind, Predicate
from .store import Document

DEFAULT_COLOR = "#CCCCCC"
RECORD_SOURCE = "budgetbakers-mcp"

# Only envelopes in the custom-category group may be edited or deleted
EDITABLE_ENVELOPE_PREFIX = "3"

INCOME = 0
EXPENSE = 1


class DocumentFields(BaseModel):  # type: ignore[misc]
    """Base for caller-supplied fields: unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class Filters(BaseModel):  # type: ignore[misc]
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


def name_starts_with(prefix: str) -> Predicate:
    lowered = prefix.lower()

    def predicate(document: Document) -> bool:
        name = document.get("name")
        return isinstance(name, str) and name.lower().startswith(lowered)

    return predicate


def field_equals(field: str, expected: Any) -> Predicate:
    def predicate(document: Document) -> bool:
        return document.get(field) == expected

    return predicate


# Accounts

class AccountFields(DocumentFields):
    name: str = Field(min_length=1)
    currency_id: str = Field(min_length=1)
    init_amount: int = 0
    account_type: int = Field(default=0, ge=0)
    color: str = DEFAULT_COLOR
    exclude_from_stats: bool = False
    archived: bool = False
    position: Optional[int] = None
    credit_card: Optional[Dict[str, Any]] = None


class AccountFilters(Filters):
    name_starts_with: Optional[str] = None
    archived: Optional[bool] = None


class AccountKind(EntityKind):
    name = "account"
    discriminator = "Account"
    fields_model = AccountFields
    filters_model = AccountFilters

    def predicates(self, filters: BaseModel) -> List[Predicate]:
        assert isinstance(filters, AccountFilters)
        predicates: List[Predicate] = []
        if filters.name_starts_with:
            predicates.append(name_starts_with(filters.name_starts_with))
        if filters.archived is not None:
            archived = filters.archived
            predicates.append(lambda doc: bool(doc.get("archived", False)) is archived)
        return predicates


# Records (transactions)

class RecordFields(DocumentFields):
    account_id: str = Field(min_length=1)
    category_id: str = Field(min_length=1)
    currency_id: str = Field(min_length=1)
    amount: int
    """Signed amount in minor currency units (150075 is 1500.75)."""
    record_date: str
    type: Optional[int] = Field(default=None, ge=0, le=2)
    """0 income, 1 expense, 2 transfer."""
    ref_amount: Optional[int] = None
    payment_type: int = Field(default=0, ge=0)
    record_state: int = Field(default=1, ge=0)
    transfer: bool = False
    transfer_id: Optional[str] = None
    transfer_account_id: Optional[str] = None
    payee: Optional[str] = None
    note: Optional[str] = None
    labels: List[str] = Field(default_factory=list)

    @field_validator("amount")
    @classmethod
    def amount_not_zero(cls, v: Optional[int]) -> Optional[int]:
        if v == 0:
            raise ValueError("amount must be non-zero")
        return v

    @field_validator("record_date", mode="before")
    @classmethod
    def normalize_record_date(cls, v: Any) -> Any:
        if v is None:
            return v
        parsed = parse_timestamp(v)
        if parsed is None:
            raise ValueError("recordDate must be an ISO-8601 date or timestamp")
        return to_store_timestamp(parsed)


class RecordFilters(Filters):
    account_id: Optional[str] = None
    category_id: Optional[str] = None
    currency_id: Optional[str] = None
    label_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def parse_dates(cls, v: Any) -> Any:
        """Accept ISO dates and natural language like 'last month' or '30 days ago'."""
        if isinstance(v, datetime):
            return v.date()
        if isinstance(v, str):
            return parse_flexible_date(v)
        return v


def _record_day(document: Document) -> Optional[date]:
    parsed = parse_timestamp(document.get("recordDate"))
    return parsed.date() if parsed else None


class RecordKind(EntityKind):
    name = "record"
    discriminator = "Record"
    fields_model = RecordFields
    filters_model = RecordFilters

    def defaults(self, fields: Document) -> Document:
        amount = fields["amount"]
        return {
            "type": INCOME if amount > 0 else EXPENSE,
            "refAmount": amount,
            "payee": None,
            "note": None,
        }

    def stamped(self) -> Document:
        return {"reservedSource": RECORD_SOURCE}

    def merge(self, existing: Document, changes: Document) -> Document:
        """Re-derive ``type`` and ``refAmount`` from a new amount unless the patch sets them."""
        merged = super().merge(existing, changes)
        amount = changes.get("amount")
        if amount is not None and amount != existing.get("amount"):
            if "type" not in changes:
                merged["type"] = INCOME if amount > 0 else EXPENSE
            if "refAmount" not in changes:
                merged["refAmount"] = amount
        return merged

    def predicates(self, filters: BaseModel) -> List[Predicate]:
        assert isinstance(filters, RecordFilters)
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise ValidationError(
                "dateFrom", "date_range",
                f"dateFrom ({filters.date_from.isoformat()}) cannot be after dateTo ({filters.date_to.isoformat()})",
            )

        predicates: List[Predicate] = []
        if filters.account_id:
            predicates.append(field_equals("accountId", filters.account_id))
        if filters.category_id:
            predicates.append(field_equals("categoryId", filters.category_id))
        if filters.currency_id:
            predicates.append(field_equals("currencyId", filters.currency_id))
        if filters.label_id:
            label_id = filters.label_id
            predicates.append(lambda doc: label_id in (doc.get("labels") or []))
        if filters.date_from:
            date_from = filters.date_from
            predicates.append(lambda doc: (_record_day(doc) or date.min) >= date_from)
        if filters.date_to:
            date_to = filters.date_to
            predicates.append(lambda doc: (_record_day(doc) or date.max) <= date_to)
        return predicates


# Categories

class CategoryFields(DocumentFields):
    name: str = Field(min_length=1)
    envelope_id: int = Field(gt=0)
    color: str = DEFAULT_COLOR
    icon: str = "default_icon"
    icon_name: Optional[str] = None
    custom_category: bool = True
    category_type: int = Field(default=EXPENSE, ge=0, le=1)
    parent_id: Optional[str] = None


class CategoryFilters(Filters):
    name_starts_with: Optional[str] = None
    custom_category: Optional[bool] = None
    envelope_id: Optional[int] = None


class CategoryKind(EntityKind):
    name = "category"
    discriminator = "Category"
    fields_model = CategoryFields
    filters_model = CategoryFilters

    def check_mutable(self, document: Document) -> None:
        envelope_id = document.get("envelopeId")
        if envelope_id is None or not str(envelope_id).startswith(EDITABLE_ENVELOPE_PREFIX):
            raise ValidationError(
                "envelopeId", "envelope_prefix",
                f"Categories can only be changed inside envelopes starting with "
                f"'{EDITABLE_ENVELOPE_PREFIX}' (envelopeId: {envelope_id})",
            )

    def predicates(self, filters: BaseModel) -> List[Predicate]:
        assert isinstance(filters, CategoryFilters)
        predicates: List[Predicate] = []
        if filters.name_starts_with:
            predicates.append(name_starts_with(filters.name_starts_with))
        if filters.custom_category is not None:
            custom = filters.custom_category
            predicates.append(lambda doc: bool(doc.get("customCategory", False)) is custom)
        if filters.envelope_id is not None:
            envelope_id = filters.envelope_id
            predicates.append(lambda doc: str(doc.get("envelopeId")) == str(envelope_id))
        return predicates


# Labels (stored as HashTag documents)

class LabelFields(DocumentFields):
    name: str = Field(min_length=1)
    color: Optional[str] = None
    archived: bool = False


class LabelFilters(Filters):
    name_starts_with: Optional[str] = None


class LabelKind(EntityKind):
    name = "label"
    discriminator = "HashTag"
    fields_model = LabelFields
    filters_model = LabelFilters

    def predicates(self, filters: BaseModel) -> List[Predicate]:
        assert isinstance(filters, LabelFilters)
        if filters.name_starts_with:
            return [name_starts_with(filters.name_starts_with)]
        return []


ACCOUNT = AccountKind()
RECORD = RecordKind()
CATEGORY = CategoryKind()
LABEL = LabelKind()

KINDS: Dict[str, EntityKind] = {kind.name: kind for kind in (ACCOUNT, RECORD, CATEGORY, LABEL)}
