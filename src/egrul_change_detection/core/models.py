"""Domain models for registry change detection.

All models are frozen pydantic models: every observation cycle produces new
instances and nothing is mutated in place.

Models:
- EntitySnapshot / NormalizedSnapshot - point-in-time view of a company or entrepreneur
- Address, Money, Person, Founder      - optional nested sub-structures of a snapshot
- FieldDelta                           - one field-level (or set element) difference
- ChangeEvent                          - one category of detected difference, persisted
- SnapshotRecord                       - last known snapshot plus lifecycle bookkeeping
"""

from __future__ import annotations

import hashlib
import json
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntityType(str, Enum):
    """Kind of registry entity."""

    COMPANY = "company"
    ENTREPRENEUR = "entrepreneur"


class EntityState(str, Enum):
    """Per-entity lifecycle across observation cycles.

    unknown -> baselined (first snapshot stored) -> observed (>= 1 event).
    There is no terminal state.
    """

    UNKNOWN = "unknown"
    BASELINED = "baselined"
    OBSERVED = "observed"


class DeltaKind(str, Enum):
    """Kind of a field-level difference.

    ADDED and REMOVED only occur for elements of set-valued fields.
    """

    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


class ChangeCategory(str, Enum):
    """Category of a change event."""

    IDENTITY = "identity"
    STATUS = "status"
    ADDRESS = "address"
    ACTIVITY = "activity"
    FOUNDERS = "founders"
    CAPITAL = "capital"
    HEAD = "head"
    LICENSES = "licenses"
    BRANCHES = "branches"
    COMPOSITE = "composite"


# Fixed emission order for events derived from one comparison.
CATEGORY_ORDER: tuple[ChangeCategory, ...] = (
    ChangeCategory.IDENTITY,
    ChangeCategory.STATUS,
    ChangeCategory.ADDRESS,
    ChangeCategory.ACTIVITY,
    ChangeCategory.FOUNDERS,
    ChangeCategory.CAPITAL,
    ChangeCategory.HEAD,
    ChangeCategory.LICENSES,
    ChangeCategory.BRANCHES,
)


class FieldId(str, Enum):
    """Tracked snapshot fields."""

    INN = "inn"
    KPP = "kpp"
    FULL_NAME = "full_name"
    SHORT_NAME = "short_name"
    REGION_CODE = "region_code"
    REGISTRATION_DATE = "registration_date"
    STATUS = "status"
    ADDRESS = "address"
    MAIN_ACTIVITY = "main_activity"
    ADDITIONAL_ACTIVITIES = "additional_activities"
    FOUNDERS = "founders"
    CAPITAL = "capital"
    HEAD = "head"
    LICENSES_COUNT = "licenses_count"
    BRANCHES_COUNT = "branches_count"


# ---------------------------------------------------------------------------
# Snapshot sub-structures
# ---------------------------------------------------------------------------


class Address(BaseModel):
    """Registered address. Every component is optional."""

    model_config = ConfigDict(frozen=True)

    full: str | None = None
    postal_code: str | None = None
    region: str | None = None
    city: str | None = None
    street: str | None = None
    house: str | None = None

    def is_empty(self) -> bool:
        """Return True when no component is present."""
        return all(value is None for value in self.model_dump().values())


class Money(BaseModel):
    """Exact monetary amount (authorized capital)."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal | None = None
    currency: str | None = None


class Person(BaseModel):
    """Natural person acting for a company (head / director)."""

    model_config = ConfigDict(frozen=True)

    full_name: str | None = None
    inn: str | None = None
    position: str | None = None


class Founder(BaseModel):
    """Company founder (person or legal entity) with its share."""

    model_config = ConfigDict(frozen=True)

    full_name: str | None = None
    inn: str | None = None
    ogrn: str | None = None
    share_amount: Decimal | None = None
    share_percent: Decimal | None = None

    @property
    def identity_key(self) -> str:
        """Stable identity of the founder inside a company's founder set.

        Tax id first, registration number second, name as a last resort.
        The share is deliberately not part of the key so a share change is
        reported as a modification of the same founder.
        """
        if self.inn:
            return f"inn:{self.inn}"
        if self.ogrn:
            return f"ogrn:{self.ogrn}"
        return f"name:{self.full_name or ''}"


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class EntitySnapshot(BaseModel):
    """Point-in-time view of one registry entity's tracked attributes.

    Company-only fields (founders, head, capital, branches_count) are left
    empty for entrepreneurs and are not compared for them.

    Attributes:
        entity_type: company or entrepreneur.
        entity_id: OGRN for companies, OGRNIP for entrepreneurs. Mandatory;
            a blank value makes the snapshot structurally incomplete.
        inn: Taxpayer id.
        kpp: Tax registration reason code (companies).
        full_name: Full registered name (ФИО for entrepreneurs).
        short_name: Short name (companies).
        region_code: Two-digit region code.
        registration_date: State registration date.
        status: Registry status text (e.g. ДЕЙСТВУЮЩАЯ).
        address: Registered address, None when absent.
        main_activity: Main OKVED code.
        additional_activities: Additional OKVED codes, order irrelevant.
        founders: Founders with shares, order irrelevant.
        head: Head of the company, None when absent.
        capital: Authorized capital, None when absent.
        licenses_count: Number of licenses.
        branches_count: Number of branches.
        extract_date: Date of the registry extract this snapshot came from.
            Version metadata only; never compared.
    """

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str = ""
    inn: str | None = None
    kpp: str | None = None
    full_name: str | None = None
    short_name: str | None = None
    region_code: str | None = None
    registration_date: date | None = None
    status: str | None = None
    address: Address | None = None
    main_activity: str | None = None
    additional_activities: tuple[str, ...] = ()
    founders: tuple[Founder, ...] = ()
    head: Person | None = None
    capital: Money | None = None
    licenses_count: int | None = None
    branches_count: int | None = None
    extract_date: date | None = None

    @property
    def display_name(self) -> str | None:
        """Name used in descriptions: full name, else short name."""
        return self.full_name or self.short_name


class NormalizedSnapshot(EntitySnapshot):
    """Canonical snapshot produced by normalizer.normalize().

    Set-valued fields are sorted by identity key, free text is trimmed and
    blank optionals are None. Only values of this type reach the diff engine.
    """


class SnapshotRecord(BaseModel):
    """Last known snapshot of an entity as kept by the snapshot store.

    Attributes:
        snapshot: The normalized snapshot of the last successful cycle.
        last_sequence: Highest sequence key emitted for this entity. Seeds
            the sequence allocator after a restart.
        state: Lifecycle state of the entity.
        updated_at: When the record was written.
    """

    model_config = ConfigDict(frozen=True)

    snapshot: NormalizedSnapshot
    last_sequence: int = Field(default=0, ge=0)
    state: EntityState = EntityState.BASELINED
    updated_at: datetime


# ---------------------------------------------------------------------------
# Deltas and events
# ---------------------------------------------------------------------------


class FieldDelta(BaseModel):
    """One difference between the previous and current value of a field.

    Attributes:
        field: The tracked field.
        kind: added / removed (set elements only) or modified.
        previous: Previous value; None when absent or for added elements.
        current: Current value; None when absent or for removed elements.
        item_key: Identity key of the set element for set-valued fields.
    """

    model_config = ConfigDict(frozen=True)

    field: FieldId
    kind: DeltaKind
    previous: Any = None
    current: Any = None
    item_key: str | None = None


_EVENT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "egrul-change-detection/change-event")


class ChangeEvent(BaseModel):
    """Durable record of one category of detected difference.

    Attributes:
        event_id: Deterministic UUIDv5 of (entity_type, entity_id, sequence_key).
            Doubles as the idempotency key of the persistence boundary.
        entity_type: company or entrepreneur.
        entity_id: OGRN / OGRNIP.
        category: Change category.
        deltas: Field deltas of this category, in field order. Never empty.
        observed_at: When the comparison ran (UTC).
        sequence_key: Per-entity monotonic ordering key.
        is_significant: Whether the change matters to downstream subscribers.
        description: Human-readable summary.
        entity_name: Entity name at observation time.
        inn: Entity taxpayer id at observation time.
        region_code: Entity region code at observation time.
    """

    model_config = ConfigDict(frozen=True)

    event_id: uuid.UUID
    entity_type: EntityType
    entity_id: str = Field(min_length=1)
    category: ChangeCategory
    deltas: tuple[FieldDelta, ...] = Field(min_length=1)
    observed_at: datetime
    sequence_key: int = Field(ge=1)
    is_significant: bool = False
    description: str = ""
    entity_name: str | None = None
    inn: str | None = None
    region_code: str | None = None

    @staticmethod
    def make_event_id(entity_type: EntityType, entity_id: str, sequence_key: int) -> uuid.UUID:
        """Derive the deterministic event id."""
        return uuid.uuid5(_EVENT_NAMESPACE, f"{entity_type.value}:{entity_id}:{sequence_key}")

    def fingerprint(self) -> str:
        """SHA-256 over entity, category and deltas.

        Two events describing the same change of the same entity share a
        fingerprint even when their sequence keys and timestamps differ.
        """
        payload = self.model_dump(
            mode="json",
            include={"entity_type", "entity_id", "category", "deltas"},
        )
        raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()
