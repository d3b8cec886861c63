"""Registry of tracked snapshot fields.

Each tracked field declares the change category it rolls up into, the
comparison capability it needs, and which entity types carry it. The tuple
order of TRACKED_FIELDS is the canonical walk order of the diff engine and
follows CATEGORY_ORDER.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from egrul_change_detection.core.models import (
    CATEGORY_ORDER,
    ChangeCategory,
    EntityType,
    FieldId,
)


class Capability(str, Enum):
    """How a field is compared."""

    SCALAR = "scalar"
    OPTIONAL = "optional"
    SET = "set"


_BOTH = frozenset({EntityType.COMPANY, EntityType.ENTREPRENEUR})
_COMPANY_ONLY = frozenset({EntityType.COMPANY})


@dataclass(frozen=True)
class TrackedField:
    """Declaration of one tracked field."""

    field: FieldId
    category: ChangeCategory
    capability: Capability
    entity_types: frozenset[EntityType] = _BOTH


TRACKED_FIELDS: tuple[TrackedField, ...] = (
    TrackedField(FieldId.INN, ChangeCategory.IDENTITY, Capability.SCALAR),
    TrackedField(FieldId.KPP, ChangeCategory.IDENTITY, Capability.SCALAR, _COMPANY_ONLY),
    TrackedField(FieldId.FULL_NAME, ChangeCategory.IDENTITY, Capability.SCALAR),
    TrackedField(FieldId.SHORT_NAME, ChangeCategory.IDENTITY, Capability.SCALAR, _COMPANY_ONLY),
    TrackedField(FieldId.REGION_CODE, ChangeCategory.IDENTITY, Capability.SCALAR),
    TrackedField(FieldId.REGISTRATION_DATE, ChangeCategory.IDENTITY, Capability.SCALAR),
    TrackedField(FieldId.STATUS, ChangeCategory.STATUS, Capability.SCALAR),
    TrackedField(FieldId.ADDRESS, ChangeCategory.ADDRESS, Capability.OPTIONAL),
    TrackedField(FieldId.MAIN_ACTIVITY, ChangeCategory.ACTIVITY, Capability.SCALAR),
    TrackedField(FieldId.ADDITIONAL_ACTIVITIES, ChangeCategory.ACTIVITY, Capability.SET),
    TrackedField(FieldId.FOUNDERS, ChangeCategory.FOUNDERS, Capability.SET, _COMPANY_ONLY),
    TrackedField(FieldId.CAPITAL, ChangeCategory.CAPITAL, Capability.OPTIONAL, _COMPANY_ONLY),
    TrackedField(FieldId.HEAD, ChangeCategory.HEAD, Capability.OPTIONAL, _COMPANY_ONLY),
    TrackedField(FieldId.LICENSES_COUNT, ChangeCategory.LICENSES, Capability.SCALAR),
    TrackedField(FieldId.BRANCHES_COUNT, ChangeCategory.BRANCHES, Capability.SCALAR, _COMPANY_ONLY),
)

FIELD_SPECS: dict[FieldId, TrackedField] = {spec.field: spec for spec in TRACKED_FIELDS}

FIELD_ORDER: dict[FieldId, int] = {spec.field: index for index, spec in enumerate(TRACKED_FIELDS)}

CATEGORY_RANK: dict[ChangeCategory, int] = {
    category: index for index, category in enumerate(CATEGORY_ORDER)
}


def fields_for(entity_type: EntityType) -> tuple[TrackedField, ...]:
    """Return the tracked fields that apply to an entity type, in walk order."""
    return tuple(spec for spec in TRACKED_FIELDS if entity_type in spec.entity_types)
