"""Field comparators.

Three capabilities cover every tracked field:

- compare_scalar   - plain values (strings, codes, dates, counts)
- compare_optional - optional nested structures (address, head, capital)
- compare_set      - unordered collections diffed by identity key
                     (additional activity codes, founders)

Values carried in FieldDelta are JSON-compatible: nested models are dumped
to dicts, dates to ISO strings and decimals to strings. Equality is exact:
no case folding and no epsilon for numbers.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from egrul_change_detection.core.fields import FIELD_SPECS, Capability
from egrul_change_detection.core.models import DeltaKind, FieldDelta, FieldId, Founder


def to_delta_value(value: Any) -> Any:
    """Convert a snapshot value into the JSON-compatible form stored in deltas."""
    if value is None:
        return None
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def compare_scalar(field: FieldId, previous: Any, current: Any) -> FieldDelta | None:
    """Compare two plain values.

    Returns:
        A modified delta when the values differ, else None.
    """
    if previous == current:
        return None
    return FieldDelta(
        field=field,
        kind=DeltaKind.MODIFIED,
        previous=to_delta_value(previous),
        current=to_delta_value(current),
    )


def compare_optional(
    field: FieldId,
    previous: BaseModel | None,
    current: BaseModel | None,
) -> FieldDelta | None:
    """Compare two optional nested structures.

    Absent -> present and present -> absent are both reported as modified;
    a changed component inside a present structure is one modified delta for
    the whole structure.
    """
    if previous is None and current is None:
        return None
    if previous is not None and current is not None and previous == current:
        return None
    return FieldDelta(
        field=field,
        kind=DeltaKind.MODIFIED,
        previous=to_delta_value(previous),
        current=to_delta_value(current),
    )


def compare_set(
    field: FieldId,
    previous: Iterable[Any],
    current: Iterable[Any],
    key: Callable[[Any], str],
) -> list[FieldDelta]:
    """Diff two unordered collections by identity key.

    Args:
        field: The tracked set-valued field.
        previous: Elements of the previous snapshot.
        current: Elements of the current snapshot.
        key: Returns the identity key of an element.

    Returns:
        removed deltas, then added deltas, then modified deltas, each group
        sorted by identity key. Empty when the collections hold the same
        elements.
    """
    before = {key(item): item for item in previous}
    after = {key(item): item for item in current}

    removed = [
        FieldDelta(field=field, kind=DeltaKind.REMOVED, previous=to_delta_value(before[k]), item_key=k)
        for k in sorted(before.keys() - after.keys())
    ]
    added = [
        FieldDelta(field=field, kind=DeltaKind.ADDED, current=to_delta_value(after[k]), item_key=k)
        for k in sorted(after.keys() - before.keys())
    ]
    modified = [
        FieldDelta(
            field=field,
            kind=DeltaKind.MODIFIED,
            previous=to_delta_value(before[k]),
            current=to_delta_value(after[k]),
            item_key=k,
        )
        for k in sorted(before.keys() & after.keys())
        if before[k] != after[k]
    ]
    return removed + added + modified


def _activity_key(code: str) -> str:
    return code


def _founder_key(founder: Founder) -> str:
    return founder.identity_key


_SET_KEYS: dict[FieldId, Callable[[Any], str]] = {
    FieldId.ADDITIONAL_ACTIVITIES: _activity_key,
    FieldId.FOUNDERS: _founder_key,
}


def compare(field: FieldId, previous: Any, current: Any) -> list[FieldDelta]:
    """Compare one tracked field, dispatching on its capability.

    Args:
        field: The tracked field.
        previous: Previous value of the field.
        current: Current value of the field.

    Returns:
        Zero or more deltas. Scalar and optional fields yield at most one.
    """
    capability = FIELD_SPECS[field].capability
    if capability is Capability.SET:
        return compare_set(field, previous or (), current or (), _SET_KEYS[field])
    if capability is Capability.OPTIONAL:
        delta = compare_optional(field, previous, current)
    else:
        delta = compare_scalar(field, previous, current)
    return [delta] if delta is not None else []
