"""Change classifier and event builder.

Turns the field deltas of one comparison into ChangeEvents: one event per
non-empty change category, emitted in CATEGORY_ORDER with sequence keys from
the per-entity SequenceAllocator. In composite mode a single event carries
every delta of the comparison.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from egrul_change_detection.core.fields import CATEGORY_RANK, FIELD_ORDER, FIELD_SPECS
from egrul_change_detection.core.models import (
    ChangeCategory,
    ChangeEvent,
    DeltaKind,
    EntitySnapshot,
    EntityType,
    FieldDelta,
    FieldId,
)
from egrul_change_detection.core.sequence import SequenceAllocator
from egrul_change_detection.core.significance import is_event_significant

FIELD_LABELS: dict[FieldId, str] = {
    FieldId.INN: "INN",
    FieldId.KPP: "KPP",
    FieldId.FULL_NAME: "Full name",
    FieldId.SHORT_NAME: "Short name",
    FieldId.REGION_CODE: "Region code",
    FieldId.REGISTRATION_DATE: "Registration date",
    FieldId.STATUS: "Status",
    FieldId.ADDRESS: "Address",
    FieldId.MAIN_ACTIVITY: "Main activity",
    FieldId.ADDITIONAL_ACTIVITIES: "Additional activity",
    FieldId.FOUNDERS: "Founder",
    FieldId.CAPITAL: "Capital",
    FieldId.HEAD: "Head",
    FieldId.LICENSES_COUNT: "Licenses",
    FieldId.BRANCHES_COUNT: "Branches",
}

# Count fields are worded by direction: (grown, shrunk).
COUNT_DIRECTIONS: dict[FieldId, tuple[str, str]] = {
    FieldId.LICENSES_COUNT: ("granted", "revoked"),
    FieldId.BRANCHES_COUNT: ("opened", "closed"),
}


def category_of(delta: FieldDelta) -> ChangeCategory:
    """Return the change category a delta rolls up into."""
    return FIELD_SPECS[delta.field].category


def _delta_sort_key(delta: FieldDelta) -> tuple[int, str, str]:
    return FIELD_ORDER[delta.field], delta.item_key or "", delta.kind.value


def _render_value(value: Any) -> str:
    if value is None:
        return "(none)"
    if isinstance(value, dict):
        for key in ("full", "full_name", "amount"):
            if value.get(key):
                rendered = str(value[key])
                if key == "amount" and value.get("currency"):
                    rendered = f"{rendered} {value['currency']}"
                return rendered
        return ", ".join(f"{k}={v}" for k, v in sorted(value.items()) if v is not None)
    return str(value)


def _count_direction(delta: FieldDelta) -> str | None:
    words = COUNT_DIRECTIONS.get(delta.field)
    if words is None or not isinstance(delta.previous, int) or not isinstance(delta.current, int):
        return None
    grown, shrunk = words
    return grown if delta.current > delta.previous else shrunk


def describe_delta(delta: FieldDelta) -> str:
    """Human-readable one-line summary of a delta."""
    label = FIELD_LABELS[delta.field]
    if delta.kind is DeltaKind.ADDED:
        return f"{label} added: {_render_value(delta.current)}"
    if delta.kind is DeltaKind.REMOVED:
        return f"{label} removed: {_render_value(delta.previous)}"
    if delta.item_key is not None:
        return f"{label} changed: {_render_value(delta.previous)} → {_render_value(delta.current)}"
    direction = _count_direction(delta)
    if direction is not None:
        return f"{label} {direction}: {delta.previous} → {delta.current}"
    return f"{label}: {_render_value(delta.previous)} → {_render_value(delta.current)}"


def group_by_category(deltas: Iterable[FieldDelta]) -> list[tuple[ChangeCategory, list[FieldDelta]]]:
    """Group deltas by category in CATEGORY_ORDER, each group in field order.

    The result does not depend on the order of the input deltas.
    """
    groups: dict[ChangeCategory, list[FieldDelta]] = {}
    for delta in deltas:
        groups.setdefault(category_of(delta), []).append(delta)
    return [
        (category, sorted(groups[category], key=_delta_sort_key))
        for category in sorted(groups, key=CATEGORY_RANK.__getitem__)
    ]


def build_events(
    entity_type: EntityType,
    entity_id: str,
    deltas: Iterable[FieldDelta],
    observed_at: datetime,
    allocator: SequenceAllocator,
    *,
    snapshot: EntitySnapshot | None = None,
    composite: bool = False,
) -> list[ChangeEvent]:
    """Build change events from the deltas of one comparison.

    Advances the allocator by the number of events emitted; nothing is
    allocated when there are no deltas.

    Args:
        entity_type: company or entrepreneur.
        entity_id: OGRN / OGRNIP.
        deltas: Field deltas from diff(), in any order.
        observed_at: When the comparison ran.
        allocator: Per-entity sequence allocator.
        snapshot: Current snapshot, used for the name / INN / region context
            carried on each event.
        composite: Emit one COMPOSITE event instead of one per category.

    Returns:
        Events ordered by sequence key, which follows CATEGORY_ORDER.
    """
    groups = group_by_category(deltas)
    if not groups:
        return []

    if composite:
        ordered = [delta for _, group in groups for delta in group]
        groups = [(ChangeCategory.COMPOSITE, ordered)]

    keys = allocator.allocate(entity_id, len(groups))
    context = {
        "entity_name": snapshot.display_name if snapshot is not None else None,
        "inn": snapshot.inn if snapshot is not None else None,
        "region_code": snapshot.region_code if snapshot is not None else None,
    }

    events: list[ChangeEvent] = []
    for sequence_key, (category, group) in zip(keys, groups):
        events.append(
            ChangeEvent(
                event_id=ChangeEvent.make_event_id(entity_type, entity_id, sequence_key),
                entity_type=entity_type,
                entity_id=entity_id,
                category=category,
                deltas=tuple(group),
                observed_at=observed_at,
                sequence_key=sequence_key,
                is_significant=is_event_significant((category_of(d), d) for d in group),
                description="; ".join(describe_delta(d) for d in group),
                **context,
            )
        )
    return events
