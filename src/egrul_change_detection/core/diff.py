"""Diff engine.

Computes the complete, ordered list of field deltas between the previous and
current normalized snapshots of one entity.
"""

from __future__ import annotations

from egrul_change_detection.core.comparators import compare
from egrul_change_detection.core.fields import fields_for
from egrul_change_detection.core.models import FieldDelta, NormalizedSnapshot
from egrul_change_detection.errors import InvalidSnapshotError


def validate_snapshot(entity_id: str, snapshot: NormalizedSnapshot) -> None:
    """Check that a snapshot carries the identity of the entity it describes.

    Raises:
        InvalidSnapshotError: If the identity field is blank or names another
            entity.
    """
    if not snapshot.entity_id:
        raise InvalidSnapshotError(entity_id, "snapshot has no entity identifier")
    if snapshot.entity_id != entity_id:
        raise InvalidSnapshotError(
            entity_id,
            f"snapshot describes entity '{snapshot.entity_id}'",
        )


def diff(
    entity_id: str,
    previous: NormalizedSnapshot | None,
    current: NormalizedSnapshot,
) -> list[FieldDelta]:
    """Compute field deltas between two normalized snapshots of one entity.

    Fields are walked in the fixed category order of the entity type, so the
    result order does not depend on how the snapshots were built.

    Args:
        entity_id: OGRN / OGRNIP of the compared entity.
        previous: Last known snapshot, or None on first observation.
        current: Freshly fetched snapshot.

    Returns:
        The field deltas; empty when previous is None (baseline only) or the
        snapshots are equal on every tracked field.

    Raises:
        InvalidSnapshotError: If current lacks its identity field, or the
            snapshots describe different entities or entity types.
    """
    validate_snapshot(entity_id, current)
    if previous is None:
        return []
    if previous.entity_type is not current.entity_type:
        raise InvalidSnapshotError(
            entity_id,
            f"entity type changed from {previous.entity_type.value} to {current.entity_type.value}",
        )
    if previous.entity_id != current.entity_id:
        raise InvalidSnapshotError(
            entity_id,
            f"previous snapshot describes entity '{previous.entity_id}'",
        )

    deltas: list[FieldDelta] = []
    for spec in fields_for(current.entity_type):
        name = spec.field.value
        deltas.extend(compare(spec.field, getattr(previous, name), getattr(current, name)))
    return deltas
