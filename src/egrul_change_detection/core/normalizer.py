"""Snapshot normalizer.

normalize() turns a raw EntitySnapshot into the canonical NormalizedSnapshot
the diff engine compares:

- free text (names, address parts, status) is trimmed and inner whitespace
  collapsed to single spaces; case is preserved
- identifiers and codes are trimmed
- empty strings become None, and nested structures whose components are all
  absent become None
- exact decimals get one canonical representation (30.00 -> 30)
- additional activity codes are deduplicated and sorted
- founders are sorted and deduplicated by identity key

The transform is pure and idempotent: normalize(normalize(x)) == normalize(x).
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from decimal import Decimal

from egrul_change_detection.core.models import (
    Address,
    EntitySnapshot,
    Founder,
    Money,
    NormalizedSnapshot,
    Person,
)


def clean_text(value: str | None) -> str | None:
    """Trim and collapse whitespace; blank becomes None."""
    if value is None:
        return None
    cleaned = " ".join(value.split())
    return cleaned or None


def clean_code(value: str | None) -> str | None:
    """Trim an identifier or classification code; blank becomes None."""
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


def canonical_decimal(value: Decimal | None) -> Decimal | None:
    """Give equal decimals one representation without changing their value."""
    if value is None:
        return None
    if value == value.to_integral_value():
        return value.quantize(Decimal(1))
    return value.normalize()


def _normalize_address(address: Address | None) -> Address | None:
    if address is None:
        return None
    normalized = Address(
        full=clean_text(address.full),
        postal_code=clean_code(address.postal_code),
        region=clean_text(address.region),
        city=clean_text(address.city),
        street=clean_text(address.street),
        house=clean_text(address.house),
    )
    return None if normalized.is_empty() else normalized


def _normalize_money(money: Money | None) -> Money | None:
    if money is None:
        return None
    amount = canonical_decimal(money.amount)
    currency = clean_code(money.currency)
    if amount is None and currency is None:
        return None
    return Money(amount=amount, currency=currency)


def _normalize_person(person: Person | None) -> Person | None:
    if person is None:
        return None
    normalized = Person(
        full_name=clean_text(person.full_name),
        inn=clean_code(person.inn),
        position=clean_text(person.position),
    )
    if normalized.full_name is None and normalized.inn is None and normalized.position is None:
        return None
    return normalized


def _normalize_founder(founder: Founder) -> Founder | None:
    normalized = Founder(
        full_name=clean_text(founder.full_name),
        inn=clean_code(founder.inn),
        ogrn=clean_code(founder.ogrn),
        share_amount=canonical_decimal(founder.share_amount),
        share_percent=canonical_decimal(founder.share_percent),
    )
    if normalized.full_name is None and normalized.inn is None and normalized.ogrn is None:
        return None
    return normalized


def _founder_sort_key(founder: Founder) -> tuple[str, str]:
    return founder.identity_key, json.dumps(founder.model_dump(mode="json"), sort_keys=True)


def normalize_activities(codes: Iterable[str]) -> tuple[str, ...]:
    """Deduplicate and sort activity codes, dropping blanks."""
    cleaned = {code for code in (clean_code(raw) for raw in codes) if code is not None}
    return tuple(sorted(cleaned))


def normalize_founders(founders: Iterable[Founder]) -> tuple[Founder, ...]:
    """Sort founders by identity key and keep one founder per key.

    When the source repeats a key, the lowest-sorting record wins so the
    choice does not depend on input order.
    """
    normalized = [f for f in (_normalize_founder(raw) for raw in founders) if f is not None]
    normalized.sort(key=_founder_sort_key)
    unique: list[Founder] = []
    seen: set[str] = set()
    for founder in normalized:
        if founder.identity_key in seen:
            continue
        seen.add(founder.identity_key)
        unique.append(founder)
    return tuple(unique)


def normalize(snapshot: EntitySnapshot) -> NormalizedSnapshot:
    """Return the canonical form of a snapshot.

    Args:
        snapshot: Raw snapshot from the entity source, or an already
            normalized snapshot (the result is then equal to the input).

    Returns:
        A new NormalizedSnapshot; the input is never modified.
    """
    return NormalizedSnapshot(
        entity_type=snapshot.entity_type,
        entity_id=(snapshot.entity_id or "").strip(),
        inn=clean_code(snapshot.inn),
        kpp=clean_code(snapshot.kpp),
        full_name=clean_text(snapshot.full_name),
        short_name=clean_text(snapshot.short_name),
        region_code=clean_code(snapshot.region_code),
        registration_date=snapshot.registration_date,
        status=clean_text(snapshot.status),
        address=_normalize_address(snapshot.address),
        main_activity=clean_code(snapshot.main_activity),
        additional_activities=normalize_activities(snapshot.additional_activities),
        founders=normalize_founders(snapshot.founders),
        head=_normalize_person(snapshot.head),
        capital=_normalize_money(snapshot.capital),
        licenses_count=snapshot.licenses_count,
        branches_count=snapshot.branches_count,
        extract_date=snapshot.extract_date,
    )
