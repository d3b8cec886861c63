"""Significance classification of change events.

A change is significant when downstream subscribers (watchlists,
notifications) should be alerted about it:

- status: leaving the active state for liquidation, reorganisation or
  termination
- founders: a founder joins or leaves, or a share moves by more than
  5 percentage points or across a 25 / 50 / 75 % control threshold
- address: region or city changes; moves inside one city are not significant
- capital: a change above 1 000 000 or above 50 %; a first capital counts
  only when it exceeds 1 000 000
- head and licenses: always significant
- identity, activity and branches: never significant
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Any

from egrul_change_detection.core.models import ChangeCategory, DeltaKind, FieldDelta
from egrul_change_detection.observability import get_logger

logger = get_logger(__name__)

SIGNIFICANT_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    "ДЕЙСТВУЮЩАЯ": frozenset(
        {"ЛИКВИДИРОВАНА", "В ПРОЦЕССЕ ЛИКВИДАЦИИ", "РЕОРГАНИЗУЕТСЯ", "ПРЕКРАЩЕНА"}
    ),
    "ДЕЙСТВУЮЩИЙ": frozenset({"ПРЕКРАТИЛ ДЕЯТЕЛЬНОСТЬ"}),
}

SHARE_CHANGE_THRESHOLD = Decimal(5)
CONTROL_THRESHOLDS: tuple[Decimal, ...] = (Decimal(25), Decimal(50), Decimal(75))
CAPITAL_ABSOLUTE_THRESHOLD = Decimal(1_000_000)
CAPITAL_RELATIVE_THRESHOLD = Decimal(50)

# Partial list, matched as substrings of the lower-cased full address.
REGION_KEYWORDS: tuple[str, ...] = (
    "москва",
    "санкт-петербург",
    "московская",
    "ленинградская",
    "новосибирская",
    "екатеринбург",
    "свердловская",
    "краснодарский",
    "ростовская",
    "нижегородская",
    "казань",
    "татарстан",
)

ALWAYS_SIGNIFICANT = frozenset({ChangeCategory.HEAD, ChangeCategory.LICENSES})
NEVER_SIGNIFICANT = frozenset(
    {ChangeCategory.IDENTITY, ChangeCategory.ACTIVITY, ChangeCategory.BRANCHES}
)


def _to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal(0)


def is_status_change_significant(old_status: str | None, new_status: str | None) -> bool:
    """Return True for transitions from an active status into a closing one."""
    targets = SIGNIFICANT_STATUS_TRANSITIONS.get(old_status or "")
    if targets is not None and new_status in targets:
        logger.debug("Status change is significant", old_status=old_status, new_status=new_status)
        return True
    return False


def is_share_change_significant(old_share: Decimal, new_share: Decimal) -> bool:
    """Return True when a founder share moves enough to matter."""
    if abs(new_share - old_share) > SHARE_CHANGE_THRESHOLD:
        return True
    for threshold in CONTROL_THRESHOLDS:
        if (old_share < threshold) != (new_share < threshold):
            logger.debug(
                "Share change crosses control threshold",
                old_share=str(old_share),
                new_share=str(new_share),
                threshold=str(threshold),
            )
            return True
    return False


def is_capital_change_significant(old_capital: Decimal, new_capital: Decimal) -> bool:
    """Return True for large absolute or relative capital changes."""
    if old_capital == 0:
        return new_capital > CAPITAL_ABSOLUTE_THRESHOLD
    change = abs(new_capital - old_capital)
    if change > CAPITAL_ABSOLUTE_THRESHOLD:
        return True
    percent_change = change / abs(old_capital) * 100
    if percent_change > CAPITAL_RELATIVE_THRESHOLD:
        logger.debug(
            "Capital change is significant",
            old_capital=str(old_capital),
            new_capital=str(new_capital),
            percent_change=str(percent_change),
        )
        return True
    return False


def extract_region(address: str) -> str:
    """Find a known region keyword in a free-text address, or ""."""
    lowered = address.lower()
    for region in REGION_KEYWORDS:
        if region in lowered:
            return region
    return ""


def extract_city(address: str) -> str:
    """Return the text after a "г." or "город" marker up to the next comma, or ""."""
    lowered = address.lower()
    for marker in ("г.", "город"):
        index = lowered.find(marker)
        if index != -1:
            return lowered[index + len(marker):].strip().split(",")[0].strip()
    return ""


def _address_part(address: dict[str, Any] | None, part: str) -> str:
    if not address:
        return ""
    structured = address.get(part)
    if structured:
        return str(structured).lower()
    full = address.get("full") or ""
    return extract_region(full) if part == "region" else extract_city(full)


def is_address_change_significant(
    old_address: dict[str, Any] | None,
    new_address: dict[str, Any] | None,
) -> bool:
    """Return True when the region or the city of an address changes.

    A side without a recognisable region or city never makes the change
    significant.
    """
    if old_address == new_address:
        return False
    for part in ("region", "city"):
        old_value = _address_part(old_address, part)
        new_value = _address_part(new_address, part)
        if old_value and new_value and old_value != new_value:
            logger.debug("Address change moves entity", part=part, old=old_value, new=new_value)
            return True
    return False


def _is_founder_delta_significant(delta: FieldDelta) -> bool:
    if delta.kind is not DeltaKind.MODIFIED:
        return True
    old_share = _to_decimal((delta.previous or {}).get("share_percent"))
    new_share = _to_decimal((delta.current or {}).get("share_percent"))
    return is_share_change_significant(old_share, new_share)


def _is_capital_delta_significant(delta: FieldDelta) -> bool:
    old_capital = _to_decimal((delta.previous or {}).get("amount"))
    new_capital = _to_decimal((delta.current or {}).get("amount"))
    return is_capital_change_significant(old_capital, new_capital)


def is_delta_significant(category: ChangeCategory, delta: FieldDelta) -> bool:
    """Classify one delta of the given category."""
    if category in ALWAYS_SIGNIFICANT:
        return True
    if category in NEVER_SIGNIFICANT:
        return False
    if category is ChangeCategory.STATUS:
        return is_status_change_significant(delta.previous, delta.current)
    if category is ChangeCategory.FOUNDERS:
        return _is_founder_delta_significant(delta)
    if category is ChangeCategory.ADDRESS:
        return is_address_change_significant(delta.previous, delta.current)
    if category is ChangeCategory.CAPITAL:
        return _is_capital_delta_significant(delta)
    return False


def is_event_significant(deltas: Iterable[tuple[ChangeCategory, FieldDelta]]) -> bool:
    """Return True when any delta of an event is significant.

    Args:
        deltas: Pairs of (category the delta belongs to, delta). A composite
            event passes the original category of each of its deltas.
    """
    return any(is_delta_significant(delta_category, delta) for delta_category, delta in deltas)
