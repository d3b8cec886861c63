"""Registry entity source.

Reads the current state of companies and entrepreneurs from the registry
tables populated by the ingestion pipeline and assembles EntitySnapshots.
Only the latest row per OGRN / OGRNIP (by updated_at) is used. Related data
(founders, additional OKVED codes, license and branch counts) is loaded with
one query per table for the whole batch.

The registry database is read only; its schema is owned elsewhere, so plain
SQL is used instead of ORM mappings.
"""

from collections.abc import Mapping, Sequence
from decimal import Decimal
from typing import Any

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from egrul_change_detection.core.models import (
    Address,
    EntitySnapshot,
    EntityType,
    Founder,
    Money,
    Person,
)
from egrul_change_detection.errors import DependencyError
from egrul_change_detection.observability import get_logger

logger = get_logger(__name__)

_COMPANIES_SQL = text(
    """
    SELECT DISTINCT ON (ogrn)
        ogrn, inn, kpp, full_name, short_name, region_code, status,
        head_last_name, head_first_name, head_middle_name, head_inn, head_position,
        full_address, postal_code, region, city, street, house,
        capital_amount, capital_currency, okved_main_code,
        registration_date, extract_date
    FROM companies
    WHERE ogrn IN :ids
    ORDER BY ogrn, updated_at DESC
    """
).bindparams(bindparam("ids", expanding=True))

_COMPANY_FOUNDERS_SQL = text(
    """
    SELECT company_ogrn, founder_name, founder_inn, founder_ogrn,
           share_nominal_value, share_percent
    FROM founders
    WHERE company_ogrn IN :ids
    """
).bindparams(bindparam("ids", expanding=True))

_COMPANY_OKVED_SQL = text(
    """
    SELECT DISTINCT ogrn AS entity_id, okved_code
    FROM companies_okved_additional
    WHERE ogrn IN :ids
    """
).bindparams(bindparam("ids", expanding=True))

_COMPANY_LICENSES_SQL = text(
    """
    SELECT entity_ogrn AS entity_id, COUNT(DISTINCT license_number) AS total
    FROM licenses
    WHERE entity_type = 'company' AND entity_ogrn IN :ids
    GROUP BY entity_ogrn
    """
).bindparams(bindparam("ids", expanding=True))

_COMPANY_BRANCHES_SQL = text(
    """
    SELECT company_ogrn AS entity_id, COUNT(DISTINCT branch_name) AS total
    FROM branches
    WHERE company_ogrn IN :ids
    GROUP BY company_ogrn
    """
).bindparams(bindparam("ids", expanding=True))

_ENTREPRENEURS_SQL = text(
    """
    SELECT DISTINCT ON (ogrnip)
        ogrnip, inn,
        concat_ws(' ', last_name, first_name, middle_name) AS full_name,
        region_code, status,
        full_address, postal_code, region, city, street, house,
        okved_main_code, registration_date, extract_date
    FROM entrepreneurs
    WHERE ogrnip IN :ids
    ORDER BY ogrnip, updated_at DESC
    """
).bindparams(bindparam("ids", expanding=True))

_ENTREPRENEUR_OKVED_SQL = text(
    """
    SELECT DISTINCT entrepreneur_ogrnip AS entity_id, okved_code
    FROM entrepreneur_okved_extra
    WHERE entrepreneur_ogrnip IN :ids
    """
).bindparams(bindparam("ids", expanding=True))

_ENTREPRENEUR_LICENSES_SQL = text(
    """
    SELECT entrepreneur_ogrnip AS entity_id, COUNT(DISTINCT license_number) AS total
    FROM licenses
    WHERE entrepreneur_ogrnip IN :ids
    GROUP BY entrepreneur_ogrnip
    """
).bindparams(bindparam("ids", expanding=True))


def _address(row: Mapping[str, Any]) -> Address:
    return Address(
        full=row["full_address"],
        postal_code=row["postal_code"],
        region=row["region"],
        city=row["city"],
        street=row["street"],
        house=row["house"],
    )


def _head(row: Mapping[str, Any]) -> Person:
    parts = (row["head_last_name"], row["head_first_name"], row["head_middle_name"])
    return Person(
        full_name=" ".join(part for part in parts if part) or None,
        inn=row["head_inn"],
        position=row["head_position"],
    )


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _founder(row: Mapping[str, Any]) -> Founder:
    return Founder(
        full_name=row["founder_name"],
        inn=row["founder_inn"],
        ogrn=row["founder_ogrn"],
        share_amount=_decimal(row["share_nominal_value"]),
        share_percent=_decimal(row["share_percent"]),
    )


class SqlEntitySource:
    """IEntitySource over the registry database.

    Args:
        session_factory: Session factory of the registry database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def fetch_current(self, entity_type: EntityType, entity_id: str) -> EntitySnapshot | None:
        """Fetch the current snapshot of one entity, or None when unknown.

        Raises:
            DependencyError: If the registry query fails.
        """
        snapshots = await self.fetch_batch(entity_type, [entity_id])
        return snapshots[0] if snapshots else None

    async def fetch_batch(self, entity_type: EntityType, entity_ids: Sequence[str]) -> list[EntitySnapshot]:
        """Fetch current snapshots; unknown ids are omitted.

        Raises:
            DependencyError: If a registry query fails.
        """
        if not entity_ids:
            return []
        ids = list(entity_ids)
        try:
            async with self._session_factory() as session:
                if entity_type is EntityType.COMPANY:
                    snapshots = await self._fetch_companies(session, ids)
                else:
                    snapshots = await self._fetch_entrepreneurs(session, ids)
        except SQLAlchemyError as exc:
            logger.error("Registry query failed", entity_type=entity_type.value, count=len(ids), error=str(exc))
            raise DependencyError("entity_source", str(exc)) from exc

        logger.debug(
            "Fetched registry snapshots",
            entity_type=entity_type.value,
            requested=len(ids),
            found=len(snapshots),
        )
        return snapshots

    @staticmethod
    async def _rows(session: AsyncSession, statement: Any, ids: list[str]) -> Sequence[Mapping[str, Any]]:
        result = await session.execute(statement, {"ids": ids})
        return result.mappings().all()

    async def _counts(self, session: AsyncSession, statement: Any, ids: list[str]) -> dict[str, int]:
        return {row["entity_id"]: int(row["total"]) for row in await self._rows(session, statement, ids)}

    async def _okved(self, session: AsyncSession, statement: Any, ids: list[str]) -> dict[str, list[str]]:
        codes: dict[str, list[str]] = {}
        for row in await self._rows(session, statement, ids):
            codes.setdefault(row["entity_id"], []).append(row["okved_code"])
        return codes

    async def _fetch_companies(self, session: AsyncSession, ids: list[str]) -> list[EntitySnapshot]:
        rows = await self._rows(session, _COMPANIES_SQL, ids)
        if not rows:
            return []
        found = [row["ogrn"] for row in rows]

        founders: dict[str, list[Founder]] = {}
        for row in await self._rows(session, _COMPANY_FOUNDERS_SQL, found):
            founders.setdefault(row["company_ogrn"], []).append(_founder(row))
        okved = await self._okved(session, _COMPANY_OKVED_SQL, found)
        licenses = await self._counts(session, _COMPANY_LICENSES_SQL, found)
        branches = await self._counts(session, _COMPANY_BRANCHES_SQL, found)

        return [
            EntitySnapshot(
                entity_type=EntityType.COMPANY,
                entity_id=row["ogrn"],
                inn=row["inn"],
                kpp=row["kpp"],
                full_name=row["full_name"],
                short_name=row["short_name"],
                region_code=row["region_code"],
                registration_date=row["registration_date"],
                status=row["status"],
                address=_address(row),
                main_activity=row["okved_main_code"],
                additional_activities=tuple(okved.get(row["ogrn"], ())),
                founders=tuple(founders.get(row["ogrn"], ())),
                head=_head(row),
                capital=Money(amount=_decimal(row["capital_amount"]), currency=row["capital_currency"]),
                licenses_count=licenses.get(row["ogrn"], 0),
                branches_count=branches.get(row["ogrn"], 0),
                extract_date=row["extract_date"],
            )
            for row in rows
        ]

    async def _fetch_entrepreneurs(self, session: AsyncSession, ids: list[str]) -> list[EntitySnapshot]:
        rows = await self._rows(session, _ENTREPRENEURS_SQL, ids)
        if not rows:
            return []
        found = [row["ogrnip"] for row in rows]
        okved = await self._okved(session, _ENTREPRENEUR_OKVED_SQL, found)
        licenses = await self._counts(session, _ENTREPRENEUR_LICENSES_SQL, found)

        return [
            EntitySnapshot(
                entity_type=EntityType.ENTREPRENEUR,
                entity_id=row["ogrnip"],
                inn=row["inn"],
                full_name=row["full_name"],
                region_code=row["region_code"],
                registration_date=row["registration_date"],
                status=row["status"],
                address=_address(row),
                main_activity=row["okved_main_code"],
                additional_activities=tuple(okved.get(row["ogrnip"], ())),
                licenses_count=licenses.get(row["ogrnip"], 0),
                extract_date=row["extract_date"],
            )
            for row in rows
        ]
