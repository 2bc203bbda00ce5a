"""
reference_repository.py
-----------------------
ReferenceIndex: índice de identificadores hasheados → cuentas.

Un teléfono, email o dispositivo (siempre como SHA-256) ligado a dos o
más cuentas distintas es la señal principal de fraude multi-cuenta.

Principios de diseño:
  - register_reference es idempotente: INSERT ... ON CONFLICT DO NOTHING
    sobre la clave única (reference_type, value_hash, account_id).
    Registrar dos veces el mismo triple no es un error ni duplica conteos.
  - Los vínculos son inmutables una vez creados.
  - Hashes desconocidos → lista vacía, nunca excepción.
"""

import logging
from typing import Optional

from sqlalchemy import and_, distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from motor_confianza.core.exceptions import StorageException
from motor_confianza.domain.models import Clock, ReferenceLookup, as_utc, utcnow
from motor_confianza.domain.schemas import (
    AccountQuery,
    CrossLookupResult,
    ReferenceInput,
    ReferenceLink,
    ReferenceQuery,
    ReferenceType,
    validate_or_raise,
)
from motor_confianza.infrastructure.database.session import Database

logger = logging.getLogger(__name__)

MIN_CROSS_LOOKUP_ACCOUNTS = 2

_UNIQUE_KEY = ["reference_type", "value_hash", "account_id"]


class ReferenceIndex:

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    # ------------------------------------------------------------------ #
    #  Escritura                                                         #
    # ------------------------------------------------------------------ #

    async def register_reference(
        self,
        account_id:     str,
        reference_type: str | ReferenceType,
        value_hash:     str,
        session:        Optional[AsyncSession] = None,
    ) -> bool:
        """
        Vincula el hash a la cuenta. Retorna True si el vínculo es nuevo,
        False si ya existía (no-op). Con `session` el INSERT entra en la
        transacción del llamador.
        """
        ref = validate_or_raise(
            ReferenceInput,
            account_id     = account_id,
            reference_type = reference_type,
            value_hash     = value_hash,
        )
        values = {
            "reference_type": ref.reference_type.value,
            "value_hash":     ref.value_hash,
            "account_id":     ref.account_id,
            "created_at":     self.clock(),
        }

        try:
            async with self.db.join(session) as tx:
                inserted = await self.db.insert_ignore(
                    tx, ReferenceLookup, values, _UNIQUE_KEY
                )
        except SQLAlchemyError as exc:
            logger.error(
                f"[ReferenceIndex] Error registrando {ref.reference_type.value} "
                f"hash={ref.value_hash[:12]}… account={ref.account_id}: {exc}"
            )
            raise StorageException() from exc

        if inserted:
            logger.info(
                f"[ReferenceIndex] Nuevo vínculo {ref.reference_type.value} "
                f"hash={ref.value_hash[:12]}… account={ref.account_id}"
            )
        else:
            logger.debug(
                f"[ReferenceIndex] Vínculo ya existente, ignorado "
                f"account={ref.account_id}"
            )
        return inserted

    # ------------------------------------------------------------------ #
    #  Lectura                                                           #
    # ------------------------------------------------------------------ #

    async def lookup_by_reference(
        self,
        reference_type: str | ReferenceType,
        value_hash:     str,
    ) -> list[str]:
        """Cuentas ligadas al hash, en orden de primer registro."""
        ref_type = validate_or_raise(
            ReferenceQuery,
            reference_type = reference_type,
            value_hash     = value_hash,
        ).reference_type

        stmt = (
            select(ReferenceLookup.account_id)
            .where(
                ReferenceLookup.reference_type == ref_type.value,
                ReferenceLookup.value_hash == value_hash,
            )
            .order_by(ReferenceLookup.created_at.asc(), ReferenceLookup.id.asc())
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        # La clave única ya garantiza una fila por cuenta
        return list(dict.fromkeys(rows))

    async def get_references_for_account(self, account_id: str) -> list[ReferenceLink]:
        validate_or_raise(AccountQuery, account_id=account_id)

        stmt = (
            select(ReferenceLookup)
            .where(ReferenceLookup.account_id == account_id)
            .order_by(ReferenceLookup.created_at.asc(), ReferenceLookup.id.asc())
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [
            ReferenceLink(
                reference_type = ReferenceType(row.reference_type),
                value_hash     = row.value_hash,
                account_id     = row.account_id,
                created_at     = as_utc(row.created_at),
            )
            for row in rows
        ]

    async def cross_lookup(
        self,
        reference_type: Optional[str | ReferenceType] = None,
        min_accounts:   int = MIN_CROSS_LOOKUP_ACCOUNTS,
    ) -> list[CrossLookupResult]:
        """
        Agrupa (tipo, hash) por número de cuentas distintas y retorna solo
        los grupos con al menos min_accounts (nunca menos de 2).

        Orden: más cuentas primero, luego tipo y hash para que el resultado
        sea estable entre llamadas.
        """
        min_accounts = max(MIN_CROSS_LOOKUP_ACCOUNTS, int(min_accounts))

        account_count = func.count(distinct(ReferenceLookup.account_id))
        grouped = select(
            ReferenceLookup.reference_type,
            ReferenceLookup.value_hash,
            account_count.label("cnt"),
        )
        if reference_type is not None:
            ref_type = validate_or_raise(
                ReferenceQuery, reference_type=reference_type
            ).reference_type
            grouped = grouped.where(ReferenceLookup.reference_type == ref_type.value)
        grouped = grouped.group_by(
            ReferenceLookup.reference_type, ReferenceLookup.value_hash
        ).having(account_count >= min_accounts)

        groups_sq = grouped.subquery()
        stmt = (
            select(
                ReferenceLookup.reference_type,
                ReferenceLookup.value_hash,
                ReferenceLookup.account_id,
                groups_sq.c.cnt,
            )
            .join(
                groups_sq,
                and_(
                    ReferenceLookup.reference_type == groups_sq.c.reference_type,
                    ReferenceLookup.value_hash == groups_sq.c.value_hash,
                ),
            )
            .order_by(
                groups_sq.c.cnt.desc(),
                ReferenceLookup.reference_type.asc(),
                ReferenceLookup.value_hash.asc(),
                ReferenceLookup.created_at.asc(),
                ReferenceLookup.id.asc(),
            )
        )

        async with self.db.session() as session:
            rows = (await session.execute(stmt)).all()

        results: dict[tuple[str, str], CrossLookupResult] = {}
        for ref_type_value, value_hash, account_id, count in rows:
            key = (ref_type_value, value_hash)
            if key not in results:
                results[key] = CrossLookupResult(
                    reference_type = ReferenceType(ref_type_value),
                    value_hash     = value_hash,
                    account_ids    = [],
                    count          = int(count),
                )
            results[key].account_ids.append(account_id)

        if results:
            logger.info(
                f"[ReferenceIndex] cross_lookup min_accounts={min_accounts} "
                f"grupos={len(results)}"
            )
        return list(results.values())

    async def count_shared_references(self, account_id: str) -> int:
        """
        Cuántas referencias de esta cuenta están ligadas también a otra
        cuenta distinta. Alimenta el riesgo asociado del scoring.
        """
        mine = aliased(ReferenceLookup)
        other = aliased(ReferenceLookup)
        stmt = (
            select(func.count(distinct(mine.id)))
            .join(
                other,
                and_(
                    other.reference_type == mine.reference_type,
                    other.value_hash == mine.value_hash,
                    other.account_id != mine.account_id,
                ),
            )
            .where(mine.account_id == account_id)
        )
        async with self.db.session() as session:
            return int((await session.execute(stmt)).scalar_one())

