"""
trust_profile_repository.py
---------------------------
Persistencia del perfil de confianza y de los flags de riesgo.

El perfil se crea de forma perezosa (INSERT ... ON CONFLICT DO NOTHING)
en la primera escritura o scoring de la cuenta. Los contadores se mueven
siempre con UPDATE atómico `col = col + n` dentro de la misma transacción
corta, así dos pagos concurrentes nunca se pisan.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from motor_confianza.core.exceptions import StorageException
from motor_confianza.domain.models import (
    Clock,
    RiskFlagRecord,
    TrustProfileRecord,
    as_utc,
    to_utc,
    utcnow,
)
from motor_confianza.domain.schemas import (
    AccountQuery,
    FlagSeverity,
    PaymentInput,
    RiskFlag,
    RiskFlagInput,
    TrustProfile,
    TrustTier,
    validate_or_raise,
)
from motor_confianza.infrastructure.database.session import Database

logger = logging.getLogger(__name__)

MAX_RISK_POINTS = 100.0

# Los UPDATE masivos no tocan objetos cargados en la sesión
_NO_SYNC = {"synchronize_session": False}


def _to_flag(row: RiskFlagRecord) -> RiskFlag:
    return RiskFlag(
        id          = row.id,
        account_id  = row.account_id,
        reason      = row.reason,
        severity    = FlagSeverity(row.severity),
        created_at  = as_utc(row.created_at),
        resolved_at = as_utc(row.resolved_at),
    )


class TrustProfileRepository:

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self.clock = clock

    async def _ensure(self, session: AsyncSession, account_id: str) -> None:
        now = self.clock()
        created = await self.db.insert_ignore(
            session,
            TrustProfileRecord,
            {
                "account_id":        account_id,
                "score":             0.0,
                "tier":              TrustTier.UNRANKED.value,
                "components":        {},
                "total_spent_cents": 0,
                "transactions":      0,
                "successes":         0,
                "failures":          0,
                "fraud_risk_points": 0.0,
                "created_at":        now,
                "updated_at":        now,
            },
            ["account_id"],
        )
        if created:
            logger.info(f"[TrustProfile] Perfil creado account={account_id}")

    # ------------------------------------------------------------------ #
    #  Lectura                                                           #
    # ------------------------------------------------------------------ #

    async def get(self, account_id: str) -> Optional[TrustProfile]:
        """Perfil con todos sus flags, o None si la cuenta nunca se tocó."""
        validate_or_raise(AccountQuery, account_id=account_id)

        async with self.db.session() as session:
            row = await session.get(TrustProfileRecord, account_id)
            if row is None:
                return None
            flags = (
                await session.execute(
                    select(RiskFlagRecord)
                    .where(RiskFlagRecord.account_id == account_id)
                    .order_by(RiskFlagRecord.created_at.asc(), RiskFlagRecord.id.asc())
                )
            ).scalars().all()

        return TrustProfile(
            account_id        = row.account_id,
            score             = row.score,
            tier              = TrustTier(row.tier),
            components        = dict(row.components or {}),
            total_spent_cents = row.total_spent_cents,
            transactions      = row.transactions,
            successes         = row.successes,
            failures          = row.failures,
            fraud_risk_points = row.fraud_risk_points,
            risk_flags        = [_to_flag(f) for f in flags],
            created_at        = as_utc(row.created_at),
            updated_at        = as_utc(row.updated_at),
            last_scored_at    = as_utc(row.last_scored_at),
        )

    async def list_flags(
        self,
        account_id:       str,
        include_resolved: bool = True,
        since:            Optional[datetime] = None,
    ) -> list[RiskFlag]:
        validate_or_raise(AccountQuery, account_id=account_id)

        stmt = select(RiskFlagRecord).where(RiskFlagRecord.account_id == account_id)
        if not include_resolved:
            stmt = stmt.where(RiskFlagRecord.resolved_at.is_(None))
        if since is not None:
            stmt = stmt.where(RiskFlagRecord.created_at >= to_utc(since))
        stmt = stmt.order_by(RiskFlagRecord.created_at.asc(), RiskFlagRecord.id.asc())

        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_to_flag(row) for row in rows]

    # ------------------------------------------------------------------ #
    #  Escritura                                                         #
    # ------------------------------------------------------------------ #

    async def ensure_profile(self, account_id: str) -> None:
        validate_or_raise(AccountQuery, account_id=account_id)
        try:
            async with self.db.transaction() as session:
                await self._ensure(session, account_id)
        except SQLAlchemyError as exc:
            logger.error(f"[TrustProfile] Error creando perfil account={account_id}: {exc}")
            raise StorageException() from exc

    async def record_payment_success(
        self,
        account_id:   str,
        amount_cents: int,
        session:      Optional[AsyncSession] = None,
    ) -> None:
        data = validate_or_raise(
            PaymentInput, account_id=account_id, amount_cents=amount_cents
        )
        stmt = (
            update(TrustProfileRecord)
            .where(TrustProfileRecord.account_id == data.account_id)
            .values(
                total_spent_cents = TrustProfileRecord.total_spent_cents + data.amount_cents,
                transactions      = TrustProfileRecord.transactions + 1,
                successes         = TrustProfileRecord.successes + 1,
                updated_at        = self.clock(),
            )
        )
        await self._apply(data.account_id, stmt, "pago exitoso", session)

    async def record_payment_failure(
        self, account_id: str, session: Optional[AsyncSession] = None
    ) -> None:
        data = validate_or_raise(AccountQuery, account_id=account_id)
        stmt = (
            update(TrustProfileRecord)
            .where(TrustProfileRecord.account_id == data.account_id)
            .values(
                transactions = TrustProfileRecord.transactions + 1,
                failures     = TrustProfileRecord.failures + 1,
                updated_at   = self.clock(),
            )
        )
        await self._apply(data.account_id, stmt, "pago fallido", session)

    async def add_flag(
        self,
        account_id: str,
        reason:     str,
        severity:   str | FlagSeverity,
        increment:  float,
        now:        Optional[datetime] = None,
        session:    Optional[AsyncSession] = None,
    ) -> RiskFlag:
        """
        Inserta el flag y suma `increment` a fraud_risk_points con tope en
        100, todo en la misma transacción (la del llamador si pasa `session`).
        """
        data = validate_or_raise(
            RiskFlagInput, account_id=account_id, reason=reason, severity=severity
        )
        new_points = TrustProfileRecord.fraud_risk_points + increment
        bump = (
            update(TrustProfileRecord)
            .where(TrustProfileRecord.account_id == data.account_id)
            .values(
                fraud_risk_points = case(
                    (new_points > MAX_RISK_POINTS, MAX_RISK_POINTS),
                    else_=new_points,
                ),
                updated_at = self.clock(),
            )
        )
        row = RiskFlagRecord(
            account_id = data.account_id,
            reason     = data.reason,
            severity   = data.severity.value,
            created_at = now or self.clock(),
        )

        try:
            async with self.db.join(session) as tx:
                await self._ensure(tx, data.account_id)
                tx.add(row)
                await tx.flush()
                await tx.execute(bump, execution_options=_NO_SYNC)
                flag = _to_flag(row)
        except SQLAlchemyError as exc:
            logger.error(
                f"[TrustProfile] Error agregando flag account={data.account_id}: {exc}"
            )
            raise StorageException() from exc

        logger.warning(
            f"[TrustProfile] Flag {data.severity.value} id={flag.id} "
            f"account={data.account_id} reason={data.reason!r}"
        )
        return flag

    async def resolve_flag(
        self, flag_id: int, now: Optional[datetime] = None
    ) -> Optional[RiskFlag]:
        """
        Marca resolved_at. No resta puntos: fraud_risk_points es el
        acumulado histórico. Retorna None si el flag no existe.
        """
        try:
            async with self.db.transaction() as session:
                row = await session.get(RiskFlagRecord, flag_id)
                if row is None:
                    return None
                if row.resolved_at is None:
                    row.resolved_at = now or self.clock()
                    await session.flush()
                flag = _to_flag(row)
        except SQLAlchemyError as exc:
            logger.error(f"[TrustProfile] Error resolviendo flag id={flag_id}: {exc}")
            raise StorageException() from exc

        logger.info(f"[TrustProfile] Flag resuelto id={flag_id} account={flag.account_id}")
        return flag

    async def save_score(
        self,
        account_id: str,
        score:      float,
        tier:       TrustTier,
        components: dict[str, float],
        scored_at:  datetime,
    ) -> None:
        stmt = (
            update(TrustProfileRecord)
            .where(TrustProfileRecord.account_id == account_id)
            .values(
                score          = score,
                tier           = tier.value,
                components     = dict(components),
                last_scored_at = scored_at,
                updated_at     = self.clock(),
            )
        )
        await self._apply(account_id, stmt, "score")

    # ------------------------------------------------------------------ #
    #  Utilidades                                                        #
    # ------------------------------------------------------------------ #

    async def _apply(
        self,
        account_id: str,
        stmt,
        label:      str,
        session:    Optional[AsyncSession] = None,
    ) -> None:
        try:
            async with self.db.join(session) as tx:
                await self._ensure(tx, account_id)
                await tx.execute(stmt, execution_options=_NO_SYNC)
        except SQLAlchemyError as exc:
            logger.error(
                f"[TrustProfile] Error actualizando {label} account={account_id}: {exc}"
            )
            raise StorageException() from exc
        logger.debug(f"[TrustProfile] {label} aplicado account={account_id}")
