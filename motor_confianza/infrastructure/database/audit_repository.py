"""
audit_repository.py
-------------------
AuditTrailStore: log append-only de eventos de cuenta.

Responsabilidades:
  - Validar account_id y event_type (enum cerrado) ANTES de escribir.
  - Cifrar el metadata con AES-256-GCM antes de persistirlo.
  - Asignar timestamp UTC (reloj inyectable, por defecto el del
    servidor) e id monótono en cada INSERT.
  - Consultas de historial filtradas y paginadas, más los agregados de
    solo lectura que necesita el RiskScoringEngine.

Principios de diseño:
  - No existe API de UPDATE ni DELETE: la inmutabilidad es la garantía
    de auditoría. Una corrección es un nuevo evento compensatorio.
  - A diferencia de la auditoría fire-and-forget del orquestador, aquí un
    fallo de DB SÍ se propaga (StorageException): el llamador conserva
    sus inputs y puede reintentar.
  - Cuentas desconocidas → lista vacía, nunca excepción.

Uso:
    store = AuditTrailStore(db, MetadataCipher(settings.SECRET_KEY))
    event_id = await store.record_event(
        account_id   = "@alice",
        event_type   = "payment_attempt",
        gateway      = "venmo",
        amount_cents = 5000,
    )
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from motor_confianza.core.crypto import MetadataCipher
from motor_confianza.core.exceptions import StorageException, ValidationException
from motor_confianza.domain.models import AccountHistory, Clock, as_utc, to_utc, utcnow
from motor_confianza.domain.schemas import (
    AccountEvent,
    AccountEventInput,
    EventType,
    HistoryQuery,
    validate_or_raise,
)
from motor_confianza.infrastructure.database.session import Database

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 500


class AuditTrailStore:

    def __init__(
        self, db: Database, cipher: MetadataCipher, clock: Clock = utcnow
    ) -> None:
        self.db = db
        self.cipher = cipher
        self.clock = clock

    # ------------------------------------------------------------------ #
    #  Escritura: solo INSERT                                            #
    # ------------------------------------------------------------------ #

    async def record_event(
        self,
        account_id:   str,
        event_type:   str | EventType,
        metadata:     Optional[dict[str, Any]] = None,
        ip_hash:      Optional[str] = None,
        device_hash:  Optional[str] = None,
        gateway:      Optional[str] = None,
        amount_cents: Optional[int] = None,
        success:      bool = True,
        session:      Optional[AsyncSession] = None,
    ) -> int:
        """
        Agrega un evento al historial y retorna su id.

        Lanza ValidationException si la entrada es inválida (nada se
        escribe) y StorageException si falla la persistencia. Con
        `session` el INSERT entra en la transacción del llamador.
        """
        data = validate_or_raise(
            AccountEventInput,
            account_id   = account_id,
            event_type   = event_type,
            metadata     = metadata,
            ip_hash      = ip_hash,
            device_hash  = device_hash,
            gateway      = gateway,
            amount_cents = amount_cents,
            success      = success,
        )

        encrypted_metadata = None
        if data.metadata is not None:
            try:
                encrypted_metadata = self.cipher.encrypt(data.metadata)
            except (TypeError, ValueError) as exc:
                raise ValidationException(
                    "El metadata debe ser serializable a JSON."
                ) from exc

        row = AccountHistory(
            account_id         = data.account_id,
            event_type         = data.event_type.value,
            timestamp          = self.clock(),
            encrypted_metadata = encrypted_metadata,
            ip_hash            = data.ip_hash,
            device_hash        = data.device_hash,
            gateway            = data.gateway,
            amount_cents       = data.amount_cents,
            success            = data.success,
        )

        try:
            async with self.db.join(session) as tx:
                tx.add(row)
                await tx.flush()
                event_id = row.id
        except SQLAlchemyError as exc:
            logger.error(
                f"[AuditTrail] Error insertando evento "
                f"account={data.account_id} type={data.event_type.value}: {exc}"
            )
            raise StorageException() from exc

        logger.info(
            f"[AuditTrail] INSERT OK id={event_id}  "
            f"account={data.account_id}  type={data.event_type.value}"
        )
        return event_id

    # ------------------------------------------------------------------ #
    #  Lectura                                                           #
    # ------------------------------------------------------------------ #

    async def get_account_history(
        self,
        account_id: str,
        event_type: Optional[str | EventType] = None,
        since:      Optional[datetime] = None,
        limit:      int = MAX_HISTORY_LIMIT,
    ) -> list[AccountEvent]:
        """
        Historial de la cuenta, del más reciente al más antiguo.

        since es un límite inferior inclusivo. limit se ajusta a [1, 500].
        """
        query = validate_or_raise(
            HistoryQuery,
            account_id = account_id,
            event_type = event_type,
            since      = since,
            limit      = limit,
        )
        capped = max(1, min(query.limit, MAX_HISTORY_LIMIT))

        stmt = select(AccountHistory).where(
            AccountHistory.account_id == query.account_id
        )
        if query.event_type is not None:
            stmt = stmt.where(AccountHistory.event_type == query.event_type.value)
        if query.since is not None:
            stmt = stmt.where(AccountHistory.timestamp >= to_utc(query.since))
        stmt = stmt.order_by(
            AccountHistory.timestamp.desc(),
            AccountHistory.id.desc(),
        ).limit(capped)

        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        return [self._to_event(row) for row in rows]

    async def count_events(
        self,
        account_id: str,
        event_type: Optional[EventType] = None,
        since:      Optional[datetime] = None,
    ) -> int:
        stmt = select(func.count(AccountHistory.id)).where(
            AccountHistory.account_id == account_id
        )
        if event_type is not None:
            stmt = stmt.where(AccountHistory.event_type == EventType(event_type).value)
        if since is not None:
            stmt = stmt.where(AccountHistory.timestamp >= to_utc(since))

        async with self.db.session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def first_event_at(self, account_id: str) -> Optional[datetime]:
        stmt = select(func.min(AccountHistory.timestamp)).where(
            AccountHistory.account_id == account_id
        )
        async with self.db.session() as session:
            return as_utc((await session.execute(stmt)).scalar_one_or_none())

    async def linked_gateways(self, account_id: str) -> set[str]:
        """
        Métodos de pago vinculados y no desvinculados después.
        Se reproduce la secuencia link/unlink en orden de id.
        """
        stmt = (
            select(AccountHistory.event_type, AccountHistory.gateway)
            .where(
                AccountHistory.account_id == account_id,
                AccountHistory.event_type.in_(
                    [EventType.GATEWAY_LINK.value, EventType.GATEWAY_UNLINK.value]
                ),
                AccountHistory.gateway.is_not(None),
            )
            .order_by(AccountHistory.id.asc())
        )
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).all()

        linked: set[str] = set()
        for event_type, gateway in rows:
            if event_type == EventType.GATEWAY_LINK.value:
                linked.add(gateway)
            else:
                linked.discard(gateway)
        return linked

    async def latest_device_hash(self, account_id: str) -> Optional[str]:
        stmt = (
            select(AccountHistory.device_hash)
            .where(
                AccountHistory.account_id == account_id,
                AccountHistory.device_hash.is_not(None),
            )
            .order_by(AccountHistory.id.desc())
            .limit(1)
        )
        async with self.db.session() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    # ------------------------------------------------------------------ #
    #  Utilidades                                                        #
    # ------------------------------------------------------------------ #

    def _to_event(self, row: AccountHistory) -> AccountEvent:
        metadata = None
        if row.encrypted_metadata is not None:
            try:
                metadata = self.cipher.decrypt(row.encrypted_metadata)
            except ValueError as exc:
                # Clave rotada o blob corrupto: la fila sigue siendo visible
                logger.error(f"[AuditTrail] No se pudo descifrar evento id={row.id}: {exc}")

        return AccountEvent(
            id           = row.id,
            account_id   = row.account_id,
            event_type   = EventType(row.event_type),
            timestamp    = as_utc(row.timestamp),
            metadata     = metadata,
            ip_hash      = row.ip_hash,
            device_hash  = row.device_hash,
            gateway      = row.gateway,
            amount_cents = row.amount_cents,
            success      = row.success,
        )
