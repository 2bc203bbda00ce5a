"""
trust_orchestrator.py
---------------------
Fachada del Motor de Confianza. Es lo único que el transporte (HTTP,
CLI, worker) necesita conocer.

  - record_event()          → AuditTrailStore + efectos en el perfil
  - register_phone/email/device() → hash + ReferenceIndex + evento
  - evaluate()              → RiskScoringEngine + ActionPolicy

Efectos de los eventos sobre el perfil:
  payment_success     → agregados de pago (monto, transacciones, éxitos)
  payment_failed      → agregados de pago (transacciones, fallos)
  fraud_flag          → flag de riesgo severidad high
  suspicious_activity → flag de riesgo severidad medium

Las escrituras de varios pasos (evento + efecto, vínculo + evento) van
en una sola transacción: o quedan todas o ninguna.

Sin singleton: la instancia la construye bootstrap() en main.py.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from motor_confianza.core.hashing import HashingService
from motor_confianza.domain.schemas import (
    AccountEvent,
    AccountQuery,
    CrossLookupResult,
    EventType,
    Evaluation,
    FlagSeverity,
    ReferenceLink,
    ReferenceType,
    RiskFlag,
    ScoreResult,
    SignalOverrides,
    TrustProfile,
    validate_or_raise,
)
from motor_confianza.infrastructure.database.audit_repository import (
    MAX_HISTORY_LIMIT,
    AuditTrailStore,
)
from motor_confianza.infrastructure.database.reference_repository import (
    MIN_CROSS_LOOKUP_ACCOUNTS,
    ReferenceIndex,
)
from motor_confianza.services.action_policy import ActionPolicy
from motor_confianza.services.risk_scoring import RiskScoringEngine

logger = logging.getLogger(__name__)

# event_type → severidad del flag que genera
_FLAG_EVENTS = {
    EventType.FRAUD_FLAG:          FlagSeverity.HIGH,
    EventType.SUSPICIOUS_ACTIVITY: FlagSeverity.MEDIUM,
}

_MAX_REASON_LENGTH = 255


class TrustOrchestrator:

    def __init__(
        self,
        audit:      AuditTrailStore,
        references: ReferenceIndex,
        engine:     RiskScoringEngine,
        policy:     ActionPolicy,
        hashing:    HashingService,
    ) -> None:
        self.audit = audit
        self.references = references
        self.engine = engine
        self.policy = policy
        self.hashing = hashing
        # Todos los repositorios comparten la misma base
        self.db = audit.db

    # ------------------------------------------------------------------ #
    #  Historial                                                         #
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
    ) -> int:
        """
        Registra el evento y aplica su efecto sobre el perfil en una sola
        transacción. Si algo falla no queda ni el evento ni el efecto, así
        que reintentar tras StorageException no duplica nada.
        """
        async with self.db.atomic() as session:
            event_id = await self.audit.record_event(
                account_id   = account_id,
                event_type   = event_type,
                metadata     = metadata,
                ip_hash      = ip_hash,
                device_hash  = device_hash,
                gateway      = gateway,
                amount_cents = amount_cents,
                success      = success,
                session      = session,
            )

            # El store ya validó el tipo
            kind = EventType(event_type)
            if kind == EventType.PAYMENT_SUCCESS:
                await self.engine.record_payment_success(
                    account_id, amount_cents or 0, session
                )
            elif kind == EventType.PAYMENT_FAILED:
                await self.engine.record_payment_failure(account_id, session)
            elif kind in _FLAG_EVENTS:
                reason = str((metadata or {}).get("reason") or kind.value)
                await self.engine.add_risk_flag(
                    account_id,
                    reason[:_MAX_REASON_LENGTH],
                    _FLAG_EVENTS[kind],
                    session,
                )

        return event_id

    async def get_account_history(
        self,
        account_id: str,
        event_type: Optional[str | EventType] = None,
        since:      Optional[datetime] = None,
        limit:      int = MAX_HISTORY_LIMIT,
    ) -> list[AccountEvent]:
        return await self.audit.get_account_history(account_id, event_type, since, limit)

    # ------------------------------------------------------------------ #
    #  Referencias                                                       #
    # ------------------------------------------------------------------ #

    async def register_phone(self, account_id: str, raw_phone: str) -> str:
        """Normaliza, hashea y vincula el teléfono. Retorna el digest."""
        validate_or_raise(AccountQuery, account_id=account_id)
        value_hash = self.hashing.hash_phone(raw_phone)
        await self._register(
            account_id, ReferenceType.PHONE_HASH, value_hash, EventType.PHONE_VERIFIED
        )
        return value_hash

    async def register_email(self, account_id: str, raw_email: str) -> str:
        validate_or_raise(AccountQuery, account_id=account_id)
        value_hash = self.hashing.hash_reference_value(raw_email)
        await self._register(
            account_id, ReferenceType.EMAIL_HASH, value_hash, EventType.EMAIL_VERIFIED
        )
        return value_hash

    async def register_device(self, account_id: str, device_id: str) -> str:
        validate_or_raise(AccountQuery, account_id=account_id)
        value_hash = self.hashing.hash_reference_value(device_id)
        await self._register(
            account_id,
            ReferenceType.DEVICE_ID,
            value_hash,
            EventType.DEVICE_REGISTER,
            device_hash=value_hash,
        )
        return value_hash

    async def _register(
        self,
        account_id:     str,
        reference_type: ReferenceType,
        value_hash:     str,
        event_type:     EventType,
        device_hash:    Optional[str] = None,
    ) -> None:
        # Vínculo y evento se confirman juntos
        async with self.db.atomic() as session:
            created = await self.references.register_reference(
                account_id, reference_type, value_hash, session
            )
            if created:
                await self.audit.record_event(
                    account_id  = account_id,
                    event_type  = event_type,
                    metadata    = {"reference_type": reference_type.value},
                    device_hash = device_hash,
                    session     = session,
                )

    async def register_reference(
        self, account_id: str, reference_type: str | ReferenceType, value_hash: str
    ) -> bool:
        return await self.references.register_reference(
            account_id, reference_type, value_hash
        )

    async def lookup_by_reference(
        self, reference_type: str | ReferenceType, value_hash: str
    ) -> list[str]:
        return await self.references.lookup_by_reference(reference_type, value_hash)

    async def get_references_for_account(self, account_id: str) -> list[ReferenceLink]:
        return await self.references.get_references_for_account(account_id)

    async def cross_lookup(
        self,
        reference_type: Optional[str | ReferenceType] = None,
        min_accounts:   int = MIN_CROSS_LOOKUP_ACCOUNTS,
    ) -> list[CrossLookupResult]:
        return await self.references.cross_lookup(reference_type, min_accounts)

    # ------------------------------------------------------------------ #
    #  Scoring y decisión                                                #
    # ------------------------------------------------------------------ #

    async def calculate_score(
        self,
        account_id: str,
        overrides:  Optional[dict[str, float] | SignalOverrides] = None,
        context:    Optional[dict[str, Any]] = None,
    ) -> ScoreResult:
        return await self.engine.calculate_score(account_id, overrides, context)

    async def evaluate(
        self,
        account_id: str,
        overrides:  Optional[dict[str, float] | SignalOverrides] = None,
        context:    Optional[dict[str, Any]] = None,
    ) -> Evaluation:
        score = await self.engine.calculate_score(account_id, overrides, context)
        flags = await self.engine.get_active_flags(account_id)
        decision = self.policy.decide(score.score, score.tier, flags)
        return Evaluation(score=score, decision=decision)

    async def get_profile(self, account_id: str) -> Optional[TrustProfile]:
        return await self.engine.get_profile(account_id)

    async def add_risk_flag(
        self,
        account_id: str,
        reason:     str,
        severity:   str | FlagSeverity = FlagSeverity.MEDIUM,
    ) -> RiskFlag:
        return await self.engine.add_risk_flag(account_id, reason, severity)

    async def resolve_risk_flag(self, flag_id: int) -> Optional[RiskFlag]:
        return await self.engine.resolve_risk_flag(flag_id)

    async def get_risk_flags(
        self, account_id: str, include_resolved: bool = True
    ) -> list[RiskFlag]:
        return await self.engine.get_risk_flags(account_id, include_resolved)
