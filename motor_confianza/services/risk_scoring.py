"""
risk_scoring.py
---------------
RiskScoringEngine: convierte señales crudas en un Trust Score 0–100
determinista, un tier y una lista de recomendaciones.

Flujo de calculate_score():

  1. Validar cuenta y overrides (nombres desconocidos o fuera de [0,100]
     → ValidationException, nada se escribe)
  2. asyncio.gather de las lecturas: perfil, referencias compartidas,
     actividad reciente, primer evento, métodos de pago, último device
  3. asyncio.gather de los proveedores externos, cada uno con
     asyncio.wait_for(timeout). Timeout o excepción → fallback del
     proveedor y un warning en el log; el scoring nunca falla por esto
  4. Resolver cada feature en orden:
       override → proveedor → fórmula interna → NEUTRAL_SIGNAL
  5. Score = Σ(f·w) / Σ(w), redondeado a 2 decimales y acotado a [0,100]
  6. Tier por bandas ascendentes, recomendaciones, persistir el perfil

Determinismo: mismo estado almacenado + mismos overrides + mismo reloj
→ mismo score, tier y componentes. El reloj es inyectable.

Puntos de riesgo activos:
  fraud_risk_points en el perfil es el acumulado histórico (+25 por
  flag, tope 100). Para el scoring solo cuentan los flags activos: sin
  resolver y, si FLAG_DECAY_DAYS está configurado, creados dentro de la
  ventana. Sin decay y sin resoluciones ambos valores coinciden.
"""

import asyncio
import logging
import math
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from motor_confianza.core.config import (
    FEATURES,
    TIERS_ASCENDING,
    ScoringConfig,
    ensure_valid_weights,
)
from motor_confianza.core.exceptions import ConfigurationException
from motor_confianza.domain.models import Clock, utcnow
from motor_confianza.domain.schemas import (
    AccountQuery,
    FlagSeverity,
    Recommendation,
    RiskFlag,
    ScoreResult,
    SignalOverrides,
    TrustProfile,
    TrustTier,
    validate_or_raise,
)
from motor_confianza.infrastructure.database.audit_repository import AuditTrailStore
from motor_confianza.infrastructure.database.reference_repository import ReferenceIndex
from motor_confianza.infrastructure.database.trust_profile_repository import (
    MAX_RISK_POINTS,
    TrustProfileRepository,
)
from motor_confianza.services.signal_providers import SignalProvider

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
#  Bandas                                                            #
# ------------------------------------------------------------------ #

# (días mínimos de antigüedad, valor)
LONGEVITY_BANDS = ((365, 100.0), (180, 80.0), (90, 60.0), (30, 40.0), (7, 20.0))
LONGEVITY_FLOOR = 10.0

# (eventos mínimos en la ventana, valor)
ACTIVITY_BANDS = ((50, 100.0), (20, 80.0), (10, 60.0), (3, 40.0), (1, 20.0))
ACTIVITY_FLOOR = 10.0

# ------------------------------------------------------------------ #
#  financial_trust                                                   #
# ------------------------------------------------------------------ #

FINANCIAL_BASE              = 50
BONUS_MANY_TRANSACTIONS     = 20   # más de 10 transacciones
BONUS_HIGH_SUCCESS_RATIO    = 20   # ratio de éxito > 0.95
BONUS_HIGH_SPEND            = 10
BONUS_MULTIPLE_GATEWAYS     = 10   # 2+ métodos de pago vinculados
BONUS_HIGH_AVERAGE          = 5
PENALTY_FAILED_PAYMENTS     = 15
PENALTY_ASSOCIATED_RISK     = 25
PENALTY_RISK_FLAGS          = 20

MANY_TRANSACTIONS     = 10
HIGH_SUCCESS_RATIO    = 0.95
MIN_LINKED_GATEWAYS   = 2

RECOMMENDATION_MESSAGES = {
    "device_health":    "Usa un dispositivo sin root, con la integridad verificada y el sistema actualizado.",
    "agent_activity":   "Mantén actividad regular en la cuenta durante el último mes.",
    "social_influence": "Conecta y verifica más contactos de confianza.",
    "financial_trust":  "Completa más pagos exitosos y vincula un segundo método de pago.",
    "security_score":   "Resuelve los flags de riesgo abiertos en la cuenta.",
    "longevity":        "La antigüedad de la cuenta aumenta el score con el tiempo.",
}


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    # min/max con NaN devuelven el otro operando: NaN cae al mínimo
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def _banded(value: int, bands: tuple[tuple[int, float], ...], floor: float) -> float:
    for minimum, result in bands:
        if value >= minimum:
            return result
    return floor


class RiskScoringEngine:
    """
    Ejemplo de uso:
        engine = RiskScoringEngine(
            audit      = AuditTrailStore(db, cipher),
            references = ReferenceIndex(db),
            profiles   = TrustProfileRepository(db),
            config     = ScoringConfig(),
            providers  = [DeviceHealthSignal(provider)],
        )
        result = await engine.calculate_score("@alice")
    """

    def __init__(
        self,
        audit:            AuditTrailStore,
        references:       ReferenceIndex,
        profiles:         TrustProfileRepository,
        config:           Optional[ScoringConfig] = None,
        providers:        Iterable[SignalProvider] = (),
        provider_timeout: float = 0.5,
        clock:            Clock = utcnow,
    ) -> None:
        self.audit = audit
        self.references = references
        self.profiles = profiles
        self.config = config or ScoringConfig()
        self.provider_timeout = provider_timeout
        self.clock = clock

        # La config ya se valida al construirse, pero puede haberse
        # mutado después (model_copy, asignación directa)
        ensure_valid_weights(self.config.WEIGHTS)

        self.providers: dict[str, SignalProvider] = {}
        for provider in providers:
            if provider.feature not in FEATURES:
                raise ConfigurationException(
                    f"Proveedor para feature desconocida: {provider.feature!r}"
                )
            self.providers[provider.feature] = provider

    # ------------------------------------------------------------------ #
    #  Tier                                                              #
    # ------------------------------------------------------------------ #

    def tier_for_score(self, score: float) -> TrustTier:
        """Función pura del score. Se recalcula siempre, sin ratchet."""
        tier = TrustTier.UNRANKED
        for name in TIERS_ASCENDING:
            if score >= self.config.TIER_THRESHOLDS[name]:
                tier = TrustTier(name)
        return tier

    # ------------------------------------------------------------------ #
    #  Método principal                                                  #
    # ------------------------------------------------------------------ #

    async def calculate_score(
        self,
        account_id: str,
        overrides:  Optional[dict[str, float] | SignalOverrides] = None,
        context:    Optional[dict[str, Any]] = None,
    ) -> ScoreResult:
        validate_or_raise(AccountQuery, account_id=account_id)
        if isinstance(overrides, SignalOverrides):
            explicit = overrides.model_dump(exclude_none=True)
        else:
            explicit = validate_or_raise(
                SignalOverrides, **(overrides or {})
            ).model_dump(exclude_none=True)

        now = self.clock()
        cfg = self.config

        await self.profiles.ensure_profile(account_id)

        # ══════════════════════════════════════════════════════════════
        # PASO 1: Lecturas en paralelo
        # ══════════════════════════════════════════════════════════════
        (
            profile,
            shared_refs,
            recent_events,
            first_event,
            gateways,
            device_hash,
        ) = await asyncio.gather(
            self.profiles.get(account_id),
            self.references.count_shared_references(account_id),
            self.audit.count_events(
                account_id, since=now - timedelta(days=cfg.ACTIVITY_WINDOW_DAYS)
            ),
            self.audit.first_event_at(account_id),
            self.audit.linked_gateways(account_id),
            self.audit.latest_device_hash(account_id),
        )

        active_flags = self.active_flags(profile.risk_flags, now)
        active_points = self.active_risk_points(active_flags)

        # ══════════════════════════════════════════════════════════════
        # PASO 2: Proveedores externos en paralelo, con timeout
        # ══════════════════════════════════════════════════════════════
        provider_context: dict[str, Any] = {"device_hash": device_hash}
        provider_context.update(context or {})

        pending = [f for f in FEATURES if f not in explicit and f in self.providers]
        raw_results = await asyncio.gather(
            *(
                asyncio.wait_for(
                    self.providers[f].fetch(
                        account_id, provider_context, self.provider_timeout
                    ),
                    timeout=self.provider_timeout,
                )
                for f in pending
            ),
            return_exceptions=True,
        )
        from_providers = {
            f: self._safe_float(result, f, self.providers[f].fallback, account_id)
            for f, result in zip(pending, raw_results)
        }

        # ══════════════════════════════════════════════════════════════
        # PASO 3: Fórmulas internas
        # ══════════════════════════════════════════════════════════════
        internal = {
            "agent_activity":  _banded(recent_events, ACTIVITY_BANDS, ACTIVITY_FLOOR),
            "financial_trust": self.financial_trust(
                profile, len(gateways), shared_refs, active_points, bool(active_flags)
            ),
            "security_score":  _clamp(100.0 - active_points),
            "longevity":       self.longevity(profile, first_event, now),
        }

        components: dict[str, float] = {}
        for feature in FEATURES:
            if feature in explicit:
                value = explicit[feature]
            elif feature in from_providers:
                value = from_providers[feature]
            elif feature in internal:
                value = internal[feature]
            else:
                value = cfg.NEUTRAL_SIGNAL
            components[feature] = round(float(value), 2)

        # ══════════════════════════════════════════════════════════════
        # PASO 4: Score ponderado, tier y recomendaciones
        # ══════════════════════════════════════════════════════════════
        weights = cfg.WEIGHTS
        total_weight = sum(weights[f] for f in FEATURES)
        weighted = sum(components[f] * weights[f] for f in FEATURES)
        score = _clamp(round(weighted / total_weight, 2))
        tier = self.tier_for_score(score)
        recommendations = self.recommendations(components)

        await self.profiles.save_score(account_id, score, tier, components, now)

        logger.info(
            f"[RiskScoring] account={account_id} score={score} tier={tier.value} "
            f"flags_activos={len(active_flags)} refs_compartidas={shared_refs}"
        )
        return ScoreResult(
            account_id      = account_id,
            score           = score,
            tier            = tier,
            components      = components,
            recommendations = recommendations,
            calculated_at   = now,
        )

    # ------------------------------------------------------------------ #
    #  Fórmulas                                                          #
    # ------------------------------------------------------------------ #

    def financial_trust(
        self,
        profile:         TrustProfile,
        linked_gateways: int,
        shared_refs:     int,
        active_points:   float,
        has_flags:       bool,
    ) -> float:
        cfg = self.config
        score = FINANCIAL_BASE

        if profile.transactions > MANY_TRANSACTIONS:
            score += BONUS_MANY_TRANSACTIONS
        if profile.transactions and profile.successes / profile.transactions > HIGH_SUCCESS_RATIO:
            score += BONUS_HIGH_SUCCESS_RATIO
        if profile.total_spent_cents > cfg.HIGH_SPEND_THRESHOLD_CENTS:
            score += BONUS_HIGH_SPEND
        if linked_gateways >= MIN_LINKED_GATEWAYS:
            score += BONUS_MULTIPLE_GATEWAYS
        # Solo los pagos exitosos suman al gasto, así que el promedio es por éxito
        if profile.successes and (
            profile.total_spent_cents / profile.successes > cfg.HIGH_AVG_TX_THRESHOLD_CENTS
        ):
            score += BONUS_HIGH_AVERAGE

        if profile.failures > cfg.FAILED_PAYMENT_THRESHOLD:
            score -= PENALTY_FAILED_PAYMENTS
        if self.associated_risk(shared_refs, active_points) > cfg.FRAUD_RISK_THRESHOLD:
            score -= PENALTY_ASSOCIATED_RISK
        if has_flags:
            score -= PENALTY_RISK_FLAGS

        return _clamp(float(score))

    def associated_risk(self, shared_refs: int, active_points: float) -> float:
        """Mayor entre el riesgo por flags y el riesgo por referencias compartidas."""
        linkage = min(
            MAX_RISK_POINTS, shared_refs * self.config.LINKAGE_RISK_PER_SHARED_REFERENCE
        )
        return max(active_points, linkage)

    def longevity(
        self,
        profile:     TrustProfile,
        first_event: Optional[datetime],
        now:         datetime,
    ) -> float:
        started = profile.created_at
        if first_event is not None and first_event < started:
            started = first_event
        age_days = max(0, (now - started).days)
        return _banded(age_days, LONGEVITY_BANDS, LONGEVITY_FLOOR)

    def active_flags(self, flags: list[RiskFlag], now: datetime) -> list[RiskFlag]:
        decay = self.config.FLAG_DECAY_DAYS
        cutoff = now - timedelta(days=decay) if decay is not None else None
        return [
            f for f in flags
            if not f.is_resolved and (cutoff is None or f.created_at >= cutoff)
        ]

    def active_risk_points(self, active_flags: list[RiskFlag]) -> float:
        return min(MAX_RISK_POINTS, self.config.FLAG_RISK_INCREMENT * len(active_flags))

    def recommendations(self, components: dict[str, float]) -> list[Recommendation]:
        threshold = self.config.CONCERN_THRESHOLD
        recs = [
            Recommendation(
                feature        = feature,
                current_value  = value,
                message        = RECOMMENDATION_MESSAGES[feature],
                potential_gain = round((threshold - value) * self.config.WEIGHTS[feature], 2),
            )
            for feature, value in components.items()
            if value < threshold
        ]
        # sorted es estable: a igual ganancia se conserva el orden de FEATURES
        return sorted(recs, key=lambda r: r.potential_gain, reverse=True)

    # ------------------------------------------------------------------ #
    #  Agregados y flags                                                 #
    # ------------------------------------------------------------------ #

    async def record_payment_success(
        self,
        account_id:   str,
        amount_cents: int,
        session:      Optional[AsyncSession] = None,
    ) -> None:
        """Actualiza agregados de forma atómica. No recalcula el score."""
        await self.profiles.record_payment_success(account_id, amount_cents, session)

    async def record_payment_failure(
        self, account_id: str, session: Optional[AsyncSession] = None
    ) -> None:
        await self.profiles.record_payment_failure(account_id, session)

    async def add_risk_flag(
        self,
        account_id: str,
        reason:     str,
        severity:   str | FlagSeverity = FlagSeverity.MEDIUM,
        session:    Optional[AsyncSession] = None,
    ) -> RiskFlag:
        return await self.profiles.add_flag(
            account_id,
            reason,
            severity,
            increment = self.config.FLAG_RISK_INCREMENT,
            now       = self.clock(),
            session   = session,
        )

    async def resolve_risk_flag(self, flag_id: int) -> Optional[RiskFlag]:
        return await self.profiles.resolve_flag(flag_id, now=self.clock())

    async def get_profile(self, account_id: str) -> Optional[TrustProfile]:
        return await self.profiles.get(account_id)

    async def get_risk_flags(
        self, account_id: str, include_resolved: bool = True
    ) -> list[RiskFlag]:
        return await self.profiles.list_flags(account_id, include_resolved=include_resolved)

    async def get_active_flags(self, account_id: str) -> list[RiskFlag]:
        """Flags que hoy cuentan para el riesgo (sin resolver y dentro del decay)."""
        flags = await self.profiles.list_flags(account_id, include_resolved=False)
        return self.active_flags(flags, self.clock())

    # ------------------------------------------------------------------ #
    #  Utilidades                                                        #
    # ------------------------------------------------------------------ #

    def _safe_float(
        self, result, feature: str, fallback: float, account_id: str
    ) -> float:
        """
        Extrae la señal de un resultado de gather. Si el proveedor lanzó
        una excepción, hizo timeout o devolvió algo que no es un número
        finito, se registra un warning y se usa el fallback.
        """
        if isinstance(result, asyncio.TimeoutError):
            logger.warning(
                f"[RiskScoring] Timeout de proveedor '{feature}' account={account_id} "
                f"→ fallback {fallback}"
            )
            return float(fallback)
        if isinstance(result, Exception):
            logger.warning(
                f"[RiskScoring] Proveedor '{feature}' falló account={account_id}: "
                f"{result!r} → fallback {fallback}"
            )
            return float(fallback)
        if isinstance(result, bool) or not isinstance(result, (int, float)) or not math.isfinite(result):
            logger.warning(
                f"[RiskScoring] Proveedor '{feature}' devolvió {result!r} → fallback {fallback}"
            )
            return float(fallback)
        return _clamp(float(result))
