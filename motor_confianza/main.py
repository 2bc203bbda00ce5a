"""
main.py
-------
Entry point del Motor de Confianza.

No hay app global ni singletons de módulo: bootstrap() arma un contexto
aislado (DB, Redis opcional, proveedores, motor, política) y lo cierra
al salir. Un servicio HTTP, un worker o un test crean el suyo.

Uso:
    async with bootstrap() as motor:
        await motor.record_event("@alice", "login")
        evaluation = await motor.evaluate("@alice")
"""

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Optional

from motor_confianza.core.config import PolicyConfig, ScoringConfig, Settings
from motor_confianza.core.crypto import MetadataCipher
from motor_confianza.core.hashing import HashingService
from motor_confianza.domain.models import utcnow
from motor_confianza.infrastructure.cache.redis_client import RedisManager
from motor_confianza.infrastructure.database.audit_repository import AuditTrailStore
from motor_confianza.infrastructure.database.reference_repository import ReferenceIndex
from motor_confianza.infrastructure.database.session import Database
from motor_confianza.infrastructure.database.trust_profile_repository import (
    TrustProfileRepository,
)
from motor_confianza.services.action_policy import ActionPolicy
from motor_confianza.services.risk_scoring import Clock, RiskScoringEngine
from motor_confianza.services.signal_providers import (
    CachedDeviceHealthProvider,
    DeviceHealthProvider,
    DeviceHealthSignal,
    HttpDeviceHealthProvider,
    SignalProvider,
)
from motor_confianza.services.trust_orchestrator import TrustOrchestrator

logger = logging.getLogger(__name__)


def build_device_health_provider(
    settings: Settings, redis: Optional[RedisManager]
) -> Optional[DeviceHealthProvider]:
    if not settings.DEVICE_HEALTH_URL:
        return None
    provider: DeviceHealthProvider = HttpDeviceHealthProvider(
        base_url = settings.DEVICE_HEALTH_URL,
        api_key  = settings.DEVICE_HEALTH_API_KEY,
    )
    if redis is not None:
        provider = CachedDeviceHealthProvider(
            provider, redis, ttl=settings.DEVICE_HEALTH_CACHE_TTL
        )
    return provider


@asynccontextmanager
async def bootstrap(
    settings:  Optional[Settings] = None,
    scoring:   Optional[ScoringConfig] = None,
    policy:    Optional[PolicyConfig] = None,
    providers: Iterable[SignalProvider] = (),
    clock:     Clock = utcnow,
) -> AsyncIterator[TrustOrchestrator]:
    settings = settings or Settings()
    scoring = scoring or ScoringConfig()
    policy = policy or PolicyConfig()

    # ── Startup ───────────────────────────────────────────────────────
    db = Database(
        settings.DATABASE_URL,
        echo                   = settings.DEBUG,
        pool_size              = settings.DB_POOL_SIZE,
        max_overflow           = settings.DB_MAX_OVERFLOW,
        sqlite_busy_timeout_ms = settings.SQLITE_BUSY_TIMEOUT_MS,
    )
    redis: Optional[RedisManager] = None
    try:
        # En producción (PostgreSQL) el esquema lo crea la migración
        if settings.DEBUG or db.is_sqlite:
            await db.init_models()
        if settings.REDIS_URL:
            redis = RedisManager(settings.REDIS_URL)
            await redis.connect()

        signal_providers = list(providers)
        device_provider = build_device_health_provider(settings, redis)
        if device_provider is not None and not any(
            p.feature == DeviceHealthSignal.feature for p in signal_providers
        ):
            signal_providers.append(
                DeviceHealthSignal(device_provider, fallback=scoring.NEUTRAL_SIGNAL)
            )

        audit = AuditTrailStore(db, MetadataCipher(settings.SECRET_KEY), clock=clock)
        references = ReferenceIndex(db, clock=clock)
        engine = RiskScoringEngine(
            audit            = audit,
            references       = references,
            profiles         = TrustProfileRepository(db, clock=clock),
            config           = scoring,
            providers        = signal_providers,
            provider_timeout = settings.PROVIDER_TIMEOUT_SEC,
            clock            = clock,
        )
        orchestrator = TrustOrchestrator(
            audit      = audit,
            references = references,
            engine     = engine,
            policy     = ActionPolicy(policy),
            hashing    = HashingService(settings.DEFAULT_COUNTRY_CODE),
        )
        logger.info(
            f"[Bootstrap] Motor listo env={settings.ENVIRONMENT} "
            f"dialecto={db.dialect_name} "
            f"proveedores={[p.feature for p in signal_providers]}"
        )

        yield orchestrator
    finally:
        # ── Shutdown ──────────────────────────────────────────────────
        if redis is not None:
            await redis.disconnect()
        await db.dispose()
