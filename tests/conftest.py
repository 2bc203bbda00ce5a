"""
Fixtures compartidos. Cada test recibe su propia base SQLite (WAL) en
tmp_path y un reloj congelado que se puede adelantar.
"""

from datetime import datetime, timedelta

import pytest

from motor_confianza.core.config import PolicyConfig, ScoringConfig
from motor_confianza.core.crypto import MetadataCipher
from motor_confianza.core.hashing import HashingService
from motor_confianza.domain.models import utcnow
from motor_confianza.infrastructure.database.audit_repository import AuditTrailStore
from motor_confianza.infrastructure.database.reference_repository import ReferenceIndex
from motor_confianza.infrastructure.database.session import Database
from motor_confianza.infrastructure.database.trust_profile_repository import (
    TrustProfileRepository,
)
from motor_confianza.services.action_policy import ActionPolicy
from motor_confianza.services.risk_scoring import RiskScoringEngine
from motor_confianza.services.trust_orchestrator import TrustOrchestrator

TEST_SECRET = "test-secret-key"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'motor.db'}")
    await database.init_models()
    yield database
    await database.dispose()


@pytest.fixture
def clock():
    return FrozenClock(utcnow())


@pytest.fixture
def cipher():
    return MetadataCipher(TEST_SECRET)


@pytest.fixture
def audit(db, cipher, clock):
    return AuditTrailStore(db, cipher, clock=clock)


@pytest.fixture
def references(db, clock):
    return ReferenceIndex(db, clock=clock)


@pytest.fixture
def profiles(db, clock):
    return TrustProfileRepository(db, clock=clock)


@pytest.fixture
def scoring_config():
    return ScoringConfig()


@pytest.fixture
def engine(audit, references, profiles, scoring_config, clock):
    return RiskScoringEngine(
        audit      = audit,
        references = references,
        profiles   = profiles,
        config     = scoring_config,
        clock      = clock,
    )


@pytest.fixture
def policy():
    return ActionPolicy(PolicyConfig())


@pytest.fixture
def orchestrator(audit, references, engine, policy):
    return TrustOrchestrator(
        audit      = audit,
        references = references,
        engine     = engine,
        policy     = policy,
        hashing    = HashingService("1"),
    )
