"""
models.py
---------
Modelos SQLAlchemy del Motor de Confianza.

Tablas:
  - AccountHistory     → log inmutable de eventos de cuenta (solo INSERT)
  - ReferenceLookup    → hash de identificador ↔ cuenta (detección multi-cuenta)
  - TrustProfileRecord → agregado mutable por cuenta: score, tier, contadores
  - RiskFlagRecord     → flags de riesgo acumulados (nunca se borran)

Principios de diseño:
  - Tipos genéricos de SQLAlchemy: el mismo esquema corre en PostgreSQL
    (producción) y en SQLite WAL (desarrollo / tests).
  - Los identificadores personales solo existen como SHA-256 hex (64 chars).
  - El metadata de auditoría se guarda cifrado (LargeBinary, AES-256-GCM).
  - Timestamps siempre en UTC. SQLite los devuelve sin tzinfo, por eso
    todo lo que se lee pasa por as_utc().
"""

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    LargeBinary,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Reloj inyectable: repositorios y motor comparten el mismo en replays y tests
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Marca como UTC los datetimes naive que devuelve SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Para filtros: los naive se interpretan como UTC, los aware se convierten."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────────────────────────────
# HISTORIAL DE CUENTA
# Registro inmutable de todo lo que le ocurre a una cuenta.
# Nunca se actualiza ni se borra, solo INSERT. Las correcciones se
# expresan como un nuevo evento compensatorio.
# ─────────────────────────────────────────────────────────────────────
class AccountHistory(Base):
    __tablename__ = "account_history"

    # Integer autoincremental → id monótono asignado por el servidor
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    account_id: Mapped[str] = mapped_column(String(65), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # JSON del metadata cifrado con AES-256-GCM
    encrypted_metadata: Mapped[Optional[bytes]] = mapped_column(
        LargeBinary, nullable=True
    )

    # Hashes SHA-256, nunca la IP ni el device id en claro
    ip_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    device_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    gateway: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    amount_cents: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_history_account_ts", "account_id", "timestamp"),
        Index("idx_history_type_ts", "event_type", "timestamp"),
        # Sin reutilización de ids en SQLite: el id es estrictamente monótono
        {"sqlite_autoincrement": True},
    )


# ─────────────────────────────────────────────────────────────────────
# REFERENCIAS HASHEADAS
# Un mismo teléfono / email / dispositivo ligado a varias cuentas es la
# señal principal de fraude multi-cuenta.
# La unicidad (tipo, hash, cuenta) hace idempotente el registro.
# ─────────────────────────────────────────────────────────────────────
class ReferenceLookup(Base):
    __tablename__ = "reference_lookups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # "phone_hash" | "email_hash" | "device_id"
    reference_type: Mapped[str] = mapped_column(String(16), nullable=False)
    value_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[str] = mapped_column(String(65), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "reference_type", "value_hash", "account_id",
            name="uq_reference_type_hash_account",
        ),
        Index("idx_reference_type_hash", "reference_type", "value_hash"),
        Index("idx_reference_account_type", "account_id", "reference_type"),
    )


# ─────────────────────────────────────────────────────────────────────
# PERFIL DE CONFIANZA
# Se crea de forma perezosa en la primera escritura o scoring.
# Lo mutan el scoring, los pagos y los flags. Nunca se borra.
# ─────────────────────────────────────────────────────────────────────
class TrustProfileRecord(Base):
    __tablename__ = "trust_profiles"

    account_id: Mapped[str] = mapped_column(String(65), primary_key=True)

    score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    # "unranked" | "bronze" | "silver" | "gold" | "platinum"
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="unranked")
    components: Mapped[dict] = mapped_column(JSON, nullable=False, default=lambda: {})

    # Agregados transaccionales (se actualizan con UPDATE atómico)
    total_spent_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    transactions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Acumulador de riesgo: +FLAG_RISK_INCREMENT por flag, tope 100
    fraud_risk_points: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    last_scored_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


# ─────────────────────────────────────────────────────────────────────
# FLAGS DE RIESGO
# Se acumulan. Resolver un flag solo marca resolved_at.
# ─────────────────────────────────────────────────────────────────────
class RiskFlagRecord(Base):
    __tablename__ = "risk_flags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(65), nullable=False)

    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    # "low" | "medium" | "high"
    severity: Mapped[str] = mapped_column(String(10), nullable=False, default="medium")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("idx_risk_flags_account_created", "account_id", "created_at"),
    )
