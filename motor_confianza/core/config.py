"""
config.py
---------
Configuración del Motor de Confianza.

Tres bloques independientes, todos cargados desde variables de entorno
o desde el archivo .env:

  - Settings       → infraestructura (DB, Redis, proveedores, secretos)
  - ScoringConfig  → pesos, bandas de tier y umbrales del scoring
                     (prefijo SCORING_)
  - PolicyConfig   → umbrales de la política de acciones (prefijo POLICY_)

Los pesos y umbrales se validan al construir la configuración. Un vector
de pesos que no suma 1.0 es un error de arranque, nunca de request.
"""

import math
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from motor_confianza.core.exceptions import ConfigurationException

# Features que el motor sabe resolver. El orden es el de los reportes.
FEATURES: tuple[str, ...] = (
    "device_health",
    "agent_activity",
    "social_influence",
    "financial_trust",
    "security_score",
    "longevity",
)

WEIGHT_EPSILON = 1e-6

TIERS_ASCENDING: tuple[str, ...] = ("bronze", "silver", "gold", "platinum")


def ensure_valid_weights(weights: dict[str, float]) -> None:
    """
    Verifica que el vector de pesos nombre exactamente las seis features
    y sume 1.0 (±epsilon). Nunca normaliza en silencio.
    """
    missing = set(FEATURES) - set(weights)
    unknown = set(weights) - set(FEATURES)
    if missing or unknown:
        raise ConfigurationException(
            f"Vector de pesos inválido: faltan={sorted(missing)} "
            f"desconocidas={sorted(unknown)}"
        )
    # NaN pasa cualquier comparación: se rechaza antes de sumar
    if not all(math.isfinite(w) for w in weights.values()):
        raise ConfigurationException("Los pesos deben ser números finitos.")
    if any(w < 0 for w in weights.values()):
        raise ConfigurationException("Los pesos no pueden ser negativos.")

    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_EPSILON:
        raise ConfigurationException(
            f"Los pesos deben sumar 1.0 (suman {total:.6f})."
        )


def ensure_finite_fields(config: BaseSettings) -> None:
    """Rechaza NaN e infinitos en los campos float de la configuración."""
    for name, value in config:
        if isinstance(value, float) and not math.isfinite(value):
            raise ConfigurationException(f"{name} debe ser un número finito.")


class Settings(BaseSettings):
    # Configuracion general
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    SECRET_KEY: str

    # Base de datos: PostgreSQL (asyncpg) en producción,
    # SQLite (aiosqlite) en modo WAL para desarrollo y tests
    DATABASE_URL: str = "sqlite+aiosqlite:///./motor_confianza.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    SQLITE_BUSY_TIMEOUT_MS: int = 5_000

    # Redis: solo se usa como caché de proveedores externos
    REDIS_URL: Optional[str] = None

    # Proveedor externo de salud del dispositivo
    DEVICE_HEALTH_URL: Optional[str] = None
    DEVICE_HEALTH_API_KEY: Optional[str] = None
    DEVICE_HEALTH_CACHE_TTL: int = 60 * 15
    PROVIDER_TIMEOUT_SEC: float = 0.5

    # Normalización de teléfonos: prefijo para números de 10 dígitos
    DEFAULT_COUNTRY_CODE: str = "1"

    @field_validator("DEFAULT_COUNTRY_CODE")
    @classmethod
    def country_code_digits(cls, v: str) -> str:
        if not v.isdigit():
            raise ValueError("DEFAULT_COUNTRY_CODE debe contener solo dígitos")
        return v

    model_config = SettingsConfigDict(
        env_file          = ".env",
        env_file_encoding = "utf-8",
        case_sensitive    = True,
        extra             = "ignore",
    )


class ScoringConfig(BaseSettings):
    """
    Parámetros del RiskScoringEngine.

    Ejemplo en .env:
      SCORING_WEIGHTS={"device_health":0.2,"agent_activity":0.15,...}
      SCORING_FLAG_DECAY_DAYS=90
    """

    WEIGHTS: dict[str, float] = {
        "device_health":    0.20,
        "agent_activity":   0.15,
        "social_influence": 0.10,
        "financial_trust":  0.25,
        "security_score":   0.20,
        "longevity":        0.10,
    }

    # Bandas ascendentes: score >= umbral → tier
    TIER_THRESHOLDS: dict[str, float] = {
        "bronze":   40.0,
        "silver":   60.0,
        "gold":     75.0,
        "platinum": 90.0,
    }

    # ── financial_trust ───────────────────────────────────────────────
    HIGH_SPEND_THRESHOLD_CENTS:  int   = 100_000    # 1,000.00
    HIGH_AVG_TX_THRESHOLD_CENTS: int   = 5_000      # 50.00
    FAILED_PAYMENT_THRESHOLD:    int   = 3
    FRAUD_RISK_THRESHOLD:        float = 50.0
    LINKAGE_RISK_PER_SHARED_REFERENCE: float = 30.0

    # ── Flags de riesgo ───────────────────────────────────────────────
    FLAG_RISK_INCREMENT: float = 25.0
    # None = los flags no caducan nunca (comportamiento original)
    FLAG_DECAY_DAYS: Optional[int] = None

    # ── Señales ───────────────────────────────────────────────────────
    NEUTRAL_SIGNAL:       float = 50.0
    CONCERN_THRESHOLD:    float = 60.0
    ACTIVITY_WINDOW_DAYS: int   = 30

    @model_validator(mode="after")
    def check_consistency(self) -> "ScoringConfig":
        ensure_finite_fields(self)
        ensure_valid_weights(self.WEIGHTS)

        if set(self.TIER_THRESHOLDS) != set(TIERS_ASCENDING):
            raise ConfigurationException(
                f"TIER_THRESHOLDS debe definir exactamente {list(TIERS_ASCENDING)}"
            )
        bands = [self.TIER_THRESHOLDS[t] for t in TIERS_ASCENDING]
        if bands != sorted(bands) or len(set(bands)) != len(bands):
            raise ConfigurationException(
                "Las bandas de tier deben ser estrictamente ascendentes."
            )
        if not all(0 <= b <= 100 for b in bands):
            raise ConfigurationException("Las bandas de tier deben estar en [0,100].")

        if self.FLAG_DECAY_DAYS is not None and self.FLAG_DECAY_DAYS <= 0:
            raise ConfigurationException("FLAG_DECAY_DAYS debe ser positivo.")
        for name in ("NEUTRAL_SIGNAL", "CONCERN_THRESHOLD"):
            if not 0 <= getattr(self, name) <= 100:
                raise ConfigurationException(f"{name} debe estar en [0,100].")
        return self

    model_config = SettingsConfigDict(
        env_prefix        = "SCORING_",
        env_file          = ".env",
        env_file_encoding = "utf-8",
        case_sensitive    = True,
        extra             = "ignore",
    )


class PolicyConfig(BaseSettings):
    """Umbrales del ActionPolicy. Valores por defecto seguros."""

    ALLOW_AT_OR_ABOVE: float = 80.0
    BLOCK_BELOW:       float = 40.0
    ALLOW_TIERS:       list[str] = ["gold", "platinum"]
    BLOCK_SEVERITIES:  list[str] = ["high"]

    @model_validator(mode="after")
    def check_bands(self) -> "PolicyConfig":
        ensure_finite_fields(self)
        if not 0 <= self.BLOCK_BELOW <= self.ALLOW_AT_OR_ABOVE <= 100:
            raise ConfigurationException(
                "Se requiere 0 <= BLOCK_BELOW <= ALLOW_AT_OR_ABOVE <= 100."
            )
        return self

    model_config = SettingsConfigDict(
        env_prefix        = "POLICY_",
        env_file          = ".env",
        env_file_encoding = "utf-8",
        case_sensitive    = True,
        extra             = "ignore",
    )
