"""
schemas.py
----------
Schemas Pydantic para validación de entradas y forma de las salidas.

Las entradas se validan en la frontera (repositorios / motor) antes de
cualquier escritura. Un pydantic.ValidationError se traduce siempre a
ValidationException del motor vía validate_or_raise().
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic import ValidationError as PydanticValidationError

from motor_confianza.core.exceptions import ValidationException


# ─────────────────────────────────────────────────────────────────────
# TIPOS BASE
# ─────────────────────────────────────────────────────────────────────

# Identificador de cuenta opaco: "@handle" del sistema original, con la
# arroba opcional. Fuera de esta validación nadie parsea su estructura.
ACCOUNT_ID_PATTERN = r"^@?[A-Za-z0-9_-]{1,64}$"
AccountId = Annotated[str, StringConstraints(pattern=ACCOUNT_ID_PATTERN)]

# SHA-256 en hex minúscula
HashDigest = Annotated[str, StringConstraints(pattern=r"^[0-9a-f]{64}$")]

SignalValue = Annotated[float, Field(ge=0, le=100)]


# ─────────────────────────────────────────────────────────────────────
# ENUMS
# ─────────────────────────────────────────────────────────────────────

class EventType(str, Enum):
    LOGIN               = "login"
    LOGOUT              = "logout"
    PREF_CHANGE         = "pref_change"
    PAYMENT_ATTEMPT     = "payment_attempt"
    PAYMENT_SUCCESS     = "payment_success"
    PAYMENT_FAILED      = "payment_failed"
    GATEWAY_LINK        = "gateway_link"
    GATEWAY_UNLINK      = "gateway_unlink"
    PROFILE_CREATE      = "profile_create"
    PROFILE_UPDATE      = "profile_update"
    PHONE_VERIFIED      = "phone_verified"
    EMAIL_VERIFIED      = "email_verified"
    DEVICE_REGISTER     = "device_register"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    FRAUD_FLAG          = "fraud_flag"


class ReferenceType(str, Enum):
    PHONE_HASH = "phone_hash"
    EMAIL_HASH = "email_hash"
    DEVICE_ID  = "device_id"


class TrustTier(str, Enum):
    UNRANKED = "unranked"
    BRONZE   = "bronze"
    SILVER   = "silver"
    GOLD     = "gold"
    PLATINUM = "platinum"


class FlagSeverity(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


class Action(str, Enum):
    ALLOW    = "allow"
    THROTTLE = "throttle"
    BLOCK    = "block"


# ─────────────────────────────────────────────────────────────────────
# VALIDACIÓN
# ─────────────────────────────────────────────────────────────────────

M = TypeVar("M", bound=BaseModel)


def validate_or_raise(model: type[M], **data: Any) -> M:
    """Construye el schema o lanza ValidationException con los campos fallidos."""
    try:
        return model(**data)
    except PydanticValidationError as exc:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or "input"
            for err in exc.errors()
        )
        raise ValidationException(f"Entrada inválida en: {fields}") from exc


# ─────────────────────────────────────────────────────────────────────
# HISTORIAL DE CUENTA
# ─────────────────────────────────────────────────────────────────────

class AccountEventInput(BaseModel):
    account_id:   AccountId
    event_type:   EventType
    metadata:     Optional[dict[str, Any]] = None
    ip_hash:      Optional[HashDigest]     = None
    device_hash:  Optional[HashDigest]     = None
    gateway:      Optional[str]            = Field(None, min_length=1, max_length=64)
    amount_cents: Optional[int]            = Field(None, ge=0)
    success:      bool                     = True

    model_config = ConfigDict(extra="forbid")


class AccountEvent(BaseModel):
    """Una fila de account_history tal como la ve el llamador."""
    id:           int
    account_id:   str
    event_type:   EventType
    timestamp:    datetime
    metadata:     Optional[dict[str, Any]] = None
    ip_hash:      Optional[str] = None
    device_hash:  Optional[str] = None
    gateway:      Optional[str] = None
    amount_cents: Optional[int] = None
    success:      bool


class AccountQuery(BaseModel):
    account_id: AccountId


class HistoryQuery(BaseModel):
    account_id: AccountId
    event_type: Optional[EventType] = None
    since:      Optional[datetime]  = None
    limit:      int                 = 500


# ─────────────────────────────────────────────────────────────────────
# REFERENCIAS
# ─────────────────────────────────────────────────────────────────────

class ReferenceInput(BaseModel):
    account_id:     AccountId
    reference_type: ReferenceType
    value_hash:     HashDigest


class ReferenceQuery(BaseModel):
    reference_type: ReferenceType
    value_hash:     Optional[HashDigest] = None


class ReferenceLink(BaseModel):
    reference_type: ReferenceType
    value_hash:     str
    account_id:     str
    created_at:     datetime

    model_config = ConfigDict(from_attributes=True)


class CrossLookupResult(BaseModel):
    """Un identificador hasheado compartido por varias cuentas."""
    reference_type: ReferenceType
    value_hash:     str
    account_ids:    list[str]
    count:          int


# ─────────────────────────────────────────────────────────────────────
# SCORING
# ─────────────────────────────────────────────────────────────────────

class SignalOverrides(BaseModel):
    """Overrides explícitos por feature. Nombres desconocidos → error."""
    device_health:    Optional[SignalValue] = None
    agent_activity:   Optional[SignalValue] = None
    social_influence: Optional[SignalValue] = None
    financial_trust:  Optional[SignalValue] = None
    security_score:   Optional[SignalValue] = None
    longevity:        Optional[SignalValue] = None

    model_config = ConfigDict(extra="forbid")


class Recommendation(BaseModel):
    feature:        str
    current_value:  float
    message:        str
    potential_gain: float   # puntos estimados de mejora del score final


class ScoreResult(BaseModel):
    account_id:      str
    score:           float = Field(..., ge=0, le=100)
    tier:            TrustTier
    components:      dict[str, float]
    recommendations: list[Recommendation] = Field(default_factory=list)
    calculated_at:   datetime


class PaymentInput(BaseModel):
    account_id:   AccountId
    amount_cents: int = Field(0, ge=0)


class RiskFlagInput(BaseModel):
    account_id: AccountId
    reason:     str          = Field(..., min_length=1, max_length=255)
    severity:   FlagSeverity = FlagSeverity.MEDIUM


class RiskFlag(BaseModel):
    id:          int
    account_id:  str
    reason:      str
    severity:    FlagSeverity
    created_at:  datetime
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None


class TrustProfile(BaseModel):
    account_id:        str
    score:             float
    tier:              TrustTier
    components:        dict[str, float] = Field(default_factory=dict)
    total_spent_cents: int
    transactions:      int
    successes:         int
    failures:          int
    fraud_risk_points: float
    risk_flags:        list[RiskFlag] = Field(default_factory=list)
    created_at:        datetime
    updated_at:        datetime
    last_scored_at:    Optional[datetime] = None


# ─────────────────────────────────────────────────────────────────────
# POLÍTICA DE ACCIONES
# ─────────────────────────────────────────────────────────────────────

class PolicyDecision(BaseModel):
    action:  Action
    reasons: list[str] = Field(default_factory=list)


class Evaluation(BaseModel):
    """Score + decisión, lo que el transporte devuelve al cliente."""
    score:    ScoreResult
    decision: PolicyDecision


# ─────────────────────────────────────────────────────────────────────
# PROVEEDORES EXTERNOS
# ─────────────────────────────────────────────────────────────────────

class DeviceHealthReport(BaseModel):
    is_rooted:          bool          = False
    is_emulator:        bool          = False
    integrity_passed:   bool          = True
    os_patch_age_days:  Optional[int] = Field(None, ge=0)
    # Si el proveedor no pudo evaluar, error trae el motivo
    error:              Optional[str] = None

    model_config = ConfigDict(extra="ignore")
