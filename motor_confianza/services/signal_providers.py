"""
signal_providers.py
-------------------
Proveedores externos de señales para el RiskScoringEngine.

Provee:
  - SignalProvider              → interfaz genérica: una feature, un valor 0–100
  - DeviceHealthProvider        → interfaz del servicio de salud del dispositivo
  - HttpDeviceHealthProvider    → cliente httpx del servicio remoto
  - CachedDeviceHealthProvider  → caché Redis delante de cualquier proveedor
  - DeviceHealthSignal          → adapta un DeviceHealthProvider a SignalProvider

Principios de diseño:
  - Un proveedor lento o caído nunca tumba el scoring: el motor envuelve
    cada fetch en asyncio.wait_for y usa el fallback del proveedor.
  - Los proveedores HTTP no lanzan por errores de red: devuelven un
    DeviceHealthReport con `error` y la señal cae al fallback.
  - Solo se cachean reportes sin error, para no fijar un fallo durante
    todo el TTL.
"""

import logging
from typing import Any, Optional, Protocol, runtime_checkable

import httpx
from redis.exceptions import RedisError

from motor_confianza.domain.schemas import DeviceHealthReport
from motor_confianza.infrastructure.cache.redis_client import RedisManager

logger = logging.getLogger(__name__)

# ── Timeouts ──────────────────────────────────────────────────────────
DEVICE_HEALTH_TIMEOUT_SEC = 2.0

# ── Penalizaciones de salud del dispositivo ──────────────────────────
ROOTED_PENALTY            = 40
EMULATOR_PENALTY          = 40
INTEGRITY_FAILED_PENALTY  = 30
STALE_PATCH_PENALTY       = 10
STALE_PATCH_AGE_DAYS      = 180


# ─────────────────────────────────────────────────────────────────────
# Interfaces
# ─────────────────────────────────────────────────────────────────────

@runtime_checkable
class SignalProvider(Protocol):
    """Fuente externa de una feature. fetch() retorna un valor en [0,100]."""
    feature:  str
    fallback: float

    async def fetch(
        self, account_id: str, context: dict[str, Any], timeout: float
    ) -> float:
        ...


@runtime_checkable
class DeviceHealthProvider(Protocol):
    async def fetch(
        self,
        device_id:    str,
        context:      Optional[dict[str, Any]] = None,
        bypass_cache: bool = False,
    ) -> DeviceHealthReport:
        ...


# ─────────────────────────────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────────────────────────────

class HttpDeviceHealthProvider:
    """
    Consulta el servicio remoto de salud del dispositivo.

    GET {base_url}/devices/{device_id}/health
    Respuesta esperada (campos extra se ignoran):
      {"is_rooted": false, "is_emulator": false,
       "integrity_passed": true, "os_patch_age_days": 42}
    """

    HEALTH_PATH = "/devices/{device_id}/health"

    def __init__(
        self,
        base_url:  str,
        api_key:   Optional[str] = None,
        timeout:   float = DEVICE_HEALTH_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        # Inyectable para tests (httpx.MockTransport)
        self._transport = transport

    async def fetch(
        self,
        device_id:    str,
        context:      Optional[dict[str, Any]] = None,
        bypass_cache: bool = False,
    ) -> DeviceHealthReport:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(
                base_url  = self.base_url,
                timeout   = self.timeout,
                transport = self._transport,
            ) as client:
                response = await client.get(
                    self.HEALTH_PATH.format(device_id=device_id), headers=headers
                )
                response.raise_for_status()
                return DeviceHealthReport.model_validate(response.json())

        except httpx.TimeoutException:
            logger.warning(f"[DeviceHealth] Timeout consultando device={device_id[:12]}…")
            return DeviceHealthReport(error="timeout")
        except httpx.HTTPError as e:
            logger.warning(f"[DeviceHealth] Error HTTP device={device_id[:12]}…: {e}")
            return DeviceHealthReport(error="http_error")
        except ValueError as e:
            # JSON inválido o respuesta que no valida contra el schema
            logger.warning(f"[DeviceHealth] Respuesta inválida device={device_id[:12]}…: {e}")
            return DeviceHealthReport(error="invalid_response")


# ─────────────────────────────────────────────────────────────────────
# Caché Redis
# ─────────────────────────────────────────────────────────────────────

class CachedDeviceHealthProvider:
    """
    Caché en Redis:
      device_health:{device_id} → JSON del DeviceHealthReport
      TTL: DEVICE_HEALTH_CACHE_TTL (15 min por defecto)

    bypass_cache=True consulta siempre al proveedor y refresca la entrada.
    """

    CACHE_KEY = "device_health:{device_id}"

    def __init__(self, inner: DeviceHealthProvider, redis: RedisManager, ttl: int):
        self.inner = inner
        self.redis = redis
        self.ttl = ttl

    async def fetch(
        self,
        device_id:    str,
        context:      Optional[dict[str, Any]] = None,
        bypass_cache: bool = False,
    ) -> DeviceHealthReport:
        if not bypass_cache:
            cached = await self._get_cache(device_id)
            if cached is not None:
                return cached

        report = await self.inner.fetch(device_id, context, bypass_cache=bypass_cache)
        if report.error is None:
            await self._set_cache(device_id, report)
        return report

    async def _get_cache(self, device_id: str) -> Optional[DeviceHealthReport]:
        if not self.redis.is_connected:
            return None
        key = self.CACHE_KEY.format(device_id=device_id)
        try:
            raw = await self.redis.client.get(key)
            if raw:
                logger.debug(f"[DeviceHealth] Cache hit device={device_id[:12]}…")
                return DeviceHealthReport.model_validate_json(raw)
        except (RedisError, ValueError) as e:
            logger.debug(f"[DeviceHealth] Cache no disponible: {e}")
        return None

    async def _set_cache(self, device_id: str, report: DeviceHealthReport) -> None:
        if not self.redis.is_connected:
            return
        key = self.CACHE_KEY.format(device_id=device_id)
        try:
            await self.redis.client.setex(key, self.ttl, report.model_dump_json())
        except RedisError as e:
            logger.debug(f"[DeviceHealth] No se pudo escribir caché: {e}")


# ─────────────────────────────────────────────────────────────────────
# Adaptador a señal 0–100
# ─────────────────────────────────────────────────────────────────────

def device_health_score(report: DeviceHealthReport) -> float:
    """100 menos penalizaciones, acotado a [0,100]."""
    score = 100
    if report.is_rooted:
        score -= ROOTED_PENALTY
    if report.is_emulator:
        score -= EMULATOR_PENALTY
    if not report.integrity_passed:
        score -= INTEGRITY_FAILED_PENALTY
    if (
        report.os_patch_age_days is not None
        and report.os_patch_age_days > STALE_PATCH_AGE_DAYS
    ):
        score -= STALE_PATCH_PENALTY
    return float(max(0, min(100, score)))


class DeviceHealthSignal:
    """
    Feature device_health a partir de un DeviceHealthProvider.

    El device se toma de context["device_id"] o, si no viene, del último
    device_hash del historial que el motor agrega como context["device_hash"].
    Sin device o con un reporte con error → fallback.
    """

    feature = "device_health"

    def __init__(self, provider: DeviceHealthProvider, fallback: float = 50.0):
        self.provider = provider
        self.fallback = fallback

    async def fetch(
        self, account_id: str, context: dict[str, Any], timeout: float
    ) -> float:
        device_id = context.get("device_id") or context.get("device_hash")
        if not device_id:
            logger.debug(f"[DeviceHealth] Sin dispositivo conocido account={account_id}")
            return self.fallback

        report = await self.provider.fetch(
            device_id, context, bypass_cache=bool(context.get("bypass_cache", False))
        )
        if report.error is not None:
            logger.warning(
                f"[DeviceHealth] Reporte con error={report.error} "
                f"account={account_id} → fallback {self.fallback}"
            )
            return self.fallback
        return device_health_score(report)
