"""
redis_client.py
---------------
Cliente Redis del Motor de Confianza.

Redis es opcional: solo guarda en caché las respuestas de proveedores
externos (salud del dispositivo). Si REDIS_URL no está configurado el
motor funciona igual, consultando al proveedor en cada scoring.

  - Pool de conexiones con parámetros explícitos
  - Health check al conectar: falla rápido si Redis no está disponible
  - Retry automático con backoff exponencial (3 intentos antes de fallar)
  - decode_responses=False: el caché guarda JSON como bytes y cada
    módulo hace .decode() explícito

Sin singleton de módulo: bootstrap() crea la instancia y la inyecta.

Uso:
    manager = RedisManager(settings.REDIS_URL)
    await manager.connect()
    ...
    await manager.disconnect()
"""

import asyncio
import logging

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import BusyLoadingError, ConnectionError, RedisError, TimeoutError

logger = logging.getLogger(__name__)


class RedisManager:
    """
    Parámetros del pool:
      max_connections=100   → coroutines simultáneas esperando conexión
      socket_timeout=0.5    → máximo por operación; el caché nunca debe
                              ser más lento que el propio proveedor
      socket_connect_timeout=2.0 → más generoso que el de operación
      health_check_interval=30   → verificación interna del pool
    """

    def __init__(self, url: str, max_connections: int = 100):
        self.url = url
        self.max_connections = max_connections
        self.client: redis.Redis | None = None
        self._connected: bool = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self.client is not None

    async def connect(self) -> None:
        """Inicializa el pool y verifica que Redis responda."""
        logger.info("[Redis] Conectando ...")

        # Solo errores de red, no de lógica
        retry = Retry(
            backoff          = ExponentialBackoff(cap=0.5, base=0.1),
            retries          = 3,
            supported_errors = (ConnectionError, TimeoutError, BusyLoadingError),
        )

        self.client = redis.Redis.from_url(
            self.url,
            max_connections        = self.max_connections,
            socket_timeout         = 0.5,
            socket_connect_timeout = 2.0,
            socket_keepalive       = True,
            health_check_interval  = 30,
            retry                  = retry,
            retry_on_timeout       = True,
            decode_responses       = False,
        )

        await self._health_check()
        self._connected = True
        logger.info("[Redis] Conexión establecida y verificada ✓")

    async def disconnect(self) -> None:
        if self.client:
            try:
                await self.client.aclose()
                logger.info("[Redis] Conexiones cerradas correctamente ✓")
            except RedisError as e:
                logger.error(f"[Redis] Error al cerrar conexiones: {e}")
            finally:
                self._connected = False

    async def _health_check(self) -> None:
        """PING con timeout de 2s. Cualquier fallo aborta el arranque."""
        try:
            response = await asyncio.wait_for(self.client.ping(), timeout=2.0)
            if not response:
                raise ConnectionError("Redis PING retornó False")

        except asyncio.TimeoutError:
            msg = "[Redis] Health check timeout: Redis no responde en 2s"
            logger.error(msg)
            raise ConnectionError(msg)

        except RedisError as e:
            logger.error(f"[Redis] Health check falló: {e}")
            raise
