"""
exceptions.py
-------------
Excepciones personalizadas del Motor de Confianza.

Todas heredan de TrustEngineException para que el transporte (HTTP, CLI,
worker) pueda capturarlas en un solo handler y mapear `code` a su propio
formato de error.

Reglas:
  - ValidationException se lanza ANTES de escribir cualquier cosa.
  - StorageException envuelve fallos de persistencia; el llamador conserva
    sus inputs y puede reintentar.
  - ConfigurationException es un error de arranque, nunca de request.
  - Las consultas nunca lanzan "not found": devuelven resultados vacíos.
"""


class TrustEngineException(Exception):
    """Base de todas las excepciones del motor."""
    code: str = "TRUST_ENGINE_ERROR"
    message: str = "Error interno del motor de confianza."

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.message
        super().__init__(self.message)


# ─────────────────────────────────────────────────────────────────────
# Errores de validación de entrada
# ─────────────────────────────────────────────────────────────────────

class ValidationException(TrustEngineException):
    """La entrada no cumple el formato esperado. Nada fue persistido."""
    code = "VALIDATION_ERROR"
    message = "Entrada inválida."


# ─────────────────────────────────────────────────────────────────────
# Errores de infraestructura
# ─────────────────────────────────────────────────────────────────────

class StorageException(TrustEngineException):
    """Falló la escritura o lectura en la base de datos."""
    code = "STORAGE_ERROR"
    message = "Servicio de almacenamiento temporalmente no disponible."


# ─────────────────────────────────────────────────────────────────────
# Errores de configuración
# ─────────────────────────────────────────────────────────────────────

class ConfigurationException(TrustEngineException):
    """Pesos o umbrales mal configurados. Se detecta al arrancar."""
    code = "CONFIGURATION_ERROR"
    message = "Configuración del motor inválida."
