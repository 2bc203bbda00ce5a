"""
hashing.py
----------
Normalización y hash de identificadores personales (teléfono, email,
dispositivo).

El motor NUNCA persiste PII en claro: solo guarda el SHA-256 en hex
minúscula del valor normalizado. Dos representaciones del mismo número
("+1 504 555 1234" y "5045551234") producen el mismo digest, que es lo
que permite detectar el mismo teléfono en varias cuentas.

Funciones puras, sin efectos secundarios.
"""

import hashlib
import re

from motor_confianza.core.exceptions import ValidationException


_NON_DIGITS     = re.compile(r"\D")
_PHONE_VALID    = re.compile(r"^\d{10,15}$")
_DIGEST_VALID   = re.compile(r"^[0-9a-f]{64}$")


def is_valid_digest(value: str) -> bool:
    """True si el valor tiene la forma exacta de un SHA-256 en hex minúscula."""
    return isinstance(value, str) and bool(_DIGEST_VALID.match(value))


class HashingService:
    """
    Hash de identificadores con SHA-256.

    default_country_code: prefijo que se antepone a números de 10 dígitos
    (se asumen domésticos). Viene de Settings.DEFAULT_COUNTRY_CODE.
    """

    def __init__(self, default_country_code: str = "1"):
        self.default_country_code = default_country_code

    def normalize_phone(self, raw: str) -> str:
        """
        Quita todo lo que no sea dígito.
          - 10 dígitos → se antepone el código de país por defecto
          - 11 dígitos que empiezan por ese código → sin cambios
          - cualquier otra longitud → sin cambios (la validación la rechaza)
        """
        digits = _NON_DIGITS.sub("", raw or "")
        if len(digits) == 10:
            return f"{self.default_country_code}{digits}"
        return digits

    def validate_phone_normalized(self, normalized: str) -> bool:
        return bool(_PHONE_VALID.match(normalized or ""))

    def hash_phone(self, raw: str) -> str:
        normalized = self.normalize_phone(raw)
        if not self.validate_phone_normalized(normalized):
            # No incluir el valor crudo en el mensaje: es PII
            raise ValidationException(
                f"Teléfono inválido tras normalizar ({len(normalized)} dígitos)."
            )
        return self._digest(normalized)

    def hash_reference_value(self, value: str) -> str:
        """Email, device id, etc.: trim + lowercase antes del digest."""
        cleaned = (value or "").strip().lower()
        if not cleaned:
            raise ValidationException("El identificador a hashear está vacío.")
        return self._digest(cleaned)

    @staticmethod
    def _digest(value: str) -> str:
        return hashlib.sha256(value.encode("utf-8")).hexdigest()
